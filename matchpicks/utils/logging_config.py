"""
Logging configuration for Match Picks

Console output for development, rotating files for the application log,
errors, and a scoring audit trail fed by the propagator, the result sync
and the scheduler.
"""

import logging
import logging.handlers
import os

from flask import has_request_context, request

PLAIN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Loggers whose records also go to scoring.log
SCORING_LOGGERS = (
    "matchpicks.services.ranking_service",
    "matchpicks.services.scheduler_service",
    "matchpicks.utils.data_sync",
)

QUIET_LOGGERS = ("werkzeug", "urllib3", "requests", "flask_limiter", "apscheduler")


class RequestContextFilter(logging.Filter):
    """Stamp records with the API request they were emitted under"""

    def filter(self, record):
        in_request = has_request_context()
        record.method = request.method if in_request else "-"
        record.path = request.path if in_request else "-"
        record.remote_addr = request.remote_addr if in_request else "-"
        return True


class ColoredFormatter(logging.Formatter):
    """Colored level names for the debug console"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        color = self.COLORS.get(record.levelname)
        if color is None:
            return super().format(record)

        # File handlers share the record, so color a copy
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def _rotating_handler(path, level, fmt, max_mb, backup_count):
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_mb * 1024 * 1024, backupCount=backup_count
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=DATE_FORMAT))
    handler.addFilter(RequestContextFilter())
    return handler


def _console_handler(level, debug):
    handler = logging.StreamHandler()
    handler.setLevel(level)
    if debug:
        handler.setFormatter(
            ColoredFormatter(
                PLAIN_FORMAT + " [%(filename)s:%(lineno)d]", datefmt="%H:%M:%S"
            )
        )
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(RequestContextFilter())
    return handler


def setup_logging(app):
    """
    Configure the root logger from LOG_* settings

    Args:
        app: Flask application instance
    """
    log_level = getattr(logging, app.config.get("LOG_LEVEL", "INFO").upper())
    log_dir = app.config.get("LOG_DIR", "logs")
    log_to_file = app.config.get("LOG_TO_FILE", True)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if app.config.get("LOG_TO_CONSOLE", True):
        root_logger.addHandler(_console_handler(log_level, app.debug))

    if log_to_file:
        os.makedirs(log_dir, exist_ok=True)

        root_logger.addHandler(
            _rotating_handler(
                os.path.join(log_dir, "matchpicks.log"),
                log_level,
                PLAIN_FORMAT + " [%(method)s %(path)s] [%(remote_addr)s]",
                max_mb=10,
                backup_count=5,
            )
        )
        root_logger.addHandler(
            _rotating_handler(
                os.path.join(log_dir, "errors.log"),
                logging.ERROR,
                PLAIN_FORMAT + " [%(pathname)s:%(lineno)d] [%(method)s %(path)s]",
                max_mb=5,
                backup_count=3,
            )
        )

        scoring_handler = _rotating_handler(
            os.path.join(log_dir, "scoring.log"),
            logging.INFO,
            PLAIN_FORMAT,
            max_mb=5,
            backup_count=10,
        )
        for name in SCORING_LOGGERS:
            scoring_logger = logging.getLogger(name)
            for handler in scoring_logger.handlers[:]:
                scoring_logger.removeHandler(handler)
            scoring_logger.addHandler(scoring_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    app.logger.info(f"Logging configured - Level: {logging.getLevelName(log_level)}")


def get_logger(name):
    """Return the module logger for ``name`` (usually ``__name__``)"""
    return logging.getLogger(name)


class ContextualLogger(logging.LoggerAdapter):
    """
    Logger that appends key=value context to every message,
    e.g. ``Scoring failed [match_id=12]``
    """

    def __init__(self, name, context=None):
        super().__init__(get_logger(name), dict(context or {}))

    def bind(self, **context):
        """Return a logger carrying this context plus ``context``"""
        return ContextualLogger(self.logger.name, {**self.extra, **context})

    def process(self, msg, kwargs):
        if self.extra:
            context = " ".join(f"{key}={value}" for key, value in self.extra.items())
            msg = f"{msg} [{context}]"
        return msg, kwargs
