"""
Timing for scoring and ranking work

``timer`` and ``PerformanceMonitor`` log slow calls. Inside a request the
monitored operations are also collected on ``g`` so that
``log_request_performance`` can report which scoring steps made an API
call slow.
"""

import functools
import time

from flask import current_app, g, has_app_context, has_request_context, request

from matchpicks.utils.logging_config import get_logger

logger = get_logger(__name__)


def _threshold(key, default):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def timer(func):
    """Log the duration of ``func``; warn past SLOW_FUNCTION_THRESHOLD"""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.error(
                f"{func.__qualname__} failed after "
                f"{time.perf_counter() - started:.2f}s: {e}"
            )
            raise

        elapsed = time.perf_counter() - started
        threshold = _threshold("SLOW_FUNCTION_THRESHOLD", 1.0)
        if elapsed > threshold:
            logger.warning(
                f"Slow call {func.__qualname__} took {elapsed:.2f}s "
                f"(threshold: {threshold}s)"
            )
        else:
            logger.debug(f"{func.__qualname__} finished in {elapsed:.3f}s")
        return result

    return wrapper


class PerformanceMonitor:
    """
    Time a block of scoring work.

    Usage:
        with PerformanceMonitor(f"Re-ranking group {group_id}"):
            ...
    """

    def __init__(self, operation_name, log_threshold=None):
        self.operation_name = operation_name
        self.log_threshold = log_threshold
        self.duration = None
        self._started = None

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self._started

        threshold = self.log_threshold
        if threshold is None:
            threshold = _threshold("SLOW_OPERATION_THRESHOLD", 0.1)

        if exc_type is not None:
            logger.error(
                f"{self.operation_name} failed after {self.duration:.3f}s: {exc_val}"
            )
        elif self.duration > threshold:
            logger.info(f"{self.operation_name} took {self.duration:.3f}s")

        if has_request_context():
            g.setdefault("scoring_operations", []).append(
                {
                    "operation": self.operation_name,
                    "duration": self.duration,
                    "success": exc_type is None,
                }
            )

        return False


def track_request_performance():
    """before_request hook"""
    g.request_started = time.perf_counter()


def log_request_performance(response):
    """after_request hook: warn about slow API calls and what they spent time on"""
    started = g.get("request_started")
    if started is None:
        return response

    elapsed = time.perf_counter() - started
    threshold = _threshold("SLOW_REQUEST_THRESHOLD", 2.0)
    if elapsed > threshold:
        logger.warning(
            f"Slow request {request.method} {request.path} took {elapsed:.2f}s "
            f"(status {response.status_code})"
        )
        for operation in g.get("scoring_operations", []):
            outcome = "ok" if operation["success"] else "failed"
            logger.warning(
                f"  {operation['operation']}: {operation['duration']:.3f}s ({outcome})"
            )

    return response
