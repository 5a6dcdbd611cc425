import logging
import os

import redis
from flask import Flask, jsonify, request
from flask_caching import Cache
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_socketio import SocketIO
from flask_sqlalchemy import SQLAlchemy

from config import config

logger = logging.getLogger(__name__)

db = SQLAlchemy()
socketio = SocketIO()
cache = Cache()
migrate = Migrate()


def get_real_ip():
    """
    Get the real client IP address, accounting for reverse proxies.
    Checks X-Forwarded-For, X-Real-IP, and falls back to remote_addr.
    """
    # X-Forwarded-For: client, proxy1, proxy2, ...
    if request.headers.get("X-Forwarded-For"):
        return request.headers.get("X-Forwarded-For").split(",")[0].strip()
    if request.headers.get("X-Real-IP"):
        return request.headers.get("X-Real-IP")
    return get_remote_address()


# Storage and default limits come from RATELIMIT_* config keys
limiter = Limiter(key_func=get_real_ip)


def create_app(config_name=None):
    app = Flask(__name__)

    # Determine configuration
    if config_name is None:
        config_name = os.environ.get("FLASK_CONFIG", "default")

    app.config.from_object(config[config_name]())

    # Initialize extensions
    db.init_app(app)

    # Configure WebSocket CORS based on environment
    allowed_origins = app.config.get("SOCKETIO_CORS_ORIGINS", "*")
    if allowed_origins == "*" and not app.config.get("DEBUG"):
        allowed_origins = os.environ.get(
            "ALLOWED_ORIGINS", "http://localhost:5000"
        ).split(",")

    # Use Redis as message queue for Socket.IO when available, so scoring
    # broadcasts from CLI and scheduler processes reach web clients
    message_queue = None
    redis_url = None if app.config.get("TESTING") else app.config.get("CACHE_REDIS_URL")
    if redis_url:
        try:
            redis_client = redis.Redis.from_url(redis_url)
            redis_client.ping()
            message_queue = redis_url
            logger.info(f"Socket.IO using Redis message queue at {redis_url}")
        except redis.exceptions.RedisError as e:
            logger.warning(f"Redis not available for Socket.IO message queue: {e}")

    socketio.init_app(
        app,
        cors_allowed_origins=allowed_origins,
        async_mode=app.config.get("SOCKETIO_ASYNC_MODE", "eventlet"),
        ping_timeout=60,
        ping_interval=25,
        message_queue=message_queue,
    )
    cache.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # Per-app lock registry serializing ranking recomputation per group
    from matchpicks.utils.locks import GroupLockRegistry

    app.extensions["group_locks"] = GroupLockRegistry()

    # Import and register blueprints
    from matchpicks.routes.api import bp as api_bp

    app.register_blueprint(api_bp, url_prefix="/api")

    # Register error handlers
    register_error_handlers(app)

    # Setup logging
    from matchpicks.utils.logging_config import setup_logging

    setup_logging(app)

    from matchpicks.utils.performance import (
        log_request_performance,
        track_request_performance,
    )

    app.before_request(track_request_performance)
    app.after_request(log_request_performance)

    # Create database tables
    with app.app_context():
        db.create_all()

    # Initialize and start background scheduler
    if not app.config.get("TESTING", False):
        from matchpicks.services.scheduler_service import SchedulerService

        app.extensions["scheduler"] = SchedulerService(app)

    # Register SocketIO handlers
    from matchpicks import socketio_handlers  # noqa: F401 - imported for side effects

    return app


def register_error_handlers(app):
    """Register global error handlers"""
    from matchpicks.exceptions import ScoringError

    @app.after_request
    def after_request(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    @app.errorhandler(ScoringError)
    def handle_scoring_error(error):
        db.session.rollback()
        if error.status_code >= 500:
            app.logger.error(f"{error.code}: {error.message} - Path: {request.path}")
        else:
            app.logger.warning(
                f"{error.code}: {error.message} - Path: {request.path}"
            )
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found_error(error):
        return (
            jsonify({"error": {"code": "NOT_FOUND", "message": "Resource not found"}}),
            404,
        )

    @app.errorhandler(400)
    def bad_request_error(error):
        app.logger.warning(
            f"400 Bad Request: {str(error)} - Path: {request.path} - Method: {request.method}"
        )
        return (
            jsonify({"error": {"code": "BAD_REQUEST", "message": "Bad request"}}),
            400,
        )

    @app.errorhandler(429)
    def too_many_requests_error(error):
        return (
            jsonify(
                {"error": {"code": "TOO_MANY_REQUESTS", "message": "Too many requests"}}
            ),
            429,
        )

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        message = (
            "An unexpected error occurred"
            if app.config.get("FLASK_ENV") == "production"
            else str(getattr(error, "original_exception", error))
        )
        return (
            jsonify({"error": {"code": "INTERNAL_SERVER_ERROR", "message": message}}),
            500,
        )


from matchpicks import models  # noqa: F401, E402 - imported for model registration
