"""
Flask API Application Factory
Main application initialization and configuration
"""
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Callable, Optional

import redis
from flask import Flask
from flask_cors import CORS
from structlog import configure, dev, get_logger, processors, stdlib
from structlog.contextvars import merge_contextvars
from werkzeug.exceptions import HTTPException

from ..config import get_config
from . import (
    auth, bot, custom_commands, devmode, favorites, guilds, music_stats, premium, server_settings, stats,
)
from .errors import DashboardError, api_error_response, dashboard_error_response
from .extensions import cache, db, jwt, limiter, talisman
from .middleware_ext import init_request_id, init_request_logging
from .relay import StatusWatcher, build_relay
from .store import DocumentStore, utcnow

logger = get_logger(__name__)

_HANDLER_FLAG = '_dashboard_handler'

HTTP_ERROR_MESSAGES = {
    404: "Resource not found",
    405: "Method not allowed",
    429: "Rate limit exceeded",
}


# Configure structlog for structured logging
def setup_logging(app: Flask):
    """Configure structured logging for the application"""
    shared_processors = [
        merge_contextvars,
        stdlib.add_log_level,
        stdlib.add_logger_name,
        processors.TimeStamper(fmt="iso"),
    ]
    configure(
        processors=shared_processors + [stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=stdlib.LoggerFactory(),
        wrapper_class=stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = processors.JSONRenderer() if app.config['LOG_JSON'] else dev.ConsoleRenderer(colors=False)
    formatter = stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )

    root = logging.getLogger()
    # Replace handlers installed by a previous factory call
    for handler in [h for h in root.handlers if getattr(h, _HANDLER_FLAG, False)]:
        root.removeHandler(handler)

    handlers = [logging.StreamHandler()]
    # Add file handler if LOG_FILE is configured
    if app.config.get('LOG_FILE'):
        handlers.append(RotatingFileHandler(
            app.config['LOG_FILE'],
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        ))
    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_FLAG, True)
        root.addHandler(handler)

    log_level = getattr(logging, app.config['LOG_LEVEL'])
    root.setLevel(log_level)
    app.logger.setLevel(log_level)

    logger.info("Application initialized", env=app.config["ENV"], debug=app.config["DEBUG"])


def create_app(config_name: Optional[str] = None, clock: Callable[[], datetime] = utcnow,
               relay_watcher: Optional[StatusWatcher] = None) -> Flask:
    """
    Application factory function

    Args:
        config_name: Configuration environment name (development, testing, production)
        clock: Source of the current UTC time for store writes and expiry maths
        relay_watcher: Wait strategy for the command relay; chosen from config when omitted

    Returns:
        Flask application instance
    """
    app = Flask(__name__)

    # Load configuration
    config = get_config(config_name)
    app.config.from_object(config)

    setup_logging(app)

    # Initialize extensions
    db.init_app(app)
    jwt.init_app(app)
    cache.init_app(app)

    # Initialize Talisman for HSTS/CSP and security headers
    talisman.init_app(
        app,
        force_https=app.config['FORCE_HTTPS'],
        session_cookie_secure=app.config['FORCE_HTTPS'],
        strict_transport_security=True,
        strict_transport_security_max_age=31536000,
        content_security_policy=app.config.get('CONTENT_SECURITY_POLICY', "default-src 'self'"),
        frame_options='DENY',
        referrer_policy='no-referrer',
    )

    # Token store (Redis) for the JWT blocklist
    app.extensions['token_store'] = None
    if app.config.get('REDIS_URL'):
        app.extensions['token_store'] = redis.Redis.from_url(app.config['REDIS_URL'], decode_responses=True)

    # Document store and command relay, one per application
    store = DocumentStore(db, clock=clock)
    app.extensions['document_store'] = store
    app.extensions['command_relay'] = build_relay(app, store, relay_watcher)

    setup_jwt(app)
    setup_cors(app)
    setup_limiter(app)
    setup_error_handlers(app)
    setup_middleware(app)
    setup_blueprints(app)
    setup_health_checks(app)
    setup_cli(app)

    @app.shell_context_processor
    def make_shell_context():
        return dict(app=app, db=db, store=store, config=app.config)

    # Local SQLite databases are created on first start
    if app.config['ENV'] == 'development':
        with app.app_context():
            db.create_all()

    return app


def setup_jwt(app: Flask):
    """Configure JWT token verification callbacks"""

    @jwt.token_in_blocklist_loader
    def check_if_token_revoked(jwt_header, jwt_payload):
        token_store = app.extensions.get('token_store')
        jti = jwt_payload.get('jti')
        if not token_store or not jti:
            return False
        try:
            return token_store.exists(f"jwt:blocklist:{jti}") == 1
        except redis.RedisError as e:
            logger.warning("Token blocklist unavailable", error=str(e))
            return False

    @jwt.unauthorized_loader
    def missing_token(reason):
        return api_error_response(401, "Unauthorized", code='unauthorized')

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return api_error_response(401, "Invalid token", code='invalid_token')

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return api_error_response(401, "Token has expired", code='token_expired')

    @jwt.revoked_token_loader
    def revoked_token(jwt_header, jwt_payload):
        return api_error_response(401, "Token has been revoked", code='token_revoked')


def setup_cors(app: Flask):
    """Configure CORS for the application"""
    CORS(
        app,
        origins=app.config['CORS_ORIGINS'],
        allow_headers=app.config['CORS_ALLOW_HEADERS'],
        expose_headers=app.config['CORS_EXPOSE_HEADERS'],
        supports_credentials=app.config['CORS_ALLOW_CREDENTIALS'],
        methods=app.config['CORS_METHODS'],
    )
    logger.info("CORS configured", origins=app.config['CORS_ORIGINS'])


def setup_limiter(app: Flask):
    """Configure rate limiting"""
    limiter.init_app(app)
    logger.info("Rate limiting configured", storage=app.config['RATELIMIT_STORAGE_URI'],
                enabled=app.config['RATELIMIT_ENABLED'])


def setup_blueprints(app: Flask):
    """Register all blueprints with the application"""
    api_prefix = app.config['API_PREFIX']

    app.register_blueprint(auth.bp, url_prefix=f'{api_prefix}/auth')
    app.register_blueprint(guilds.bp, url_prefix=f'{api_prefix}/guilds')
    app.register_blueprint(custom_commands.bp, url_prefix=f'{api_prefix}/custom-commands')
    app.register_blueprint(favorites.bp, url_prefix=f'{api_prefix}/user-favorites')

    # Feature blueprints sharing the bare API prefix
    for blueprint in (stats.bp, premium.bp, bot.bp, devmode.bp, server_settings.bp, music_stats.bp):
        app.register_blueprint(blueprint, url_prefix=api_prefix)

    logger.info("Blueprints registered", prefix=api_prefix)


def setup_middleware(app: Flask):
    """Configure application middleware"""
    init_request_id(app)
    init_request_logging(app, redact_fields=['Authorization', 'Cookie'])


def setup_error_handlers(app: Flask):
    """Configure global error handlers"""

    @app.errorhandler(DashboardError)
    def handle_dashboard_error(error):
        if error.status_code >= 500:
            logger.error("Request failed", error=error.message, code=error.code)
        else:
            logger.info("Request rejected", status_code=error.status_code, error=error.message, code=error.code)
        return dashboard_error_response(error)

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        logger.warning("HTTP error", status_code=error.code, description=error.description)
        message = HTTP_ERROR_MESSAGES.get(error.code, error.description)
        return api_error_response(error.code, message)

    @app.errorhandler(500)
    def internal_error(error):
        logger.error("Internal server error", error=str(getattr(error, 'original_exception', error)))
        return api_error_response(500, "Internal server error")


def setup_health_checks(app: Flask):
    """Configure health check endpoints"""

    @app.route('/health')
    def health_check():
        return {
            'status': 'healthy',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'version': app.config['API_VERSION'],
            'environment': app.config['ENV'],
        }

    @app.route('/health/detailed')
    def detailed_health_check():
        results = {
            'document_store': {'status': 'healthy' if app.extensions['document_store'].ping() else 'unhealthy'},
        }

        token_store = app.extensions.get('token_store')
        if token_store is None:
            results['token_store'] = {'status': 'disabled'}
        else:
            try:
                token_store.ping()
                results['token_store'] = {'status': 'healthy'}
            except redis.RedisError as e:
                logger.error("Health check failed: token_store", error=str(e))
                results['token_store'] = {'status': 'unhealthy'}

        healthy = all(r['status'] in ('healthy', 'disabled') for r in results.values())
        body = {
            'status': 'healthy' if healthy else 'unhealthy',
            'checks': results,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }
        return body, 200 if healthy else 503


def setup_cli(app: Flask):
    """Register maintenance commands with the Flask CLI"""

    @app.cli.command('init-db')
    def init_db():
        """Create the document table."""
        db.create_all()
        logger.info("Database tables created", uri=app.config['SQLALCHEMY_DATABASE_URI'].split('@')[-1])

    app.cli.add_command(premium.premium_cli)
