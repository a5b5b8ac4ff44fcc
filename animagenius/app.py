"""
AnimaGenius - Backend API
Flask application factory: logging, middleware, error handlers and blueprints
"""

import os
import time
import uuid
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask, request, g, has_request_context
from flask_cors import CORS
from flask_limiter.util import get_remote_address

_PROJECT_DIR = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_DIR / '.env')
load_dotenv()

from animagenius import __version__
from animagenius import database as db
from animagenius.admin_routes import admin_bp
from animagenius.auth import auth_bp, ensure_default_admin
from animagenius.extensions import limiter
from animagenius.monitoring import init_monitoring, metrics_bp, record_error
from animagenius.paypal_service import billing_bp, webhooks_bp
from animagenius.projects import projects_bp
from animagenius.responses import error_response

UPLOAD_FOLDER = os.getenv('UPLOAD_FOLDER', str(_PROJECT_DIR / 'uploads'))
MAX_CONTENT_LENGTH = int(os.getenv('MAX_CONTENT_LENGTH_MB', 10240)) * 1024 * 1024
ALLOWED_ORIGINS = [o.strip() for o in os.getenv('CORS_ORIGINS', 'http://localhost:3000').split(',') if o.strip()]

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] - %(message)s'

logger = logging.getLogger(__name__)


# === LOGGING SETUP ===
class RequestIdFilter(logging.Filter):
    def filter(self, record):
        if has_request_context():
            record.request_id = getattr(g, 'request_id', 'no-request-id')
        else:
            record.request_id = 'initialization'
        return True


_logging_configured = False


def setup_logging():
    """Configure logging with rotation and request IDs (once per process)"""
    global _logging_configured
    if _logging_configured:
        return logger

    log_dir = Path(os.getenv('LOG_DIR', 'logs'))
    log_dir.mkdir(parents=True, exist_ok=True)

    handlers = [
        logging.StreamHandler(),
        RotatingFileHandler(
            log_dir / 'animagenius.log',
            maxBytes=10_000_000,  # 10MB
            backupCount=10
        ),
    ]

    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO'),
        format=LOG_FORMAT,
        handlers=handlers
    )

    request_id_filter = RequestIdFilter()
    for handler in logging.getLogger().handlers + handlers:
        handler.addFilter(request_id_filter)

    _logging_configured = True
    return logger


# === FLASK APP FACTORY ===
def create_app(config=None):
    """Application factory pattern for testing and configuration"""
    setup_logging()

    app = Flask(__name__)

    app.config['JSON_SORT_KEYS'] = False
    app.config['MAX_CONTENT_LENGTH'] = MAX_CONTENT_LENGTH
    app.config['RATELIMIT_HEADERS_ENABLED'] = True
    app.config['PROPAGATE_EXCEPTIONS'] = False
    app.config['DATABASE_PATH'] = str(db.DB_PATH)
    app.config['UPLOAD_FOLDER'] = UPLOAD_FOLDER
    app.config['start_time'] = time.time()

    if config:
        app.config.update(config)

    db.configure_database(app.config['DATABASE_PATH'])
    db.init_database()
    Path(app.config['UPLOAD_FOLDER']).mkdir(parents=True, exist_ok=True)
    ensure_default_admin()

    CORS(app,
         origins=ALLOWED_ORIGINS,
         methods=["GET", "POST", "PUT", "OPTIONS"],
         allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
         expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
         max_age=3600)

    limiter.init_app(app)

    register_middleware(app)
    register_error_handlers(app)
    init_monitoring(app)

    app.register_blueprint(auth_bp)
    app.register_blueprint(projects_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(metrics_bp)

    logger.info("=" * 70)
    logger.info("ANIMAGENIUS - Backend API")
    logger.info(f"   Version: {__version__}")
    logger.info(f"   Environment: {os.getenv('FLASK_ENV', 'production')}")
    logger.info(f"   Database: {app.config['DATABASE_PATH']}")
    logger.info(f"   Uploads: {app.config['UPLOAD_FOLDER']}")
    logger.info("=" * 70)

    return app


# === MIDDLEWARE ===
def register_middleware(app):

    @app.before_request
    def before_request():
        """Attach request ID and start timer"""
        g.request_id = request.headers.get('X-Request-ID') or uuid.uuid4().hex
        g.start_time = time.time()
        logger.info(f"--> {request.method} {request.path} from {get_remote_address()}")

    @app.after_request
    def after_request(response):
        """Add security headers and log response"""
        response.headers['X-Request-ID'] = getattr(g, 'request_id', '')

        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"

        if os.getenv('FLASK_ENV') == 'production':
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

        if hasattr(g, 'start_time'):
            duration = time.time() - g.start_time
            logger.info(f"<-- {response.status_code} in {duration:.3f}s")

        return response


# === ERROR HANDLERS ===
def register_error_handlers(app):

    @app.errorhandler(400)
    def bad_request(error):
        return error_response('Bad request', 'BAD_REQUEST', 400)

    @app.errorhandler(404)
    def not_found(error):
        return error_response('Resource not found', 'NOT_FOUND', 404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return error_response('Method not allowed', 'METHOD_NOT_ALLOWED', 405)

    @app.errorhandler(413)
    def payload_too_large(error):
        return error_response('File too large', 'PAYLOAD_TOO_LARGE', 413)

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        return error_response('Rate limit exceeded', 'RATE_LIMIT_EXCEEDED', 429)

    @app.errorhandler(500)
    def internal_error(error):
        original = getattr(error, 'original_exception', None) or error
        logger.error(f"Internal server error: {original}")
        record_error(original)
        return error_response('Internal server error', 'INTERNAL_ERROR', 500)


# === MAIN ===
def main():
    port = int(os.getenv('PORT', 5000))
    app = create_app()

    if os.getenv('FLASK_ENV') == 'development':
        logger.info("[INFO] Running in DEVELOPMENT mode with Flask dev server")
        app.run(host='0.0.0.0', port=port, debug=True, threaded=True)
        return

    from waitress import serve
    logger.info(f"[INFO] Starting Waitress on http://0.0.0.0:{port}")
    serve(
        app,
        host='0.0.0.0',
        port=port,
        threads=8,
        connection_limit=200,
        channel_timeout=120,
        expose_tracebacks=False
    )


if __name__ == '__main__':
    main()
