"""
Monitoring Module for AnimaGenius API
Prometheus metrics + Sentry error tracking
"""

import os
import platform
import time
import logging
from functools import wraps

from flask import Flask, Blueprint, Response, request, g, jsonify
from prometheus_client import Counter, Histogram, Gauge, Info, generate_latest, CONTENT_TYPE_LATEST
import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.celery import CeleryIntegration

from animagenius import __version__
from animagenius.database import check_database_health
from animagenius.video_providers import list_video_providers

logger = logging.getLogger(__name__)

# ==============================================================================
# PROMETHEUS METRICS
# ==============================================================================

REQUEST_COUNT = Counter(
    'animagenius_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)

REQUEST_LATENCY = Histogram(
    'animagenius_http_request_duration_seconds',
    'HTTP request latency',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

VIDEO_GENERATION_COUNT = Counter(
    'animagenius_video_generations_total',
    'Total video generation attempts',
    ['provider', 'status']
)

VIDEO_GENERATION_DURATION = Histogram(
    'animagenius_video_generation_duration_seconds',
    'Video render duration',
    buckets=[0.5, 1, 2, 5, 10, 30, 60]
)

AI_REQUEST_COUNT = Counter(
    'animagenius_ai_requests_total',
    'Calls to the chat-completions endpoint',
    ['operation', 'status']
)

AUTH_REQUESTS = Counter(
    'animagenius_auth_requests_total',
    'Authentication requests',
    ['action', 'status']
)

WEBHOOK_EVENTS = Counter(
    'animagenius_webhook_events_total',
    'PayPal webhook events received',
    ['event_type', 'processed']
)

ERROR_COUNT = Counter(
    'animagenius_errors_total',
    'Total errors',
    ['error_type', 'endpoint']
)

SERVICE_STATUS = Gauge(
    'animagenius_service_status',
    'Service availability status (1=up, 0=down)',
    ['service']
)

APP_INFO = Info('animagenius_app', 'Application information')

# ==============================================================================
# SENTRY ERROR TRACKING
# ==============================================================================

SENSITIVE_HEADERS = ['Authorization', 'X-API-Key', 'Cookie', 'Paypal-Transmission-Sig']


def init_sentry(app: Flask) -> bool:
    """Initialize Sentry error tracking when a DSN is configured"""
    sentry_dsn = app.config.get('SENTRY_DSN') or os.getenv('SENTRY_DSN', '')

    if not sentry_dsn:
        logger.info("[INFO] Sentry DSN not configured, error tracking disabled")
        return False

    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[
            FlaskIntegration(),
            CeleryIntegration(),
        ],
        traces_sample_rate=float(os.getenv('SENTRY_TRACES_SAMPLE_RATE', 0.1)),
        environment=os.getenv('FLASK_ENV', 'production'),
        release=__version__,
        send_default_pii=False,
        before_send=_sentry_before_send,
    )
    logger.info("[OK] Sentry initialized")
    return True


def _sentry_before_send(event, hint):
    """Filter sensitive data before sending to Sentry"""
    if 'request' in event and 'headers' in event['request']:
        headers = event['request']['headers']
        for header in SENSITIVE_HEADERS:
            if header in headers:
                headers[header] = '[FILTERED]'

    if 'breadcrumbs' in event:
        for breadcrumb in event['breadcrumbs'].get('values', []):
            data = breadcrumb.get('data') or {}
            for key in ['password', 'api_key', 'token', 'secret']:
                if key in data:
                    data[key] = '[FILTERED]'

    return event


def capture_exception(exception: Exception, extra: dict = None):
    """Capture exception to Sentry (no-op when Sentry is not initialized)"""
    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


# ==============================================================================
# FLASK MIDDLEWARE
# ==============================================================================

def init_monitoring(app: Flask):
    """Initialize all monitoring for Flask app"""
    sentry_enabled = init_sentry(app)

    APP_INFO.info({
        'version': __version__,
        'environment': os.getenv('FLASK_ENV', 'production'),
        'sentry_enabled': str(sentry_enabled),
        'python_version': platform.python_version()
    })

    @app.after_request
    def record_request_metrics(response):
        if hasattr(g, 'start_time'):
            duration = time.time() - g.start_time
            endpoint = request.endpoint or 'unknown'

            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=response.status_code
            ).inc()

            REQUEST_LATENCY.labels(
                method=request.method,
                endpoint=endpoint
            ).observe(duration)

        return response

    logger.info("[OK] Monitoring middleware initialized")


def record_error(error: Exception):
    """Count an unhandled error and forward it to Sentry"""
    endpoint = request.endpoint or 'unknown'
    ERROR_COUNT.labels(error_type=type(error).__name__, endpoint=endpoint).inc()
    capture_exception(error, extra={
        'endpoint': endpoint,
        'method': request.method,
        'url': request.url,
        'request_id': getattr(g, 'request_id', 'unknown')
    })


# ==============================================================================
# METRIC DECORATORS
# ==============================================================================

def track_auth(action: str):
    """Decorator to track auth metrics"""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            status = 'success'
            try:
                result = f(*args, **kwargs)
                if isinstance(result, tuple) and len(result) > 1 and result[1] >= 400:
                    status = 'failed'
                return result
            except Exception:
                status = 'failed'
                raise
            finally:
                AUTH_REQUESTS.labels(action=action, status=status).inc()
        return decorated
    return decorator


def track_ai_request(operation: str):
    """Decorator to count calls to the AI endpoint"""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            status = 'success'
            try:
                return f(*args, **kwargs)
            except Exception:
                status = 'failed'
                raise
            finally:
                AI_REQUEST_COUNT.labels(operation=operation, status=status).inc()
        return decorated
    return decorator


def record_video_generation(provider: str, success: bool, duration: float):
    VIDEO_GENERATION_COUNT.labels(
        provider=provider or 'none',
        status='success' if success else 'failed'
    ).inc()
    VIDEO_GENERATION_DURATION.observe(duration)


def record_webhook_event(event_type: str, processed: bool):
    WEBHOOK_EVENTS.labels(event_type=event_type or 'unknown', processed=str(processed).lower()).inc()


# ==============================================================================
# SERVICE HEALTH TRACKING
# ==============================================================================

def update_service_status(service: str, is_healthy: bool):
    SERVICE_STATUS.labels(service=service).set(1 if is_healthy else 0)


def check_all_services() -> dict:
    """Check and update status of all services"""
    services = {
        'database': check_database_health().get('healthy', False),
        'redis': _check_redis(),
    }
    for service, is_healthy in services.items():
        update_service_status(service, is_healthy)
    return services


def _check_redis() -> bool:
    """Redis is optional; report healthy when it is not configured"""
    redis_url = os.getenv('REDIS_URL', '')
    if not redis_url:
        return True
    try:
        import redis
        redis.from_url(redis_url, socket_connect_timeout=2).ping()
        return True
    except Exception as e:
        logger.warning(f"[HEALTH] Redis check failed: {e}")
        return False


# ==============================================================================
# METRICS ENDPOINT BLUEPRINT
# ==============================================================================

metrics_bp = Blueprint('metrics', __name__)


@metrics_bp.route('/metrics')
def metrics():
    """Prometheus metrics endpoint"""
    check_all_services()
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


@metrics_bp.route('/health')
def health():
    """Health check endpoint for load balancers"""
    return jsonify({
        'status': 'healthy',
        'version': __version__,
        'timestamp': time.time()
    })


@metrics_bp.route('/readiness')
def readiness():
    """Readiness check: the database must be reachable"""
    services = check_all_services()
    body = {'services': services, 'videoProviders': list_video_providers()}
    if services.get('database'):
        return jsonify({'status': 'ready', **body})
    return jsonify({'status': 'not_ready', **body}), 503


@metrics_bp.route('/liveness')
def liveness():
    return jsonify({
        'status': 'alive',
        'timestamp': time.time()
    })
