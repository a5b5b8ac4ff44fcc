"""Shared pytest fixtures: an app on a throwaway database with the AI endpoint stubbed out"""

import os
import json
import tempfile

# Must be set before any animagenius module reads its configuration
os.environ['RENDER_DELAY_SCALE'] = '0'
os.environ['JWT_SECRET'] = 'test-jwt-secret'
os.environ['BCRYPT_ROUNDS'] = '4'
os.environ['LOG_DIR'] = tempfile.mkdtemp(prefix='animagenius-logs-')
os.environ['CELERY_ALWAYS_EAGER'] = 'true'
os.environ['ADMIN_EMAIL'] = 'admin@animagenius.test'
os.environ['ADMIN_API_KEY'] = 'test-admin-api-key'
os.environ['PAYPAL_WEBHOOK_SECRET'] = ''
os.environ['SENTRY_DSN'] = ''
os.environ.pop('REDIS_URL', None)

import pytest

from animagenius import database as db
from animagenius import plans
from animagenius import ai_services
from animagenius.app import create_app
from animagenius.auth import hash_password, generate_jwt

ADMIN_API_KEY = os.environ['ADMIN_API_KEY']


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeSession:
    """Stands in for the pooled requests session; replies are queued per test"""

    def __init__(self):
        self.replies = []
        self.calls = []

    def queue_reply(self, content, status_code=200):
        payload = {'choices': [{'message': {'content': content}}]}
        self.replies.append(FakeResponse(status_code, payload))

    def queue_json(self, data, status_code=200):
        self.queue_reply(json.dumps(data), status_code)

    def post(self, url, headers=None, json=None, timeout=None):
        self.calls.append({'url': url, 'headers': headers, 'json': json})
        if self.replies:
            return self.replies.pop(0)
        return FakeResponse(503, None)


@pytest.fixture(autouse=True)
def ai_session(monkeypatch):
    session = FakeSession()
    monkeypatch.setattr(ai_services, 'get_http_session', lambda: session)
    return session


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'DATABASE_PATH': str(tmp_path / 'animagenius-test.db'),
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'RATELIMIT_ENABLED': False,
    })
    yield app
    db.close_db_connection()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """Create a user on a tier and return (user, auth headers)"""
    counter = {'n': 0}

    def _make_user(tier='FREE', email=None, name='Test User', password='password123',
                   current_usage=None):
        counter['n'] += 1
        user = db.create_user(
            name=name,
            email=email or f"user{counter['n']}@example.com",
            password_hash=hash_password(password),
            subscription_tier=tier,
            usage_limits=plans.limits_for(tier),
            current_usage=current_usage or plans.empty_usage(),
        )
        token = generate_jwt(user['id'])
        return user, {'Authorization': f'Bearer {token}'}

    return _make_user


@pytest.fixture
def admin_headers(app):
    return {'Authorization': f'Bearer {ADMIN_API_KEY}'}
