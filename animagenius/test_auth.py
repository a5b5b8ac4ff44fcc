import jwt
import pytest

from animagenius import auth
from animagenius import database as db


def _signup(client, **overrides):
    body = {'name': 'Ada Lovelace', 'email': 'ada@example.com', 'password': 'password123'}
    body.update(overrides)
    return client.post('/api/auth/signup', json=body)


def test_signup_free_plan(client):
    response = _signup(client)
    assert response.status_code == 200

    data = response.get_json()
    assert data['success'] is True
    assert data['user']['subscriptionTier'] == 'FREE'
    assert data['user']['usageLimits'] == {'videos': 5, 'duration': 120, 'fileSize': 100}
    assert data['token']

    user = db.get_user_by_email('ada@example.com')
    assert user['trial_ends_at'] is None
    assert user['password_hash'] != 'password123'

    notifications = db.get_user_notifications(user['id'])
    assert notifications[0]['title'] == 'Welcome to AnimaGenius!'
    assert notifications[0]['message'] == 'Your FREE account has been created successfully.'

    events = db.get_usage_events(user['id'], 'user_signup')
    assert events[0]['metadata']['plan'] == 'FREE'


def test_signup_paid_plan_starts_trial(client):
    response = _signup(client, plan='ENTERPRISE')
    data = response.get_json()
    assert data['user']['usageLimits'] == {'videos': -1, 'duration': -1, 'fileSize': 10240}

    user = db.get_user_by_email('ada@example.com')
    assert user['trial_ends_at'] is not None
    message = db.get_user_notifications(user['id'])[0]['message']
    assert message.endswith('Your 7-day trial starts now.')


@pytest.mark.parametrize('overrides, message', [
    ({'name': 'A'}, 'Name must be at least 2 characters'),
    ({'email': 'not-an-email'}, 'Invalid email address'),
    ({'password': 'short'}, 'Password must be at least 8 characters'),
    ({'password': 'x' * 80}, 'Password must be at most 72 bytes'),
    ({'password': '\u00e9' * 40}, 'Password must be at most 72 bytes'),
    ({'name': 'A', 'email': 'bad'}, 'Name must be at least 2 characters'),
])
def test_signup_validation_reports_first_error(client, overrides, message):
    response = _signup(client, **overrides)
    assert response.status_code == 400
    assert response.get_json()['error'] == message


def test_signup_rejects_unknown_plan(client):
    response = _signup(client, plan='GOLD')
    assert response.status_code == 400
    assert response.get_json()['error_code'] == 'VALIDATION_ERROR'


def test_signup_duplicate_email(client):
    _signup(client)
    response = _signup(client, email='ADA@example.com')
    assert response.status_code == 400
    assert response.get_json()['error'] == 'User with this email already exists'


def test_signup_without_body(client):
    response = client.post('/api/auth/signup', data='nope', content_type='text/plain')
    assert response.status_code == 400


def test_signin_and_profile(client):
    _signup(client)
    response = client.post('/api/auth/signin', json={'email': 'ada@example.com', 'password': 'password123'})
    assert response.status_code == 200
    token = response.get_json()['token']

    profile = client.get('/api/user/profile', headers={'Authorization': f'Bearer {token}'})
    assert profile.status_code == 200
    data = profile.get_json()
    assert data['user']['email'] == 'ada@example.com'
    assert data['user']['currentUsage'] == {'videos': 0, 'duration': 0, 'fileSize': 0}
    assert len(data['notifications']) == 1

    assert db.get_user_by_email('ada@example.com')['last_login_at'] is not None


def test_signin_wrong_password(client):
    _signup(client)
    response = client.post('/api/auth/signin', json={'email': 'ada@example.com', 'password': 'wrong-pass'})
    assert response.status_code == 401
    assert response.get_json()['error'] == 'Invalid credentials'


def test_profile_requires_auth(client):
    response = client.get('/api/user/profile')
    assert response.status_code == 401
    assert response.get_json()['error'] == 'Authentication required'

    response = client.get('/api/user/profile', headers={'Authorization': 'Bearer garbage'})
    assert response.status_code == 401


def test_token_payload(make_user):
    user, _ = make_user()
    token = auth.generate_jwt(user['id'], role='editor')
    payload = jwt.decode(token, auth.JWT_SECRET, algorithms=['HS256'])
    assert payload['userId'] == user['id']
    assert payload['email'] == user['email']
    assert payload['role'] == 'editor'
    assert payload['exp'] - payload['iat'] == 24 * 3600


def test_generate_jwt_unknown_user(app):
    with pytest.raises(auth.AuthenticationError, match='User not found'):
        auth.generate_jwt('missing')


def test_verify_jwt_rejects_foreign_signature(app):
    token = jwt.encode({'userId': 'x'}, 'another-secret', algorithm='HS256')
    with pytest.raises(auth.AuthenticationError, match='Invalid token'):
        auth.verify_jwt(token)


def test_mark_notification_read(client, make_user):
    user, headers = make_user()
    notification_id = db.create_notification(user['id'], 'info', 'Hello', 'World')

    response = client.post(f'/api/user/notifications/{notification_id}/read', headers=headers)
    assert response.status_code == 200

    response = client.post('/api/user/notifications/9999/read', headers=headers)
    assert response.status_code == 404

    listed = client.get('/api/user/notifications', headers=headers).get_json()
    assert listed['notifications'][0]['is_read'] == 1


def test_admin_api_key_and_admin_jwt(client, make_user, admin_headers):
    assert client.get('/api/admin/stats', headers=admin_headers).status_code == 200
    assert db.get_admin_by_email('admin@animagenius.test')['last_login_at'] is not None

    _, user_headers = make_user()
    response = client.get('/api/admin/stats', headers=user_headers)
    assert response.status_code == 403
    assert response.get_json()['error'] == 'Admin access required'

    admin_user, admin_jwt_headers = make_user(email='admin@animagenius.test')
    assert client.get('/api/admin/stats', headers=admin_jwt_headers).status_code == 200


def test_password_hash_roundtrip():
    hashed = auth.hash_password('s3cret-pass')
    assert auth.verify_password('s3cret-pass', hashed)
    assert not auth.verify_password('other', hashed)
    assert not auth.verify_password('x', 'not-a-bcrypt-hash')


def test_signin_with_overlong_password(client):
    _signup(client)
    response = client.post('/api/auth/signin', json={'email': 'ada@example.com', 'password': 'p' * 100})
    assert response.status_code == 401
    assert response.get_json()['error'] == 'Invalid credentials'


def test_signup_accepts_72_byte_password(client):
    response = _signup(client, password='x' * 72)
    assert response.status_code == 200
    response = client.post('/api/auth/signin', json={'email': 'ada@example.com', 'password': 'x' * 72})
    assert response.status_code == 200
