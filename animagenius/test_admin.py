from datetime import timedelta

import pytest

from animagenius import database as db
from animagenius import admin_routes


def test_stats_requires_admin(client):
    response = client.get('/api/admin/stats')
    assert response.status_code == 403
    assert response.get_json()['error'] == 'Admin access required'


def test_stats_counts(client, make_user, admin_headers):
    user, _ = make_user()
    make_user()
    db.create_project(user['id'], 'One')
    now = db.utcnow()
    db.upsert_subscription('I-1', 'active', now, now + timedelta(days=30), user['id'], 'P-PRO-MONTHLY-001')
    db.create_payment('I-1', 'PAY-1', 45.0, 'USD', 'completed', now)

    data = client.get('/api/admin/stats', headers=admin_headers).get_json()

    assert data['totalUsers'] == 2
    assert data['activeSubscriptions'] == 1
    assert data['totalProjects'] == 1
    assert data['monthlyRevenue'] == 45.0
    assert data['userGrowth'] == 0
    assert data['systemHealth'] == {'database': 'healthy', 'redis': 'healthy', 'aiServices': 'healthy'}
    assert data['timestamp']


def test_user_growth_against_last_month(client, make_user, admin_headers):
    users = [make_user()[0] for _ in range(3)]
    _, last_month_start, last_month_end = admin_routes._month_boundaries(db.utcnow())
    with db.get_db() as conn:
        conn.execute('UPDATE users SET created_at = ? WHERE id = ?',
                     (db.to_iso(last_month_start + timedelta(days=1)), users[0]['id']))

    data = client.get('/api/admin/stats', headers=admin_headers).get_json()
    # 3 total vs 1 created last month
    assert data['userGrowth'] == 200


def test_month_boundaries():
    now = db.utcnow().replace(year=2024, month=3, day=15)
    first, last_first, last_end = admin_routes._month_boundaries(now)
    assert (first.month, first.day, first.hour) == (3, 1, 0)
    assert (last_first.month, last_first.day) == (2, 1)
    assert (last_end.month, last_end.day, last_end.hour, last_end.minute) == (2, 29, 23, 59)


def test_list_users_pagination(client, make_user, admin_headers):
    for i in range(3):
        make_user(name=f'Person {i}')

    data = client.get('/api/admin/users?page=1&limit=2', headers=admin_headers).get_json()
    assert len(data['users']) == 2
    assert data['pagination'] == {'page': 1, 'limit': 2, 'totalCount': 3, 'totalPages': 2, 'hasMore': True}
    assert 'projectCount' in data['users'][0]
    assert 'password_hash' not in data['users'][0]

    data = client.get('/api/admin/users?page=2&limit=2', headers=admin_headers).get_json()
    assert len(data['users']) == 1
    assert data['pagination']['hasMore'] is False


def test_list_users_search(client, make_user, admin_headers):
    make_user(name='Grace Hopper', email='grace@navy.mil')
    make_user(name='Alan Turing', email='alan@example.com')

    data = client.get('/api/admin/users?search=NAVY', headers=admin_headers).get_json()
    assert [u['email'] for u in data['users']] == ['grace@navy.mil']


def test_list_users_clamps_bad_paging(client, make_user, admin_headers):
    make_user()
    data = client.get('/api/admin/users?page=-3&limit=5000', headers=admin_headers).get_json()
    assert data['pagination']['page'] == 1
    assert data['pagination']['limit'] == 100

    data = client.get('/api/admin/users?page=abc', headers=admin_headers).get_json()
    assert data['pagination']['page'] == 1


def test_update_user_writes_audit_log(client, make_user, admin_headers):
    user, _ = make_user()
    response = client.put('/api/admin/users', headers=admin_headers, json={
        'userId': user['id'],
        'updates': {'subscriptionTier': 'STARTER', 'name': 'Renamed'},
    })

    assert response.status_code == 200
    data = response.get_json()
    assert data['message'] == 'User updated successfully'
    assert data['user']['name'] == 'Renamed'
    assert data['user']['subscriptionTier'] == 'STARTER'
    assert data['user']['usageLimits'] == {'videos': 25, 'duration': 600, 'fileSize': 500}

    admin = db.get_admin_by_email('admin@animagenius.test')
    log = db.get_audit_logs()[0]
    assert log['admin_user_id'] == admin['id']
    assert log['action'] == 'user_updated'
    assert log['target_type'] == 'user'
    assert log['target_id'] == user['id']
    assert log['metadata']['updates'] == {'subscriptionTier': 'STARTER', 'name': 'Renamed'}


def test_update_user_validation(client, make_user, admin_headers):
    user, _ = make_user()

    response = client.put('/api/admin/users', headers=admin_headers, json={'updates': {'name': 'x'}})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'User ID is required'

    response = client.put('/api/admin/users', headers=admin_headers,
                          json={'userId': user['id'], 'updates': {'passwordHash': 'x'}})
    assert response.status_code == 400

    response = client.put('/api/admin/users', headers=admin_headers,
                          json={'userId': user['id'], 'updates': {'subscriptionTier': 'GOLD'}})
    assert response.status_code == 400

    response = client.put('/api/admin/users', headers=admin_headers,
                          json={'userId': 'missing', 'updates': {'name': 'Nobody'}})
    assert response.status_code == 404
    assert db.get_audit_logs() == []


def test_update_user_duplicate_email(client, make_user, admin_headers):
    make_user(email='taken@example.com')
    user, _ = make_user()
    response = client.put('/api/admin/users', headers=admin_headers,
                          json={'userId': user['id'], 'updates': {'email': 'taken@example.com'}})
    assert response.status_code == 400


def test_user_growth_rounds_half_up(client, make_user, admin_headers):
    users = [make_user()[0] for _ in range(9)]
    _, last_month_start, _ = admin_routes._month_boundaries(db.utcnow())
    with db.get_db() as conn:
        for user in users[:8]:
            conn.execute('UPDATE users SET created_at = ? WHERE id = ?',
                         (db.to_iso(last_month_start + timedelta(days=2)), user['id']))

    data = client.get('/api/admin/stats', headers=admin_headers).get_json()
    # 1 / 8 = 12.5%
    assert data['userGrowth'] == 13


@pytest.mark.parametrize('updates', [
    {'name': None},
    {'email': None},
    {'email': 42},
    {'name': '   '},
])
def test_update_user_rejects_blank_identity_fields(client, make_user, admin_headers, updates):
    user, _ = make_user()
    response = client.put('/api/admin/users', headers=admin_headers,
                          json={'userId': user['id'], 'updates': updates})
    assert response.status_code == 400
    assert response.get_json()['error_code'] == 'INVALID_UPDATES'
    assert db.get_user_by_id(user['id'])['email'] == user['email']
