import re
import hmac
import json
import hashlib

import pytest

from animagenius import database as db
from animagenius.paypal_service import PayPalService, paypal_service


def _post_event(client, event, headers=None):
    return client.post('/api/webhooks/paypal', data=json.dumps(event),
                       content_type='application/json', headers=headers or {})


def _activated(subscription_id, user_id, plan_id='P-PRO-MONTHLY-001'):
    return {
        'id': 'WH-1',
        'event_type': 'BILLING.SUBSCRIPTION.ACTIVATED',
        'create_time': '2024-05-01T10:00:00Z',
        'resource': {'id': subscription_id, 'custom_id': user_id, 'plan_id': plan_id},
    }


def test_plans_catalogue(client):
    plans = client.get('/api/billing/plans').get_json()['plans']
    assert [(p['id'], p['price']) for p in plans] == [
        ('P-STARTER-MONTHLY-001', 25),
        ('P-PRO-MONTHLY-001', 45),
        ('P-ENTERPRISE-MONTHLY-001', 125),
    ]
    assert all(p['billingCycle'] == 'monthly' for p in plans)


def test_create_subscription_sandbox_url(app, make_user):
    user, _ = make_user()
    result = PayPalService(environment='sandbox').create_subscription('P-PRO-MONTHLY-001', user['id'], user['email'])

    assert result['success'] is True
    assert result['subscriptionId'].startswith('I-')
    assert re.fullmatch(r'I-[0-9A-F]{12}', result['subscriptionId'])
    assert result['approvalUrl'] == (
        'https://www.sandbox.paypal.com/webapps/billing/subscriptions/subscribe'
        f"?subscription_id={result['subscriptionId']}"
    )
    stored = db.get_subscription(result['subscriptionId'])
    assert stored['status'] == 'pending'
    assert stored['user_id'] == user['id']


def test_create_subscription_live_url(app, make_user):
    user, _ = make_user()
    result = PayPalService(environment='production').create_subscription(
        'P-STARTER-MONTHLY-001', user['id'], user['email'])
    assert result['approvalUrl'].startswith('https://www.paypal.com/')


def test_create_subscription_unknown_plan(app):
    result = paypal_service.create_subscription('P-GOLD', 'u', 'u@example.com')
    assert result['success'] is False


def test_subscription_status_defaults_to_active(app):
    status = paypal_service.get_subscription_status('I-UNKNOWN')
    assert status['status'] == 'active'
    assert status['nextBillingTime']


def test_activation_webhook_upgrades_user(client, make_user):
    user, _ = make_user()
    response = _post_event(client, _activated('I-SUB1', user['id']))

    assert response.status_code == 200
    assert response.get_json() == {'success': True, 'processed': True}

    subscription = db.get_subscription('I-SUB1')
    assert subscription['status'] == 'active'
    assert subscription['plan_id'] == 'P-PRO-MONTHLY-001'
    assert subscription['current_period_end'] > subscription['current_period_start']

    refreshed = db.get_user_by_id(user['id'])
    assert refreshed['subscription_tier'] == 'PRO'
    assert refreshed['subscription_status'] == 'active'
    assert refreshed['usage_limits']['videos'] == 100


def test_cancel_and_suspend_webhooks(client, make_user):
    user, _ = make_user()
    _post_event(client, _activated('I-SUB2', user['id']))

    _post_event(client, {'event_type': 'BILLING.SUBSCRIPTION.SUSPENDED', 'resource': {'id': 'I-SUB2'}})
    assert db.get_subscription('I-SUB2')['status'] == 'suspended'

    _post_event(client, {'event_type': 'BILLING.SUBSCRIPTION.CANCELLED', 'resource': {'id': 'I-SUB2'}})
    subscription = db.get_subscription('I-SUB2')
    assert subscription['status'] == 'cancelled'
    assert subscription['cancel_at_period_end'] == 1


def test_payment_webhook_records_payment(client):
    event = {
        'event_type': 'PAYMENT.SALE.COMPLETED',
        'resource': {
            'id': 'PAY-123',
            'billing_agreement_id': 'I-SUB3',
            'amount': {'total': '45.00', 'currency': 'USD'},
            'create_time': '2024-05-01T10:00:00Z',
            'payer': {'payer_info': {'email': 'payer@example.com'}},
        },
    }
    assert _post_event(client, event).get_json()['processed'] is True

    with db.get_db() as conn:
        payment = dict(conn.execute("SELECT * FROM payments WHERE paypal_payment_id = 'PAY-123'").fetchone())
    assert payment['amount'] == 45.0
    assert payment['currency'] == 'USD'
    assert payment['subscription_id'] == 'I-SUB3'
    assert json.loads(payment['metadata']) == {'transactionId': 'PAY-123', 'payerEmail': 'payer@example.com'}


def test_handler_failure_still_acknowledged(client):
    # Cancelling an unknown subscription fails inside the handler
    response = _post_event(client, {'event_type': 'BILLING.SUBSCRIPTION.CANCELLED',
                                    'resource': {'id': 'I-MISSING'}})
    assert response.status_code == 200
    assert response.get_json() == {'success': True, 'processed': True}


def test_unhandled_event_type(client):
    response = _post_event(client, {'event_type': 'CUSTOMER.DISPUTE.CREATED', 'resource': {}})
    assert response.get_json() == {'success': True, 'processed': False}


def test_malformed_body(client):
    response = client.post('/api/webhooks/paypal', data='{not json', content_type='application/json')
    assert response.status_code == 400
    assert 'error' in response.get_json()


def test_signature_verification(app, make_user):
    service = PayPalService(webhook_secret='shh')
    body = json.dumps({'event_type': 'CUSTOMER.DISPUTE.CREATED', 'resource': {}})
    signature = hmac.new(b'shh', body.encode('utf-8'), hashlib.sha256).hexdigest()

    assert service.process_webhook({'PayPal-Transmission-Sig': signature}, body)['success'] is True

    rejected = service.process_webhook({'PayPal-Transmission-Sig': 'deadbeef'}, body)
    assert rejected == {'success': False, 'error': 'Invalid webhook signature'}
    assert service.process_webhook({}, body)['success'] is False


def test_signature_rejected_via_route(client, monkeypatch):
    monkeypatch.setattr(paypal_service, 'webhook_secret', 'shh')
    response = _post_event(client, {'event_type': 'X'}, headers={'PayPal-Transmission-Sig': 'bad'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid webhook signature'


def test_signature_with_non_ascii_header_is_rejected(client, monkeypatch):
    monkeypatch.setattr(paypal_service, 'webhook_secret', 'shh')
    response = _post_event(client, {'event_type': 'X'}, headers={'PayPal-Transmission-Sig': 'café'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid webhook signature'


def test_signature_covers_raw_body_bytes(app):
    service = PayPalService(webhook_secret='shh')
    body = b'{"event_type": "CUSTOMER.DISPUTE.CREATED", "note": "\xff"}'
    signature = hmac.new(b'shh', body, hashlib.sha256).hexdigest()

    # Signed bytes are accepted; the same body after lossy decoding is not
    assert service.verify_webhook_signature({'paypal-transmission-sig': signature}, body)
    lossy = body.decode('utf-8', 'replace').encode('utf-8')
    assert not service.verify_webhook_signature({'paypal-transmission-sig': signature}, lossy)
    # Invalid UTF-8 still fails as a payload error rather than a crash
    assert service.process_webhook({'paypal-transmission-sig': signature}, body)['success'] is False


def test_webhook_challenge_echo(client):
    response = client.get('/api/webhooks/paypal?challenge=abc123')
    assert response.status_code == 200
    assert response.mimetype == 'text/plain'
    assert response.get_data(as_text=True) == 'abc123'

    response = client.get('/api/webhooks/paypal')
    assert response.get_json() == {'status': 'PayPal webhook endpoint active'}


def test_billing_subscribe_cancel_and_status(client, make_user):
    user, headers = make_user()

    assert client.get('/api/billing/status', headers=headers).get_json()['subscription'] is None

    response = client.post('/api/billing/subscribe', json={'planId': 'P-STARTER-MONTHLY-001'}, headers=headers)
    assert response.status_code == 200
    subscription_id = response.get_json()['subscriptionId']

    status = client.get('/api/billing/status', headers=headers).get_json()
    assert status['subscription']['subscriptionId'] == subscription_id
    assert status['subscription']['status'] == 'pending'

    assert client.post('/api/billing/cancel', headers=headers).status_code == 200
    assert db.get_subscription(subscription_id)['status'] == 'cancelled'


def test_billing_change_plan(client, make_user):
    _, headers = make_user()
    first = client.post('/api/billing/subscribe', json={'planId': 'P-STARTER-MONTHLY-001'},
                        headers=headers).get_json()['subscriptionId']

    response = client.post('/api/billing/change-plan', json={'planId': 'P-PRO-MONTHLY-001'}, headers=headers)
    assert response.status_code == 200
    second = response.get_json()['subscriptionId']

    assert second != first
    assert db.get_subscription(first)['status'] == 'cancelled'
    assert db.get_subscription(second)['plan_id'] == 'P-PRO-MONTHLY-001'


@pytest.mark.parametrize('path', ['/api/billing/cancel', '/api/billing/change-plan'])
def test_billing_without_subscription(client, make_user, path):
    _, headers = make_user()
    response = client.post(path, json={'planId': 'P-PRO-MONTHLY-001'}, headers=headers)
    assert response.status_code == 404


def test_billing_subscribe_unknown_plan(client, make_user):
    _, headers = make_user()
    response = client.post('/api/billing/subscribe', json={'planId': 'P-NOPE'}, headers=headers)
    assert response.status_code == 400
