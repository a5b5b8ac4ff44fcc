"""
PayPal Service for AnimaGenius
Subscription plans, simulated subscription lifecycle calls and webhook processing.
"""

import os
import hmac
import json
import uuid
import hashlib
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional, Union

from flask import Blueprint, request, jsonify, g, Response

from animagenius import database as db
from animagenius import plans
from animagenius.auth import require_auth
from animagenius.extensions import limiter
from animagenius.monitoring import record_webhook_event
from animagenius.responses import error_response

logger = logging.getLogger(__name__)

# ==============================================================================
# CONFIGURATION
# ==============================================================================

PAYPAL_CLIENT_ID = os.getenv('PAYPAL_CLIENT_ID', '')
PAYPAL_CLIENT_SECRET = os.getenv('PAYPAL_CLIENT_SECRET', '')
PAYPAL_ENVIRONMENT = os.getenv('PAYPAL_ENVIRONMENT', 'sandbox')
PAYPAL_WEBHOOK_SECRET = os.getenv('PAYPAL_WEBHOOK_SECRET', '')

SIGNATURE_HEADER = 'paypal-transmission-sig'

PAYPAL_PLANS: List[Dict[str, Any]] = [
    {
        'id': 'P-STARTER-MONTHLY-001',
        'name': 'Starter Monthly',
        'description': 'Starter plan with 25 videos per month',
        'price': 25,
        'billingCycle': 'monthly',
    },
    {
        'id': 'P-PRO-MONTHLY-001',
        'name': 'Pro Monthly',
        'description': 'Pro plan with 100 videos per month',
        'price': 45,
        'billingCycle': 'monthly',
    },
    {
        'id': 'P-ENTERPRISE-MONTHLY-001',
        'name': 'Enterprise Monthly',
        'description': 'Enterprise plan with unlimited videos',
        'price': 125,
        'billingCycle': 'monthly',
    },
]


def _parse_paypal_time(value: Optional[str]) -> datetime:
    """PayPal timestamps are ISO-8601 with a trailing Z"""
    if not value:
        return db.utcnow()
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"[PAYPAL] Unparseable timestamp {value!r}, using now")
        return db.utcnow()


class PayPalService:
    """Simulated PayPal billing client plus webhook event handling"""

    def __init__(self, client_id: str = None, client_secret: str = None,
                 environment: str = None, webhook_secret: str = None):
        self.client_id = client_id if client_id is not None else PAYPAL_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else PAYPAL_CLIENT_SECRET
        self.environment = environment or PAYPAL_ENVIRONMENT
        self.webhook_secret = webhook_secret if webhook_secret is not None else PAYPAL_WEBHOOK_SECRET

        self._handlers = {
            'BILLING.SUBSCRIPTION.ACTIVATED': self._handle_subscription_activated,
            'BILLING.SUBSCRIPTION.CANCELLED': self._handle_subscription_cancelled,
            'PAYMENT.SALE.COMPLETED': self._handle_payment_completed,
            'BILLING.SUBSCRIPTION.SUSPENDED': self._handle_subscription_suspended,
        }

    @property
    def is_sandbox(self) -> bool:
        return self.environment == 'sandbox'

    def get_plans(self) -> List[Dict[str, Any]]:
        return [dict(plan) for plan in PAYPAL_PLANS]

    def get_plan(self, plan_id: str) -> Optional[Dict[str, Any]]:
        return next((dict(p) for p in PAYPAL_PLANS if p['id'] == plan_id), None)

    # --------------------------------------------------------------------------
    # Subscription lifecycle
    # --------------------------------------------------------------------------

    def create_subscription(self, plan_id: str, user_id: str, user_email: str) -> Dict[str, Any]:
        if not self.get_plan(plan_id):
            return {'success': False, 'error': f'Unknown plan: {plan_id}'}

        subscription_id = f"I-{uuid.uuid4().hex[:12].upper()}"
        host = 'www.sandbox.paypal.com' if self.is_sandbox else 'www.paypal.com'
        approval_url = f"https://{host}/webapps/billing/subscriptions/subscribe?subscription_id={subscription_id}"

        try:
            db.create_subscription_record(user_id, subscription_id, plan_id, status='pending')
        except Exception as e:
            logger.error(f"[PAYPAL] Subscription creation failed for {user_email}: {e}")
            return {'success': False, 'error': 'Subscription creation failed'}

        logger.info(f"[PAYPAL] Subscription {subscription_id} created for {user_email} on {plan_id}")
        return {
            'success': True,
            'subscriptionId': subscription_id,
            'approvalUrl': approval_url,
        }

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            db.update_subscription_status(subscription_id, 'cancelled', cancel_at_period_end=True)
        except LookupError as e:
            logger.error(f"[PAYPAL] Cancellation failed: {e}")
            return {'success': False, 'error': 'Subscription not found'}

        logger.info(f"[PAYPAL] Subscription {subscription_id} cancelled")
        return {'success': True}

    def change_plan(self, subscription_id: str, new_plan_id: str) -> Dict[str, Any]:
        """Cancel the current subscription; the caller then subscribes to the new plan"""
        if not self.get_plan(new_plan_id):
            return {'success': False, 'error': f'Unknown plan: {new_plan_id}'}

        result = self.cancel_subscription(subscription_id)
        if not result['success']:
            return result
        return {'success': True}

    def get_subscription_status(self, subscription_id: str) -> Dict[str, Any]:
        stored = db.get_subscription(subscription_id)
        return {
            'status': stored['status'] if stored else 'active',
            'nextBillingTime': db.to_iso(db.utcnow() + plans.BILLING_PERIOD),
        }

    # --------------------------------------------------------------------------
    # Webhooks
    # --------------------------------------------------------------------------

    def verify_webhook_signature(self, headers: Dict[str, str], body: bytes) -> bool:
        """HMAC-SHA256 of the raw body; every payload is accepted when no secret is set"""
        if not self.webhook_secret:
            return True

        signature = headers.get(SIGNATURE_HEADER, '').encode('utf-8', 'surrogateescape')
        expected = hmac.new(
            self.webhook_secret.encode('utf-8'),
            body,
            hashlib.sha256
        ).hexdigest().encode('ascii')
        return hmac.compare_digest(expected, signature)

    def process_webhook(self, headers: Dict[str, str], body: Union[bytes, str]) -> Dict[str, Any]:
        if isinstance(body, str):
            body = body.encode('utf-8')
        headers = {k.lower(): v for k, v in headers.items()}

        if not self.verify_webhook_signature(headers, body):
            logger.warning("[PAYPAL] Rejected webhook with invalid signature")
            return {'success': False, 'error': 'Invalid webhook signature'}

        try:
            event = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return {'success': False, 'error': f'Invalid webhook payload: {e}'}
        if not isinstance(event, dict):
            return {'success': False, 'error': 'Invalid webhook payload'}

        event_type = event.get('event_type')
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"[PAYPAL] Unhandled webhook event: {event_type}")
            record_webhook_event(event_type, False)
            return {'success': True, 'processed': False}

        resource = event.get('resource') or {}
        try:
            handler(resource)
        except Exception as e:
            logger.error(f"[PAYPAL] Failed to handle {event_type}: {e}")

        record_webhook_event(event_type, True)
        return {'success': True, 'processed': True}

    def _handle_subscription_activated(self, resource: Dict[str, Any]):
        now = db.utcnow()
        user_id = resource.get('custom_id')
        plan_id = resource.get('plan_id')

        db.upsert_subscription(
            resource['id'],
            status='active',
            period_start=now,
            period_end=now + plans.BILLING_PERIOD,
            user_id=user_id,
            plan_id=plan_id,
        )
        logger.info(f"[PAYPAL] Subscription activated: {resource['id']}")

        stored = db.get_subscription(resource['id'])
        self._sync_user_tier(stored.get('user_id') or user_id, stored.get('plan_id') or plan_id)

    def _sync_user_tier(self, user_id: Optional[str], plan_id: Optional[str]):
        tier = plans.tier_for_plan(plan_id)
        if not user_id or not tier:
            return

        user = db.update_user(user_id, {
            'subscription_tier': tier,
            'subscription_status': 'active',
            'usage_limits': plans.limits_for(tier),
        })
        if user:
            db.create_notification(user_id, 'success', 'Subscription active',
                                   f"Your {tier} subscription is now active.")
            logger.info(f"[PAYPAL] User {user_id} moved to {tier}")
        else:
            logger.warning(f"[PAYPAL] Activated subscription for unknown user {user_id}")

    def _handle_subscription_cancelled(self, resource: Dict[str, Any]):
        db.update_subscription_status(resource['id'], 'cancelled', cancel_at_period_end=True)
        logger.info(f"[PAYPAL] Subscription cancelled: {resource['id']}")

    def _handle_payment_completed(self, resource: Dict[str, Any]):
        amount = resource['amount']
        payer_info = (resource.get('payer') or {}).get('payer_info') or {}

        db.create_payment(
            subscription_id=resource.get('billing_agreement_id'),
            paypal_payment_id=resource['id'],
            amount=float(amount['total']),
            currency=amount.get('currency'),
            status='completed',
            payment_date=_parse_paypal_time(resource.get('create_time')),
            metadata={
                'transactionId': resource['id'],
                'payerEmail': payer_info.get('email'),
            },
        )
        logger.info(f"[PAYPAL] Payment completed: {resource['id']}")

    def _handle_subscription_suspended(self, resource: Dict[str, Any]):
        db.update_subscription_status(resource['id'], 'suspended')
        logger.info(f"[PAYPAL] Subscription suspended: {resource['id']}")


paypal_service = PayPalService()


def _subscription_payload(subscription: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'subscriptionId': subscription['paypal_subscription_id'],
        'planId': subscription['plan_id'],
        'status': subscription['status'],
        'currentPeriodStart': subscription['current_period_start'],
        'currentPeriodEnd': subscription['current_period_end'],
        'cancelAtPeriodEnd': bool(subscription['cancel_at_period_end']),
    }


# ==============================================================================
# BILLING BLUEPRINT
# ==============================================================================

billing_bp = Blueprint('billing', __name__, url_prefix='/api/billing')


@billing_bp.route('/plans', methods=['GET'])
def list_plans():
    return jsonify({'success': True, 'plans': paypal_service.get_plans()})


@billing_bp.route('/subscribe', methods=['POST'])
@require_auth
def subscribe():
    """Start a PayPal subscription for the current user"""
    data = request.get_json(silent=True) or {}
    plan_id = data.get('planId')
    if not plan_id:
        return error_response('planId is required', 'MISSING_PLAN', 400)

    user = g.current_user
    result = paypal_service.create_subscription(plan_id, user['id'], user['email'])
    if not result['success']:
        return error_response(result['error'], 'SUBSCRIPTION_FAILED', 400)

    db.track_usage(user['id'], 'subscription_started', {'planId': plan_id})
    return jsonify(result)


@billing_bp.route('/cancel', methods=['POST'])
@require_auth
def cancel():
    user = g.current_user
    subscription = db.get_latest_subscription_for_user(user['id'])
    if not subscription:
        return error_response('No subscription found', 'NOT_FOUND', 404)

    result = paypal_service.cancel_subscription(subscription['paypal_subscription_id'])
    if not result['success']:
        return error_response(result['error'], 'CANCELLATION_FAILED', 400)

    db.create_notification(user['id'], 'info', 'Subscription cancelled',
                           'Your subscription will end at the close of the current billing period.')
    return jsonify({'success': True})


@billing_bp.route('/change-plan', methods=['POST'])
@require_auth
def change_plan():
    """Cancel the current subscription and open one on the new plan"""
    data = request.get_json(silent=True) or {}
    plan_id = data.get('planId')
    if not plan_id:
        return error_response('planId is required', 'MISSING_PLAN', 400)

    user = g.current_user
    subscription = db.get_latest_subscription_for_user(user['id'])
    if not subscription:
        return error_response('No subscription found', 'NOT_FOUND', 404)

    result = paypal_service.change_plan(subscription['paypal_subscription_id'], plan_id)
    if not result['success']:
        return error_response(result['error'], 'PLAN_CHANGE_FAILED', 400)

    created = paypal_service.create_subscription(plan_id, user['id'], user['email'])
    if not created['success']:
        return error_response(created['error'], 'PLAN_CHANGE_FAILED', 400)

    return jsonify(created)


@billing_bp.route('/status', methods=['GET'])
@require_auth
def subscription_status():
    user = g.current_user
    subscription = db.get_latest_subscription_for_user(user['id'])
    if not subscription:
        return jsonify({
            'success': True,
            'subscriptionTier': user['subscription_tier'],
            'subscription': None,
        })

    payload = _subscription_payload(subscription)
    payload.update(paypal_service.get_subscription_status(subscription['paypal_subscription_id']))
    return jsonify({
        'success': True,
        'subscriptionTier': user['subscription_tier'],
        'subscription': payload,
    })


# ==============================================================================
# WEBHOOK BLUEPRINT
# ==============================================================================

webhooks_bp = Blueprint('webhooks', __name__, url_prefix='/api/webhooks')


@webhooks_bp.route('/paypal', methods=['POST'])
@limiter.exempt
def paypal_webhook():
    """Receive a PayPal webhook event"""
    try:
        body = request.get_data()
        result = paypal_service.process_webhook(dict(request.headers), body)

        if result['success']:
            return jsonify({'success': True, 'processed': result['processed']})

        logger.error(f"[PAYPAL] Webhook processing failed: {result['error']}")
        return error_response(result['error'], 'WEBHOOK_REJECTED', 400)

    except Exception as e:
        logger.error(f"[PAYPAL] Webhook error: {e}")
        return error_response('Webhook processing failed', 'WEBHOOK_ERROR', 500)


@webhooks_bp.route('/paypal', methods=['GET'])
def paypal_webhook_verify():
    """PayPal endpoint verification: echo the challenge back"""
    challenge = request.args.get('challenge')
    if challenge:
        return Response(challenge, status=200, mimetype='text/plain')
    return jsonify({'status': 'PayPal webhook endpoint active'})
