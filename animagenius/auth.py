"""
JWT Authentication Module for AnimaGenius API
User signup/signin, bearer-token guards and admin API-key auth
"""

import os
import re
import logging
from datetime import timedelta
from functools import wraps
from typing import Optional, Dict, Any

import bcrypt
import jwt
from flask import Blueprint, request, jsonify, g

from animagenius import database as db
from animagenius import plans
from animagenius.extensions import limiter
from animagenius.monitoring import track_auth
from animagenius.responses import error_response

logger = logging.getLogger(__name__)

# ==============================================================================
# CONFIGURATION
# ==============================================================================

JWT_SECRET = os.getenv('JWT_SECRET', 'fallback-secret-key')
JWT_ALGORITHM = 'HS256'
JWT_EXPIRES_IN = timedelta(hours=int(os.getenv('JWT_EXPIRES_IN_HOURS', 24)))

BCRYPT_ROUNDS = int(os.getenv('BCRYPT_ROUNDS', 12))
# bcrypt only hashes the first 72 bytes
MAX_PASSWORD_BYTES = 72

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$')


class AuthenticationError(Exception):
    """No valid user credentials on the request"""


class AdminAuthError(Exception):
    """No valid admin credentials on the request"""


# ==============================================================================
# PASSWORDS
# ==============================================================================

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    if len(password.encode('utf-8')) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        logger.warning("Stored password hash is not a bcrypt hash")
        return False


# ==============================================================================
# JWT TOKEN MANAGEMENT
# ==============================================================================

def generate_jwt(user_id: str, role: Optional[str] = None) -> str:
    """Issue a token carrying the user's id and email (and role when given)"""
    user = db.get_user_by_id(user_id)
    if not user:
        raise AuthenticationError("User not found")

    now = db.utcnow()
    payload = {
        'userId': user_id,
        'email': user['email'],
        'iat': now,
        'exp': now + JWT_EXPIRES_IN,
    }
    if role:
        payload['role'] = role

    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_jwt(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        raise AuthenticationError("Invalid token")


def get_token_from_request() -> Optional[str]:
    """Extract bearer token from the Authorization header"""
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        return auth_header[7:].strip() or None
    return None


def serialize_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """Public projection of a user row"""
    return {
        'id': user['id'],
        'name': user['name'],
        'email': user['email'],
        'subscriptionTier': user['subscription_tier'],
        'subscriptionStatus': user['subscription_status'],
        'usageLimits': user['usage_limits'],
        'currentUsage': user['current_usage'],
    }


def get_user_from_request() -> Optional[Dict[str, Any]]:
    """Resolve the bearer token to a user row; None on any failure"""
    token = get_token_from_request()
    if not token:
        return None
    try:
        payload = verify_jwt(token)
    except AuthenticationError:
        return None
    return db.get_user_by_id(payload.get('userId', ''))


def require_user() -> Dict[str, Any]:
    user = get_user_from_request()
    if not user:
        raise AuthenticationError("Authentication required")
    return user


def require_admin_user() -> Dict[str, Any]:
    """Admin auth: bearer value is either an admin API key or a JWT for an admin email"""
    token = get_token_from_request()
    if not token:
        raise AdminAuthError("Admin authentication required")

    admin = db.get_admin_by_api_key(token)
    if admin:
        db.touch_admin_login(admin['id'])
        return admin

    try:
        payload = verify_jwt(token)
    except AuthenticationError:
        raise AdminAuthError("Admin authentication failed")

    admin = db.get_admin_by_email(payload.get('email', ''))
    if not admin:
        raise AdminAuthError("Admin access required")
    return admin


# ==============================================================================
# AUTHENTICATION DECORATORS
# ==============================================================================

def require_auth(f):
    """Decorator to require an authenticated user (sets g.current_user)"""
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            g.current_user = require_user()
        except AuthenticationError:
            return error_response('Authentication required', 'AUTH_REQUIRED', 401)
        return f(*args, **kwargs)
    return decorated


def require_admin_auth(f):
    """Decorator to require admin credentials (sets g.admin_user)"""
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            g.admin_user = require_admin_user()
        except AdminAuthError as e:
            logger.warning(f"Admin auth rejected: {e}")
            return error_response('Admin access required', 'ADMIN_REQUIRED', 403)
        return f(*args, **kwargs)
    return decorated


def ensure_default_admin():
    """Provision the admin from ADMIN_EMAIL / ADMIN_API_KEY when both are set"""
    admin_email = os.getenv('ADMIN_EMAIL', '')
    admin_api_key = os.getenv('ADMIN_API_KEY', '')
    if not admin_email or not admin_api_key:
        return None

    existing = db.get_admin_by_email(admin_email)
    if existing:
        return existing

    admin = db.create_admin_user(admin_email, 'Admin', admin_api_key)
    logger.info(f"[OK] Default admin user created: {admin_email}")
    return admin


# ==============================================================================
# SIGNUP VALIDATION
# ==============================================================================

def validate_signup(data: Dict[str, Any]) -> Optional[str]:
    """Return the first validation error, checked in field order"""
    name = data.get('name')
    email = data.get('email')
    password = data.get('password')
    plan = data.get('plan', plans.DEFAULT_TIER)

    if not isinstance(name, str) or len(name.strip()) < 2:
        return 'Name must be at least 2 characters'
    if not isinstance(email, str) or not EMAIL_PATTERN.match(email.strip()):
        return 'Invalid email address'
    if not isinstance(password, str) or len(password) < 8:
        return 'Password must be at least 8 characters'
    if len(password.encode('utf-8')) > MAX_PASSWORD_BYTES:
        return f'Password must be at most {MAX_PASSWORD_BYTES} bytes'
    if plan not in plans.TIERS:
        return f"Invalid plan. Expected one of {', '.join(plans.TIERS)}"
    return None


def welcome_message(plan: str) -> str:
    message = f"Your {plan} account has been created successfully."
    if plan != 'FREE':
        message += " Your 7-day trial starts now."
    return message


# ==============================================================================
# AUTH BLUEPRINT
# ==============================================================================

auth_bp = Blueprint('auth', __name__, url_prefix='/api')


@auth_bp.route('/auth/signup', methods=['POST'])
@limiter.limit("10 per minute")
@track_auth('signup')
def signup():
    """Register a new user on a plan"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return error_response('Request body required', 'INVALID_REQUEST', 400)

    validation_error = validate_signup(data)
    if validation_error:
        return error_response(validation_error, 'VALIDATION_ERROR', 400)

    name = data['name'].strip()
    email = data['email'].strip().lower()
    plan = data.get('plan', plans.DEFAULT_TIER)

    try:
        if db.get_user_by_email(email):
            return error_response('User with this email already exists', 'USER_EXISTS', 400)

        trial_ends_at = db.utcnow() + plans.TRIAL_PERIOD if plan != 'FREE' else None
        user = db.create_user(
            name=name,
            email=email,
            password_hash=hash_password(data['password']),
            subscription_tier=plan,
            usage_limits=plans.limits_for(plan),
            current_usage=plans.empty_usage(),
            trial_ends_at=trial_ends_at,
        )
        if not user:
            return error_response('User with this email already exists', 'USER_EXISTS', 400)

        token = generate_jwt(user['id'])

        db.track_usage(user['id'], 'user_signup', {
            'plan': plan,
            'timestamp': db.to_iso(db.utcnow()),
        })
        db.create_notification(user['id'], 'success', 'Welcome to AnimaGenius!', welcome_message(plan))

        logger.info(f"User registered: {email} ({plan})")

        return jsonify({
            'success': True,
            'user': {
                'id': user['id'],
                'name': user['name'],
                'email': user['email'],
                'subscriptionTier': user['subscription_tier'],
                'usageLimits': user['usage_limits'],
            },
            'token': token,
        })

    except Exception as e:
        logger.error(f"Signup error: {e}")
        return error_response('Internal server error', 'SIGNUP_FAILED', 500)


@auth_bp.route('/auth/signin', methods=['POST'])
@limiter.limit("20 per minute")
@track_auth('signin')
def signin():
    """Sign in with email and password"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return error_response('Request body required', 'INVALID_REQUEST', 400)

    email = str(data.get('email', '')).strip().lower()
    password = str(data.get('password', ''))
    if not email or not password:
        return error_response('Email and password are required', 'MISSING_FIELDS', 400)

    try:
        user = db.get_user_by_email(email)
        if not user or not verify_password(password, user['password_hash']):
            return error_response('Invalid credentials', 'INVALID_CREDENTIALS', 401)

        db.update_user_last_login(user['id'])
        token = generate_jwt(user['id'])

        logger.info(f"User signed in: {email}")

        return jsonify({
            'success': True,
            'user': serialize_user(user),
            'token': token,
        })

    except Exception as e:
        logger.error(f"Signin error: {e}")
        return error_response('Internal server error', 'SIGNIN_FAILED', 500)


@auth_bp.route('/user/profile', methods=['GET'])
@require_auth
def get_profile():
    """Current user's profile with unread notifications"""
    user = g.current_user
    profile = serialize_user(user)
    profile['trialEndsAt'] = user['trial_ends_at']
    profile['createdAt'] = user['created_at']

    return jsonify({
        'success': True,
        'user': profile,
        'notifications': db.get_user_notifications(user['id'], unread_only=True),
    })


@auth_bp.route('/user/notifications', methods=['GET'])
@require_auth
def list_notifications():
    return jsonify({
        'success': True,
        'notifications': db.get_user_notifications(g.current_user['id']),
    })


@auth_bp.route('/user/notifications/<int:notification_id>/read', methods=['POST'])
@require_auth
def read_notification(notification_id):
    if not db.mark_notification_read(notification_id, g.current_user['id']):
        return error_response('Notification not found', 'NOT_FOUND', 404)
    return jsonify({'success': True})
