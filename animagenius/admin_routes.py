"""
Admin Routes for AnimaGenius
Admin dashboard API: platform statistics and user management
"""

import math
import sqlite3
import logging
from datetime import timedelta

from flask import Blueprint, request, jsonify, g

from animagenius import database as db
from animagenius import plans
from animagenius.ai_services import ai_service
from animagenius.auth import require_admin_auth, serialize_user
from animagenius.monitoring import check_all_services
from animagenius.responses import error_response

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')

MAX_PAGE_SIZE = 100

# Request keys accepted by PUT /users -> user columns
USER_UPDATE_FIELDS = {
    'name': 'name',
    'email': 'email',
    'subscriptionTier': 'subscription_tier',
    'subscriptionStatus': 'subscription_status',
    'usageLimits': 'usage_limits',
    'currentUsage': 'current_usage',
    'trialEndsAt': 'trial_ends_at',
}


def _health_label(is_healthy: bool) -> str:
    return 'healthy' if is_healthy else 'unhealthy'


def _month_boundaries(now):
    """(first of this month, first of last month, end of last month)"""
    first_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    end_of_last_month = first_of_month - timedelta(microseconds=1)
    first_of_last_month = end_of_last_month.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return first_of_month, first_of_last_month, end_of_last_month


def _int_arg(name: str, default: int) -> int:
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


def _serialize_admin_user(user):
    return {
        'id': user['id'],
        'name': user['name'],
        'email': user['email'],
        'subscriptionTier': user['subscription_tier'],
        'subscriptionStatus': user['subscription_status'],
        'createdAt': user['created_at'],
        'lastLoginAt': user['last_login_at'],
        'currentUsage': user['current_usage'],
        'usageLimits': user['usage_limits'],
        'projectCount': user['project_count'],
    }


# ==============================================================================
# DASHBOARD STATS
# ==============================================================================

@admin_bp.route('/stats', methods=['GET'])
@require_admin_auth
def get_stats():
    """Get dashboard statistics"""
    try:
        now = db.utcnow()
        first_of_month, first_of_last_month, end_of_last_month = _month_boundaries(now)

        total_users = db.count_users()
        users_last_month = db.count_users(first_of_last_month, end_of_last_month)

        if users_last_month > 0:
            # Half-up rounding; the ratio is never negative
            user_growth = math.floor((total_users - users_last_month) / users_last_month * 100 + 0.5)
        else:
            user_growth = 0

        services = check_all_services()

        return jsonify({
            'totalUsers': total_users,
            'activeSubscriptions': db.count_active_subscriptions(),
            'totalProjects': db.count_projects(),
            'monthlyRevenue': db.sum_completed_payments_since(first_of_month),
            'userGrowth': user_growth,
            'systemHealth': {
                'database': _health_label(services.get('database', False)),
                'redis': _health_label(services.get('redis', False)),
                'aiServices': _health_label(ai_service.is_available()),
            },
            'timestamp': db.to_iso(now),
        })
    except Exception as e:
        logger.error(f"Admin stats error: {e}")
        return error_response('Failed to fetch admin statistics', 'STATS_ERROR', 500)


# ==============================================================================
# USER MANAGEMENT
# ==============================================================================

@admin_bp.route('/users', methods=['GET'])
@require_admin_auth
def list_users():
    """Paginated user list with project counts"""
    page = max(_int_arg('page', 1), 1)
    limit = min(max(_int_arg('limit', 10), 1), MAX_PAGE_SIZE)
    search = request.args.get('search', '').strip()

    try:
        users, total_count = db.list_users(page, limit, search)
        total_pages = math.ceil(total_count / limit)

        return jsonify({
            'users': [_serialize_admin_user(u) for u in users],
            'pagination': {
                'page': page,
                'limit': limit,
                'totalCount': total_count,
                'totalPages': total_pages,
                'hasMore': page < total_pages,
            },
        })
    except Exception as e:
        logger.error(f"List users error: {e}")
        return error_response('Failed to fetch users', 'LIST_USERS_ERROR', 500)


@admin_bp.route('/users', methods=['PUT'])
@require_admin_auth
def update_user():
    """Apply admin edits to a user and record them in the audit log"""
    data = request.get_json(silent=True) or {}
    user_id = data.get('userId')
    updates = data.get('updates') or {}

    if not user_id:
        return error_response('User ID is required', 'MISSING_USER_ID', 400)
    if not isinstance(updates, dict):
        return error_response('updates must be an object', 'INVALID_UPDATES', 400)

    unknown = sorted(set(updates) - set(USER_UPDATE_FIELDS))
    if unknown:
        return error_response(f"Unsupported fields: {', '.join(unknown)}", 'INVALID_UPDATES', 400)

    tier = updates.get('subscriptionTier')
    if tier is not None and tier not in plans.TIERS:
        return error_response(f"Invalid subscription tier: {tier}", 'INVALID_UPDATES', 400)

    for key in ('name', 'email'):
        if key in updates and not (isinstance(updates[key], str) and updates[key].strip()):
            return error_response(f"{key} must be a non-empty string", 'INVALID_UPDATES', 400)

    columns = {USER_UPDATE_FIELDS[key]: value for key, value in updates.items()}
    if tier is not None and 'usage_limits' not in columns:
        columns['usage_limits'] = plans.limits_for(tier)

    try:
        user = db.update_user(user_id, columns) if columns else db.get_user_by_id(user_id)
    except sqlite3.IntegrityError:
        return error_response('Email already in use', 'EMAIL_TAKEN', 400)
    except Exception as e:
        logger.error(f"Update user error: {e}")
        return error_response('Failed to update user', 'UPDATE_USER_ERROR', 500)

    if not user:
        return error_response('User not found', 'USER_NOT_FOUND', 404)

    admin = g.admin_user
    db.log_admin_action(admin['id'], 'user_updated', 'user', user_id, {
        'updates': updates,
        'timestamp': db.to_iso(db.utcnow()),
    })
    logger.info(f"Admin {admin['email']} updated user {user_id}")

    return jsonify({
        'success': True,
        'user': serialize_user(user),
        'message': 'User updated successfully',
    })
