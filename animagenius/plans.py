"""
Subscription tiers, their usage limits and the PayPal plans that map onto them
"""

from datetime import timedelta
from typing import Dict, Optional

TIERS = ('FREE', 'STARTER', 'PRO', 'ENTERPRISE')
DEFAULT_TIER = 'FREE'

# -1 means unlimited; duration in seconds, fileSize in MB
USAGE_LIMITS: Dict[str, Dict[str, int]] = {
    'FREE': {'videos': 5, 'duration': 120, 'fileSize': 100},
    'STARTER': {'videos': 25, 'duration': 600, 'fileSize': 500},
    'PRO': {'videos': 100, 'duration': 1800, 'fileSize': 2048},
    'ENTERPRISE': {'videos': -1, 'duration': -1, 'fileSize': 10240},
}

UNLIMITED = -1
TRIAL_PERIOD = timedelta(days=7)
BILLING_PERIOD = timedelta(days=30)

# PayPal billing plan id -> tier
PAYPAL_PLAN_TIERS = {
    'P-STARTER-MONTHLY-001': 'STARTER',
    'P-PRO-MONTHLY-001': 'PRO',
    'P-ENTERPRISE-MONTHLY-001': 'ENTERPRISE',
}


def empty_usage() -> Dict[str, int]:
    return {'videos': 0, 'duration': 0, 'fileSize': 0}


def limits_for(tier: str) -> Dict[str, int]:
    return dict(USAGE_LIMITS[tier])


def tier_for_plan(plan_id: Optional[str]) -> Optional[str]:
    return PAYPAL_PLAN_TIERS.get(plan_id or '')


def video_limit_reached(usage_limits: Optional[Dict], current_usage: Optional[Dict]) -> bool:
    """True when the user has used up the monthly video allowance"""
    limit = (usage_limits or {}).get('videos', 0)
    used = (current_usage or {}).get('videos', 0)
    return limit != UNLIMITED and used >= limit
