"""
Flask extensions shared between the app factory and the blueprints
"""

import os

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

REDIS_URL = os.getenv('REDIS_URL', '')

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200 per minute"],
    storage_uri=REDIS_URL or 'memory://',
    headers_enabled=True
)
