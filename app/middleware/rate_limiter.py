"""
Rate limiting configuration.

The Limiter instance is created in app/__init__.py with no default limits;
this module applies per-blueprint limits with Flask-Limiter. Limits are
keyed by the acting user when one is known, else by remote IP.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request
from flask_limiter.util import get_remote_address

logger = logging.getLogger(__name__)

# Blueprints whose endpoints change workflow state
WRITE_BLUEPRINTS = ("stories", "uat", "cycles")

READ_LIMIT = "300/minute"


def rate_limit_key():
    """Acting user if identified, otherwise remote IP."""
    user_id = getattr(g, "current_user_id", None)
    if user_id:
        return f"user:{user_id}"
    return get_remote_address()


def _is_read_request():
    return request.method in ("GET", "HEAD", "OPTIONS")


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits:
        - Story / UAT / cycle writes: TRANSITION_RATE_LIMIT (default 60/minute)
        - Reads:               300/minute
        - Health check:        exempt

    Rate limiting is disabled when RATELIMIT_ENABLED is false (tests).
    """
    if not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (RATELIMIT_ENABLED=False)")
        return

    write_limit = app.config.get("TRANSITION_RATE_LIMIT", "60/minute")
    for bp_name in WRITE_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(write_limit, key_func=rate_limit_key,
                          exempt_when=_is_read_request)(bp)
            limiter.limit(READ_LIMIT, key_func=rate_limit_key)(bp)

    bp = app.blueprints.get("audit")
    if bp:
        limiter.limit(READ_LIMIT, key_func=rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: writes %s, reads %s", write_limit, READ_LIMIT)
