"""
Identity middleware — resolves the acting user and role for each API request.

Sessions are issued by the external auth provider; TraceWell only verifies
the signed token it receives:

    Authorization: Bearer <jwt>      (HS256, sub = user id)

On success sets ``g.current_user_id``, ``g.current_user`` and
``g.current_role`` (a ``Role``). The role string stored on the user is
parsed here, once; an unknown value is refused instead of being treated
as "no role".
"""

import logging

import jwt as pyjwt
from flask import current_app, g, request

from app.core.exceptions import UnknownRoleError
from app.core.roles import Actor, parse_role
from app.models import db
from app.models.auth import User
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that need no identity
SKIP_PREFIXES = (
    "/api/v1/health",
)


def decode_token(token):
    """Verify signature and expiry; return the payload."""
    return pyjwt.decode(
        token,
        current_app.config["JWT_SECRET_KEY"],
        algorithms=[current_app.config.get("JWT_ALGORITHM", "HS256")],
        options={"require": ["sub"]},
    )


def init_identity(app):
    """Register the identity resolver as a before_request hook."""

    @app.before_request
    def _resolve_identity():
        g.current_user_id = None
        g.current_user = None
        g.current_role = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return None
        for prefix in SKIP_PREFIXES:
            if path.startswith(prefix):
                return None
        if request.method == "OPTIONS":
            return None

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return api_error(E.UNAUTHENTICATED, "Authentication required")

        try:
            payload = decode_token(auth_header[7:])
            user_id = int(payload["sub"])
        except pyjwt.ExpiredSignatureError:
            return api_error(E.UNAUTHENTICATED, "Session expired")
        except (pyjwt.InvalidTokenError, TypeError, ValueError):
            logger.warning("Rejected invalid session token", extra={"path": path})
            return api_error(E.UNAUTHENTICATED, "Invalid session token")

        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            return api_error(E.UNAUTHENTICATED, "Unknown or inactive user")

        try:
            role = parse_role(user.role)
        except UnknownRoleError as exc:
            logger.warning(
                "User %s has unknown role %r", user.id, user.role,
                extra={"event_type": "unknown_role", "actor_id": user.id},
            )
            return api_error(E.UNKNOWN_ROLE, str(exc))

        g.current_user_id = user.id
        g.current_user = user
        g.current_role = role
        return None


def current_user_id():
    return getattr(g, "current_user_id", None)


def current_role():
    return getattr(g, "current_role", None)


def current_actor():
    """The acting identity as passed to services."""
    return Actor(user_id=current_user_id(), role=current_role())
