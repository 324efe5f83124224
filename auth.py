"""
Bearer-token authentication.

Tokens are HS256 JWTs issued by the identity provider with ``sub`` (user id)
and ``role`` claims. Routes receive the caller as an ``Actor``.
"""

import datetime
import logging
from functools import wraps

import jwt
from flask import current_app, jsonify, request

from services.state_machine import Actor, ROLES

logger = logging.getLogger(__name__)

TOKEN_ROLES = tuple(role for role in ROLES if role != "system")


def _secret():
    return current_app.config["JWT_SECRET"]


def generate_token(user_id, role, expires_in=datetime.timedelta(days=30)):
    """Issue a token for ``user_id`` acting as ``role``."""
    if role not in TOKEN_ROLES:
        raise ValueError("Unknown role {}".format(role))
    payload = {
        "sub": user_id,
        "role": role,
        "exp": datetime.datetime.now(datetime.timezone.utc) + expires_in,
    }
    return jwt.encode(payload, _secret(), algorithm="HS256")


def verify_token(token):
    """Return the Actor a token names, or None."""
    try:
        payload = jwt.decode(token, _secret(), algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None

    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in TOKEN_ROLES:
        return None
    return Actor(user_id, role)


def require_auth(f):
    """Decorator to require a valid bearer token; passes ``actor``."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = request.headers.get("Authorization", "").replace("Bearer ", "")
        actor = verify_token(token) if token else None
        if not actor:
            return jsonify({"error": "Unauthorized"}), 401
        return f(actor=actor, *args, **kwargs)
    return decorated_function


def require_role(*roles):
    """Decorator restricting a route to the given roles. Use under require_auth."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            actor = kwargs.get("actor")
            if actor is None or actor.role not in roles:
                logger.warning("Role %s denied on %s", getattr(actor, "role", None), request.path)
                return jsonify({"error": "Access denied. {} role required".format(" or ".join(roles))}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator
