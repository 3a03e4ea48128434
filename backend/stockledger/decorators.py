# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g


def _header_id(name: str) -> int | None:
    raw = request.headers.get(name, "").strip()
    if not raw.isdigit():
        return None
    value = int(raw)
    return value if value > 0 else None


def require_actor(f):
    """
    Establish who is acting on the ledger.

    The upstream gateway authenticates the caller and forwards the identity
    as trusted headers. Sets on Flask g:
    - g.user_id: X-User-Id, recorded on every transaction
    - g.owner_id: X-Owner-Id, the tenant every lookup is scoped to

    Returns 401 when either header is missing or not a positive integer.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = _header_id("X-User-Id")
        owner_id = _header_id("X-Owner-Id")

        if user_id is None or owner_id is None:
            return jsonify({
                "error": "authentication_required",
                "message": "X-User-Id and X-Owner-Id headers are required",
            }), 401

        g.user_id = user_id
        g.owner_id = owner_id

        return f(*args, **kwargs)

    return decorated_function
