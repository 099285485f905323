# Overview: Request decorators for API routes: caller identity and cron authentication.

import hmac
from functools import wraps

from flask import current_app, g, jsonify, request


ACTOR_HEADER = "X-User-Id"
CRON_SECRET_HEADER = "X-Cron-Secret"


def require_actor(f):
    """
    Require an authenticated caller.

    Authentication is done upstream; the gateway forwards the verified user
    id in the X-User-Id header. Sets g.actor_id for the route.

    Returns 401 if the header is missing or blank.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor_id = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not actor_id:
            return jsonify({"error": "Authentication required"}), 401
        if len(actor_id) > 64:
            return jsonify({"error": "Invalid user id"}), 401

        g.actor_id = actor_id
        return f(*args, **kwargs)

    return decorated_function


def require_cron_secret(f):
    """
    Require the shared scheduler secret.

    Accepts the secret in X-Cron-Secret or as "Authorization: Bearer <secret>".
    When CRON_SECRET is not configured the endpoint is disabled (403).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("CRON_SECRET")
        if not expected:
            return jsonify({"error": "Cron endpoint is disabled"}), 403

        provided = request.headers.get(CRON_SECRET_HEADER)
        if not provided:
            auth_header = request.headers.get("Authorization") or ""
            if auth_header.startswith("Bearer "):
                provided = auth_header.split(" ", 1)[1]

        if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
            current_app.logger.warning("Rejected cron request from %s", request.remote_addr)
            return jsonify({"error": "Invalid cron secret"}), 401

        return f(*args, **kwargs)

    return decorated_function
