# Overview: Request decorators for cron and operator endpoints.

import hmac
from functools import wraps

from flask import current_app, jsonify, request


def require_cron_secret(f):
    """
    Require `Authorization: Bearer <CRON_SECRET>`.

    SECURITY: Returns 401 if:
    - No Authorization header, or not a Bearer token
    - Secret not configured on the server
    - Token does not match (constant-time comparison)
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        expected = current_app.config.get("CRON_SECRET") or ""

        if not expected or not hmac.compare_digest(token.encode(), expected.encode()):
            current_app.logger.warning("Rejected cron request to %s from %s", request.path, request.remote_addr)
            return jsonify({"error": "Invalid cron secret"}), 401

        return f(*args, **kwargs)

    return decorated_function
