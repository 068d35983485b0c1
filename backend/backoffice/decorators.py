# Overview: Request decorators and error helpers for API routes.

from functools import wraps

from flask import current_app, g, jsonify, request

from .services.tenant_service import validate_org_active
from .validation import CallerContext, LedgerError, NotFoundError


def _header_id(name: str) -> int | None:
    raw = (request.headers.get(name) or "").strip()
    if not raw.isdigit() or int(raw) <= 0:
        return None
    return int(raw)


def require_caller(f):
    """
    Establish the caller's tenant context from gateway headers and pass it
    to the route as the `caller` keyword argument.

    MULTI-TENANT: Authentication happens upstream; the gateway forwards the
    verified identity as X-Organization-Id and X-User-Id. Also sets:
    - g.caller: CallerContext(org_id, user_id, ip_address)
    - g.org_id: the organization every service call is scoped to

    Returns 401 if either header is missing or malformed, or if the
    organization does not exist or is inactive.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        org_id = _header_id("X-Organization-Id")
        user_id = _header_id("X-User-Id")
        if org_id is None or user_id is None:
            return jsonify({"error": "Caller identity required", "kind": "unauthenticated", "details": {}}), 401

        try:
            validate_org_active(org_id)
        except NotFoundError:
            current_app.logger.warning("Rejected request for unknown or inactive org %s", org_id)
            return jsonify({"error": "Caller identity required", "kind": "unauthenticated", "details": {}}), 401

        g.caller = CallerContext(org_id=org_id, user_id=user_id, ip_address=request.remote_addr)
        g.org_id = org_id
        return f(*args, caller=g.caller, **kwargs)

    return decorated_function


def error_response(exc: LedgerError):
    """JSON body and status for a typed business failure."""
    return jsonify(exc.to_dict()), exc.status_code


def unexpected_error(message: str):
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error", "kind": "error", "details": {}}), 500
