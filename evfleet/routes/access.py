# evfleet/routes/access.py
from functools import wraps

from flask import g, jsonify, request, session

from evfleet.services.access_control import Principal, authorize
from evfleet.services.errors import DeploymentError, InternalError


def current_principal():
    """Principal from the session populated by the login collaborator, or None."""
    role = session.get("role")
    if not role:
        return None
    user_id = session.get("user_id")
    try:
        user_id = int(user_id) if user_id is not None else None
    except (TypeError, ValueError):
        user_id = None
    return Principal(user_id=user_id, role=str(role))


def require_module(module, verb=None):
    """
    Gate a view on the role/module matrix. `verb` overrides request.method
    for endpoints whose HTTP method doesn't match what they do (e.g. a POST
    that only reads).
    """
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            principal = current_principal()
            if principal is None:
                return jsonify({"error": "unauthenticated", "message": "login required"}), 401

            decision = authorize(principal, module, verb or request.method)
            if not decision.allowed:
                return error_response(decision.to_error())

            g.principal = principal
            return view(*args, **kwargs)
        return wrapped
    return decorator


def error_response(err: DeploymentError):
    return jsonify(err.to_dict()), err.http_status


def internal_error():
    return error_response(InternalError())


def json_body():
    """(body, None) or (None, error response) for JSON-only endpoints."""
    if not request.is_json:
        return None, (jsonify({"error": "unsupported_media_type", "message": "Expected application/json"}), 415)
    return request.get_json(silent=True) or {}, None
