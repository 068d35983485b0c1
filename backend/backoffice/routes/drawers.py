# backend/backoffice/routes/drawers.py
"""
Cash drawer API routes.
"""
from flask import Blueprint, jsonify, request

from ..decorators import error_response, require_caller, unexpected_error
from ..services import drawer_service
from ..validation import CashMovementRequest, DrawerCloseRequest, DrawerOpenRequest, LedgerError


drawers_bp = Blueprint("drawers", __name__, url_prefix="/api/drawers")


@drawers_bp.post("/<int:drawer_id>/open")
@require_caller
def open_drawer_route(drawer_id: int, caller):
    """
    Open a drawer for a new session.

    Request body:
    {
        "starting_float_cents": int (optional, default 0),
        "notes": str (optional)
    }
    """
    try:
        payload = DrawerOpenRequest.from_json(request.get_json(silent=True) or {})
        drawer = drawer_service.open_drawer(
            org_id=caller.org_id,
            user_id=caller.user_id,
            drawer_id=drawer_id,
            request=payload,
            ip_address=caller.ip_address,
        )
        return jsonify(drawer.to_dict()), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to open drawer")


@drawers_bp.post("/<int:drawer_id>/close")
@require_caller
def close_drawer_route(drawer_id: int, caller):
    try:
        payload = DrawerCloseRequest.from_json(request.get_json(silent=True))
        drawer = drawer_service.close_drawer(
            org_id=caller.org_id,
            user_id=caller.user_id,
            drawer_id=drawer_id,
            request=payload,
            ip_address=caller.ip_address,
        )
        return jsonify(drawer.to_dict()), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to close drawer")


@drawers_bp.post("/<int:drawer_id>/movements")
@require_caller
def cash_movement_route(drawer_id: int, caller):
    """
    Manual cash PAY_IN / PAY_OUT.

    Request body:
    {
        "direction": "PAY_IN" | "PAY_OUT",
        "amount_cents": int,
        "description": str (optional)
    }
    """
    try:
        payload = CashMovementRequest.from_json(request.get_json(silent=True))
        entry = drawer_service.record_cash_movement(
            org_id=caller.org_id,
            user_id=caller.user_id,
            drawer_id=drawer_id,
            request=payload,
            ip_address=caller.ip_address,
        )
        return jsonify(entry.to_dict()), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to record cash movement")
