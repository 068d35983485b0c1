# backend/backoffice/routes/returns.py
"""
Return API routes.
"""
from flask import Blueprint, jsonify, request

from ..decorators import error_response, require_caller, unexpected_error
from ..services import return_service
from ..validation import LedgerError, ReturnRequest


returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


@returns_bp.post("")
@require_caller
def create_return_route(caller):
    """
    Record a return against a sale.

    Request body:
    {
        "sale_id": int,
        "items": [{"sale_item_id": int, "quantity": int,
                   "disposition": "RETURN_TO_STOCK" | "DAMAGED", "batch_id": int (optional)}],
        "return_type": "REFUND" | "EXCHANGE",
        "refund_method": "CASH" | "CARD" | "MOBILE_MONEY" | "BANK_TRANSFER",
        "reason": str (optional)
    }

    Returns:
        201: Return created
        400: Invalid request
        404: Sale or sale item not found
        409: Quantity exceeds what is still returnable
    """
    try:
        payload = ReturnRequest.from_json(request.get_json(silent=True))
        ret = return_service.record_return(
            org_id=caller.org_id,
            user_id=caller.user_id,
            request=payload,
            ip_address=caller.ip_address,
        )
        return jsonify(ret.to_dict(include_items=True)), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to record return")
