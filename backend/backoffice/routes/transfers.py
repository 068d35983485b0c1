# backend/backoffice/routes/transfers.py
"""
Inter-location transfer API routes.
"""
from flask import Blueprint, jsonify, request

from ..decorators import error_response, require_caller, unexpected_error
from ..services import transfer_service
from ..validation import LedgerError, TransferRequest


transfers_bp = Blueprint("transfers", __name__, url_prefix="/api/transfers")


@transfers_bp.post("")
@require_caller
def create_transfer_route(caller):
    """
    Create a transfer document (DRAFT).

    Request body:
    {
        "from_location_id": int,
        "to_location_id": int,
        "items": [{"product_id": int, "quantity": int}],
        "notes": str (optional)
    }

    Returns:
        201: Transfer created
        400: Invalid request
        404: Location or product not found
        409: Insufficient stock at source
    """
    try:
        payload = TransferRequest.from_json(request.get_json(silent=True))
        transfer = transfer_service.create_transfer(
            org_id=caller.org_id,
            user_id=caller.user_id,
            request=payload,
            ip_address=caller.ip_address,
        )
        return jsonify(transfer.to_dict(include_items=True)), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to create transfer")


@transfers_bp.post("/<int:transfer_id>/complete")
@require_caller
def complete_transfer_route(transfer_id: int, caller):
    """
    Move the transfer's stock from source to destination.

    Returns:
        200: Transfer completed (RECEIVED)
        404: Transfer not found
        409: Already completed/cancelled, or insufficient stock
    """
    try:
        transfer = transfer_service.complete_transfer(
            org_id=caller.org_id,
            user_id=caller.user_id,
            transfer_id=transfer_id,
            ip_address=caller.ip_address,
        )
        return jsonify(transfer.to_dict(include_items=True)), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to complete transfer")


@transfers_bp.post("/<int:transfer_id>/cancel")
@require_caller
def cancel_transfer_route(transfer_id: int, caller):
    try:
        transfer = transfer_service.cancel_transfer(
            org_id=caller.org_id,
            user_id=caller.user_id,
            transfer_id=transfer_id,
            ip_address=caller.ip_address,
        )
        return jsonify(transfer.to_dict()), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to cancel transfer")
