# backend/backoffice/routes/purchasing.py
"""
Purchase order and receiving API routes.
"""
from flask import Blueprint, jsonify, request

from ..decorators import error_response, require_caller, unexpected_error
from ..services import compensation_service, purchasing_service
from ..validation import LedgerError, PurchaseOrderRequest, ReceiveRequest


purchasing_bp = Blueprint("purchasing", __name__, url_prefix="/api/purchase-orders")


@purchasing_bp.post("")
@require_caller
def create_purchase_order_route(caller):
    """
    Create a purchase order (DRAFT).

    Request body:
    {
        "location_id": int,
        "items": [{"product_id": int, "quantity_ordered": int, "unit_cost_cents": int}],
        "supplier_name": str (optional),
        "expected_date": "YYYY-MM-DD" (optional),
        "notes": str (optional)
    }
    """
    try:
        payload = PurchaseOrderRequest.from_json(request.get_json(silent=True))
        po = purchasing_service.create_purchase_order(
            org_id=caller.org_id,
            user_id=caller.user_id,
            request=payload,
            ip_address=caller.ip_address,
        )
        return jsonify(po.to_dict(include_items=True)), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to create purchase order")


@purchasing_bp.post("/<int:purchase_order_id>/send")
@require_caller
def send_purchase_order_route(purchase_order_id: int, caller):
    try:
        po = purchasing_service.mark_purchase_order_sent(
            org_id=caller.org_id,
            user_id=caller.user_id,
            purchase_order_id=purchase_order_id,
            ip_address=caller.ip_address,
        )
        return jsonify(po.to_dict()), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to send purchase order")


@purchasing_bp.post("/<int:purchase_order_id>/receive")
@require_caller
def receive_purchase_order_route(purchase_order_id: int, caller):
    """
    Book a delivery against a SENT or PARTIAL purchase order.

    Request body:
    {
        "items": [{"product_id": int, "quantity": int,
                   "expiration_date": "YYYY-MM-DD" (optional), "lot_number": str (optional)}],
        "notes": str (optional)
    }

    Returns:
        201: Receiving record created
        400: Nothing left to receive
        404: Purchase order not found
        409: Purchase order not receivable in its current status
    """
    try:
        payload = ReceiveRequest.from_json(request.get_json(silent=True))
        record = purchasing_service.receive_purchase_order(
            org_id=caller.org_id,
            user_id=caller.user_id,
            purchase_order_id=purchase_order_id,
            request=payload,
            ip_address=caller.ip_address,
        )
        return jsonify(record.to_dict()), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to receive purchase order")


@purchasing_bp.delete("/<int:purchase_order_id>/receiving/<int:record_id>")
@require_caller
def void_receiving_route(purchase_order_id: int, record_id: int, caller):
    """
    Void one receiving record; the PO status is recomputed.

    Returns:
        200: Updated purchase order
        404: Purchase order or record not found
        409: Received stock already moved, or PO not in a voidable status
    """
    try:
        po = compensation_service.void_receiving(
            org_id=caller.org_id,
            user_id=caller.user_id,
            purchase_order_id=purchase_order_id,
            record_id=record_id,
            ip_address=caller.ip_address,
        )
        return jsonify(po.to_dict(include_items=True)), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to void receiving record")
