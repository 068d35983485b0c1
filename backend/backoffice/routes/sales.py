# backend/backoffice/routes/sales.py
"""
Sales API routes.
"""
from flask import Blueprint, jsonify, request

from ..decorators import error_response, require_caller, unexpected_error
from ..services import sales_service
from ..validation import LedgerError, SaleRequest


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("")
@require_caller
def create_sale_route(caller):
    """
    Record a completed sale.

    Request body:
    {
        "location_id": int,
        "items": [{"product_id": int, "quantity": int,
                   "unit_price_cents": int (optional), "discount_cents": int (optional)}],
        "payment_method": "CASH" | "CARD" | "MOBILE_MONEY" | "BANK_TRANSFER" | "CREDIT",
        "customer_id": int (optional),
        "amount_paid_cents": int (optional),
        "notes": str (optional)
    }

    Returns:
        201: Sale created
        400: Invalid request
        404: Location, product or customer not found
        409: Insufficient stock or concurrent update
    """
    try:
        payload = SaleRequest.from_json(request.get_json(silent=True))
        sale = sales_service.record_sale(
            org_id=caller.org_id,
            user_id=caller.user_id,
            request=payload,
            ip_address=caller.ip_address,
        )
        return jsonify(sale.to_dict(include_items=True)), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to record sale")
