# Overview: Flask API routes for stock adjustment and stock level queries.

from flask import Blueprint, jsonify, request

from ..decorators import error_response, require_caller, unexpected_error
from ..services import inventory_service
from ..validation import LedgerError, StockAdjustmentRequest


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.post("/adjust")
@require_caller
def adjust_inventory_route(caller):
    """
    Correct a stock pool by ADD, REMOVE or SET.

    Request body:
    {
        "product_id": int,
        "location_id": int,
        "mode": "ADD" | "REMOVE" | "SET",
        "quantity": int,
        "expiration_date": "YYYY-MM-DD" (optional),
        "reason": str (optional)
    }
    """
    try:
        payload = StockAdjustmentRequest.from_json(request.get_json(silent=True))
        adjustment = inventory_service.adjust_stock(
            org_id=caller.org_id,
            user_id=caller.user_id,
            request=payload,
            ip_address=caller.ip_address,
        )
        return jsonify(adjustment.to_dict()), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to adjust stock")


@inventory_bp.get("/levels")
@require_caller
def stock_levels_route(caller):
    location_id = request.args.get("location_id", type=int)
    product_id = request.args.get("product_id", type=int)
    try:
        levels = inventory_service.list_stock_levels(
            caller.org_id, location_id=location_id, product_id=product_id
        )
        return jsonify({"items": [level.to_dict() for level in levels]}), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to list stock levels")


@inventory_bp.get("/low-stock")
@require_caller
def low_stock_route(caller):
    try:
        return jsonify({"items": inventory_service.products_below_reorder_threshold(caller.org_id)}), 200
    except Exception:
        return unexpected_error("Failed to list low stock products")
