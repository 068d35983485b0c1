# Overview: Flask API routes for ledger inspection and verification.

from flask import Blueprint, jsonify, request

from ..decorators import require_caller, unexpected_error
from ..services import inventory_service, ledger_service


ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")


@ledger_bp.get("/stock")
@require_caller
def list_stock_entries_route(caller):
    """Newest stock ledger entries first; optional product_id/location_id filters."""
    limit = request.args.get("limit", default=100, type=int)
    limit = max(1, min(limit, 500))
    try:
        entries = inventory_service.list_ledger_entries(
            caller.org_id,
            product_id=request.args.get("product_id", type=int),
            location_id=request.args.get("location_id", type=int),
            limit=limit,
        )
        return jsonify({"items": [entry.to_dict() for entry in entries], "limit": limit}), 200
    except Exception:
        return unexpected_error("Failed to list stock ledger entries")


@ledger_bp.get("/verify")
@require_caller
def verify_ledgers_route(caller):
    """
    Check every ledger/projection invariant for the caller's organization.

    Always 200; "ok" is false and the violation lists are non-empty when
    any projection disagrees with its ledger.
    """
    try:
        return jsonify(ledger_service.verify_org_ledgers(caller.org_id)), 200
    except Exception:
        return unexpected_error("Failed to verify ledgers")
