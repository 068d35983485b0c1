# backend/backoffice/routes/customers.py
"""
Customer credit API routes.
"""
from flask import Blueprint, jsonify, request

from ..decorators import error_response, require_caller, unexpected_error
from ..services import credit_service
from ..services.tenant_service import require_customer_in_org
from ..validation import LedgerError, RepaymentRequest


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.post("/<int:customer_id>/repayments")
@require_caller
def repayment_route(customer_id: int, caller):
    """
    Record a payment against the customer's outstanding balance.

    Request body:
    {
        "amount_cents": int,
        "payment_method": "CASH" | "CARD" | "MOBILE_MONEY" | "BANK_TRANSFER",
        "reference": str (optional),
        "notes": str (optional)
    }
    """
    try:
        payload = RepaymentRequest.from_json(request.get_json(silent=True))
        entry = credit_service.record_repayment(
            org_id=caller.org_id,
            user_id=caller.user_id,
            customer_id=customer_id,
            request=payload,
            ip_address=caller.ip_address,
        )
        customer = require_customer_in_org(customer_id, caller.org_id)
        return jsonify({"credit_transaction": entry.to_dict(), "customer": customer.to_dict()}), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to record repayment")


@customers_bp.post("/<int:customer_id>/quick-payment")
@require_caller
def quick_payment_route(customer_id: int, caller):
    """Apply one payment across the customer's open invoices, oldest due first."""
    try:
        payload = RepaymentRequest.from_json(request.get_json(silent=True))
        result = credit_service.quick_payment(
            org_id=caller.org_id,
            user_id=caller.user_id,
            customer_id=customer_id,
            request=payload,
            ip_address=caller.ip_address,
        )
        return jsonify({
            "credit_transaction": result["credit_transaction"].to_dict(),
            "applied": result["applied"],
            "unapplied_cents": result["unapplied_cents"],
        }), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to record quick payment")
