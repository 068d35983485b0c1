# backend/backoffice/routes/invoices.py
"""
Invoice API routes.
"""
from flask import Blueprint, jsonify, request

from ..decorators import error_response, require_caller, unexpected_error
from ..services import invoice_service
from ..validation import InvoiceCreateRequest, InvoicePaymentRequest, LedgerError


invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


@invoices_bp.post("")
@require_caller
def create_invoice_route(caller):
    """
    Create the invoice for a customer sale.

    Request body:
    {
        "sale_id": int,
        "due_date": "YYYY-MM-DD" (optional)
    }
    """
    try:
        payload = InvoiceCreateRequest.from_json(request.get_json(silent=True))
        invoice = invoice_service.create_invoice_for_sale(
            org_id=caller.org_id,
            user_id=caller.user_id,
            request=payload,
            ip_address=caller.ip_address,
        )
        return jsonify(invoice.to_dict()), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to create invoice")


@invoices_bp.post("/<int:invoice_id>/payments")
@require_caller
def invoice_payment_route(invoice_id: int, caller):
    """
    Record a manual payment against one invoice.

    Returns:
        201: Updated invoice
        400: Amount exceeds the balance due
        404: Invoice not found
        409: Invoice already paid, or reference already recorded
    """
    try:
        payload = InvoicePaymentRequest.from_json(request.get_json(silent=True))
        invoice = invoice_service.record_invoice_payment(
            org_id=caller.org_id,
            user_id=caller.user_id,
            invoice_id=invoice_id,
            request=payload,
            ip_address=caller.ip_address,
        )
        return jsonify(invoice.to_dict()), 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to record invoice payment")
