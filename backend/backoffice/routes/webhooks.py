# backend/backoffice/routes/webhooks.py
"""
Payment provider webhook routes.

No caller headers: the provider is authenticated by the HMAC-SHA512
signature over the raw request body. Duplicates and event kinds we do not
handle are acknowledged with 200 so the provider stops retrying.
"""
from flask import Blueprint, current_app, jsonify, request

from ..decorators import error_response, unexpected_error
from ..services import reconciliation_service
from ..validation import LedgerError


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")

SIGNATURE_HEADER = "x-paystack-signature"


@webhooks_bp.post("/paystack")
def paystack_webhook_route():
    raw_body = request.get_data(cache=False)
    try:
        result = reconciliation_service.handle_webhook(
            raw_body=raw_body,
            signature=request.headers.get(SIGNATURE_HEADER),
            secret=current_app.config.get("PAYMENT_WEBHOOK_SECRET", ""),
        )
        return jsonify(result), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return unexpected_error("Failed to process payment webhook")
