# Overview: Flask endpoint receiving invoice provider webhooks.

# backend/ark_billing/routes/webhooks.py
"""
Webhook Routes

SECURITY:
- The signature is checked against the raw request bytes before anything
  is parsed or stored.
- Rejected deliveries are written to the security event log (body hash
  only) and never reach the payment ledger.

RESPONSES:
- 200: event processed, ignored, or already handled (provider stops retrying)
- 400: authentic body that is not a usable event
- 401: missing/invalid signature
- 500: event logged as FAILED; provider redelivery will retry it
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import BillingError, SignatureError, ValidationError
from ..providers.base import SIGNATURE_HEADER
from ..services.payment_service import get_lifecycle_manager
from ..services.payment_states import WEBHOOK_STATUS_FAILED
from ..services.security_service import log_security_event


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/square")
def square_webhook():
    raw_body = request.get_data(cache=False)
    signature = request.headers.get(SIGNATURE_HEADER)
    provider = current_app.extensions["invoice_provider"]

    try:
        envelope = provider.verify_and_parse_webhook(raw_body, signature)
    except SignatureError as e:
        current_app.logger.warning("Rejected webhook from %s: %s", request.remote_addr, e)
        log_security_event(
            "WEBHOOK_SIGNATURE_MISSING" if not signature else "WEBHOOK_SIGNATURE_INVALID",
            source=provider.source,
            resource=request.path,
            reason=str(e),
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
            body=raw_body,
        )
        return jsonify({"error": "Invalid signature"}), 401
    except ValidationError as e:
        current_app.logger.warning("Unusable webhook body: %s", e)
        return jsonify({"error": str(e)}), 400

    try:
        event = get_lifecycle_manager().apply_webhook_event(
            envelope.event_type,
            envelope.event_id,
            envelope.payload,
            source=provider.source,
        )
    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to process webhook %s", envelope.event_id)
        return jsonify({"error": "Internal server error"}), 500

    body = {"received": True, "event_id": event.event_id, "status": event.status}
    if event.status == WEBHOOK_STATUS_FAILED:
        return jsonify(body), 500
    return jsonify(body), 200
