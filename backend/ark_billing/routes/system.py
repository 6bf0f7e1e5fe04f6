# backend/ark_billing/routes/system.py
"""
System health endpoint and the local mock invoice page.
"""

import time

from flask import Blueprint, current_app, jsonify

from ..errors import NotFoundError
from ..extensions import db
from ..models import Payment, PaymentWebhookEvent
from ..providers.mock import MockInvoiceProvider
from ..services.payment_states import WEBHOOK_STATUS_FAILED
from ark_billing.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        payment_count = db.session.query(Payment).count()

        # Failed webhooks are waiting on redelivery or a manual replay
        failed_webhooks = db.session.query(PaymentWebhookEvent).filter_by(
            status=WEBHOOK_STATUS_FAILED
        ).count()

        elapsed_ms = (time.time() - start_time) * 1000

        result = {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "payments": payment_count,
                "failed_webhooks": failed_webhooks,
            }
        }
        if failed_webhooks:
            result["status"] = "degraded"
            result["warning"] = f"{failed_webhooks} webhook event(s) failed processing"
        return result
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_invoice_provider() -> dict:
    provider = current_app.extensions.get("invoice_provider")
    if provider is None:
        return {"status": "unhealthy", "error": "Invoice provider not configured"}
    return {"status": "healthy", "details": {"provider": provider.name}}


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded (failed webhooks pending replay)
    - 503: database or provider configuration unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    provider_health = check_invoice_provider()

    all_checks = [database_health, provider_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "invoice_provider": provider_health,
        }
    }, http_status


@system_bp.get("/dev/mock-square-invoice/<invoice_id>")
def mock_invoice_page(invoice_id: str):
    """
    Public URL target for mock invoices.

    Only served when the mock provider is active; 404 otherwise.
    """
    provider = current_app.extensions.get("invoice_provider")
    if not isinstance(provider, MockInvoiceProvider):
        return jsonify({"error": "Not found"}), 404
    try:
        return jsonify({"invoice": provider.get_invoice(invoice_id)}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
