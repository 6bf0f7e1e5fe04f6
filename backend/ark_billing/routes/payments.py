# Overview: Flask API routes for payments; parses input and returns JSON responses.

# backend/ark_billing/routes/payments.py
"""
Payment API Routes

WHY: Admin screens list and inspect payments, record out-of-band money
(cash/check/manual adjustments), refund, schedule reminders, and force a
status refresh from the invoice provider.

All amounts in request and response bodies are integer cents.
"""

from datetime import datetime, time, timezone

from flask import Blueprint, request, jsonify, current_app

from ..errors import AdapterError, BillingError, ValidationError
from ..providers.base import InvoiceRequest
from ..services.ledger_store import PaymentFilters
from ..services.payment_service import get_lifecycle_manager
from ..validation import coerce_date


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _csv(name: str) -> list[str]:
    raw = request.args.get(name)
    if not raw:
        return []
    return [v.strip().upper() for v in raw.split(",") if v.strip()]


def _int_arg(name: str, default=None):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _json_body() -> dict:
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid payload")
    return data


def _parse_datetime(value, name: str):
    if value is None or value == "":
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 datetime")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _adapter_error(e: AdapterError):
    return jsonify({
        "error": "Invoice provider error",
        "details": str(e),
        "code": e.code,
    }), e.http_status


# =============================================================================
# LISTING / DETAIL
# =============================================================================

@payments_bp.get("")
def list_payments_route():
    """
    List payments.

    Query params:
        order_id, status, method, type (comma-separated), date_from, date_to
        (YYYY-MM-DD, inclusive on created_at), amount_min, amount_max (cents),
        search, page, limit
    """
    try:
        date_from = coerce_date(request.args.get("date_from"), "date_from")
        date_to = coerce_date(request.args.get("date_to"), "date_to")

        filters = PaymentFilters(
            order_id=_int_arg("order_id"),
            status=_csv("status"),
            method=_csv("method"),
            type=_csv("type"),
            date_from=datetime.combine(date_from, time.min) if date_from else None,
            date_to=datetime.combine(date_to, time.max) if date_to else None,
            amount_min=_int_arg("amount_min"),
            amount_max=_int_arg("amount_max"),
            search=request.args.get("search") or None,
        )
        page = get_lifecycle_manager().list_payments(
            filters,
            page=_int_arg("page", 1),
            limit=_int_arg("limit", 20),
        )
        return jsonify(page.to_dict()), 200

    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/<int:payment_id>")
def get_payment_route(payment_id: int):
    try:
        payment = get_lifecycle_manager().get_payment(payment_id)
        data = payment.to_dict(include_children=True)
        data["webhook_events"] = [e.to_dict() for e in payment.webhook_events]
        return jsonify({"payment": data}), 200

    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to get payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("")
def create_payment_route():
    """
    Create a DRAFT payment priced from an order.

    Request body:
    {
        "order_id": 12,
        "method": "SQUARE_INVOICE",       (optional)
        "type": "INVOICE",                (optional)
        "due_date": "2026-11-15",         (optional)
        "delivery_method": "EMAIL",       (optional)
        "description": "..."              (optional)
    }
    """
    try:
        data = _json_body()
        order_id = data.get("order_id")
        if isinstance(order_id, bool) or not isinstance(order_id, int):
            return jsonify({"error": "order_id required"}), 400

        kwargs = {}
        if data.get("method"):
            kwargs["method"] = str(data["method"]).upper()
        payment = get_lifecycle_manager().create_payment_from_order(
            order_id,
            due_date=data.get("due_date"),
            payment_type=str(data.get("type") or "INVOICE").upper(),
            delivery_method=data.get("delivery_method"),
            description=data.get("description"),
            **kwargs,
        )
        return jsonify({"payment": payment.to_dict(include_children=True)}), 201

    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.patch("/<int:payment_id>")
def update_payment_route(payment_id: int):
    """
    Edit descriptive fields.

    Writable: due_date, description, notes, metadata, customer_email,
    customer_phone, delivery_method. Status and amounts are rejected.
    """
    try:
        data = _json_body()
        if not data:
            return jsonify({"error": "No fields to update"}), 400

        payment = get_lifecycle_manager().update_payment_details(payment_id, data)
        return jsonify({"payment": payment.to_dict()}), 200

    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REMOTE INVOICE
# =============================================================================

@payments_bp.post("/<int:payment_id>/invoice")
def create_remote_invoice_route(payment_id: int):
    """Create the provider invoice for an existing DRAFT payment."""
    try:
        data = _json_body()
        invoice_request = InvoiceRequest(
            due_date=coerce_date(data.get("due_date"), "due_date"),
            delivery_method=data.get("delivery_method") or "EMAIL",
            message=data.get("message"),
            custom_fields=data.get("custom_fields") or [],
        )
        payment = get_lifecycle_manager().create_remote_invoice(payment_id, invoice_request)
        return jsonify({"payment": payment.to_dict()}), 201

    except AdapterError as e:
        current_app.logger.warning("Remote invoice creation failed for payment %s: %s", payment_id, e)
        return _adapter_error(e)
    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create remote invoice")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:payment_id>/send")
def send_payment_route(payment_id: int):
    try:
        data = _json_body()
        payment = get_lifecycle_manager().send_invoice(
            payment_id,
            data.get("delivery_method") or "EMAIL",
            data.get("message"),
        )
        return jsonify({"payment": payment.to_dict()}), 200

    except AdapterError as e:
        current_app.logger.warning("Invoice send failed for payment %s: %s", payment_id, e)
        return _adapter_error(e)
    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to send invoice")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:payment_id>/cancel")
def cancel_payment_route(payment_id: int):
    """Cancel locally; the provider invoice is canceled best-effort."""
    try:
        data = _json_body()
        payment, snapshot = get_lifecycle_manager().cancel_payment(payment_id, data.get("reason"))
        return jsonify({
            "payment": payment.to_dict(),
            "invoice": snapshot.to_dict() if snapshot else None,
        }), 200

    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to cancel payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:payment_id>/refresh")
def refresh_payment_route(payment_id: int):
    """Pull the provider's invoice status and reconcile (forward-only)."""
    try:
        payment, snapshot = get_lifecycle_manager().refresh_remote_status(payment_id)
        return jsonify({"payment": payment.to_dict(), "invoice": snapshot.to_dict()}), 200

    except AdapterError as e:
        current_app.logger.warning("Status refresh failed for payment %s: %s", payment_id, e)
        return _adapter_error(e)
    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to refresh payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# MONEY MOVEMENT
# =============================================================================

@payments_bp.post("/<int:payment_id>/transactions")
def record_transaction_route(payment_id: int):
    """
    Record a ledger transaction.

    Request body:
    {
        "type": "CHARGE" | "REFUND" | "FEE" | "ADJUSTMENT",
        "amount": 5000,                 (cents)
        "external_ref": "sq_pay_123",   (optional)
        "metadata": {...}               (optional)
    }
    """
    try:
        data = _json_body()
        if not data.get("type"):
            return jsonify({"error": "type required"}), 400
        if "amount" not in data:
            return jsonify({"error": "amount required"}), 400

        manager = get_lifecycle_manager()
        txn = manager.record_transaction(
            payment_id,
            data["type"],
            data["amount"],
            external_ref=data.get("external_ref"),
            metadata=data.get("metadata"),
        )
        payment = manager.get_payment(payment_id)
        return jsonify({"transaction": txn.to_dict(), "payment": payment.to_dict()}), 201

    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to record transaction")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:payment_id>/refund")
def refund_payment_route(payment_id: int):
    """
    Request body:
    {
        "amount": 2500,           (cents, <= paid - refunded)
        "reason": "...",          (optional)
        "external_ref": "..."     (optional)
    }
    """
    try:
        data = _json_body()
        if "amount" not in data:
            return jsonify({"error": "amount required"}), 400

        payment = get_lifecycle_manager().refund_payment(
            payment_id,
            data["amount"],
            reason=data.get("reason"),
            external_ref=data.get("external_ref"),
        )
        return jsonify({"payment": payment.to_dict(include_children=True)}), 200

    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to refund payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REMINDERS
# =============================================================================

@payments_bp.post("/<int:payment_id>/reminders")
def schedule_reminder_route(payment_id: int):
    """
    Request body:
    {
        "type": "INITIAL" | "FOLLOW_UP" | "FINAL_NOTICE" | "OVERDUE",
        "scheduled_at": "2026-11-01T15:00:00Z",
        "method": "EMAIL",        (optional)
        "subject": "...",         (optional)
        "message": "..."          (optional)
    }
    """
    try:
        data = _json_body()
        scheduled_at = _parse_datetime(data.get("scheduled_at"), "scheduled_at")
        if scheduled_at is None:
            return jsonify({"error": "scheduled_at required"}), 400

        reminder = get_lifecycle_manager().schedule_reminder(
            payment_id,
            str(data.get("type") or "").upper(),
            scheduled_at,
            method=str(data.get("method") or "EMAIL").upper(),
            subject=data.get("subject"),
            message=data.get("message"),
        )
        return jsonify({"reminder": reminder.to_dict()}), 201

    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to schedule reminder")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:payment_id>/reminders/<int:reminder_id>/sent")
def reminder_sent_route(payment_id: int, reminder_id: int):
    """Record reminder delivery; pass failure_reason to mark it FAILED instead."""
    try:
        data = _json_body()
        manager = get_lifecycle_manager()
        existing = manager.store.get_reminder(reminder_id)
        if existing is None or existing.payment_id != payment_id:
            return jsonify({"error": "Reminder not found"}), 404

        reminder = manager.mark_reminder_sent(
            reminder_id,
            sent_at=_parse_datetime(data.get("sent_at"), "sent_at"),
            failure_reason=data.get("failure_reason"),
        )
        return jsonify({"reminder": reminder.to_dict()}), 200

    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update reminder")
        return jsonify({"error": "Internal server error"}), 500
