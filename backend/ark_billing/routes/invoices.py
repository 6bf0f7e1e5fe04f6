# Overview: Flask API routes for order invoices; parses input and returns JSON responses.

# backend/ark_billing/routes/invoices.py
"""
Order Invoice API Routes

WHY: The admin order screen creates, sends, checks, and cancels the
provider invoice for an order. Each route maps 1:1 onto a lifecycle
manager operation and returns {payment, invoice, message}.

RESPONSES:
- 400: malformed input
- 404: unknown order / no invoice for the order
- 409: transition not allowed from the payment's current status
- 502/504: invoice provider failure or timeout (local state unchanged)
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import AdapterError, BillingError, ValidationError
from ..providers.base import InvoiceRequest
from ..services.payment_service import get_lifecycle_manager
from ..validation import coerce_date


invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/orders")


def _field(data: dict, *names):
    # Admin UI sends camelCase; scripts tend to send snake_case
    for name in names:
        if data.get(name) is not None:
            return data[name]
    return None


def _adapter_error(e: AdapterError):
    return jsonify({
        "error": "Invoice provider error",
        "details": str(e),
        "code": e.code,
    }), e.http_status


# =============================================================================
# CREATE / STATUS / CANCEL
# =============================================================================

@invoices_bp.post("/<int:order_id>/invoice")
def create_invoice_route(order_id: int):
    """
    Create the provider invoice for an order (or return the active one).

    Request body (all optional):
    {
        "dueDate": "2026-11-15",
        "deliveryMethod": "EMAIL" | "SMS" | "SHARE_MANUALLY",
        "message": "Thanks for your business",
        "customFields": [{"label": "Site", "value": "Back lot"}]
    }

    Returns:
        201: Invoice created
        200: Active invoice already existed
    """
    try:
        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            return jsonify({"error": "Invalid payload"}), 400

        custom_fields = _field(data, "customFields", "custom_fields") or []
        if not isinstance(custom_fields, list) or not all(isinstance(f, dict) for f in custom_fields):
            return jsonify({"error": "customFields must be a list of {label, value} objects"}), 400

        invoice_request = InvoiceRequest(
            due_date=coerce_date(_field(data, "dueDate", "due_date"), "dueDate"),
            delivery_method=_field(data, "deliveryMethod", "paymentRequestMethod", "delivery_method") or "EMAIL",
            message=_field(data, "message"),
            custom_fields=custom_fields,
        )

        result = get_lifecycle_manager().create_invoice_for_order(order_id, invoice_request)
        return jsonify(result.to_dict()), 201 if result.created else 200

    except AdapterError as e:
        current_app.logger.warning("Invoice creation failed for order %s: %s", order_id, e)
        return _adapter_error(e)
    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.get("/<int:order_id>/invoice")
def get_invoice_route(order_id: int):
    """Refresh the order's invoice from the provider and return both views."""
    try:
        result = get_lifecycle_manager().get_invoice_status_for_order(order_id)
        return jsonify(result.to_dict()), 200

    except AdapterError as e:
        current_app.logger.warning("Invoice status refresh failed for order %s: %s", order_id, e)
        return _adapter_error(e)
    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to fetch invoice status")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.delete("/<int:order_id>/invoice")
def cancel_invoice_route(order_id: int):
    """
    Cancel the order's active invoice.

    Reason comes from ?reason= or the JSON body. The local cancellation
    stands even when the provider call fails (message says so).
    """
    try:
        data = request.get_json(silent=True) or {}
        reason = request.args.get("reason") or (data.get("reason") if isinstance(data, dict) else None)

        result = get_lifecycle_manager().cancel_invoice_for_order(order_id, reason)
        return jsonify(result.to_dict()), 200

    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to cancel invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.post("/<int:order_id>/invoice/send")
def send_invoice_route(order_id: int):
    """
    Send (publish) the order's invoice.

    Request body:
    {
        "deliveryMethod": "EMAIL" | "SMS" | "SHARE_MANUALLY",
        "message": "optional note"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            raise ValidationError("Invalid payload")

        delivery_method = _field(data, "deliveryMethod", "paymentRequestMethod", "delivery_method")
        if not delivery_method:
            return jsonify({"error": "deliveryMethod required"}), 400

        result = get_lifecycle_manager().send_invoice_for_order(
            order_id, delivery_method, _field(data, "message")
        )
        return jsonify(result.to_dict()), 200

    except AdapterError as e:
        current_app.logger.warning("Invoice send failed for order %s: %s", order_id, e)
        return _adapter_error(e)
    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to send invoice")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ORDER PAYMENTS
# =============================================================================

@invoices_bp.get("/<int:order_id>/payments")
def list_order_payments_route(order_id: int):
    """All payments for an order, newest first."""
    try:
        payments = get_lifecycle_manager().list_order_payments(order_id)
        return jsonify({"payments": [p.to_dict() for p in payments]}), 200

    except BillingError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list order payments")
        return jsonify({"error": "Internal server error"}), 500
