# Overview: Billing error taxonomy shared by services, providers, and routes.

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing domain errors."""

    http_status = 500


class ValidationError(BillingError, ValueError):
    """400-level input problem (negative amount, missing price, bad field)."""

    http_status = 400


class NotFoundError(BillingError, LookupError):
    """Unknown payment or order id."""

    http_status = 404


class ConflictError(BillingError):
    """409-level business rule conflict."""

    http_status = 409


class InvalidTransitionError(ConflictError):
    """
    Raised when a payment status transition is not in the transition table.

    The payment is never mutated when this is raised. Webhook processing
    treats it as log-and-ignore; administrative callers get a 409.
    """

    def __init__(self, event: str, current_status: str, message: str | None = None):
        self.event = event
        self.current_status = current_status
        super().__init__(message or f"Cannot apply '{event}' to a payment in status {current_status}")


class AdapterError(BillingError):
    """Remote invoice provider failure. Local state is left unchanged."""

    http_status = 502

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class ProviderTimeoutError(AdapterError):
    """
    Provider call exceeded its timeout.

    The remote operation may or may not have happened; callers must check
    remote state before re-issuing create/send.
    """

    http_status = 504


class SignatureError(BillingError):
    """Webhook payload failed the authenticity check."""

    http_status = 401
