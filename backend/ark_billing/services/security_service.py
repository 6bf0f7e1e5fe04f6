# Overview: Security audit trail for rejected webhook deliveries.

"""
Security Event Logging

WHY: A webhook that fails its signature check must never touch the payment
ledger, but the attempt still needs an audit trail. The rejected body is
not stored, only its SHA-256 digest.

event_type examples:
- WEBHOOK_SIGNATURE_INVALID
- WEBHOOK_SIGNATURE_MISSING
- WEBHOOK_BODY_INVALID
"""

from __future__ import annotations

import hashlib

from ..extensions import db
from ..models import SecurityEvent
from ark_billing.time_utils import utcnow


def log_security_event(
    event_type: str,
    *,
    source: str | None = None,
    resource: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    body: bytes | None = None,
) -> SecurityEvent:
    event = SecurityEvent(
        event_type=event_type,
        source=source,
        resource=resource,
        reason=reason,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
        body_sha256=hashlib.sha256(body).hexdigest() if body is not None else None,
        occurred_at=utcnow(),
    )

    db.session.add(event)
    db.session.commit()

    return event
