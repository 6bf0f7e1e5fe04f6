from __future__ import annotations

from ..extensions import db
from ark_billing.time_utils import to_utc_z, utcnow


class SecurityEvent(db.Model):
    """
    Security audit log.

    Webhook deliveries that fail signature verification are recorded here
    and nowhere else: they never reach the payment webhook log.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.
    """
    __tablename__ = "security_events"
    __table_args__ = (
        db.Index("ix_security_events_type_occurred", "event_type", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)  # WEBHOOK_SIGNATURE_INVALID, ...
    source = db.Column(db.String(32), nullable=True)
    resource = db.Column(db.String(128), nullable=True)  # e.g., "/api/webhooks/square"
    reason = db.Column(db.Text, nullable=True)

    # Client context
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
    body_sha256 = db.Column(db.String(64), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "source": self.source,
            "resource": self.resource,
            "reason": self.reason,
            "ip_address": self.ip_address,
            "body_sha256": self.body_sha256,
            "occurred_at": to_utc_z(self.occurred_at),
        }
