# Overview: Atomic payment number allocation per tenant.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..models import PaymentSequence
from ..errors import ValidationError


def next_payment_number(session, *, tenant_code: str, prefix: str = "PAY", pad: int = 6) -> str:
    """
    Atomically allocate the next payment number for a tenant.

    Increments with a single UPDATE so concurrent allocators serialize on the
    sequence row. The first allocation for a tenant inserts the row; losing
    that insert race falls back to the UPDATE path. Runs inside the caller's
    unit of work and never commits.
    """
    if not tenant_code:
        raise ValidationError("tenant_code is required")

    stmt = (
        update(PaymentSequence)
        .where(PaymentSequence.tenant_code == tenant_code)
        .values(next_number=PaymentSequence.next_number + 1)
    )

    def _bump() -> int | None:
        result = session.execute(stmt)
        if not result.rowcount:
            return None
        session.flush()
        current = (
            session.query(PaymentSequence.next_number)
            .filter_by(tenant_code=tenant_code)
            .scalar()
        )
        return current - 1

    next_num = _bump()
    if next_num is None:
        seq = PaymentSequence(tenant_code=tenant_code, next_number=2)
        try:
            with session.begin_nested():
                session.add(seq)
                session.flush()
            next_num = 1
        except IntegrityError:
            next_num = _bump()
            if next_num is None:
                raise

    return f"{prefix}-{next_num:0{pad}d}"
