from __future__ import annotations
from datetime import date, datetime

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError
from .money import MAX_AMOUNT_CENTS
from .time_utils import parse_iso_date


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what callers are allowed to set (security boundary)
    - required_on_create: fields required for create
    """
    writable_fields: frozenset
    required_on_create: frozenset = field(default_factory=frozenset)


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {key: col for key, col in mapper.columns.items()}


def _coerce_value(key: str, col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict: reject floats, bools, and decimal strings
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped or "e" in stripped.lower() or "." in stripped:
                raise ValidationError(f"{key} must be a plain integer")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{key} must be an integer")
        raise ValidationError(f"{key} must be an integer")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{key} must be a boolean")

    # Check DateTime before Date
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        raise ValidationError(f"{key} must be a datetime")

    if isinstance(coltype, Date):
        try:
            parsed = parse_iso_date(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{key} must be an ISO-8601 date")
        if parsed is None:
            raise ValidationError(f"{key} must be an ISO-8601 date")
        return parsed

    if isinstance(coltype, JSON):
        if not isinstance(value, dict):
            raise ValidationError(f"{key} must be an object")
        return value

    if isinstance(coltype, (String, Text)):
        if not isinstance(value, (str, int)) or isinstance(value, bool):
            raise ValidationError(f"{key} must be a string")
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes a field mapping against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict keyed by mapped attribute name.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid payload")

    if not partial:
        missing = sorted(f for f in policy.required_on_create if payload.get(f) is None)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}
    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(k, col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable and val == "":
            raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_amount_rules(patch: dict, fields: tuple[str, ...]) -> None:
    """Integer-cent range checks for the money fields present in a patch."""
    for name in fields:
        if name in patch and patch[name] is not None:
            value = patch[name]
            if value < 0:
                raise ValidationError(f"{name} must be >= 0")
            if value > MAX_AMOUNT_CENTS:
                raise ValidationError(f"{name} cannot exceed {MAX_AMOUNT_CENTS} (${MAX_AMOUNT_CENTS / 100:,.2f})")


def coerce_date(value: Any, name: str = "date") -> date | None:
    try:
        return parse_iso_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an ISO-8601 date")
