from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any


class ValidationError(ValueError):
    """400-level input problem."""


class NotFoundError(LookupError):
    """404-level: the referenced local or server id is unknown."""


class ConflictError(ValueError):
    """409-level conflict (e.g., requeueing a record that is already staged)."""


@dataclass(frozen=True)
class PayloadPolicy:
    """
    Central policy layer for staged payloads:
    - writable_fields: what the UI is allowed to set
    - required_on_create: fields required when staging an add
    - numeric_fields: fields coerced to int/float
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore
    numeric_fields: set[str] | None = None

    @classmethod
    def for_entity(cls, spec) -> "PayloadPolicy":
        return cls(
            writable_fields=set(spec.fields),
            required_on_create=set(spec.required_on_add),
            numeric_fields=set(spec.numeric_fields),
        )


def _coerce_number(key: str, value: Any):
    # Reject bools explicitly (bool is an int subclass)
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be a number")
        if "e" in stripped.lower():
            raise ValidationError(f"{key} must be a plain number (scientific notation not allowed)")
        try:
            num = Decimal(stripped)
        except InvalidOperation:
            raise ValidationError(f"{key} must be a number")
        if num == num.to_integral_value():
            return int(num)
        return float(num)
    raise ValidationError(f"{key} must be a number")


def validate_payload(*, payload: Any, policy: PayloadPolicy, partial: bool) -> dict:
    """
    Validates + normalizes an incoming payload against the policy.
    Returns a cleaned patch dict with only writable fields.

    partial=False: add semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if payload.get(f) in (None, ""))
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")

    numeric = policy.numeric_fields or set()
    patch: dict = {}
    for k, raw in payload.items():
        if raw is None:
            if k in required and not partial:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue
        if k in numeric:
            val = _coerce_number(k, raw)
            if val < 0:
                raise ValidationError(f"{k} must be >= 0")
            patch[k] = val
            continue
        if isinstance(raw, str):
            raw = raw.strip()
        patch[k] = raw

    return patch
