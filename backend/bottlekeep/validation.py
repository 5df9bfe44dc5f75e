from __future__ import annotations
from datetime import datetime
from decimal import Decimal, InvalidOperation
from bottlekeep.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeMeta


# NUMERIC(10, 2) upper bound for bottle quantities
MAX_QUANTITY = Decimal("99999999.99")


class DepositError(ValueError):
    """
    Base for every domain error raised by the deposit services.

    Each error is scoped to the single operation that raised it; the entities
    involved are left unchanged.
    """
    code = "deposit_error"

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code}


class ValidationError(DepositError):
    """400-level input problem."""
    code = "validation_error"

    def __init__(self, message: str, *, field: str | None = None, value: Any = None):
        super().__init__(message)
        self.field = field
        self.value = value

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.field is not None:
            payload["field"] = self.field
            payload["value"] = _jsonable(self.value)
        return payload


class InsufficientQuantityError(DepositError):
    """Withdrawal exceeds the deposit's remaining balance."""
    code = "insufficient_quantity"

    def __init__(self, requested: Decimal, available: Decimal):
        super().__init__(
            f"Requested quantity {requested} exceeds remaining quantity {available}"
        )
        self.requested = requested
        self.available = available

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["requested"] = _jsonable(self.requested)
        payload["available"] = _jsonable(self.available)
        return payload


class InvalidStateError(DepositError):
    """Operation attempted from a status that does not permit it."""
    code = "invalid_state"

    def __init__(self, message: str, *, current_status: str | None = None, allowed: set[str] | None = None):
        super().__init__(message)
        self.current_status = current_status
        self.allowed = allowed

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["current_status"] = self.current_status
        if self.allowed is not None:
            payload["allowed"] = sorted(self.allowed)
        return payload


class NotFoundError(DepositError):
    """Referenced row does not exist in the expected store scope."""
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["entity"] = self.entity
        payload["entity_id"] = _jsonable(self.entity_id)
        return payload


class ConflictError(DepositError):
    """409-level concurrent modification; re-read and retry."""
    code = "conflict"


class AuditWriteWarning(UserWarning):
    """Business mutation committed but its audit entry could not be written."""


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def to_quantity(value: Any, field: str = "quantity") -> Decimal:
    """
    Coerce user input to a 2-place Decimal quantity.

    Rejects booleans, non-numeric strings, NaN/Infinity and more than two
    decimal places.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field, value=value)
    try:
        qty = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", field=field, value=value)
    if not qty.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field, value=value)
    # bound first: quantize raises InvalidOperation past the context precision
    if abs(qty) > MAX_QUANTITY:
        raise ValidationError(f"{field} cannot exceed {MAX_QUANTITY}", field=field, value=value)
    if qty != qty.quantize(Decimal("0.01")):
        raise ValidationError(f"{field} allows at most 2 decimal places", field=field, value=value)
    return qty.quantize(Decimal("0.01"))


def require_positive_quantity(value: Any, field: str = "quantity") -> Decimal:
    qty = to_quantity(value, field)
    if qty <= 0:
        raise ValidationError(f"{field} must be > 0", field=field, value=value)
    return qty


def require_positive_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", field=field, value=value)
    if isinstance(value, str):
        stripped = value.strip()
        if not (stripped.isascii() and stripped.lstrip("-").isdigit()):
            raise ValidationError(f"{field} must be an integer", field=field, value=value)
        value = int(stripped)
    if not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field=field, value=value)
    if value <= 0:
        raise ValidationError(f"{field} must be > 0", field=field, value=value)
    return value


@dataclass(frozen=True)
class ModelValidationPolicy:
    """Fields a client may patch on a model; everything else is refused."""
    writable_fields: frozenset


def _coerce_setting(col, value: Any):
    key = col.key

    if isinstance(col.type, Integer):
        # bool is an int subclass; "1e3" and "2.5" are not day counts
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().isascii() and value.strip().lstrip("-").isdigit():
            return int(value.strip())
        raise ValidationError(f"{key} must be a whole number", field=key, value=value)

    if isinstance(col.type, Numeric):
        return to_quantity(value, key)

    if isinstance(col.type, Boolean):
        return require_bool(value, key)

    if isinstance(col.type, (String, Text)):
        text = str(value).strip()
        if not text and not col.nullable:
            raise ValidationError(f"{key} cannot be blank", field=key, value=value)
        if isinstance(col.type, String) and col.type.length and len(text) > col.type.length:
            raise ValidationError(f"{key} exceeds max length {col.type.length}", field=key, value=value)
        return text

    return value


def validate_payload(*, model: DeclarativeMeta, payload: dict, policy: ModelValidationPolicy) -> dict:
    """
    Clean a PATCH body against the model's columns.

    Only keys in policy.writable_fields are accepted. Values are coerced by
    column type and NULL is refused for non-nullable columns. Returns the
    cleaned dict; the caller applies it.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    columns = {c.key: c for c in model.__mapper__.columns}
    patch: dict = {}

    for key, raw in payload.items():
        if key not in policy.writable_fields or key not in columns:
            raise ValidationError(f"Field not allowed: {key}", field=key)
        col = columns[key]
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{key} cannot be null", field=key)
            patch[key] = None
            continue
        patch[key] = _coerce_setting(col, raw)

    return patch


def enforce_rules_store_settings(patch: dict) -> None:
    """Day counts must stay positive; column types alone allow zero."""
    for key in ("default_expiry_days", "expiry_warning_days"):
        if key in patch and patch[key] is not None and patch[key] <= 0:
            raise ValidationError(f"{key} must be > 0", field=key, value=patch[key])


def parse_query_datetime(value: str | None, field: str) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", field=field, value=value)


def parse_query_bool(value: str | None, field: str) -> bool | None:
    if value in (None, ""):
        return None
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes"):
        return True
    if lowered in ("0", "false", "no"):
        return False
    raise ValidationError(f"{field} must be true or false", field=field, value=value)


def parse_query_int(value: str | None, field: str) -> int | None:
    if value in (None, ""):
        return None
    return require_positive_int(value, field)


def require_bool(value: Any, field: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{field} must be true or false", field=field, value=value)
    return value
