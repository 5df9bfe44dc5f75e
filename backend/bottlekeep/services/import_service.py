from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Deposit
from ..models.deposits import DEPOSIT_STATUSES, DEPOSIT_STATUS_IN_STORE, DEPOSIT_STATUS_WITHDRAWN
from bottlekeep.time_utils import parse_iso_datetime
from bottlekeep.validation import ConflictError, ValidationError, to_quantity
from . import audit_service, deposit_service, store_service
from .concurrency import run_with_retry

"""
Bulk deposit import

Rows arrive from the import collaborator already parsed (one dict per row)
and are inserted directly, bypassing the lifecycle operations. Every ledger
invariant is therefore re-checked here, row by row:

- quantity > 0 and 0 <= remaining_qty <= quantity
- status is a known deposit status
- status == withdrawn  <=>  remaining_qty == 0
- VIP rows carry no expiry_date
- deposit_code unique within the store, including inside the batch

Valid rows are inserted together; invalid rows are reported and skipped.
"""


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def _to_bool(value: Any) -> bool | None:
    if value is None or value == "":
        return False
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "y"):
        return True
    if text in ("0", "false", "no", "n"):
        return False
    return None


def normalize_row(raw_row: dict[str, Any]) -> dict[str, Any]:
    quantity = raw_row.get("quantity")
    remaining = raw_row.get("remaining_qty")
    code = _to_text(raw_row.get("deposit_code"))
    return {
        "deposit_code": code.upper() if code else None,
        "customer_name": _to_text(raw_row.get("customer_name")),
        "customer_phone": _to_text(raw_row.get("customer_phone")),
        "product_name": _to_text(raw_row.get("product_name")),
        "category": _to_text(raw_row.get("category")),
        "quantity": quantity,
        "remaining_qty": quantity if remaining in (None, "") else remaining,
        "table_number": _to_text(raw_row.get("table_number")),
        "status": _to_text(raw_row.get("status")) or DEPOSIT_STATUS_IN_STORE,
        "is_vip": _to_bool(raw_row.get("is_vip")),
        "expiry_date": raw_row.get("expiry_date"),
        "notes": _to_text(raw_row.get("notes")),
    }


def validate_row(row: dict[str, Any]) -> list[str]:
    """Check one normalized row; coerces quantities and expiry_date in place."""
    errors: list[str] = []
    if not row.get("customer_name"):
        errors.append("customer_name is required")
    if not row.get("product_name"):
        errors.append("product_name is required")

    quantity = remaining = None
    try:
        quantity = to_quantity(row.get("quantity"), "quantity")
        if quantity <= 0:
            errors.append("quantity must be > 0")
            quantity = None
    except ValidationError as exc:
        errors.append(str(exc))
    try:
        remaining = to_quantity(row.get("remaining_qty"), "remaining_qty")
        if remaining < 0:
            errors.append("remaining_qty must be >= 0")
            remaining = None
    except ValidationError as exc:
        errors.append(str(exc))
    if quantity is not None and remaining is not None and remaining > quantity:
        errors.append("remaining_qty cannot exceed quantity")
    row["quantity"], row["remaining_qty"] = quantity, remaining

    status = row.get("status")
    if status not in DEPOSIT_STATUSES:
        errors.append(f"unknown status '{status}'")
    elif remaining is not None and (status == DEPOSIT_STATUS_WITHDRAWN) != (remaining == 0):
        errors.append("status 'withdrawn' requires remaining_qty 0 and vice versa")

    if row.get("is_vip") is None:
        errors.append("is_vip must be true or false")

    expiry = row.get("expiry_date")
    if expiry not in (None, ""):
        try:
            row["expiry_date"] = parse_iso_datetime(str(expiry))
        except ValueError:
            errors.append("expiry_date must be an ISO-8601 date")
            row["expiry_date"] = None
    else:
        row["expiry_date"] = None
    if row.get("is_vip") and row["expiry_date"] is not None:
        errors.append("VIP deposits cannot have an expiry_date")

    return errors


def import_deposits(store_id: int, rows: list, *, actor: Optional[str] = None) -> dict:
    """
    Validate and insert a batch of deposit rows for one store.

    Returns:
        {"imported": [deposit dicts], "errors": [{"row": n, "errors": [...]}]}
    """
    if not isinstance(rows, list) or not rows:
        raise ValidationError("rows must be a non-empty list", field="rows")
    store = store_service.require_store(store_id)
    store_code = store.code

    existing_codes = {
        code for (code,) in db.session.query(Deposit.deposit_code).filter(Deposit.store_id == store_id)
    }
    seen: set[str] = set()
    accepted: list[dict] = []
    errors: list[dict] = []

    for number, raw in enumerate(rows, start=1):
        if not isinstance(raw, dict):
            errors.append({"row": number, "errors": ["row must be an object"]})
            continue
        row = normalize_row(raw)
        row_errors = validate_row(row)
        code = row["deposit_code"]
        if code:
            if code in existing_codes:
                row_errors.append(f"deposit_code {code} already exists in this store")
            elif code in seen:
                row_errors.append(f"deposit_code {code} appears more than once in this batch")
        if row_errors:
            errors.append({"row": number, "deposit_code": code, "errors": row_errors})
            continue
        if not code:
            code = deposit_service.generate_deposit_code(store_code)
            while code in existing_codes or code in seen:
                code = deposit_service.generate_deposit_code(store_code)
            row["deposit_code"] = code
        seen.add(code)
        accepted.append(row)

    def _op():
        deposits = []
        for row in accepted:
            deposit = Deposit(
                store_id=store_id,
                remaining_percent=deposit_service.remaining_percent(row["remaining_qty"], row["quantity"]),
                received_by=actor,
                **row,
            )
            db.session.add(deposit)
            deposits.append(deposit)
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            raise ConflictError("Import collided with concurrent deposits; re-run the batch") from exc
        return deposits

    deposits = run_with_retry(_op) if accepted else []

    if deposits:
        audit_service.record(
            store_id=store_id,
            action_type=audit_service.DEPOSIT_IMPORTED,
            table_name="deposits",
            record_id=None,
            new_value={
                "imported": len(deposits),
                "rejected": len(errors),
                "deposit_codes": [d.deposit_code for d in deposits],
            },
            actor=actor,
        )
    return {
        "imported": [d.to_dict() for d in deposits],
        "errors": errors,
    }
