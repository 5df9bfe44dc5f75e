# Overview: Append-only audit trail for deposit, withdrawal and transfer mutations.

from __future__ import annotations

import warnings
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from flask import current_app, g, has_request_context
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AuditEntry
from ..validation import AuditWriteWarning, ValidationError
from bottlekeep.time_utils import to_utc_z

"""
Audit Invariants

- Rows are appended, never updated or deleted.
- record() runs AFTER the business change has committed, in its own
  transaction. A failed audit write never undoes the business change; it is
  rolled back on its own, logged, and surfaced as AuditWriteWarning: queued on
  g.audit_warnings when a request is collecting them, warnings.warn otherwise.
- changed_by=None means the system acted (scheduled sweep).
- Batch operations write one entry per logical unit.
"""

DEPOSIT_CREATED = "DEPOSIT_CREATED"
DEPOSIT_BAR_CONFIRMED = "DEPOSIT_BAR_CONFIRMED"
DEPOSIT_STATUS_CHANGED = "DEPOSIT_STATUS_CHANGED"
DEPOSIT_VIP_CHANGED = "DEPOSIT_VIP_CHANGED"
DEPOSIT_EXPIRY_EXTENDED = "DEPOSIT_EXPIRY_EXTENDED"
DEPOSIT_IMPORTED = "DEPOSIT_IMPORTED"
WITHDRAWAL_REQUESTED = "WITHDRAWAL_REQUESTED"
WITHDRAWAL_APPROVED = "WITHDRAWAL_APPROVED"
WITHDRAWAL_COMPLETED = "WITHDRAWAL_COMPLETED"
WITHDRAWAL_REJECTED = "WITHDRAWAL_REJECTED"
TRANSFER_CREATED = "TRANSFER_CREATED"
TRANSFER_CONFIRMED = "TRANSFER_CONFIRMED"
TRANSFER_REJECTED = "TRANSFER_REJECTED"
CENTRAL_DEPOSIT_WITHDRAWN = "CENTRAL_DEPOSIT_WITHDRAWN"
CRON_EXPIRY_CHECK = "CRON_EXPIRY_CHECK"
CRON_DEPOSIT_EXPIRED = "CRON_DEPOSIT_EXPIRED"

AUDIT_ACTIONS = frozenset({
    DEPOSIT_CREATED,
    DEPOSIT_BAR_CONFIRMED,
    DEPOSIT_STATUS_CHANGED,
    DEPOSIT_VIP_CHANGED,
    DEPOSIT_EXPIRY_EXTENDED,
    DEPOSIT_IMPORTED,
    WITHDRAWAL_REQUESTED,
    WITHDRAWAL_APPROVED,
    WITHDRAWAL_COMPLETED,
    WITHDRAWAL_REJECTED,
    TRANSFER_CREATED,
    TRANSFER_CONFIRMED,
    TRANSFER_REJECTED,
    CENTRAL_DEPOSIT_WITHDRAWN,
    CRON_EXPIRY_CHECK,
    CRON_DEPOSIT_EXPIRED,
})


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return to_utc_z(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return value


def snapshot(obj, *fields: str) -> dict:
    """Pick `fields` off a model instance as a JSON-safe dict."""
    return {f: _jsonable(getattr(obj, f)) for f in fields}


def _write(entry: AuditEntry) -> None:
    db.session.add(entry)
    db.session.commit()


def record(
    *,
    store_id: Optional[int],
    action_type: str,
    table_name: Optional[str] = None,
    record_id: Any = None,
    old_value: Optional[dict] = None,
    new_value: Optional[dict] = None,
    actor: Optional[str] = None,
) -> Optional[AuditEntry]:
    """
    Append one audit entry; best effort.

    Returns the entry, or None when the write failed (the failure is queued
    for the current request, or issued as an AuditWriteWarning).
    """
    if action_type not in AUDIT_ACTIONS:
        raise ValidationError(f"Unknown audit action: {action_type}", field="action_type", value=action_type)

    entry = AuditEntry(
        store_id=store_id,
        action_type=action_type,
        table_name=table_name,
        record_id=str(record_id) if record_id is not None else None,
        old_value=_jsonable(old_value) if old_value is not None else None,
        new_value=_jsonable(new_value) if new_value is not None else None,
        changed_by=actor,
    )
    try:
        _write(entry)
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(
            "Audit write failed: action=%s table=%s record=%s", action_type, table_name, record_id
        )
        message = f"Audit entry {action_type} for {table_name}:{record_id} was not recorded"
        if has_request_context() and "audit_warnings" in g:
            g.audit_warnings.append(message)
        else:
            warnings.warn(message, AuditWriteWarning, stacklevel=2)
        return None
    return entry


def list_entries(
    *,
    store_id: Optional[int] = None,
    action_type: Optional[str] = None,
    table_name: Optional[str] = None,
    record_id: Any = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 200,
) -> list[AuditEntry]:
    """Newest first."""
    query = db.session.query(AuditEntry)
    if store_id is not None:
        query = query.filter(AuditEntry.store_id == store_id)
    if action_type:
        query = query.filter(AuditEntry.action_type == action_type)
    if table_name:
        query = query.filter(AuditEntry.table_name == table_name)
    if record_id is not None:
        query = query.filter(AuditEntry.record_id == str(record_id))
    if date_from is not None:
        query = query.filter(AuditEntry.created_at >= date_from)
    if date_to is not None:
        query = query.filter(AuditEntry.created_at <= date_to)
    return query.order_by(AuditEntry.id.desc()).limit(limit).all()
