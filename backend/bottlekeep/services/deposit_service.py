# Overview: Deposit ledger; intake, status lifecycle, quantity bookkeeping and reads.

"""
Deposit Ledger

================================================================================
STATE MACHINE
================================================================================

    pending_confirm    -> in_store, expired
    in_store           -> pending_withdrawal, withdrawn, expired,
                          transfer_pending, transferred_out
    pending_withdrawal -> in_store, withdrawn
    transfer_pending   -> in_store, transferred_out
    expired            -> in_store            (only by enabling VIP)
    withdrawn          -> (terminal)
    transferred_out    -> (terminal)

RULES:
1. 0 <= remaining_qty <= quantity, always.
2. status == withdrawn  <=>  remaining_qty == 0.
3. VIP deposits carry no expiry_date.
4. quantity and deposit_code never change after intake.
5. remaining_qty only moves through decrement_remaining(), a conditional
   UPDATE keyed on the value that was read. A zero-row result is re-read and
   reported; it is never overwritten.
6. Status hand-offs driven by other services (withdrawals, transfers) go
   through transition_status(), also a guarded UPDATE.

Every mutation commits its own short transaction, then writes its audit entry
(best effort, see audit_service), then publishes signals and notifications.
================================================================================
"""

from __future__ import annotations

import secrets
import string
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from bottlekeep import signals
from bottlekeep.extensions import db
from bottlekeep.models import Deposit, Store
from bottlekeep.models.deposits import (
    DEPOSIT_STATUSES,
    DEPOSIT_STATUS_EXPIRED,
    DEPOSIT_STATUS_IN_STORE,
    DEPOSIT_STATUS_PENDING_CONFIRM,
    DEPOSIT_STATUS_PENDING_WITHDRAWAL,
    DEPOSIT_STATUS_TRANSFER_PENDING,
    DEPOSIT_STATUS_TRANSFERRED_OUT,
    DEPOSIT_STATUS_WITHDRAWN,
)
from bottlekeep.services import audit_service, expiry_policy, notification_service, store_service
from bottlekeep.services.concurrency import lock_for_update, run_with_retry
from bottlekeep.time_utils import days_until, expiry_from_days, to_utc_naive, to_utc_z, utcnow
from bottlekeep.validation import (
    ConflictError,
    InsufficientQuantityError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    require_positive_int,
    require_positive_quantity,
)


VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    DEPOSIT_STATUS_PENDING_CONFIRM: frozenset({DEPOSIT_STATUS_IN_STORE, DEPOSIT_STATUS_EXPIRED}),
    DEPOSIT_STATUS_IN_STORE: frozenset({
        DEPOSIT_STATUS_PENDING_WITHDRAWAL,
        DEPOSIT_STATUS_WITHDRAWN,
        DEPOSIT_STATUS_EXPIRED,
        DEPOSIT_STATUS_TRANSFER_PENDING,
        DEPOSIT_STATUS_TRANSFERRED_OUT,
    }),
    DEPOSIT_STATUS_PENDING_WITHDRAWAL: frozenset({DEPOSIT_STATUS_IN_STORE, DEPOSIT_STATUS_WITHDRAWN}),
    DEPOSIT_STATUS_TRANSFER_PENDING: frozenset({DEPOSIT_STATUS_IN_STORE, DEPOSIT_STATUS_TRANSFERRED_OUT}),
    DEPOSIT_STATUS_EXPIRED: frozenset({DEPOSIT_STATUS_IN_STORE}),
    DEPOSIT_STATUS_WITHDRAWN: frozenset(),
    DEPOSIT_STATUS_TRANSFERRED_OUT: frozenset(),
}

TERMINAL_STATUSES = frozenset({DEPOSIT_STATUS_WITHDRAWN, DEPOSIT_STATUS_TRANSFERRED_OUT})

# Statuses a completed withdrawal may draw from
WITHDRAWABLE_STATUSES = frozenset({DEPOSIT_STATUS_IN_STORE, DEPOSIT_STATUS_PENDING_WITHDRAWAL})

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_SUFFIX_LENGTH = 5
CODE_ATTEMPTS = 5

HUNDRED = Decimal("100")
CENT = Decimal("0.01")


def validate_status(status: str) -> str:
    """Reject status strings outside the known set."""
    if status not in DEPOSIT_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(sorted(DEPOSIT_STATUSES))}",
            field="status",
            value=status,
        )
    return status


def can_transition(from_status: str, to_status: str) -> bool:
    validate_status(from_status)
    validate_status(to_status)
    return to_status in VALID_TRANSITIONS[from_status]


def require_transition(deposit: Deposit, to_status: str) -> None:
    if not can_transition(deposit.status, to_status):
        raise InvalidStateError(
            f"Deposit {deposit.deposit_code} cannot move from '{deposit.status}' to '{to_status}'",
            current_status=deposit.status,
            allowed=set(VALID_TRANSITIONS[deposit.status]),
        )


def remaining_percent(remaining: Decimal, quantity: Decimal) -> Decimal:
    if not quantity:
        return Decimal("0.00")
    return (Decimal(remaining) / Decimal(quantity) * HUNDRED).quantize(CENT)


def generate_deposit_code(store_code: str) -> str:
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))
    return f"DEP-{store_code}-{suffix}"


def publish(deposit: Deposit, action: str) -> None:
    signals.emit(signals.deposit_changed, deposit, action=action)


# =============================================================================
# Loading
# =============================================================================

def _deposit_query(store_id: int):
    return db.session.query(Deposit).filter(Deposit.store_id == store_id)


def load_deposit(store_id: int, deposit_id: int, *, lock: bool = False) -> Deposit:
    """
    Fetch a deposit scoped to its store.

    A deposit that exists under another store is reported as not found.
    """
    query = _deposit_query(store_id).filter(Deposit.id == deposit_id)
    if lock:
        query = lock_for_update(query)
    deposit = query.first()
    if not deposit:
        raise NotFoundError("Deposit", deposit_id)
    return deposit


def get_deposit(store_id: int, deposit_id: int) -> Deposit:
    return load_deposit(store_id, deposit_id)


def get_deposit_by_code(store_id: int, deposit_code: str) -> Deposit:
    code = (deposit_code or "").strip().upper()
    deposit = _deposit_query(store_id).filter(Deposit.deposit_code == code).first()
    if not deposit:
        raise NotFoundError("Deposit", deposit_code)
    return deposit


# =============================================================================
# Guarded writes shared with withdrawal / transfer services
# =============================================================================

def transition_status(deposit: Deposit, *, from_statuses: Iterable[str], to_status: str) -> bool:
    """
    Conditionally move a deposit between statuses.

    Issues UPDATE ... WHERE id = ? AND status IN (from_statuses) and reports
    whether the row was changed. Does not commit; the caller owns the
    transaction. The in-memory deposit is refreshed either way.
    """
    from_statuses = frozenset(from_statuses)
    for from_status in from_statuses:
        if not can_transition(from_status, to_status):
            raise InvalidStateError(
                f"'{from_status}' -> '{to_status}' is not a deposit transition",
                current_status=from_status,
            )

    stmt = (
        update(Deposit)
        .where(Deposit.id == deposit.id, Deposit.status.in_(sorted(from_statuses)))
        .values(status=to_status, version_id=Deposit.version_id + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    db.session.refresh(deposit)
    return result.rowcount == 1


def decrement_remaining(deposit: Deposit, qty: Decimal) -> Deposit:
    """
    Subtract `qty` from a deposit's remaining quantity.

    The UPDATE is keyed on the remaining_qty read into `deposit` and on the
    status still permitting a withdrawal. Status becomes 'withdrawn' at zero,
    otherwise 'in_store'. Does not commit.

    Raises (after re-reading the row when the UPDATE matched nothing):
        InvalidStateError: status no longer permits a withdrawal
        InsufficientQuantityError: qty exceeds what is left
        ConflictError: remaining_qty moved underneath us
    """
    if deposit.status not in WITHDRAWABLE_STATUSES:
        raise InvalidStateError(
            f"Deposit {deposit.deposit_code} is '{deposit.status}' and cannot be withdrawn from",
            current_status=deposit.status,
            allowed=set(WITHDRAWABLE_STATUSES),
        )
    expected = Decimal(deposit.remaining_qty)
    if qty > expected:
        raise InsufficientQuantityError(qty, expected)

    new_remaining = (expected - qty).quantize(CENT)
    new_status = DEPOSIT_STATUS_WITHDRAWN if new_remaining == 0 else DEPOSIT_STATUS_IN_STORE

    stmt = (
        update(Deposit)
        .where(
            Deposit.id == deposit.id,
            Deposit.remaining_qty == expected,
            Deposit.status.in_(sorted(WITHDRAWABLE_STATUSES)),
        )
        .values(
            remaining_qty=new_remaining,
            remaining_percent=remaining_percent(new_remaining, deposit.quantity),
            status=new_status,
            version_id=Deposit.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    db.session.refresh(deposit)
    if result.rowcount == 1:
        return deposit

    if deposit.status not in WITHDRAWABLE_STATUSES:
        raise InvalidStateError(
            f"Deposit {deposit.deposit_code} is '{deposit.status}' and cannot be withdrawn from",
            current_status=deposit.status,
            allowed=set(WITHDRAWABLE_STATUSES),
        )
    if qty > deposit.remaining_qty:
        raise InsufficientQuantityError(qty, Decimal(deposit.remaining_qty))
    raise ConflictError(
        f"Deposit {deposit.deposit_code} changed concurrently; re-read and retry"
    )


# =============================================================================
# Intake
# =============================================================================

def create_deposit(
    store_id: int,
    *,
    customer_name: str,
    product_name: str,
    quantity,
    customer_phone: Optional[str] = None,
    line_user_id: Optional[str] = None,
    category: Optional[str] = None,
    table_number: Optional[str] = None,
    notes: Optional[str] = None,
    photo_url: Optional[str] = None,
    customer_photo_url: Optional[str] = None,
    is_vip: bool = False,
    expiry_days=None,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Deposit:
    """
    Record a customer's bottle at intake.

    Args:
        store_id: Store holding the bottle
        quantity: Amount deposited, > 0
        is_vip: VIP deposits get no expiry date
        expiry_days: Days until expiry; defaults to the store's default_expiry_days
        actor: Staff identifier recorded as received_by and in the audit trail

    Returns:
        The committed deposit, status 'in_store' (or 'pending_confirm' when
        the store requires bar confirmation)

    Raises:
        ValidationError: missing names, non-positive quantity or expiry_days
        NotFoundError: unknown store
    """
    customer = (customer_name or "").strip()
    product = (product_name or "").strip()
    if not customer:
        raise ValidationError("customer_name is required", field="customer_name")
    if not product:
        raise ValidationError("product_name is required", field="product_name")
    qty = require_positive_quantity(quantity, "quantity")
    if is_vip is not None and not isinstance(is_vip, bool):
        raise ValidationError("is_vip must be true or false", field="is_vip", value=is_vip)

    store = store_service.require_store(store_id)
    settings = store_service.get_settings(store_id)
    days = settings.default_expiry_days if expiry_days is None else require_positive_int(expiry_days, "expiry_days")
    status = DEPOSIT_STATUS_PENDING_CONFIRM if settings.require_bar_confirmation else DEPOSIT_STATUS_IN_STORE
    expiry = None if is_vip else expiry_from_days(days, store.timezone, now)
    notify_enabled = settings.customer_notify_deposit_enabled
    store_code = store.code

    def _insert():
        code = generate_deposit_code(store_code)
        if _deposit_query(store_id).filter(Deposit.deposit_code == code).first():
            return None
        candidate = Deposit(
            store_id=store_id,
            deposit_code=code,
            customer_name=customer,
            customer_phone=customer_phone,
            line_user_id=line_user_id,
            product_name=product,
            category=category,
            quantity=qty,
            remaining_qty=qty,
            remaining_percent=Decimal("100.00"),
            table_number=table_number,
            status=status,
            is_vip=bool(is_vip),
            expiry_date=expiry,
            notes=notes,
            photo_url=photo_url,
            customer_photo_url=customer_photo_url,
            received_by=actor,
        )
        db.session.add(candidate)
        try:
            db.session.commit()
        except IntegrityError:
            # Code collided with a concurrent intake
            db.session.rollback()
            return None
        return candidate

    deposit = None
    for _ in range(CODE_ATTEMPTS):
        deposit = run_with_retry(_insert)
        if deposit is not None:
            break
    if deposit is None:
        raise ConflictError("Could not allocate a unique deposit code")

    audit_service.record(
        store_id=store_id,
        action_type=audit_service.DEPOSIT_CREATED,
        table_name="deposits",
        record_id=deposit.id,
        new_value=audit_service.snapshot(
            deposit, "deposit_code", "customer_name", "product_name", "quantity", "status", "is_vip", "expiry_date"
        ),
        actor=actor,
    )
    publish(deposit, "created")
    if notify_enabled:
        notification_service.notify(notification_service.NotificationEvent(
            type=notification_service.NEW_DEPOSIT,
            store_id=store_id,
            title="New deposit",
            body=f"{deposit.customer_name} deposited {deposit.product_name} ({deposit.deposit_code})",
            data={"deposit_id": deposit.id, "deposit_code": deposit.deposit_code},
        ))
    return deposit


def confirm_deposit(store_id: int, deposit_id: int, *, actor: Optional[str] = None) -> Deposit:
    """Bar confirms a received bottle: pending_confirm -> in_store."""
    def _op():
        deposit = load_deposit(store_id, deposit_id, lock=True)
        if deposit.status != DEPOSIT_STATUS_PENDING_CONFIRM:
            raise InvalidStateError(
                f"Deposit {deposit.deposit_code} is not awaiting confirmation",
                current_status=deposit.status,
                allowed={DEPOSIT_STATUS_PENDING_CONFIRM},
            )
        require_transition(deposit, DEPOSIT_STATUS_IN_STORE)
        deposit.status = DEPOSIT_STATUS_IN_STORE
        db.session.commit()
        return deposit

    deposit = run_with_retry(_op)
    audit_service.record(
        store_id=store_id,
        action_type=audit_service.DEPOSIT_BAR_CONFIRMED,
        table_name="deposits",
        record_id=deposit.id,
        old_value={"status": DEPOSIT_STATUS_PENDING_CONFIRM},
        new_value={"status": DEPOSIT_STATUS_IN_STORE},
        actor=actor,
    )
    publish(deposit, "confirmed")
    return deposit


# =============================================================================
# VIP & expiry
# =============================================================================

def set_vip(store_id: int, deposit_id: int, enable: bool, *, actor: Optional[str] = None) -> Deposit:
    """
    Toggle VIP status.

    Enabling clears expiry_date and brings an expired deposit back to
    in_store. Disabling leaves expiry_date empty; staff supply a new date with
    set_expiry_date(). Withdrawn and transferred-out deposits cannot change.
    """
    if not isinstance(enable, bool):
        raise ValidationError("is_vip must be true or false", field="is_vip", value=enable)

    def _op():
        deposit = load_deposit(store_id, deposit_id, lock=True)
        if deposit.status in TERMINAL_STATUSES:
            raise InvalidStateError(
                f"Deposit {deposit.deposit_code} is '{deposit.status}' and can no longer change",
                current_status=deposit.status,
            )
        old = audit_service.snapshot(deposit, "is_vip", "expiry_date", "status")
        if deposit.is_vip == enable:
            return deposit, old, None

        deposit.is_vip = enable
        if enable:
            deposit.expiry_date = None
            if deposit.status == DEPOSIT_STATUS_EXPIRED:
                require_transition(deposit, DEPOSIT_STATUS_IN_STORE)
                deposit.status = DEPOSIT_STATUS_IN_STORE
        db.session.commit()
        return deposit, old, audit_service.snapshot(deposit, "is_vip", "expiry_date", "status")

    deposit, old, new = run_with_retry(_op)
    if new is None:
        return deposit

    audit_service.record(
        store_id=store_id,
        action_type=audit_service.DEPOSIT_VIP_CHANGED,
        table_name="deposits",
        record_id=deposit.id,
        old_value=old,
        new_value=new,
        actor=actor,
    )
    publish(deposit, "vip_changed")
    return deposit


def mark_expired(
    store_id: int,
    deposit_id: int,
    *,
    notify_customer: bool = False,
    actor: Optional[str] = None,
    action_type: str = audit_service.DEPOSIT_STATUS_CHANGED,
) -> Deposit:
    """
    Mark a deposit expired (in_store / pending_confirm, non-VIP only).

    The expiry sweep calls this with actor=None and CRON_DEPOSIT_EXPIRED.
    """
    def _op():
        deposit = load_deposit(store_id, deposit_id, lock=True)
        if not expiry_policy.can_mark_expired(deposit):
            raise InvalidStateError(
                f"Deposit {deposit.deposit_code} cannot be marked expired "
                f"(status '{deposit.status}', vip={deposit.is_vip})",
                current_status=deposit.status,
                allowed=set(expiry_policy.EXPIRABLE_STATUSES),
            )
        old_status = deposit.status
        require_transition(deposit, DEPOSIT_STATUS_EXPIRED)
        deposit.status = DEPOSIT_STATUS_EXPIRED
        db.session.commit()
        return deposit, old_status

    deposit, old_status = run_with_retry(_op)
    audit_service.record(
        store_id=store_id,
        action_type=action_type,
        table_name="deposits",
        record_id=deposit.id,
        old_value={"status": old_status},
        new_value={"status": DEPOSIT_STATUS_EXPIRED},
        actor=actor,
    )
    publish(deposit, "expired")

    if notify_customer and store_service.get_settings(store_id).customer_notify_expiry_enabled:
        notification_service.notify(notification_service.NotificationEvent(
            type=notification_service.DEPOSIT_EXPIRED,
            store_id=store_id,
            title="Deposit expired",
            body=f"{deposit.product_name} ({deposit.deposit_code}) for {deposit.customer_name} has expired",
            data={"deposit_id": deposit.id, "deposit_code": deposit.deposit_code},
        ))
    return deposit


def extend_expiry(
    store_id: int,
    deposit_id: int,
    days,
    *,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Deposit:
    """Push expiry out by `days` from max(now, current expiry)."""
    days = require_positive_int(days, "days")
    now = to_utc_naive(now) if now else utcnow()

    def _op():
        deposit = load_deposit(store_id, deposit_id, lock=True)
        if not expiry_policy.can_extend_expiry(deposit):
            raise InvalidStateError(
                f"Deposit {deposit.deposit_code} expiry cannot be extended "
                f"(status '{deposit.status}', vip={deposit.is_vip})",
                current_status=deposit.status,
                allowed={DEPOSIT_STATUS_IN_STORE},
            )
        old = deposit.expiry_date
        deposit.expiry_date = expiry_policy.extended_expiry(old, now, days)
        db.session.commit()
        return deposit, old

    deposit, old = run_with_retry(_op)
    audit_service.record(
        store_id=store_id,
        action_type=audit_service.DEPOSIT_EXPIRY_EXTENDED,
        table_name="deposits",
        record_id=deposit.id,
        old_value={"expiry_date": old},
        new_value={"expiry_date": deposit.expiry_date, "days": days},
        actor=actor,
    )
    publish(deposit, "expiry_extended")
    return deposit


def set_expiry_date(
    store_id: int,
    deposit_id: int,
    expiry_date: datetime,
    *,
    actor: Optional[str] = None,
) -> Deposit:
    """Set an explicit expiry, e.g. after VIP has been switched off."""
    if not isinstance(expiry_date, datetime):
        raise ValidationError("expiry_date must be a datetime", field="expiry_date", value=expiry_date)
    expiry_date = to_utc_naive(expiry_date)

    def _op():
        deposit = load_deposit(store_id, deposit_id, lock=True)
        if deposit.is_vip or deposit.status not in expiry_policy.EXPIRABLE_STATUSES:
            raise InvalidStateError(
                f"Deposit {deposit.deposit_code} cannot take an expiry date "
                f"(status '{deposit.status}', vip={deposit.is_vip})",
                current_status=deposit.status,
                allowed=set(expiry_policy.EXPIRABLE_STATUSES),
            )
        old = deposit.expiry_date
        deposit.expiry_date = expiry_date
        db.session.commit()
        return deposit, old

    deposit, old = run_with_retry(_op)
    audit_service.record(
        store_id=store_id,
        action_type=audit_service.DEPOSIT_EXPIRY_EXTENDED,
        table_name="deposits",
        record_id=deposit.id,
        old_value={"expiry_date": old},
        new_value={"expiry_date": deposit.expiry_date},
        actor=actor,
    )
    publish(deposit, "expiry_set")
    return deposit


# =============================================================================
# Reads
# =============================================================================

def list_deposits(
    store_id: int,
    *,
    status: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    is_vip: Optional[bool] = None,
    limit: int = 200,
) -> list[Deposit]:
    query = _deposit_query(store_id)
    if status:
        statuses = [validate_status(s.strip()) for s in status.split(",") if s.strip()]
        query = query.filter(Deposit.status.in_(statuses))
    if date_from is not None:
        query = query.filter(Deposit.created_at >= date_from)
    if date_to is not None:
        query = query.filter(Deposit.created_at <= date_to)
    if is_vip is not None:
        query = query.filter(Deposit.is_vip.is_(is_vip))
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            Deposit.deposit_code.ilike(pattern),
            Deposit.customer_name.ilike(pattern),
            Deposit.customer_phone.ilike(pattern),
            Deposit.product_name.ilike(pattern),
        ))
    return query.order_by(Deposit.created_at.desc(), Deposit.id.desc()).limit(limit).all()


def list_expiring(
    store_id: int,
    *,
    now: Optional[datetime] = None,
    threshold_days: Optional[int] = None,
) -> list[Deposit]:
    """In-store non-VIP deposits inside the store's warning window, soonest first."""
    if threshold_days is None:
        threshold_days = store_service.get_settings(store_id).expiry_warning_days
    candidates = (
        _deposit_query(store_id)
        .filter(
            Deposit.status == DEPOSIT_STATUS_IN_STORE,
            Deposit.is_vip.is_(False),
            Deposit.expiry_date.isnot(None),
        )
        .order_by(Deposit.expiry_date.asc())
        .all()
    )
    return [d for d in candidates if expiry_policy.is_expiring_soon(d, now, threshold_days)]


def build_print_payload(store_id: int, deposit_id: int, *, now: Optional[datetime] = None) -> dict:
    """Snapshot handed to the label/receipt printer."""
    deposit = load_deposit(store_id, deposit_id)
    store: Store = deposit.store
    settings = store_service.get_settings(store_id)
    return {
        "store": {"id": store.id, "code": store.code, "name": store.name},
        "deposit": deposit.to_dict(),
        "days_until_expiry": (
            days_until(deposit.expiry_date, now) if deposit.expiry_date is not None else None
        ),
        "settings": {
            "default_expiry_days": settings.default_expiry_days,
            "expiry_warning_days": settings.expiry_warning_days,
        },
        "printed_at": to_utc_z(to_utc_naive(now) if now else utcnow()),
    }
