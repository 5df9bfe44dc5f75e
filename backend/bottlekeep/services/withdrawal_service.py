# Overview: Withdrawal processing against deposit balances.

"""
Withdrawal Processor

LIFECYCLE:
1. PENDING: customer asked for the bottle; deposit moves to pending_withdrawal
2. APPROVED: staff acknowledged the request
3. COMPLETED: bottle handed over; actual_qty subtracted from the deposit
4. REJECTED: declined; deposit goes back to in_store if still waiting

ATOMICITY: completing a withdrawal marks the withdrawal row and decrements
the deposit in ONE commit. The decrement itself is a conditional UPDATE
(deposit_service.decrement_remaining), so two staff completing withdrawals
on the same deposit at once cannot both succeed past zero.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from bottlekeep import signals
from bottlekeep.extensions import db
from bottlekeep.models import Deposit, Withdrawal
from bottlekeep.models.deposits import (
    DEPOSIT_STATUS_IN_STORE,
    DEPOSIT_STATUS_PENDING_WITHDRAWAL,
    WITHDRAWAL_STATUSES,
    WITHDRAWAL_STATUS_APPROVED,
    WITHDRAWAL_STATUS_COMPLETED,
    WITHDRAWAL_STATUS_PENDING,
    WITHDRAWAL_STATUS_REJECTED,
)
from bottlekeep.services import audit_service, deposit_service, notification_service, store_service
from bottlekeep.services.concurrency import lock_for_update, run_with_retry
from bottlekeep.time_utils import utcnow
from bottlekeep.validation import (
    DepositError,
    InsufficientQuantityError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    require_positive_int,
    require_positive_quantity,
)


OPEN_STATUSES = frozenset({WITHDRAWAL_STATUS_PENDING, WITHDRAWAL_STATUS_APPROVED})

SETTLE_COMPLETE = "complete"
SETTLE_REJECT = "reject"


def load_withdrawal(store_id: int, withdrawal_id: int, *, lock: bool = False) -> Withdrawal:
    query = db.session.query(Withdrawal).filter(
        Withdrawal.store_id == store_id,
        Withdrawal.id == withdrawal_id,
    )
    if lock:
        query = lock_for_update(query)
    withdrawal = query.first()
    if not withdrawal:
        raise NotFoundError("Withdrawal", withdrawal_id)
    return withdrawal


def _require_open(withdrawal: Withdrawal) -> None:
    if withdrawal.status not in OPEN_STATUSES:
        raise InvalidStateError(
            f"Withdrawal {withdrawal.id} is '{withdrawal.status}'",
            current_status=withdrawal.status,
            allowed=set(OPEN_STATUSES),
        )


def _require_in_store(deposit: Deposit) -> None:
    if deposit.status != DEPOSIT_STATUS_IN_STORE:
        raise InvalidStateError(
            f"Deposit {deposit.deposit_code} is '{deposit.status}', must be 'in_store'",
            current_status=deposit.status,
            allowed={DEPOSIT_STATUS_IN_STORE},
        )


def _publish(withdrawal: Withdrawal, deposit: Deposit, action: str) -> None:
    signals.emit(signals.withdrawal_changed, withdrawal, action=action)
    deposit_service.publish(deposit, action)


def _notify_completed(store_id: int, withdrawal: Withdrawal, deposit: Deposit) -> None:
    if not store_service.get_settings(store_id).customer_notify_withdrawal_enabled:
        return
    notification_service.notify(notification_service.NotificationEvent(
        type=notification_service.WITHDRAWAL_COMPLETED,
        store_id=store_id,
        title="Withdrawal completed",
        body=(
            f"{withdrawal.customer_name} took {withdrawal.actual_qty} of {withdrawal.product_name} "
            f"({deposit.deposit_code}); {deposit.remaining_qty} left"
        ),
        data={
            "withdrawal_id": withdrawal.id,
            "deposit_id": deposit.id,
            "deposit_code": deposit.deposit_code,
            "remaining_qty": float(deposit.remaining_qty),
        },
    ))


def request_withdrawal(
    store_id: int,
    deposit_id: int,
    qty,
    *,
    requester: Optional[str] = None,
    table_number: Optional[str] = None,
    notes: Optional[str] = None,
) -> Withdrawal:
    """
    Open a pending withdrawal against an in-store deposit.

    Raises:
        ValidationError: qty <= 0 or malformed
        InsufficientQuantityError: qty > remaining_qty
        InvalidStateError: deposit is not in_store (or moved on concurrently)
        NotFoundError: deposit not in this store
    """
    qty = require_positive_quantity(qty, "qty")

    def _op():
        deposit = deposit_service.load_deposit(store_id, deposit_id, lock=True)
        _require_in_store(deposit)
        if qty > deposit.remaining_qty:
            raise InsufficientQuantityError(qty, Decimal(deposit.remaining_qty))

        if not deposit_service.transition_status(
            deposit,
            from_statuses={DEPOSIT_STATUS_IN_STORE},
            to_status=DEPOSIT_STATUS_PENDING_WITHDRAWAL,
        ):
            _require_in_store(deposit)

        withdrawal = Withdrawal(
            deposit_id=deposit.id,
            store_id=store_id,
            customer_name=deposit.customer_name,
            product_name=deposit.product_name,
            requested_qty=qty,
            table_number=table_number or deposit.table_number,
            status=WITHDRAWAL_STATUS_PENDING,
            requested_by=requester,
            notes=notes,
        )
        db.session.add(withdrawal)
        db.session.commit()
        return withdrawal, deposit

    withdrawal, deposit = run_with_retry(_op)
    audit_service.record(
        store_id=store_id,
        action_type=audit_service.WITHDRAWAL_REQUESTED,
        table_name="withdrawals",
        record_id=withdrawal.id,
        old_value={"deposit_status": DEPOSIT_STATUS_IN_STORE},
        new_value={
            "deposit_id": deposit.id,
            "deposit_status": deposit.status,
            "requested_qty": withdrawal.requested_qty,
        },
        actor=requester,
    )
    _publish(withdrawal, deposit, "withdrawal_requested")
    return withdrawal


def approve_withdrawal(store_id: int, withdrawal_id: int, *, processor: Optional[str] = None) -> Withdrawal:
    """pending -> approved. The deposit is untouched."""
    def _op():
        withdrawal = load_withdrawal(store_id, withdrawal_id, lock=True)
        if withdrawal.status != WITHDRAWAL_STATUS_PENDING:
            raise InvalidStateError(
                f"Withdrawal {withdrawal.id} is '{withdrawal.status}', must be 'pending'",
                current_status=withdrawal.status,
                allowed={WITHDRAWAL_STATUS_PENDING},
            )
        withdrawal.status = WITHDRAWAL_STATUS_APPROVED
        withdrawal.processed_by = processor
        db.session.commit()
        return withdrawal

    withdrawal = run_with_retry(_op)
    audit_service.record(
        store_id=store_id,
        action_type=audit_service.WITHDRAWAL_APPROVED,
        table_name="withdrawals",
        record_id=withdrawal.id,
        old_value={"status": WITHDRAWAL_STATUS_PENDING},
        new_value={"status": WITHDRAWAL_STATUS_APPROVED},
        actor=processor,
    )
    signals.emit(signals.withdrawal_changed, withdrawal, action="withdrawal_approved")
    return withdrawal


def complete_withdrawal(
    store_id: int,
    withdrawal_id: int,
    actual_qty,
    *,
    processor: Optional[str] = None,
) -> Withdrawal:
    """
    Hand over the bottle and book actual_qty against the deposit.

    Withdrawal and deposit change in a single commit. The deposit ends
    'withdrawn' when nothing is left, otherwise 'in_store'.

    Raises:
        ValidationError: actual_qty <= 0 or malformed
        InvalidStateError: withdrawal not pending/approved, or deposit no longer
            in_store / pending_withdrawal
        InsufficientQuantityError: actual_qty > remaining_qty
        ConflictError: the deposit balance changed between read and write
    """
    actual = require_positive_quantity(actual_qty, "actual_qty")

    def _op():
        withdrawal = load_withdrawal(store_id, withdrawal_id, lock=True)
        _require_open(withdrawal)
        deposit = deposit_service.load_deposit(store_id, withdrawal.deposit_id, lock=True)
        before = audit_service.snapshot(deposit, "remaining_qty", "status")

        deposit_service.decrement_remaining(deposit, actual)

        withdrawal.status = WITHDRAWAL_STATUS_COMPLETED
        withdrawal.actual_qty = actual
        withdrawal.processed_by = processor
        withdrawal.processed_at = utcnow()
        db.session.commit()
        return withdrawal, deposit, before

    withdrawal, deposit, before = run_with_retry(_op)
    audit_service.record(
        store_id=store_id,
        action_type=audit_service.WITHDRAWAL_COMPLETED,
        table_name="withdrawals",
        record_id=withdrawal.id,
        old_value=before,
        new_value={
            "remaining_qty": deposit.remaining_qty,
            "status": deposit.status,
            "actual_qty": withdrawal.actual_qty,
        },
        actor=processor,
    )
    _publish(withdrawal, deposit, "withdrawal_completed")
    _notify_completed(store_id, withdrawal, deposit)
    return withdrawal


def reject_withdrawal(
    store_id: int,
    withdrawal_id: int,
    *,
    processor: Optional[str] = None,
    reason: Optional[str] = None,
) -> Withdrawal:
    """
    Decline an open withdrawal.

    The deposit returns to in_store only if it is still pending_withdrawal;
    a status that moved on for another reason is left alone.
    """
    def _op():
        withdrawal = load_withdrawal(store_id, withdrawal_id, lock=True)
        _require_open(withdrawal)
        old_status = withdrawal.status
        deposit = deposit_service.load_deposit(store_id, withdrawal.deposit_id, lock=True)
        reverted = deposit_service.transition_status(
            deposit,
            from_statuses={DEPOSIT_STATUS_PENDING_WITHDRAWAL},
            to_status=DEPOSIT_STATUS_IN_STORE,
        )
        withdrawal.status = WITHDRAWAL_STATUS_REJECTED
        withdrawal.processed_by = processor
        withdrawal.processed_at = utcnow()
        if reason:
            withdrawal.notes = reason
        db.session.commit()
        return withdrawal, deposit, old_status, reverted

    withdrawal, deposit, old_status, reverted = run_with_retry(_op)
    audit_service.record(
        store_id=store_id,
        action_type=audit_service.WITHDRAWAL_REJECTED,
        table_name="withdrawals",
        record_id=withdrawal.id,
        old_value={"status": old_status},
        new_value={
            "status": WITHDRAWAL_STATUS_REJECTED,
            "reason": reason,
            "deposit_status": deposit.status,
            "deposit_reverted": reverted,
        },
        actor=processor,
    )
    _publish(withdrawal, deposit, "withdrawal_rejected")
    return withdrawal


def withdraw_now(
    store_id: int,
    deposit_id: int,
    qty,
    *,
    processor: Optional[str] = None,
    table_number: Optional[str] = None,
    notes: Optional[str] = None,
) -> Withdrawal:
    """
    Staff-initiated in-person withdrawal.

    Request and completion happen in one commit with actual_qty equal to the
    requested quantity; no pending withdrawal is ever visible.
    """
    qty = require_positive_quantity(qty, "qty")

    def _op():
        deposit = deposit_service.load_deposit(store_id, deposit_id, lock=True)
        _require_in_store(deposit)
        before = audit_service.snapshot(deposit, "remaining_qty", "status")

        deposit_service.decrement_remaining(deposit, qty)

        now = utcnow()
        withdrawal = Withdrawal(
            deposit_id=deposit.id,
            store_id=store_id,
            customer_name=deposit.customer_name,
            product_name=deposit.product_name,
            requested_qty=qty,
            actual_qty=qty,
            table_number=table_number or deposit.table_number,
            status=WITHDRAWAL_STATUS_COMPLETED,
            requested_by=processor,
            processed_by=processor,
            processed_at=now,
            notes=notes,
        )
        db.session.add(withdrawal)
        db.session.commit()
        return withdrawal, deposit, before

    withdrawal, deposit, before = run_with_retry(_op)
    audit_service.record(
        store_id=store_id,
        action_type=audit_service.WITHDRAWAL_COMPLETED,
        table_name="withdrawals",
        record_id=withdrawal.id,
        old_value=before,
        new_value={
            "remaining_qty": deposit.remaining_qty,
            "status": deposit.status,
            "actual_qty": withdrawal.actual_qty,
            "direct": True,
        },
        actor=processor,
    )
    _publish(withdrawal, deposit, "withdrawal_completed")
    _notify_completed(store_id, withdrawal, deposit)
    return withdrawal


def settle_withdrawals(store_id: int, items: list, *, processor: Optional[str] = None) -> list[dict]:
    """
    Settle several open withdrawals in one call.

    Each item is {"withdrawal_id", "action": "complete"|"reject",
    "actual_qty"?, "reason"?}. actual_qty defaults to the requested quantity.
    Every item runs in its own transaction; one failure never stops the rest.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list", field="items")

    results: list[dict] = []
    for index, item in enumerate(items):
        withdrawal_id = item.get("withdrawal_id") if isinstance(item, dict) else None
        try:
            if not isinstance(item, dict):
                raise ValidationError("item must be an object", field="items", value=index)
            withdrawal_id = require_positive_int(withdrawal_id, "withdrawal_id")
            action = item.get("action", SETTLE_COMPLETE)
            if action == SETTLE_COMPLETE:
                actual = item.get("actual_qty")
                if actual is None:
                    actual = load_withdrawal(store_id, withdrawal_id).requested_qty
                withdrawal = complete_withdrawal(store_id, withdrawal_id, actual, processor=processor)
            elif action == SETTLE_REJECT:
                withdrawal = reject_withdrawal(
                    store_id, withdrawal_id, processor=processor, reason=item.get("reason")
                )
            else:
                raise ValidationError("action must be 'complete' or 'reject'", field="action", value=action)
        except DepositError as exc:
            db.session.rollback()
            results.append({"index": index, "withdrawal_id": withdrawal_id, "ok": False, **exc.to_dict()})
            continue
        results.append({
            "index": index,
            "withdrawal_id": withdrawal.id,
            "ok": True,
            "status": withdrawal.status,
        })
    return results


def list_withdrawals(
    store_id: int,
    *,
    status: Optional[str] = None,
    deposit_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 200,
) -> list[Withdrawal]:
    query = db.session.query(Withdrawal).filter(Withdrawal.store_id == store_id)
    if status:
        if status not in WITHDRAWAL_STATUSES:
            raise ValidationError(
                f"Invalid status '{status}'. Must be one of: {', '.join(sorted(WITHDRAWAL_STATUSES))}",
                field="status",
                value=status,
            )
        query = query.filter(Withdrawal.status == status)
    if deposit_id is not None:
        query = query.filter(Withdrawal.deposit_id == deposit_id)
    if date_from is not None:
        query = query.filter(Withdrawal.created_at >= date_from)
    if date_to is not None:
        query = query.filter(Withdrawal.created_at <= date_to)
    return query.order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc()).limit(limit).all()
