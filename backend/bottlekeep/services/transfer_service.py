# backend/bottlekeep/services/transfer_service.py
"""
Transfers of deposits to the central (HQ) store.

WHY: Unclaimed or long-held bottles are moved from a branch to the central
warehouse. The branch deposit stops being withdrawable; the stock continues
as a CentralDeposit at HQ.

LIFECYCLE:
1. PENDING: branch handed the bottle over (deposit: transfer_pending)
2. CONFIRMED: HQ received it (deposit: transferred_out, CentralDeposit created)
3. REJECTED: HQ refused or branch cancelled (deposit: back to in_store)

Stores that do not require transfer confirmation skip PENDING: the transfer
is created CONFIRMED and the deposit goes straight to transferred_out.

NO DOUBLE TRANSFER: a deposit is on at most one non-rejected transfer. The
deposit status hand-off is a guarded UPDATE and the transfers table has a
partial unique index on deposit_id, so a racing second request fails.
"""
from __future__ import annotations

from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from bottlekeep import signals
from bottlekeep.extensions import db
from bottlekeep.models import CentralDeposit, Deposit, Store, Transfer
from bottlekeep.models.deposits import (
    DEPOSIT_STATUS_IN_STORE,
    DEPOSIT_STATUS_TRANSFER_PENDING,
    DEPOSIT_STATUS_TRANSFERRED_OUT,
)
from bottlekeep.models.transfers import (
    CENTRAL_DEPOSIT_STATUS_AWAITING,
    CENTRAL_DEPOSIT_STATUS_WITHDRAWN,
    TRANSFER_STATUSES,
    TRANSFER_STATUS_CONFIRMED,
    TRANSFER_STATUS_PENDING,
    TRANSFER_STATUS_REJECTED,
)
from bottlekeep.services import audit_service, deposit_service, store_service
from bottlekeep.services.concurrency import lock_for_update, run_with_retry
from bottlekeep.time_utils import utcnow
from bottlekeep.validation import (
    DepositError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)


DIRECTION_OUTGOING = "outgoing"
DIRECTION_INCOMING = "incoming"


def get_central_store() -> Store:
    store = (
        db.session.query(Store)
        .filter(Store.is_central.is_(True), Store.is_active.is_(True))
        .first()
    )
    if not store:
        raise NotFoundError("Store", "central")
    return store


def _publish(transfer: Transfer, deposit: Deposit, action: str) -> None:
    signals.emit(signals.transfer_changed, transfer, action=action)
    deposit_service.publish(deposit, action)


def _live_transfer(deposit_id: int) -> Optional[Transfer]:
    return (
        db.session.query(Transfer)
        .filter(Transfer.deposit_id == deposit_id, Transfer.status != TRANSFER_STATUS_REJECTED)
        .first()
    )


def _receive(transfer: Transfer, deposit: Deposit, *, received_by: Optional[str],
             photo_url: Optional[str] = None, notes: Optional[str] = None) -> CentralDeposit:
    central = CentralDeposit(
        store_id=transfer.to_store_id,
        transfer_id=transfer.id,
        deposit_id=deposit.id,
        from_store_id=transfer.from_store_id,
        deposit_code=deposit.deposit_code,
        customer_name=deposit.customer_name,
        product_name=transfer.product_name,
        category=deposit.category,
        quantity=transfer.quantity,
        status=CENTRAL_DEPOSIT_STATUS_AWAITING,
        received_by=received_by,
        received_photo_url=photo_url,
        received_at=utcnow(),
        notes=notes,
    )
    db.session.add(central)
    return central


def create_transfer(
    store_id: int,
    deposit_id: int,
    *,
    to_store_id: Optional[int] = None,
    requester: Optional[str] = None,
    notes: Optional[str] = None,
    photo_url: Optional[str] = None,
) -> Transfer:
    """
    Send an in-store deposit to the central store.

    Args:
        store_id: Origin store (owns the deposit)
        deposit_id: Deposit to move
        to_store_id: Destination; must be the central store when given
        requester: Staff identifier

    Returns:
        Transfer, PENDING or CONFIRMED depending on the origin store's
        require_transfer_confirmation setting

    Raises:
        ValidationError: destination is not the central store, or origin is it
        InvalidStateError: deposit not in_store, or already on a live transfer
        NotFoundError: deposit or central store missing
    """
    central = get_central_store()
    central_id = central.id
    if to_store_id is not None and to_store_id != central_id:
        raise ValidationError("Transfers must go to the central store", field="to_store_id", value=to_store_id)
    if store_id == central_id:
        raise ValidationError("The central store cannot transfer to itself", field="store_id", value=store_id)
    require_confirmation = store_service.get_settings(store_id).require_transfer_confirmation

    def _op():
        deposit = deposit_service.load_deposit(store_id, deposit_id, lock=True)
        existing = _live_transfer(deposit.id)
        if existing:
            raise InvalidStateError(
                f"Deposit {deposit.deposit_code} is already on transfer {existing.id} ({existing.status})",
                current_status=deposit.status,
            )
        if deposit.status != DEPOSIT_STATUS_IN_STORE:
            raise InvalidStateError(
                f"Deposit {deposit.deposit_code} is '{deposit.status}', must be 'in_store'",
                current_status=deposit.status,
                allowed={DEPOSIT_STATUS_IN_STORE},
            )

        target = DEPOSIT_STATUS_TRANSFER_PENDING if require_confirmation else DEPOSIT_STATUS_TRANSFERRED_OUT
        if not deposit_service.transition_status(
            deposit, from_statuses={DEPOSIT_STATUS_IN_STORE}, to_status=target
        ):
            raise InvalidStateError(
                f"Deposit {deposit.deposit_code} moved to '{deposit.status}' before the transfer",
                current_status=deposit.status,
                allowed={DEPOSIT_STATUS_IN_STORE},
            )

        now = utcnow()
        transfer = Transfer(
            from_store_id=store_id,
            to_store_id=central_id,
            deposit_id=deposit.id,
            product_name=deposit.product_name,
            quantity=deposit.remaining_qty,
            status=TRANSFER_STATUS_PENDING if require_confirmation else TRANSFER_STATUS_CONFIRMED,
            requested_by=requester,
            confirmed_by=None if require_confirmation else requester,
            notes=notes,
            photo_url=photo_url,
            resolved_at=None if require_confirmation else now,
        )
        db.session.add(transfer)
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            raise InvalidStateError(
                f"Deposit {deposit_id} is already on a live transfer",
                current_status=DEPOSIT_STATUS_TRANSFER_PENDING,
            ) from exc

        if not require_confirmation:
            _receive(transfer, deposit, received_by=requester, photo_url=photo_url)
        db.session.commit()
        return transfer, deposit

    transfer, deposit = run_with_retry(_op)
    audit_service.record(
        store_id=store_id,
        action_type=audit_service.TRANSFER_CREATED,
        table_name="transfers",
        record_id=transfer.id,
        old_value={"deposit_status": DEPOSIT_STATUS_IN_STORE},
        new_value={
            "deposit_id": deposit.id,
            "deposit_code": deposit.deposit_code,
            "to_store_id": transfer.to_store_id,
            "quantity": transfer.quantity,
            "status": transfer.status,
            "deposit_status": deposit.status,
        },
        actor=requester,
    )
    _publish(transfer, deposit, "transfer_created")
    return transfer


def _load_transfer(transfer_id: int, *, lock: bool = False) -> Transfer:
    query = db.session.query(Transfer).filter(Transfer.id == transfer_id)
    if lock:
        query = lock_for_update(query)
    transfer = query.first()
    if not transfer:
        raise NotFoundError("Transfer", transfer_id)
    return transfer


def _require_pending(transfer: Transfer) -> None:
    if transfer.status != TRANSFER_STATUS_PENDING:
        raise InvalidStateError(
            f"Transfer {transfer.id} is '{transfer.status}', must be 'pending'",
            current_status=transfer.status,
            allowed={TRANSFER_STATUS_PENDING},
        )


def confirm_transfer(
    store_id: int,
    transfer_id: int,
    *,
    confirmer: Optional[str] = None,
    photo_url: Optional[str] = None,
    notes: Optional[str] = None,
) -> Transfer:
    """
    Central store accepts a pending transfer.

    The origin deposit becomes transferred_out and a CentralDeposit takes
    over the stock.
    """
    def _op():
        transfer = _load_transfer(transfer_id, lock=True)
        if transfer.to_store_id != store_id:
            raise NotFoundError("Transfer", transfer_id)
        _require_pending(transfer)

        deposit = deposit_service.load_deposit(transfer.from_store_id, transfer.deposit_id, lock=True)
        if not deposit_service.transition_status(
            deposit,
            from_statuses={DEPOSIT_STATUS_TRANSFER_PENDING},
            to_status=DEPOSIT_STATUS_TRANSFERRED_OUT,
        ):
            raise InvalidStateError(
                f"Deposit {deposit.deposit_code} is '{deposit.status}', must be 'transfer_pending'",
                current_status=deposit.status,
                allowed={DEPOSIT_STATUS_TRANSFER_PENDING},
            )

        transfer.status = TRANSFER_STATUS_CONFIRMED
        transfer.confirmed_by = confirmer
        transfer.confirm_photo_url = photo_url
        transfer.resolved_at = utcnow()
        if notes:
            transfer.notes = notes
        _receive(transfer, deposit, received_by=confirmer, photo_url=photo_url, notes=notes)
        db.session.commit()
        return transfer, deposit

    transfer, deposit = run_with_retry(_op)
    audit_service.record(
        store_id=store_id,
        action_type=audit_service.TRANSFER_CONFIRMED,
        table_name="transfers",
        record_id=transfer.id,
        old_value={"status": TRANSFER_STATUS_PENDING, "deposit_status": DEPOSIT_STATUS_TRANSFER_PENDING},
        new_value={"status": TRANSFER_STATUS_CONFIRMED, "deposit_status": deposit.status},
        actor=confirmer,
    )
    _publish(transfer, deposit, "transfer_confirmed")
    return transfer


def reject_transfer(
    store_id: int,
    transfer_id: int,
    *,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
) -> Transfer:
    """
    Refuse (central store) or cancel (origin store) a pending transfer.

    The deposit goes back to in_store only if it is still transfer_pending.
    """
    def _op():
        transfer = _load_transfer(transfer_id, lock=True)
        if store_id not in (transfer.from_store_id, transfer.to_store_id):
            raise NotFoundError("Transfer", transfer_id)
        _require_pending(transfer)

        deposit = deposit_service.load_deposit(transfer.from_store_id, transfer.deposit_id, lock=True)
        reverted = deposit_service.transition_status(
            deposit,
            from_statuses={DEPOSIT_STATUS_TRANSFER_PENDING},
            to_status=DEPOSIT_STATUS_IN_STORE,
        )
        transfer.status = TRANSFER_STATUS_REJECTED
        transfer.confirmed_by = actor
        transfer.rejection_reason = reason
        transfer.resolved_at = utcnow()
        db.session.commit()
        return transfer, deposit, reverted

    transfer, deposit, reverted = run_with_retry(_op)
    audit_service.record(
        store_id=store_id,
        action_type=audit_service.TRANSFER_REJECTED,
        table_name="transfers",
        record_id=transfer.id,
        old_value={"status": TRANSFER_STATUS_PENDING},
        new_value={
            "status": TRANSFER_STATUS_REJECTED,
            "reason": reason,
            "deposit_status": deposit.status,
            "deposit_reverted": reverted,
        },
        actor=actor,
    )
    _publish(transfer, deposit, "transfer_rejected")
    return transfer


def create_transfers_batch(
    store_id: int,
    deposit_codes: list,
    *,
    requester: Optional[str] = None,
    notes: Optional[str] = None,
) -> list[dict]:
    """
    One transfer per deposit code, each in its own transaction.

    Codes that do not resolve in the origin store, or whose deposit cannot be
    transferred, are reported per item; the others still go through.
    """
    if not isinstance(deposit_codes, list) or not deposit_codes:
        raise ValidationError("deposit_codes must be a non-empty list", field="deposit_codes")
    get_central_store()

    results: list[dict] = []
    for code in deposit_codes:
        try:
            if not isinstance(code, str) or not code.strip():
                raise ValidationError("deposit code must be a non-empty string", field="deposit_codes", value=code)
            deposit = deposit_service.get_deposit_by_code(store_id, code)
            transfer = create_transfer(store_id, deposit.id, requester=requester, notes=notes)
        except DepositError as exc:
            db.session.rollback()
            results.append({"deposit_code": code, "ok": False, **exc.to_dict()})
            continue
        results.append({"deposit_code": code, "ok": True, "transfer": transfer.to_dict()})
    return results


def withdraw_central_deposit(
    store_id: int,
    central_deposit_id: int,
    *,
    actor: Optional[str] = None,
    notes: Optional[str] = None,
) -> CentralDeposit:
    """Central store disposes of / hands out a received bottle."""
    def _op():
        central = lock_for_update(
            db.session.query(CentralDeposit).filter(
                CentralDeposit.id == central_deposit_id,
                CentralDeposit.store_id == store_id,
            )
        ).first()
        if not central:
            raise NotFoundError("CentralDeposit", central_deposit_id)
        if central.status != CENTRAL_DEPOSIT_STATUS_AWAITING:
            raise InvalidStateError(
                f"Central deposit {central.id} is '{central.status}'",
                current_status=central.status,
                allowed={CENTRAL_DEPOSIT_STATUS_AWAITING},
            )
        central.status = CENTRAL_DEPOSIT_STATUS_WITHDRAWN
        central.withdrawn_by = actor
        central.withdrawal_notes = notes
        central.withdrawn_at = utcnow()
        db.session.commit()
        return central

    central = run_with_retry(_op)
    audit_service.record(
        store_id=store_id,
        action_type=audit_service.CENTRAL_DEPOSIT_WITHDRAWN,
        table_name="central_deposits",
        record_id=central.id,
        old_value={"status": CENTRAL_DEPOSIT_STATUS_AWAITING},
        new_value={"status": CENTRAL_DEPOSIT_STATUS_WITHDRAWN, "notes": notes},
        actor=actor,
    )
    return central


def list_transfers(
    store_id: int,
    *,
    status: Optional[str] = None,
    direction: Optional[str] = None,
    limit: int = 200,
) -> list[Transfer]:
    query = db.session.query(Transfer)
    if direction == DIRECTION_OUTGOING:
        query = query.filter(Transfer.from_store_id == store_id)
    elif direction == DIRECTION_INCOMING:
        query = query.filter(Transfer.to_store_id == store_id)
    elif direction is None:
        query = query.filter(or_(Transfer.from_store_id == store_id, Transfer.to_store_id == store_id))
    else:
        raise ValidationError("direction must be 'incoming' or 'outgoing'", field="direction", value=direction)
    if status:
        if status not in TRANSFER_STATUSES:
            raise ValidationError(
                f"Invalid status '{status}'. Must be one of: {', '.join(sorted(TRANSFER_STATUSES))}",
                field="status",
                value=status,
            )
        query = query.filter(Transfer.status == status)
    return query.order_by(Transfer.created_at.desc(), Transfer.id.desc()).limit(limit).all()


def list_central_deposits(store_id: int, *, status: Optional[str] = None, limit: int = 200) -> list[CentralDeposit]:
    query = db.session.query(CentralDeposit).filter(CentralDeposit.store_id == store_id)
    if status:
        if status not in (CENTRAL_DEPOSIT_STATUS_AWAITING, CENTRAL_DEPOSIT_STATUS_WITHDRAWN):
            raise ValidationError("Invalid central deposit status", field="status", value=status)
        query = query.filter(CentralDeposit.status == status)
    return query.order_by(CentralDeposit.received_at.desc(), CentralDeposit.id.desc()).limit(limit).all()
