# Overview: Scheduled expiry sweep over every store's deposits.

from __future__ import annotations

from datetime import datetime
from typing import Optional

from flask import current_app

from ..extensions import db
from ..models import Deposit, Store
from ..validation import DepositError, NotFoundError
from . import audit_service, deposit_service, expiry_policy, notification_service, store_service
from bottlekeep.time_utils import days_until, to_utc_naive, utcnow


def _candidates(store_id: int) -> list[Deposit]:
    return (
        db.session.query(Deposit)
        .filter(
            Deposit.store_id == store_id,
            Deposit.status.in_(sorted(expiry_policy.EXPIRABLE_STATUSES)),
            Deposit.is_vip.is_(False),
            Deposit.expiry_date.isnot(None),
        )
        .order_by(Deposit.id.asc())
        .all()
    )


def sweep_store(store_id: int, *, now: Optional[datetime] = None, dry_run: bool = False) -> dict:
    """
    Expire lapsed deposits in one store and warn about those expiring soon.

    Each deposit is marked in its own transaction by the system actor
    (changed_by NULL); a failure on one deposit is logged and the sweep moves
    on. Writes one CRON_EXPIRY_CHECK entry for the store unless dry_run.
    """
    now = to_utc_naive(now) if now else utcnow()
    settings = store_service.get_settings(store_id)
    warning_days = settings.expiry_warning_days
    notify_expiry = settings.customer_notify_expiry_enabled

    lapsed = [d.id for d in _candidates(store_id) if expiry_policy.is_expired(d, now)]
    expired_ids: list[int] = []
    failed: list[dict] = []

    for deposit_id in lapsed:
        if dry_run:
            expired_ids.append(deposit_id)
            continue
        try:
            deposit_service.mark_expired(
                store_id,
                deposit_id,
                notify_customer=True,
                actor=None,
                action_type=audit_service.CRON_DEPOSIT_EXPIRED,
            )
        except DepositError as exc:
            db.session.rollback()
            current_app.logger.warning("Expiry sweep skipped deposit %s: %s", deposit_id, exc)
            failed.append({"deposit_id": deposit_id, **exc.to_dict()})
            continue
        expired_ids.append(deposit_id)

    expiring = deposit_service.list_expiring(store_id, now=now, threshold_days=warning_days)
    warned = 0
    if notify_expiry and not dry_run:
        for deposit in expiring:
            notification_service.notify(notification_service.NotificationEvent(
                type=notification_service.DEPOSIT_EXPIRING,
                store_id=store_id,
                title="Deposit expiring soon",
                body=(
                    f"{deposit.product_name} ({deposit.deposit_code}) for {deposit.customer_name} "
                    f"expires in {days_until(deposit.expiry_date, now)} day(s)"
                ),
                data={"deposit_id": deposit.id, "deposit_code": deposit.deposit_code},
            ))
            warned += 1

    summary = {
        "store_id": store_id,
        "checked_at": now,
        "expired": len(expired_ids),
        "expired_deposit_ids": expired_ids,
        "expiring_soon": len(expiring),
        "notified": warned,
        "failed": failed,
        "dry_run": dry_run,
    }
    if not dry_run:
        audit_service.record(
            store_id=store_id,
            action_type=audit_service.CRON_EXPIRY_CHECK,
            table_name="deposits",
            new_value={k: v for k, v in summary.items() if k != "store_id"},
            actor=None,
        )
    current_app.logger.info(
        "Expiry sweep store=%s expired=%s expiring=%s failed=%s dry_run=%s",
        store_id, len(expired_ids), len(expiring), len(failed), dry_run,
    )
    return summary


def run_expiry_sweep(
    *,
    store_id: Optional[int] = None,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> list[dict]:
    """Sweep one store, or every active non-central store, store by store."""
    if store_id is not None:
        if not store_service.get_store(store_id):
            raise NotFoundError("Store", store_id)
        store_ids = [store_id]
    else:
        store_ids = [
            sid for (sid,) in db.session.query(Store.id)
            .filter(Store.is_active.is_(True), Store.is_central.is_(False))
            .order_by(Store.id.asc())
        ]
    return [sweep_store(sid, now=now, dry_run=dry_run) for sid in store_ids]
