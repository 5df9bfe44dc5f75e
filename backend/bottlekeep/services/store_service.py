from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from bottlekeep.extensions import db
from bottlekeep.models import Store, StoreSettings
from bottlekeep.services.concurrency import lock_for_update, run_with_retry
from bottlekeep.time_utils import is_valid_timezone
from bottlekeep.validation import (
    ConflictError,
    ModelValidationPolicy,
    NotFoundError,
    ValidationError,
    enforce_rules_store_settings,
    validate_payload,
)


SETTINGS_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({
        "default_expiry_days",
        "expiry_warning_days",
        "require_bar_confirmation",
        "require_transfer_confirmation",
        "customer_notify_deposit_enabled",
        "customer_notify_withdrawal_enabled",
        "customer_notify_expiry_enabled",
    }),
)


def create_store(
    code: str,
    name: str,
    *,
    is_central: bool = False,
    timezone: str | None = None,
) -> Store:
    def _op():
        clean_code = (code or "").strip().upper()
        clean_name = (name or "").strip()
        if not clean_code:
            raise ValidationError("Store code is required", field="code")
        if not clean_name:
            raise ValidationError("Store name is required", field="name")

        tz_name = timezone or current_app.config.get("DEFAULT_STORE_TIMEZONE", "Asia/Bangkok")
        if not is_valid_timezone(tz_name):
            raise ValidationError("Unknown timezone", field="timezone", value=tz_name)

        if db.session.query(Store).filter_by(code=clean_code).first():
            raise ConflictError(f"Store code {clean_code} already exists")
        if is_central and db.session.query(Store).filter_by(is_central=True).first():
            raise ConflictError("A central store already exists")

        store = Store(code=clean_code, name=clean_name, is_central=bool(is_central), timezone=tz_name)
        store.settings = StoreSettings()
        db.session.add(store)
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            raise ConflictError("Store code or central flag already taken") from exc
        return store

    return run_with_retry(_op)


def get_store(store_id: int) -> Store | None:
    return db.session.query(Store).filter_by(id=store_id).first()


def require_store(store_id: int) -> Store:
    store = get_store(store_id)
    if not store:
        raise NotFoundError("Store", store_id)
    return store


def list_stores(*, include_inactive: bool = False) -> list[Store]:
    query = db.session.query(Store)
    if not include_inactive:
        query = query.filter(Store.is_active.is_(True))
    return query.order_by(Store.code.asc()).all()


def get_settings(store_id: int) -> StoreSettings:
    """Settings row for the store; created with defaults on first access."""
    require_store(store_id)
    settings = db.session.query(StoreSettings).filter_by(store_id=store_id).first()
    if settings:
        return settings

    settings = StoreSettings(store_id=store_id)
    db.session.add(settings)
    try:
        db.session.commit()
    except IntegrityError:
        # Another request created it first
        db.session.rollback()
        settings = db.session.query(StoreSettings).filter_by(store_id=store_id).one()
    return settings


def update_settings(store_id: int, patch: dict) -> StoreSettings:
    clean = validate_payload(model=StoreSettings, payload=patch, policy=SETTINGS_POLICY)
    enforce_rules_store_settings(clean)
    get_settings(store_id)

    def _op():
        settings = lock_for_update(
            db.session.query(StoreSettings).filter_by(store_id=store_id)
        ).one()
        for key, value in clean.items():
            setattr(settings, key, value)
        db.session.commit()
        return settings

    return run_with_retry(_op)
