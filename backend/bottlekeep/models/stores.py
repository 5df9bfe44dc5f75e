from __future__ import annotations

from ..extensions import db
from bottlekeep.time_utils import to_utc_z


class Store(db.Model):
    """
    A bar/restaurant branch holding customer deposits.

    CENTRAL STORE: exactly one store may carry is_central=True. It is the
    warehouse that receives transferred deposits. The partial unique index
    backs the check done in store_service.create_store.
    """
    __tablename__ = "stores"
    __table_args__ = (
        db.Index(
            "uq_stores_single_central",
            "is_central",
            unique=True,
            sqlite_where=db.text("is_central = 1"),
            postgresql_where=db.text("is_central"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True, index=True)
    name = db.Column(db.String(120), nullable=False)

    is_central = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # IANA name; expiry days are counted on the store's wall clock
    timezone = db.Column(db.String(64), nullable=False, default="Asia/Bangkok")

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    settings = db.relationship("StoreSettings", uselist=False, back_populates="store")

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Store id={self.id} code={self.code!r} central={self.is_central}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "is_central": self.is_central,
            "is_active": self.is_active,
            "timezone": self.timezone,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }


class StoreSettings(db.Model):
    """
    Per-store workflow switches and deposit defaults.

    WORKFLOW VARIANTS:
    - require_bar_confirmation: intake lands in pending_confirm until the bar
      confirms it; otherwise deposits go straight to in_store.
    - require_transfer_confirmation: transfers wait as pending (deposit in
      transfer_pending) until the central store confirms; otherwise they are
      confirmed on creation.
    """
    __tablename__ = "store_settings"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, unique=True)

    default_expiry_days = db.Column(db.Integer, nullable=False, default=30)
    expiry_warning_days = db.Column(db.Integer, nullable=False, default=7)

    require_bar_confirmation = db.Column(db.Boolean, nullable=False, default=False)
    require_transfer_confirmation = db.Column(db.Boolean, nullable=False, default=True)

    customer_notify_deposit_enabled = db.Column(db.Boolean, nullable=False, default=True)
    customer_notify_withdrawal_enabled = db.Column(db.Boolean, nullable=False, default=True)
    customer_notify_expiry_enabled = db.Column(db.Boolean, nullable=False, default=True)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    store = db.relationship("Store", back_populates="settings")

    def to_dict(self) -> dict:
        return {
            "store_id": self.store_id,
            "default_expiry_days": self.default_expiry_days,
            "expiry_warning_days": self.expiry_warning_days,
            "require_bar_confirmation": self.require_bar_confirmation,
            "require_transfer_confirmation": self.require_transfer_confirmation,
            "customer_notify_deposit_enabled": self.customer_notify_deposit_enabled,
            "customer_notify_withdrawal_enabled": self.customer_notify_withdrawal_enabled,
            "customer_notify_expiry_enabled": self.customer_notify_expiry_enabled,
            "updated_at": to_utc_z(self.updated_at),
        }
