from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from bottlekeep.time_utils import to_utc_z


# Deposit lifecycle (transition table lives in services/deposit_service.py)
DEPOSIT_STATUS_PENDING_CONFIRM = "pending_confirm"
DEPOSIT_STATUS_IN_STORE = "in_store"
DEPOSIT_STATUS_PENDING_WITHDRAWAL = "pending_withdrawal"
DEPOSIT_STATUS_WITHDRAWN = "withdrawn"
DEPOSIT_STATUS_EXPIRED = "expired"
DEPOSIT_STATUS_TRANSFER_PENDING = "transfer_pending"
DEPOSIT_STATUS_TRANSFERRED_OUT = "transferred_out"

DEPOSIT_STATUSES = frozenset({
    DEPOSIT_STATUS_PENDING_CONFIRM,
    DEPOSIT_STATUS_IN_STORE,
    DEPOSIT_STATUS_PENDING_WITHDRAWAL,
    DEPOSIT_STATUS_WITHDRAWN,
    DEPOSIT_STATUS_EXPIRED,
    DEPOSIT_STATUS_TRANSFER_PENDING,
    DEPOSIT_STATUS_TRANSFERRED_OUT,
})

WITHDRAWAL_STATUS_PENDING = "pending"
WITHDRAWAL_STATUS_APPROVED = "approved"
WITHDRAWAL_STATUS_COMPLETED = "completed"
WITHDRAWAL_STATUS_REJECTED = "rejected"

WITHDRAWAL_STATUSES = frozenset({
    WITHDRAWAL_STATUS_PENDING,
    WITHDRAWAL_STATUS_APPROVED,
    WITHDRAWAL_STATUS_COMPLETED,
    WITHDRAWAL_STATUS_REJECTED,
})


def _in_list(values) -> str:
    return ", ".join(f"'{v}'" for v in sorted(values))


def quantity_json(value: Decimal | None) -> float | None:
    if value is None:
        return None
    return float(value)


class Deposit(db.Model):
    """
    One bottle/quantity lot held on behalf of a customer at a store.

    QUANTITY INVARIANTS (also enforced as CHECK constraints):
    - 0 <= remaining_qty <= quantity
    - quantity is fixed at intake
    - status 'withdrawn' <=> remaining_qty == 0
    - VIP deposits never carry an expiry_date

    Deposits are never deleted. withdrawn / expired / transferred_out are
    permanent markers.

    CONCURRENCY: remaining_qty is only ever decremented through a conditional
    UPDATE keyed on the previously read value (see withdrawal_service).
    version_id guards ORM-level edits (VIP, expiry) against lost updates.
    """
    __tablename__ = "deposits"
    __table_args__ = (
        db.UniqueConstraint("store_id", "deposit_code", name="uq_deposits_store_code"),
        db.CheckConstraint("quantity > 0", name="ck_deposits_quantity_positive"),
        db.CheckConstraint(
            "remaining_qty >= 0 AND remaining_qty <= quantity",
            name="ck_deposits_remaining_in_range",
        ),
        db.CheckConstraint(
            f"status IN ({_in_list(DEPOSIT_STATUSES)})",
            name="ck_deposits_status_known",
        ),
        db.CheckConstraint(
            "NOT (is_vip AND expiry_date IS NOT NULL)",
            name="ck_deposits_vip_no_expiry",
        ),
        db.Index("ix_deposits_store_status", "store_id", "status"),
        db.Index("ix_deposits_store_expiry", "store_id", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    # e.g. DEP-BKK01-7Q2ZK; issued once, never edited
    deposit_code = db.Column(db.String(64), nullable=False)

    customer_name = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(32), nullable=True)
    line_user_id = db.Column(db.String(64), nullable=True, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(64), nullable=True)

    quantity = db.Column(db.Numeric(10, 2), nullable=False)
    remaining_qty = db.Column(db.Numeric(10, 2), nullable=False)
    remaining_percent = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal("100"))

    table_number = db.Column(db.String(32), nullable=True)
    status = db.Column(db.String(32), nullable=False, default=DEPOSIT_STATUS_IN_STORE)

    is_vip = db.Column(db.Boolean, nullable=False, default=False)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    photo_url = db.Column(db.String(512), nullable=True)
    customer_photo_url = db.Column(db.String(512), nullable=True)
    received_photo_url = db.Column(db.String(512), nullable=True)
    confirm_photo_url = db.Column(db.String(512), nullable=True)

    received_by = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("deposits", lazy=True))
    withdrawals = db.relationship(
        "Withdrawal",
        back_populates="deposit",
        order_by="Withdrawal.id",
        lazy=True,
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<Deposit id={self.id} code={self.deposit_code!r} status={self.status} "
            f"remaining={self.remaining_qty}/{self.quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "deposit_code": self.deposit_code,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "line_user_id": self.line_user_id,
            "product_name": self.product_name,
            "category": self.category,
            "quantity": quantity_json(self.quantity),
            "remaining_qty": quantity_json(self.remaining_qty),
            "remaining_percent": quantity_json(self.remaining_percent),
            "table_number": self.table_number,
            "status": self.status,
            "is_vip": self.is_vip,
            "expiry_date": to_utc_z(self.expiry_date),
            "notes": self.notes,
            "photo_url": self.photo_url,
            "customer_photo_url": self.customer_photo_url,
            "received_photo_url": self.received_photo_url,
            "confirm_photo_url": self.confirm_photo_url,
            "received_by": self.received_by,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }


class Withdrawal(db.Model):
    """
    A request to release part of a deposit's remaining quantity.

    LIFECYCLE:
    1. PENDING: customer asked for the bottle (deposit is pending_withdrawal)
    2. APPROVED: staff acknowledged, bottle not yet handed over
    3. COMPLETED: handed over; actual_qty subtracted from the deposit
    4. REJECTED: declined; deposit returns to in_store if still waiting

    customer_name / product_name are snapshots taken at request time.
    Completed and rejected withdrawals are never revised.
    """
    __tablename__ = "withdrawals"
    __table_args__ = (
        db.CheckConstraint(
            f"status IN ({_in_list(WITHDRAWAL_STATUSES)})",
            name="ck_withdrawals_status_known",
        ),
        db.CheckConstraint("requested_qty > 0", name="ck_withdrawals_requested_positive"),
        db.CheckConstraint(
            "actual_qty IS NULL OR actual_qty > 0",
            name="ck_withdrawals_actual_positive",
        ),
        db.Index("ix_withdrawals_store_status", "store_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    deposit_id = db.Column(db.Integer, db.ForeignKey("deposits.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    customer_name = db.Column(db.String(255), nullable=True)
    product_name = db.Column(db.String(255), nullable=True)

    requested_qty = db.Column(db.Numeric(10, 2), nullable=False)
    actual_qty = db.Column(db.Numeric(10, 2), nullable=True)
    table_number = db.Column(db.String(32), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=WITHDRAWAL_STATUS_PENDING)
    processed_by = db.Column(db.String(64), nullable=True)
    requested_by = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    deposit = db.relationship("Deposit", back_populates="withdrawals")

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "deposit_id": self.deposit_id,
            "store_id": self.store_id,
            "customer_name": self.customer_name,
            "product_name": self.product_name,
            "requested_qty": quantity_json(self.requested_qty),
            "actual_qty": quantity_json(self.actual_qty),
            "table_number": self.table_number,
            "status": self.status,
            "processed_by": self.processed_by,
            "requested_by": self.requested_by,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "processed_at": to_utc_z(self.processed_at),
        }
