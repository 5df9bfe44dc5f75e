from __future__ import annotations

from ..extensions import db
from bottlekeep.time_utils import to_utc_z
from .deposits import quantity_json


TRANSFER_STATUS_PENDING = "pending"
TRANSFER_STATUS_CONFIRMED = "confirmed"
TRANSFER_STATUS_REJECTED = "rejected"

TRANSFER_STATUSES = frozenset({
    TRANSFER_STATUS_PENDING,
    TRANSFER_STATUS_CONFIRMED,
    TRANSFER_STATUS_REJECTED,
})

CENTRAL_DEPOSIT_STATUS_AWAITING = "awaiting_withdrawal"
CENTRAL_DEPOSIT_STATUS_WITHDRAWN = "withdrawn"


class Transfer(db.Model):
    """
    Movement of one deposit's remaining stock to the central store.

    LIFECYCLE:
    1. PENDING: origin store handed the bottle over (deposit is transfer_pending)
    2. CONFIRMED: central store received it (deposit is transferred_out)
    3. REJECTED: central store refused / origin cancelled

    NO DOUBLE TRANSFER: a deposit may appear on at most one non-rejected
    transfer. The partial unique index makes a second live row impossible
    even if two requests race past the service-level status check.
    """
    __tablename__ = "transfers"
    __table_args__ = (
        db.Index(
            "uq_transfers_live_deposit",
            "deposit_id",
            unique=True,
            sqlite_where=db.text("status != 'rejected'"),
            postgresql_where=db.text("status != 'rejected'"),
        ),
        db.CheckConstraint(
            "status IN ('confirmed', 'pending', 'rejected')",
            name="ck_transfers_status_known",
        ),
        db.Index("ix_transfers_to_store_status", "to_store_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    from_store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    to_store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    deposit_id = db.Column(db.Integer, db.ForeignKey("deposits.id"), nullable=False, index=True)

    # Snapshots at creation time
    product_name = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Numeric(10, 2), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=TRANSFER_STATUS_PENDING, index=True)

    requested_by = db.Column(db.String(64), nullable=True)
    confirmed_by = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    photo_url = db.Column(db.String(512), nullable=True)
    confirm_photo_url = db.Column(db.String(512), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    from_store = db.relationship("Store", foreign_keys=[from_store_id])
    to_store = db.relationship("Store", foreign_keys=[to_store_id])
    deposit = db.relationship("Deposit", foreign_keys=[deposit_id])

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_store_id": self.from_store_id,
            "to_store_id": self.to_store_id,
            "deposit_id": self.deposit_id,
            "deposit_code": self.deposit.deposit_code if self.deposit else None,
            "product_name": self.product_name,
            "quantity": quantity_json(self.quantity),
            "status": self.status,
            "requested_by": self.requested_by,
            "confirmed_by": self.confirmed_by,
            "notes": self.notes,
            "rejection_reason": self.rejection_reason,
            "photo_url": self.photo_url,
            "confirm_photo_url": self.confirm_photo_url,
            "created_at": to_utc_z(self.created_at),
            "resolved_at": to_utc_z(self.resolved_at),
        }


class CentralDeposit(db.Model):
    """
    Stock received at the central store from a confirmed transfer.

    The origin deposit keeps its last remaining_qty as history; this row is
    the only live holder of that quantity afterwards.
    """
    __tablename__ = "central_deposits"
    __table_args__ = (
        db.UniqueConstraint("transfer_id", name="uq_central_deposits_transfer"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("transfers.id"), nullable=False)
    deposit_id = db.Column(db.Integer, db.ForeignKey("deposits.id"), nullable=False, index=True)
    from_store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    deposit_code = db.Column(db.String(64), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    product_name = db.Column(db.String(255), nullable=True)
    category = db.Column(db.String(64), nullable=True)
    quantity = db.Column(db.Numeric(10, 2), nullable=False)

    status = db.Column(db.String(32), nullable=False, default=CENTRAL_DEPOSIT_STATUS_AWAITING, index=True)

    received_by = db.Column(db.String(64), nullable=True)
    received_photo_url = db.Column(db.String(512), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    withdrawn_by = db.Column(db.String(64), nullable=True)
    withdrawal_notes = db.Column(db.Text, nullable=True)
    withdrawn_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    transfer = db.relationship("Transfer", backref=db.backref("central_deposit", uselist=False))

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "transfer_id": self.transfer_id,
            "deposit_id": self.deposit_id,
            "from_store_id": self.from_store_id,
            "deposit_code": self.deposit_code,
            "customer_name": self.customer_name,
            "product_name": self.product_name,
            "category": self.category,
            "quantity": quantity_json(self.quantity),
            "status": self.status,
            "received_by": self.received_by,
            "received_photo_url": self.received_photo_url,
            "received_at": to_utc_z(self.received_at),
            "withdrawn_by": self.withdrawn_by,
            "withdrawal_notes": self.withdrawal_notes,
            "withdrawn_at": to_utc_z(self.withdrawn_at),
            "notes": self.notes,
        }
