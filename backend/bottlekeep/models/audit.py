from __future__ import annotations

from ..extensions import db
from bottlekeep.time_utils import to_utc_z


class AuditEntry(db.Model):
    """
    Append-only record of one causal mutation.

    INVARIANTS:
    - Rows are never updated or deleted.
    - Written after the business change commits, in its own transaction.
    - changed_by NULL means the system (scheduled sweep) acted.
    - Batch operations write one entry per logical unit, not per row.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_store_created", "store_id", "created_at"),
        db.Index("ix_audit_logs_table_record", "table_name", "record_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True, index=True)

    action_type = db.Column(db.String(64), nullable=False, index=True)
    table_name = db.Column(db.String(64), nullable=True)
    record_id = db.Column(db.String(255), nullable=True)

    old_value = db.Column(db.JSON, nullable=True)
    new_value = db.Column(db.JSON, nullable=True)

    changed_by = db.Column(db.String(64), nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "action_type": self.action_type,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "changed_by": self.changed_by,
            "created_at": to_utc_z(self.created_at),
        }
