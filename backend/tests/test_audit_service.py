# Overview: Pytest coverage for the audit trail and its best-effort write.

from datetime import datetime
from decimal import Decimal

import pytest
from flask import g
from sqlalchemy.exc import OperationalError

from bottlekeep.models import AuditEntry, Deposit
from bottlekeep.services import audit_service, withdrawal_service
from bottlekeep.validation import AuditWriteWarning, ValidationError


def _fail_write(entry):
    raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))


class TestRecord:

    def test_values_are_json_safe(self, db_session, store):
        entry = audit_service.record(
            store_id=store.id,
            action_type=audit_service.DEPOSIT_STATUS_CHANGED,
            table_name="deposits",
            record_id=17,
            old_value={"remaining_qty": Decimal("2.50"), "expiry_date": datetime(2024, 1, 1)},
            new_value={"codes": ("A", "B")},
            actor="staff-1",
        )
        db_session.expire_all()

        stored = db_session.get(AuditEntry, entry.id)
        assert stored.record_id == "17"
        assert stored.old_value == {"remaining_qty": 2.5, "expiry_date": "2024-01-01T00:00:00Z"}
        assert stored.new_value == {"codes": ["A", "B"]}

    def test_unknown_action(self, db_session, store):
        with pytest.raises(ValidationError):
            audit_service.record(store_id=store.id, action_type="DEPOSIT_SHREDDED")

    def test_system_actor(self, db_session, store):
        entry = audit_service.record(
            store_id=store.id, action_type=audit_service.CRON_EXPIRY_CHECK, actor=None
        )
        assert entry.changed_by is None
        assert entry.to_dict()["changed_by"] is None

    def test_list_entries_newest_first(self, db_session, store, other_store, make_deposit):
        first = make_deposit()
        second = make_deposit()
        make_deposit(store_id=other_store.id)

        entries = audit_service.list_entries(store_id=store.id, action_type=audit_service.DEPOSIT_CREATED)
        assert [e.record_id for e in entries] == [str(second.id), str(first.id)]

        by_record = audit_service.list_entries(store_id=store.id, table_name="deposits", record_id=first.id)
        assert [e.record_id for e in by_record] == [str(first.id)]


class TestBestEffort:
    """A failed audit write never undoes the business change."""

    def test_failed_write_warns(self, db_session, store, monkeypatch):
        monkeypatch.setattr(audit_service, "_write", _fail_write)

        with pytest.warns(AuditWriteWarning):
            result = audit_service.record(store_id=store.id, action_type=audit_service.CRON_EXPIRY_CHECK)
        assert result is None

    def test_failed_write_is_queued_on_the_request(self, app, db_session, store, monkeypatch, recwarn):
        monkeypatch.setattr(audit_service, "_write", _fail_write)

        with app.test_request_context('/api/deposits'):
            g.audit_warnings = []
            result = audit_service.record(
                store_id=store.id,
                action_type=audit_service.WITHDRAWAL_COMPLETED,
                table_name="withdrawals",
                record_id=5,
            )
            queued = g.pop("audit_warnings")

        assert result is None
        assert queued == ["Audit entry WITHDRAWAL_COMPLETED for withdrawals:5 was not recorded"]
        assert not [w for w in recwarn if issubclass(w.category, AuditWriteWarning)]

    def test_other_errors_propagate(self, db_session, store, monkeypatch):
        def _boom(entry):
            raise RuntimeError("not a database problem")

        monkeypatch.setattr(audit_service, "_write", _boom)
        with pytest.raises(RuntimeError):
            audit_service.record(store_id=store.id, action_type=audit_service.CRON_EXPIRY_CHECK)

    def test_deposit_survives_audit_failure(self, db_session, store, make_deposit, monkeypatch):
        monkeypatch.setattr(audit_service, "_write", _fail_write)

        with pytest.warns(AuditWriteWarning):
            deposit = make_deposit(quantity=4)

        db_session.expire_all()
        assert db_session.query(Deposit).filter_by(id=deposit.id).one().remaining_qty == Decimal("4.00")
        assert db_session.query(AuditEntry).count() == 0

    def test_withdrawal_survives_audit_failure(self, db_session, store, make_deposit, monkeypatch):
        deposit = make_deposit(quantity=4)
        monkeypatch.setattr(audit_service, "_write", _fail_write)

        with pytest.warns(AuditWriteWarning):
            withdrawal_service.withdraw_now(store.id, deposit.id, 1)

        db_session.expire_all()
        assert db_session.get(Deposit, deposit.id).remaining_qty == Decimal("3.00")
        assert db_session.query(AuditEntry).filter_by(
            action_type=audit_service.WITHDRAWAL_COMPLETED
        ).count() == 0
