# Overview: Pytest coverage for the deposit ledger (intake, status machine, VIP and expiry edits).

"""
Deposit Ledger Tests

Covers:
- Intake: code format, quantities, default and per-deposit expiry
- The status transition table
- Guarded writes (transition_status / decrement_remaining) under stale reads
- VIP toggling and expiry edits
- Store scoping of reads
"""

import re
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import update

from bottlekeep import signals
from bottlekeep.models import AuditEntry, Deposit
from bottlekeep.services import (
    audit_service,
    deposit_service,
    notification_service,
    store_service,
    withdrawal_service,
)
from bottlekeep.validation import (
    ConflictError,
    InsufficientQuantityError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)


NOW = datetime(2024, 1, 1, 5, 0, 0)


class TestIntake:
    """create_deposit / confirm_deposit."""

    def test_create_deposit_defaults(self, db_session, store, make_deposit):
        deposit = make_deposit(quantity=10, now=NOW)

        assert re.fullmatch(r"DEP-BKK01-[A-Z0-9]{5}", deposit.deposit_code)
        assert deposit.status == "in_store"
        assert deposit.quantity == Decimal("10.00")
        assert deposit.remaining_qty == Decimal("10.00")
        assert deposit.remaining_percent == Decimal("100.00")
        assert deposit.received_by == "staff-1"
        # 30 days from the Bangkok calendar day, through 23:59:59 local
        assert deposit.expiry_date == datetime(2024, 1, 31, 16, 59, 59)

    def test_expiry_days_override(self, db_session, store, make_deposit):
        deposit = make_deposit(expiry_days=7, now=NOW)
        assert deposit.expiry_date == datetime(2024, 1, 8, 16, 59, 59)

    def test_vip_deposit_has_no_expiry(self, db_session, store, make_deposit):
        deposit = make_deposit(is_vip=True, now=NOW)
        assert deposit.is_vip is True
        assert deposit.expiry_date is None

    def test_fractional_quantity(self, db_session, store, make_deposit):
        deposit = make_deposit(quantity="0.75")
        assert deposit.remaining_qty == Decimal("0.75")

    @pytest.mark.parametrize("quantity", [0, -1, "abc", None, True, "1.234", "1e100", "9.99e99"])
    def test_invalid_quantity_rejected(self, db_session, store, make_deposit, quantity):
        with pytest.raises(ValidationError) as exc:
            make_deposit(quantity=quantity)
        assert exc.value.field == "quantity"
        assert db_session.query(Deposit).count() == 0

    def test_names_required(self, db_session, store, make_deposit):
        with pytest.raises(ValidationError):
            make_deposit(customer_name="  ")
        with pytest.raises(ValidationError):
            make_deposit(product_name="")

    def test_unknown_store(self, db_session):
        with pytest.raises(NotFoundError):
            deposit_service.create_deposit(
                424242, customer_name="Somchai", product_name="Chivas 12", quantity=1
            )

    def test_codes_are_unique(self, db_session, store, make_deposit):
        codes = {make_deposit(quantity=1).deposit_code for _ in range(20)}
        assert len(codes) == 20

    def test_created_is_audited(self, db_session, store, make_deposit):
        deposit = make_deposit(quantity=3)
        entry = db_session.query(AuditEntry).filter_by(
            action_type=audit_service.DEPOSIT_CREATED
        ).one()
        assert entry.store_id == store.id
        assert entry.record_id == str(deposit.id)
        assert entry.changed_by == "staff-1"
        assert entry.new_value["quantity"] == 3.0
        assert entry.new_value["deposit_code"] == deposit.deposit_code

    def test_new_deposit_notification(self, db_session, store, make_deposit, sent_notifications):
        deposit = make_deposit()
        assert [e.type for e in sent_notifications] == [notification_service.NEW_DEPOSIT]
        assert sent_notifications[0].data["deposit_code"] == deposit.deposit_code

    def test_new_deposit_notification_disabled(self, db_session, store, make_deposit, sent_notifications):
        store_service.update_settings(store.id, {"customer_notify_deposit_enabled": False})
        make_deposit()
        assert sent_notifications == []

    def test_signal_carries_payload(self, db_session, store, make_deposit):
        received = []

        def on_change(sender, payload, action, **extra):
            received.append((sender, payload["status"], action))

        with signals.deposit_changed.connected_to(on_change):
            make_deposit()

        assert received == [("Deposit", "in_store", "created")]

    def test_bar_confirmation_workflow(self, db_session, store, make_deposit):
        store_service.update_settings(store.id, {"require_bar_confirmation": True})
        deposit = make_deposit()
        assert deposit.status == "pending_confirm"

        confirmed = deposit_service.confirm_deposit(store.id, deposit.id, actor="bar-1")
        assert confirmed.status == "in_store"

        with pytest.raises(InvalidStateError):
            deposit_service.confirm_deposit(store.id, deposit.id, actor="bar-1")

        assert db_session.query(AuditEntry).filter_by(
            action_type=audit_service.DEPOSIT_BAR_CONFIRMED
        ).count() == 1


class TestTransitions:
    """The deposit status machine."""

    @pytest.mark.parametrize("from_status,to_status", [
        ("pending_confirm", "in_store"),
        ("pending_confirm", "expired"),
        ("in_store", "pending_withdrawal"),
        ("in_store", "withdrawn"),
        ("in_store", "transfer_pending"),
        ("pending_withdrawal", "in_store"),
        ("pending_withdrawal", "withdrawn"),
        ("transfer_pending", "transferred_out"),
        ("expired", "in_store"),
    ])
    def test_allowed(self, from_status, to_status):
        assert deposit_service.can_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        ("withdrawn", "in_store"),
        ("transferred_out", "in_store"),
        ("expired", "withdrawn"),
        ("pending_withdrawal", "expired"),
        ("transfer_pending", "pending_withdrawal"),
        ("pending_confirm", "withdrawn"),
    ])
    def test_forbidden(self, from_status, to_status):
        assert not deposit_service.can_transition(from_status, to_status)

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            deposit_service.validate_status("lost")

    def test_transition_status_rejects_illegal_pair(self, db_session, store, make_deposit):
        deposit = make_deposit()
        with pytest.raises(InvalidStateError):
            deposit_service.transition_status(
                deposit, from_statuses={"withdrawn"}, to_status="in_store"
            )

    def test_transition_status_reports_no_match(self, db_session, store, make_deposit):
        deposit = make_deposit()
        changed = deposit_service.transition_status(
            deposit, from_statuses={"pending_withdrawal"}, to_status="in_store"
        )
        db_session.commit()
        assert changed is False
        assert deposit.status == "in_store"


class TestGuardedDecrement:
    """decrement_remaining against a row changed behind our back."""

    def _move_balance(self, db_session, deposit_id, remaining):
        db_session.execute(
            update(Deposit)
            .where(Deposit.id == deposit_id)
            .values(remaining_qty=remaining, version_id=Deposit.version_id + 1)
            .execution_options(synchronize_session=False)
        )

    def test_stale_balance_is_conflict(self, db_session, store, make_deposit):
        deposit = deposit_service.load_deposit(store.id, make_deposit(quantity=10).id)
        self._move_balance(db_session, deposit.id, Decimal("8"))

        with pytest.raises(ConflictError):
            deposit_service.decrement_remaining(deposit, Decimal("3"))
        db_session.rollback()

    def test_stale_balance_now_insufficient(self, db_session, store, make_deposit):
        deposit = deposit_service.load_deposit(store.id, make_deposit(quantity=10).id)
        self._move_balance(db_session, deposit.id, Decimal("2"))

        with pytest.raises(InsufficientQuantityError) as exc:
            deposit_service.decrement_remaining(deposit, Decimal("3"))
        assert exc.value.available == Decimal("2")
        db_session.rollback()

    def test_stale_status_is_invalid_state(self, db_session, store, make_deposit):
        deposit = deposit_service.load_deposit(store.id, make_deposit(quantity=10).id)
        db_session.execute(
            update(Deposit)
            .where(Deposit.id == deposit.id)
            .values(status="transferred_out")
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(InvalidStateError):
            deposit_service.decrement_remaining(deposit, Decimal("1"))
        db_session.rollback()

    def test_decrement_to_zero_withdraws(self, db_session, store, make_deposit):
        deposit = deposit_service.load_deposit(store.id, make_deposit(quantity=2).id)
        deposit_service.decrement_remaining(deposit, Decimal("2"))
        db_session.commit()

        assert deposit.remaining_qty == 0
        assert deposit.remaining_percent == 0
        assert deposit.status == "withdrawn"


class TestVipAndExpiry:
    """set_vip, mark_expired, extend_expiry, set_expiry_date."""

    def test_enable_vip_clears_expiry(self, db_session, store, make_deposit):
        deposit = make_deposit()
        assert deposit.expiry_date is not None

        updated = deposit_service.set_vip(store.id, deposit.id, True, actor="manager")
        assert updated.is_vip is True
        assert updated.expiry_date is None

    def test_enable_vip_revives_expired_deposit(self, db_session, store, make_deposit):
        deposit = make_deposit()
        deposit_service.mark_expired(store.id, deposit.id, actor="manager")

        updated = deposit_service.set_vip(store.id, deposit.id, True, actor="manager")
        assert updated.status == "in_store"
        assert updated.expiry_date is None

        entry = db_session.query(AuditEntry).filter_by(
            action_type=audit_service.DEPOSIT_VIP_CHANGED
        ).one()
        assert entry.old_value["status"] == "expired"
        assert entry.old_value["is_vip"] is False
        assert entry.new_value == {"is_vip": True, "expiry_date": None, "status": "in_store"}

    def test_disable_vip_then_set_expiry(self, db_session, store, make_deposit):
        deposit = make_deposit(is_vip=True)

        updated = deposit_service.set_vip(store.id, deposit.id, False, actor="manager")
        assert updated.is_vip is False
        assert updated.expiry_date is None

        updated = deposit_service.set_expiry_date(
            store.id, deposit.id, datetime(2030, 6, 1), actor="manager"
        )
        assert updated.expiry_date == datetime(2030, 6, 1)

    def test_set_vip_unchanged_is_not_audited(self, db_session, store, make_deposit):
        deposit = make_deposit(is_vip=True)
        deposit_service.set_vip(store.id, deposit.id, True)
        assert db_session.query(AuditEntry).filter_by(
            action_type=audit_service.DEPOSIT_VIP_CHANGED
        ).count() == 0

    def test_set_vip_on_terminal_deposit(self, db_session, store, make_deposit):
        deposit = make_deposit(quantity=1)
        withdrawal_service.withdraw_now(store.id, deposit.id, 1, processor="staff-1")

        with pytest.raises(InvalidStateError):
            deposit_service.set_vip(store.id, deposit.id, True)

    def test_set_vip_requires_bool(self, db_session, store, make_deposit):
        deposit = make_deposit()
        with pytest.raises(ValidationError):
            deposit_service.set_vip(store.id, deposit.id, "yes")

    def test_mark_expired_once(self, db_session, store, make_deposit):
        deposit = make_deposit()
        expired = deposit_service.mark_expired(store.id, deposit.id, actor="manager")
        assert expired.status == "expired"

        with pytest.raises(InvalidStateError):
            deposit_service.mark_expired(store.id, deposit.id, actor="manager")

    def test_vip_cannot_be_marked_expired(self, db_session, store, make_deposit):
        deposit = make_deposit(is_vip=True)
        with pytest.raises(InvalidStateError):
            deposit_service.mark_expired(store.id, deposit.id)

    def test_extend_lapsed_expiry_counts_from_now(self, db_session, store, make_deposit):
        deposit = make_deposit()
        deposit_service.set_expiry_date(store.id, deposit.id, datetime(2024, 1, 10))

        extended = deposit_service.extend_expiry(
            store.id, deposit.id, 30, actor="manager", now=datetime(2024, 2, 1)
        )
        assert extended.expiry_date == datetime(2024, 3, 2)

    def test_extend_future_expiry_counts_from_expiry(self, db_session, store, make_deposit):
        deposit = make_deposit()
        deposit_service.set_expiry_date(store.id, deposit.id, datetime(2024, 3, 1))

        extended = deposit_service.extend_expiry(
            store.id, deposit.id, 10, now=datetime(2024, 2, 1)
        )
        assert extended.expiry_date == datetime(2024, 3, 11)

        entry = db_session.query(AuditEntry).filter_by(
            action_type=audit_service.DEPOSIT_EXPIRY_EXTENDED
        ).order_by(AuditEntry.id.desc()).first()
        assert entry.old_value == {"expiry_date": "2024-03-01T00:00:00Z"}
        assert entry.new_value == {"expiry_date": "2024-03-11T00:00:00Z", "days": 10}

    @pytest.mark.parametrize("days", [0, -5, "ten", 1.5])
    def test_extend_rejects_bad_days(self, db_session, store, make_deposit, days):
        deposit = make_deposit()
        with pytest.raises(ValidationError):
            deposit_service.extend_expiry(store.id, deposit.id, days)

    def test_extend_vip_is_invalid(self, db_session, store, make_deposit):
        deposit = make_deposit(is_vip=True)
        with pytest.raises(InvalidStateError):
            deposit_service.extend_expiry(store.id, deposit.id, 5)

    def test_set_expiry_date_on_vip_is_invalid(self, db_session, store, make_deposit):
        deposit = make_deposit(is_vip=True)
        with pytest.raises(InvalidStateError):
            deposit_service.set_expiry_date(store.id, deposit.id, datetime(2030, 1, 1))


class TestReads:
    """Store-scoped lookups, filters and the print payload."""

    def test_deposit_invisible_to_other_store(self, db_session, store, other_store, make_deposit):
        deposit = make_deposit()
        with pytest.raises(NotFoundError):
            deposit_service.get_deposit(other_store.id, deposit.id)

    def test_lookup_by_code_is_case_insensitive(self, db_session, store, make_deposit):
        deposit = make_deposit()
        found = deposit_service.get_deposit_by_code(store.id, deposit.deposit_code.lower())
        assert found.id == deposit.id

    def test_list_filters(self, db_session, store, make_deposit):
        whisky = make_deposit(product_name="Macallan 12")
        vip = make_deposit(product_name="Hennessy VSOP", customer_name="Malee", is_vip=True)
        expired = make_deposit(product_name="Absolut")
        deposit_service.mark_expired(store.id, expired.id)

        assert [d.id for d in deposit_service.list_deposits(store.id, search="macallan")] == [whisky.id]
        assert [d.id for d in deposit_service.list_deposits(store.id, search="MALEE")] == [vip.id]
        assert [d.id for d in deposit_service.list_deposits(store.id, is_vip=True)] == [vip.id]
        assert [d.id for d in deposit_service.list_deposits(store.id, status="expired")] == [expired.id]
        both = deposit_service.list_deposits(store.id, status="expired,in_store")
        assert {d.id for d in both} == {whisky.id, vip.id, expired.id}

        with pytest.raises(ValidationError):
            deposit_service.list_deposits(store.id, status="lost")

    def test_list_expiring(self, db_session, store, make_deposit):
        soon = make_deposit(expiry_days=3, now=NOW)
        make_deposit(expiry_days=60, now=NOW)
        make_deposit(is_vip=True, now=NOW)

        expiring = deposit_service.list_expiring(store.id, now=NOW)
        assert [d.id for d in expiring] == [soon.id]

    def test_print_payload(self, db_session, store, make_deposit):
        deposit = make_deposit(now=NOW)
        payload = deposit_service.build_print_payload(store.id, deposit.id, now=NOW)

        assert payload["store"] == {"id": store.id, "code": "BKK01", "name": "Sukhumvit 11"}
        assert payload["deposit"]["deposit_code"] == deposit.deposit_code
        assert payload["days_until_expiry"] == 31
        assert payload["settings"]["default_expiry_days"] == 30
        assert payload["printed_at"] == "2024-01-01T05:00:00Z"
