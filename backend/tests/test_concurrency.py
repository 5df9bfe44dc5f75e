# Overview: Threaded races against a file-backed SQLite database.

"""
Concurrency tests for the deposit services.

Each worker runs in its own app context (own session, own connection) so
the conditional UPDATEs are exercised against real interleavings rather
than a shared in-memory connection.
"""
import os
import tempfile
import threading
import unittest
from decimal import Decimal

from bottlekeep import create_app
from bottlekeep.extensions import db
from bottlekeep.models import Transfer, Withdrawal
from bottlekeep.services import deposit_service, store_service, transfer_service, withdrawal_service
from bottlekeep.validation import ConflictError, InsufficientQuantityError, InvalidStateError


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "NOTIFICATION_WEBHOOK_URL": None,
            "DB_RETRY_ATTEMPTS": 5,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            store = store_service.create_store("BKK01", "Concurrency Store", timezone="Asia/Bangkok")
            self.store_id = store.id
            central = store_service.create_store("HQ", "Central", is_central=True, timezone="Asia/Bangkok")
            self.central_id = central.id

            deposit = deposit_service.create_deposit(
                self.store_id,
                customer_name="Concurrent Customer",
                product_name="Concurrent Bottle",
                quantity=10,
            )
            self.deposit_id = deposit.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _race(self, *calls):
        """Run each call in its own thread, released together; returns outcomes in call order."""
        barrier = threading.Barrier(len(calls))
        outcomes = [None] * len(calls)

        def worker(index, call):
            with self.app.app_context():
                try:
                    barrier.wait(timeout=10)
                    call()
                    outcomes[index] = "ok"
                except Exception as exc:
                    outcomes[index] = exc
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=(i, c)) for i, c in enumerate(calls)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return outcomes

    def test_concurrent_completions_cannot_overdraw(self):
        with self.app.app_context():
            first = withdrawal_service.request_withdrawal(self.store_id, self.deposit_id, 7)
            deposit = deposit_service.get_deposit(self.store_id, self.deposit_id)
            second = Withdrawal(
                deposit_id=self.deposit_id,
                store_id=self.store_id,
                customer_name=deposit.customer_name,
                product_name=deposit.product_name,
                requested_qty=Decimal("7"),
                status="pending",
            )
            db.session.add(second)
            db.session.commit()
            ids = (first.id, second.id)

        outcomes = self._race(
            lambda: withdrawal_service.complete_withdrawal(self.store_id, ids[0], 7),
            lambda: withdrawal_service.complete_withdrawal(self.store_id, ids[1], 7),
        )

        self.assertEqual(outcomes.count("ok"), 1, outcomes)
        failure = next(o for o in outcomes if o != "ok")
        self.assertIsInstance(failure, (InsufficientQuantityError, ConflictError))

        with self.app.app_context():
            deposit = deposit_service.get_deposit(self.store_id, self.deposit_id)
            self.assertEqual(deposit.remaining_qty, Decimal("3.00"))
            self.assertEqual(deposit.status, "in_store")
            completed = db.session.query(Withdrawal).filter_by(status="completed").count()
            self.assertEqual(completed, 1)

    def test_concurrent_direct_withdrawals(self):
        outcomes = self._race(
            lambda: withdrawal_service.withdraw_now(self.store_id, self.deposit_id, 6),
            lambda: withdrawal_service.withdraw_now(self.store_id, self.deposit_id, 6),
        )

        self.assertEqual(outcomes.count("ok"), 1, outcomes)
        with self.app.app_context():
            deposit = deposit_service.get_deposit(self.store_id, self.deposit_id)
            self.assertEqual(deposit.remaining_qty, Decimal("4.00"))

    def test_concurrent_transfers_of_one_deposit(self):
        outcomes = self._race(
            lambda: transfer_service.create_transfer(self.store_id, self.deposit_id),
            lambda: transfer_service.create_transfer(self.store_id, self.deposit_id),
        )

        self.assertEqual(outcomes.count("ok"), 1, outcomes)
        failure = next(o for o in outcomes if o != "ok")
        self.assertIsInstance(failure, (InvalidStateError, ConflictError))
        with self.app.app_context():
            self.assertEqual(db.session.query(Transfer).count(), 1)
            deposit = deposit_service.get_deposit(self.store_id, self.deposit_id)
            self.assertEqual(deposit.status, "transfer_pending")

    def test_transfer_races_full_withdrawal(self):
        outcomes = self._race(
            lambda: transfer_service.create_transfer(self.store_id, self.deposit_id),
            lambda: withdrawal_service.withdraw_now(self.store_id, self.deposit_id, 10),
        )

        self.assertEqual(outcomes.count("ok"), 1, outcomes)
        failure = next(o for o in outcomes if o != "ok")
        self.assertIsInstance(failure, InvalidStateError)

        with self.app.app_context():
            deposit = deposit_service.get_deposit(self.store_id, self.deposit_id)
            transfers = db.session.query(Transfer).filter_by(deposit_id=self.deposit_id).all()
            withdrawals = db.session.query(Withdrawal).filter_by(deposit_id=self.deposit_id).all()
            if outcomes[0] == "ok":
                self.assertEqual(deposit.status, "transfer_pending")
                self.assertEqual(deposit.remaining_qty, Decimal("10.00"))
                self.assertEqual([t.quantity for t in transfers], [deposit.remaining_qty])
                self.assertEqual(withdrawals, [])
            else:
                self.assertEqual(deposit.status, "withdrawn")
                self.assertEqual(deposit.remaining_qty, Decimal("0.00"))
                self.assertEqual(transfers, [])
                self.assertEqual([w.actual_qty for w in withdrawals], [Decimal("10.00")])

    def test_transfer_snapshot_matches_partial_withdrawal(self):
        outcomes = self._race(
            lambda: transfer_service.create_transfer(self.store_id, self.deposit_id),
            lambda: withdrawal_service.withdraw_now(self.store_id, self.deposit_id, 4),
        )

        # Either order is legal; a losing withdrawal sees transfer_pending
        self.assertEqual(outcomes[0], "ok", outcomes)
        if outcomes[1] != "ok":
            self.assertIsInstance(outcomes[1], InvalidStateError)

        with self.app.app_context():
            deposit = deposit_service.get_deposit(self.store_id, self.deposit_id)
            transfer = db.session.query(Transfer).filter_by(deposit_id=self.deposit_id).one()
            drawn = sum(
                (w.actual_qty for w in db.session.query(Withdrawal).filter_by(deposit_id=self.deposit_id)),
                Decimal("0"),
            )
            self.assertEqual(deposit.status, "transfer_pending")
            self.assertEqual(transfer.quantity, deposit.remaining_qty)
            self.assertEqual(deposit.remaining_qty + drawn, Decimal("10.00"))

    def test_concurrent_intake_codes_are_unique(self):
        codes = []
        lock = threading.Lock()

        def intake():
            deposit = deposit_service.create_deposit(
                self.store_id, customer_name="Rush Hour", product_name="Singha", quantity=1
            )
            with lock:
                codes.append(deposit.deposit_code)

        outcomes = self._race(*([intake] * 8))

        self.assertEqual(outcomes, ["ok"] * 8)
        self.assertEqual(len(set(codes)), 8)


if __name__ == "__main__":
    unittest.main()
