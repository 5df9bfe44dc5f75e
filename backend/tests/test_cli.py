# Overview: Pytest coverage for the flask CLI command groups.

from datetime import timedelta

from bottlekeep.models import Deposit, Store
from bottlekeep.time_utils import utcnow


class TestStoreCommands:

    def test_create_and_list(self, app, db_session):
        runner = app.test_cli_runner()

        result = runner.invoke(args=['stores', 'create', '--code', 'hkt01', '--name', 'Old Town'])
        assert "PASS Created store: Old Town" in result.output
        assert db_session.query(Store).filter_by(code="HKT01").count() == 1

        result = runner.invoke(args=['stores', 'create', '--code', 'HKT01', '--name', 'Duplicate'])
        assert result.output.startswith("FAIL")

        result = runner.invoke(args=['stores', 'list'])
        assert "HKT01" in result.output

    def test_create_central(self, app, db_session):
        runner = app.test_cli_runner()
        result = runner.invoke(args=['stores', 'create', '--code', 'HQ', '--name', 'HQ', '--central'])
        assert "(central)" in result.output

    def test_empty_list(self, app, db_session):
        result = app.test_cli_runner().invoke(args=['stores', 'list'])
        assert "No stores found." in result.output


class TestExpirySweepCommand:

    def test_dry_run_then_sweep(self, app, db_session, store, make_deposit):
        deposit = make_deposit(now=utcnow() - timedelta(days=40))
        deposit_id = deposit.id
        runner = app.test_cli_runner()

        result = runner.invoke(args=['deposits', 'expiry-sweep', '--dry-run'])
        assert "DRY RUN" in result.output
        assert "expired=1" in result.output
        db_session.expire_all()
        assert db_session.get(Deposit, deposit_id).status == "in_store"

        result = runner.invoke(args=['deposits', 'expiry-sweep', '--store-id', str(store.id)])
        assert "PASS Swept 1 store(s)" in result.output
        db_session.expire_all()
        assert db_session.get(Deposit, deposit_id).status == "expired"

    def test_unknown_store(self, app, db_session):
        result = app.test_cli_runner().invoke(args=['deposits', 'expiry-sweep', '--store-id', '999999'])
        assert result.output.startswith("FAIL")
