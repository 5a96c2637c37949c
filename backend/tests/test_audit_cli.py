"""
Ledger audit queries and the Flask CLI command groups.
"""

import pytest
from sqlalchemy.exc import IntegrityError

from loyalty.models import User
from loyalty.roles import Actor
from loyalty.services.audit_service import find_balance_mismatches, find_pool_violations
from loyalty.services.transaction_service import RedemptionCommand, request_redemption


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


# =============================================================================
# AUDIT QUERIES
# =============================================================================


class TestAuditQueries:

    def test_clean_ledger(self, db_session, make_user, make_event):
        make_user(points=120)
        make_event(points=50)

        assert find_balance_mismatches() == []
        assert find_pool_violations() == []

    def test_balance_tampered_outside_ledger(self, db_session, make_user):
        member = make_user(points=100)
        member.points = 150
        db_session.commit()

        [row] = find_balance_mismatches()

        assert row["user_id"] == member.id
        assert row["points"] == 150
        assert row["ledger_total"] == 100
        assert row["difference"] == 50

    def test_user_without_rows_counts_as_zero(self, db_session, make_user):
        member = make_user()
        member.points = 7
        db_session.commit()

        [row] = find_balance_mismatches()
        assert row["ledger_total"] == 0

    def test_awarded_without_event_rows(self, db_session, make_event):
        """Pool still adds up, but nothing in the ledger paid the awarded points."""
        event = make_event(points=100)
        event.points_remain = 90
        event.points_awarded = 10
        db_session.commit()

        [row] = find_pool_violations()
        assert row["event_id"] == event.id
        assert row["points_awarded"] == 10
        assert row["ledger_paid"] == 0

    def test_schema_rejects_unbalanced_pool(self, db_session, make_event):
        event = make_event(points=100)
        event.points_remain = 80

        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

        assert find_pool_violations() == []


# =============================================================================
# CLI
# =============================================================================


class TestSystemCommands:

    def test_seed_is_idempotent(self, db_session, runner):
        first = runner.invoke(args=["system", "seed"])
        assert first.exit_code == 0
        assert first.output.count("PASS Created") == 4

        second = runner.invoke(args=["system", "seed"])
        assert second.exit_code == 0
        assert second.output.count("SKIP") == 4
        assert db_session.query(User).count() == 4

        manager = db_session.query(User).filter_by(utorid="manage01").one()
        assert manager.role == "manager"
        assert manager.verified is True


class TestUserCommands:

    def test_list_empty(self, db_session, runner):
        result = runner.invoke(args=["users", "list"])
        assert "No users found." in result.output

    def test_create_and_list(self, db_session, runner):
        result = runner.invoke(args=[
            "users", "create",
            "--utorid", "clive123",
            "--name", "Clive",
            "--email", "clive@mail.utoronto.ca",
            "--role", "cashier",
            "--verified",
        ])
        assert result.exit_code == 0, result.output
        assert "PASS Created user: clive123" in result.output

        listing = runner.invoke(args=["users", "list", "--role", "cashier"])
        assert "clive123" in listing.output

    def test_create_rejects_bad_email(self, db_session, runner):
        result = runner.invoke(args=[
            "users", "create",
            "--utorid", "clive123",
            "--name", "Clive",
            "--email", "clive@example.com",
        ])
        assert result.exit_code == 1
        assert "FAIL" in result.output

    def test_create_duplicate(self, db_session, runner, customer):
        result = runner.invoke(args=[
            "users", "create",
            "--utorid", customer.utorid,
            "--name", "Copy",
            "--email", "copy@mail.utoronto.ca",
        ])
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_set_role(self, db_session, runner, customer):
        result = runner.invoke(args=["users", "set-role", customer.utorid, "manager"])

        assert result.exit_code == 0
        assert f"PASS {customer.utorid}: regular -> manager" in result.output
        assert db_session.get(User, customer.id).role == "manager"

    def test_set_role_unknown_user(self, db_session, runner):
        result = runner.invoke(args=["users", "set-role", "ghost001", "manager"])
        assert result.exit_code == 1
        assert "not found" in result.output


class TestLedgerCommands:

    def test_audit_passes_on_clean_ledger(self, db_session, runner, make_user):
        make_user(points=40)

        result = runner.invoke(args=["ledger", "audit"])

        assert result.exit_code == 0
        assert "PASS Ledger is consistent." in result.output

    def test_audit_reports_findings(self, db_session, runner, make_user, make_event):
        member = make_user(points=40)
        member.points = 45
        event = make_event(points=100)
        event.points_remain = 75
        event.points_awarded = 25
        db_session.commit()

        result = runner.invoke(args=["ledger", "audit"])

        assert result.exit_code == 1
        assert f"FAIL User {member.utorid}" in result.output
        assert "diff=+5" in result.output
        assert f"FAIL Event {event.id}" in result.output
        assert "awarded=25 paid=0" in result.output
        assert "AUDIT 1 balance mismatch(es), 1 pool violation(s)" in result.output

    def test_pending_redemptions(self, db_session, runner, make_user):
        member = make_user(points=500)

        empty = runner.invoke(args=["ledger", "pending-redemptions"])
        assert "No pending redemptions." in empty.output

        txn = request_redemption(RedemptionCommand(120), Actor(member.id, member.role))

        listing = runner.invoke(args=["ledger", "pending-redemptions"])
        assert member.utorid in listing.output
        assert str(txn.id) in listing.output
