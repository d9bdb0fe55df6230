"""Tests for the trial reminder job and the operator CLI commands."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from billing_app.models.user import User
from billing_app.services.trial_reminder_service import (
    pick_reminder_tier,
    process_trial_reminders,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _trial_user(db_session, email, days_left, sent=None, subscribed=False):
    user = User(
        email=email,
        full_name="Trial User",
        trial_expires=NOW + timedelta(days=days_left),
        trial_reminders_sent=list(sent or []),
        is_subscribed=subscribed,
    )
    db_session.add(user)
    db_session.commit()
    return user


class TestPickReminderTier:

    def test_first_reminder_inside_three_days(self, db_session):
        user = _trial_user(db_session, "a@example.com", 2.5)
        assert pick_reminder_tier(user, NOW) == "first_reminder"

    def test_final_warning_supersedes_unsent_first(self, db_session):
        user = _trial_user(db_session, "b@example.com", 0.5)
        assert pick_reminder_tier(user, NOW) == "final_warning"

    def test_nothing_when_tier_already_sent(self, db_session):
        first_sent = _trial_user(db_session, "c@example.com", 2, sent=["first_reminder"])
        final_sent = _trial_user(db_session, "d@example.com", 0.5, sent=["final_warning"])
        assert pick_reminder_tier(first_sent, NOW) is None
        assert pick_reminder_tier(final_sent, NOW) is None

    def test_nothing_when_trial_far_off_or_over(self, db_session):
        far = _trial_user(db_session, "e@example.com", 10)
        over = _trial_user(db_session, "f@example.com", -1)
        assert pick_reminder_tier(far, NOW) is None
        assert pick_reminder_tier(over, NOW) is None


class TestProcessTrialReminders:

    @patch("billing_app.services.trial_reminder_service.send_email_sync")
    def test_sends_and_records(self, mock_send, db_session):
        mock_send.return_value = True
        user = _trial_user(db_session, "g@example.com", 2)
        _trial_user(db_session, "paid@example.com", 2, subscribed=True)

        assert process_trial_reminders(now=NOW) == 1
        assert mock_send.call_args.kwargs["to"] == "g@example.com"
        assert mock_send.call_args.kwargs["context"]["tier"] == "first_reminder"

        db_session.expire_all()
        assert user.trial_reminders_sent == ["first_reminder"]

        # Second run the same day sends nothing new
        assert process_trial_reminders(now=NOW) == 0

    @patch("billing_app.services.trial_reminder_service.send_email_sync")
    def test_failed_delivery_is_not_recorded(self, mock_send, db_session):
        mock_send.return_value = False
        user = _trial_user(db_session, "h@example.com", 0.5)

        assert process_trial_reminders(now=NOW) == 0
        db_session.expire_all()
        assert user.trial_reminders_sent == []

    @patch("billing_app.services.trial_reminder_service.send_email_sync")
    def test_dry_run_sends_nothing(self, mock_send, db_session):
        user = _trial_user(db_session, "i@example.com", 1)

        assert process_trial_reminders(dry_run=True, now=NOW) == 1
        mock_send.assert_not_called()
        db_session.expire_all()
        assert user.trial_reminders_sent == []


class TestCliCommands:

    def test_seed_admin_creates_then_reports_existing(self, app, db_session):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["seed-admin", "--email", "Ops@Example.com",
                                     "--password", "s3cret"])
        assert result.exit_code == 0
        admin = User.query.filter_by(email="ops@example.com").one()
        assert admin.is_admin is True

        result = runner.invoke(args=["seed-admin", "--email", "ops@example.com"])
        assert "already exists" in result.output

    def test_verify_stripe_prices_reports_each_price(self, app, gateway):
        gateway.prices["price_plus_monthly"] = {
            "id": "price_plus_monthly", "livemode": False, "product": {"active": True},
        }
        runner = app.test_cli_runner()

        result = runner.invoke(args=["verify-stripe-prices"])
        assert result.exit_code == 0
        assert "Stripe key mode: Test" in result.output
        assert "plus-monthly: price_plus_monthly" in result.output
        assert "product_active=True" in result.output
        assert "No such price: price_teams_yearly" in result.output

    @patch("billing_app.services.trial_reminder_service.send_email_sync")
    def test_send_trial_reminders_dry_run(self, mock_send, app, db_session):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["send-trial-reminders", "--dry-run"])
        assert result.exit_code == 0
        assert "[DRY RUN]" in result.output
        mock_send.assert_not_called()
