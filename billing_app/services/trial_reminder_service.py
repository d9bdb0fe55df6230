"""Trial reminder service — warns free-trial accounts before the trial ends.

Sends two reminders to accounts that:
  - Are not subscribed
  - Have a trial_expires date still in the future
  - Haven't already received the reminder for that tier

Tiers:
  first_reminder  — trial ends within TRIAL_FIRST_REMINDER_DAYS
  final_warning   — trial ends within TRIAL_FINAL_WARNING_DAYS

Designed to be called from a Flask CLI command (`flask send-trial-reminders`)
on a daily cron schedule.
"""

import logging
from datetime import datetime, timezone

import click
from flask import current_app

from billing_app.extensions import db
from billing_app.models.user import User
from billing_app.services.billing_service import as_utc
from billing_app.services.email_service import send_email_sync

logger = logging.getLogger(__name__)

REMINDER_SUBJECTS = {
    "first_reminder": "Your free trial is about to end",
    "final_warning": "Last chance! Your free trial ends tomorrow",
}


def _reminder_tiers():
    """(label, days-left threshold), most urgent first."""
    return [
        ("final_warning", current_app.config.get("TRIAL_FINAL_WARNING_DAYS", 1)),
        ("first_reminder", current_app.config.get("TRIAL_FIRST_REMINDER_DAYS", 3)),
    ]


def pick_reminder_tier(user, now):
    """Return the tier label to send to this account now, or None.

    The most urgent eligible tier wins; a first reminder that was never sent
    is superseded by the final warning rather than sent late.
    """
    expires = as_utc(user.trial_expires)
    if expires is None or expires <= now:
        return None

    days_left = (expires - now).total_seconds() / 86400
    already_sent = set(user.trial_reminders_sent or [])

    for tier_label, threshold_days in _reminder_tiers():
        if days_left > threshold_days:
            continue
        if tier_label in already_sent:
            return None
        return tier_label
    return None


def _eligible_users(now):
    return (
        User.query
        .filter(User.is_subscribed.is_(False))
        .filter(User.is_active.is_(True))
        .filter(User.trial_expires.isnot(None))
        .filter(User.trial_expires > now)
        .order_by(User.trial_expires.asc())
        .all()
    )


def process_trial_reminders(dry_run=False, now=None):
    """Find accounts whose trial is ending and send reminder emails.

    Args:
        dry_run: If True, log what would be sent but don't actually send.
        now:     Override the current time (aware datetime).

    Returns:
        int: Number of reminders sent (or would-be-sent in dry-run mode).
    """
    now = now or datetime.now(timezone.utc)
    sent_count = 0

    if dry_run:
        click.echo("[DRY RUN] No emails will actually be sent.\n")

    users = _eligible_users(now)
    click.echo(f"Found {len(users)} account(s) in an active free trial.")

    for user in users:
        tier_label = pick_reminder_tier(user, now)
        if tier_label is None:
            continue

        expires = as_utc(user.trial_expires)
        subject = REMINDER_SUBJECTS[tier_label]

        if dry_run:
            click.echo(f"   {tier_label}: WOULD SEND → {user.email} (trial ends {expires:%Y-%m-%d})")
            sent_count += 1
            continue

        click.echo(f"   {tier_label}: SENDING → {user.email}")
        try:
            delivered = send_email_sync(
                to=user.email,
                subject=subject,
                template="emails/trial_reminder.html",
                context={
                    "tier": tier_label,
                    "name": user.full_name,
                    "trial_expires": expires.strftime("%d %B %Y"),
                },
            )
        except Exception as e:
            click.echo(f"      ✗ FAILED: {e}")
            logger.error(f"Trial reminder {tier_label} to {user.email} failed: {e}")
            continue

        if not delivered:
            click.echo("      ✗ FAILED: mail transport refused the message")
            continue

        # Reassign so the JSON column is flagged dirty
        user.trial_reminders_sent = list(user.trial_reminders_sent or []) + [tier_label]
        db.session.commit()
        sent_count += 1
        click.echo("      ✓ Sent and recorded.")

    click.echo(
        f"{'[DRY RUN] ' if dry_run else ''}Done: {sent_count} reminder(s) "
        f"{'would be ' if dry_run else ''}sent."
    )
    return sent_count
