"""
Action reminders and deadline enforcement for submissions waiting on the user.

Reminders go out by days left until the action deadline:

    8 days left  -> action_reminder_day2
    5 days left  -> action_reminder_day5
    2 days left  -> action_final_warning
    deadline passed -> submission blocked

Run once from cron with ``python -m dirqueue.services.reminder_service``.
"""
import asyncio
import logging
import math
import sys
from collections.abc import Callable
from datetime import datetime, timedelta
from html import escape
from zoneinfo import ZoneInfo

from dirqueue.config import Settings, configure_logging, settings
from dirqueue.db.connection import run_migrations, utcnow
from dirqueue.models.lifecycle import (
    BLOCKED_REASON_DEADLINE,
    NOTIFICATION_FINAL_WARNING,
    NOTIFICATION_REMINDER_DAY2,
    NOTIFICATION_REMINDER_DAY5,
    NOTIFICATION_SUBMISSION_LIVE,
    STATUS_SUBMITTED,
)
from dirqueue.models.submission import ReminderCandidate
from dirqueue.repositories.base import AbstractSubmissionRepository
from dirqueue.repositories.submission_repository import SubmissionRepository
from dirqueue.schemas.worker import ReminderPassResult
from dirqueue.services.email_service import EmailSender, ResendEmailSender

logger = logging.getLogger(__name__)

REMINDER_SCHEDULE = {
    8: NOTIFICATION_REMINDER_DAY2,
    5: NOTIFICATION_REMINDER_DAY5,
    2: NOTIFICATION_FINAL_WARNING,
}

DEFAULT_ACTION_TYPE = "Verification"
DEFAULT_INSTRUCTIONS = "Please complete the verification process to activate your listing."

_URGENCY_COLORS = {
    NOTIFICATION_REMINDER_DAY2: "#00B9DA",
    NOTIFICATION_REMINDER_DAY5: "#f59e0b",
    NOTIFICATION_FINAL_WARNING: "#ef4444",
}


def days_remaining(deadline: datetime, now: datetime) -> int:
    return math.floor((deadline - now) / timedelta(days=1))


def reminder_type_for(days_left: int) -> str | None:
    return REMINDER_SCHEDULE.get(days_left)


def _minutes_of_day(value: str) -> int:
    parts = value.strip().split(":")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"invalid time of day: {value!r}")
    return hour * 60 + minute


def is_in_quiet_hours(start: str, end: str, timezone: str, now: datetime, fail_open: bool = True) -> bool:
    """
    Return True if now, in the user's timezone, falls inside [start, end].

    Windows with start > end wrap past midnight (22:00-08:00). When the
    window or timezone cannot be parsed the result is ``not fail_open``.
    """
    try:
        local = now.astimezone(ZoneInfo(timezone))
        start_minutes = _minutes_of_day(start)
        end_minutes = _minutes_of_day(end)
    except (ValueError, KeyError, IndexError) as exc:
        logger.error("[reminders] cannot evaluate quiet hours | tz=%s | error=%s", timezone, exc)
        return not fail_open

    current = local.hour * 60 + local.minute
    if start_minutes > end_minutes:
        return current >= start_minutes or current <= end_minutes
    return start_minutes <= current <= end_minutes


def render_reminder(
    candidate: ReminderCandidate, reminder_type: str, days_left: int, frontend_url: str
) -> tuple[str, str, str]:
    """Return (subject, html, text) for an action reminder."""
    name = candidate.user_name or "there"
    directory = candidate.directory_name
    action_type = candidate.action_type or DEFAULT_ACTION_TYPE
    instructions = candidate.action_instructions or DEFAULT_INSTRUCTIONS
    link = f"{frontend_url}/dashboard.html?tab=citation-network&submission={candidate.submission_id}"
    color = _URGENCY_COLORS.get(reminder_type, _URGENCY_COLORS[NOTIFICATION_REMINDER_DAY2])

    if reminder_type == NOTIFICATION_FINAL_WARNING:
        subject = f"Final Warning: {directory} expires in {days_left} days"
        warning = (
            f"If no action is taken within {days_left} days, this submission will be "
            "blocked and you'll need to restart the process."
        )
    elif reminder_type == NOTIFICATION_REMINDER_DAY5:
        subject = f"Reminder: {directory} - {days_left} days remaining"
        warning = ""
    else:
        subject = f"Action Required: {directory} submission needs attention"
        warning = ""

    warning_html = f'<p style="color: #ef4444; font-weight: bold;">{warning}</p>' if warning else ""
    html = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
      <h1 style="background: {color}; color: white; padding: 24px; margin: 0;">Action Required</h1>
      <p>Hi {escape(name)},</p>
      <p>Your submission to <strong>{escape(directory)}</strong> requires action:</p>
      <div style="border-left: 4px solid {color}; padding: 16px;">
        <p><strong>Action needed:</strong> {escape(action_type)}</p>
        <p>{escape(instructions)}</p>
      </div>
      <p style="font-size: 24px; font-weight: bold; color: {color};">{days_left} days remaining</p>
      <p><a href="{link}">Complete Action Now</a></p>
      {warning_html}
      <p>Best regards,<br>The AI Citation Network Team</p>
      <p><a href="{frontend_url}/dashboard.html?tab=settings">Manage notification preferences</a></p>
    </div>
    """

    text = (
        f"Action Required: {directory}\n\n"
        f"Hi {name},\n\n"
        f"Your submission to {directory} requires action:\n\n"
        f"Action needed: {action_type}\n{instructions}\n\n"
        f"Time remaining: {days_left} days\n\n"
        f"Complete your action here: {link}\n\n"
        + (f"WARNING: {warning}\n\n" if warning else "")
        + "Best regards,\nThe AI Citation Network Team\n\n"
        f"Manage notifications: {frontend_url}/dashboard.html?tab=settings\n"
    )
    return subject, html, text


class ReminderService:
    def __init__(
        self,
        repository: AbstractSubmissionRepository,
        email_sender: EmailSender,
        clock: Callable[[], datetime] = utcnow,
        frontend_url: str = "http://localhost:8000",
        default_timezone: str = "America/Toronto",
        quiet_hours_fail_open: bool = True,
    ) -> None:
        self._repository = repository
        self._email = email_sender
        self._clock = clock
        self._frontend_url = frontend_url
        self._default_timezone = default_timezone
        self._quiet_hours_fail_open = quiet_hours_fail_open

    async def run_reminder_pass(self) -> ReminderPassResult:
        """Send due reminders, then block submissions whose deadline has passed."""
        now = self._clock()
        result = ReminderPassResult()

        candidates = await asyncio.to_thread(
            self._repository.list_reminder_candidates, now, self._default_timezone
        )
        logger.info("[reminders] starting pass | candidates=%d", len(candidates))

        for candidate in candidates:
            days_left = days_remaining(candidate.action_deadline, now)
            reminder_type = reminder_type_for(days_left)
            if reminder_type is None:
                continue

            if (
                candidate.quiet_hours_start
                and candidate.quiet_hours_end
                and is_in_quiet_hours(
                    candidate.quiet_hours_start,
                    candidate.quiet_hours_end,
                    candidate.timezone,
                    now,
                    fail_open=self._quiet_hours_fail_open,
                )
            ):
                logger.info("[reminders] skipped, quiet hours | submission=%s", candidate.submission_id)
                result.skipped += 1
                continue

            already_sent = await asyncio.to_thread(
                self._repository.notification_sent,
                candidate.user_id,
                candidate.submission_id,
                reminder_type,
            )
            if already_sent:
                logger.info(
                    "[reminders] skipped, already sent | submission=%s | type=%s",
                    candidate.submission_id,
                    reminder_type,
                )
                result.skipped += 1
                continue

            subject, html, text = render_reminder(candidate, reminder_type, days_left, self._frontend_url)
            try:
                await self._email.send(candidate.user_email, subject, html, text)
            except Exception as exc:
                logger.error(
                    "[reminders] send failed | submission=%s | type=%s | error=%s",
                    candidate.submission_id,
                    reminder_type,
                    exc,
                )
                await self._record(candidate.user_id, candidate.submission_id, reminder_type, now, str(exc))
                result.errors += 1
                continue

            await self._record(candidate.user_id, candidate.submission_id, reminder_type, now)
            logger.info(
                "[reminders] sent | submission=%s | type=%s | to=%s",
                candidate.submission_id,
                reminder_type,
                candidate.user_email,
            )
            result.sent += 1

        result.blocked = await self.block_expired(now)
        logger.info(
            "[reminders] pass complete | sent=%d | skipped=%d | errors=%d | blocked=%d",
            result.sent,
            result.skipped,
            result.errors,
            result.blocked,
        )
        return result

    async def block_expired(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        blocked = await asyncio.to_thread(self._repository.block_expired, now, BLOCKED_REASON_DEADLINE)
        if blocked:
            logger.info("[reminders] blocked expired submissions | count=%d", len(blocked))
        return len(blocked)

    async def notify_submission_live(self, submission_id: int) -> str:
        """Email the owner once that their listing is live. Returns sent or the skip reason."""
        submission = await asyncio.to_thread(self._repository.get_submission, submission_id)
        if submission is None:
            return "not_found"
        if submission.status != STATUS_SUBMITTED:
            return "not_submitted"

        already_sent = await asyncio.to_thread(
            self._repository.notification_sent,
            submission.user_id,
            submission.id,
            NOTIFICATION_SUBMISSION_LIVE,
        )
        if already_sent:
            return "already_notified"

        contact = await asyncio.to_thread(self._repository.get_user_contact, submission.user_id)
        if contact is None:
            return "user_not_found"
        email, name = contact

        directory = submission.directory_name or "directory"
        dashboard = f"{self._frontend_url}/dashboard.html?tab=citation-network"
        listing_html = (
            f'<p><a href="{escape(submission.listing_url)}">View your live listing</a></p>'
            if submission.listing_url
            else ""
        )
        html = (
            f"<h2>Great news!</h2><p>Hi {escape(name or 'there')},</p>"
            f"<p>Your listing on <strong>{escape(directory)}</strong> is now live and visible to AI models!</p>"
            f"{listing_html}<p><a href=\"{dashboard}\">View all submissions</a></p>"
        )
        text = f"Your {directory} listing is now LIVE!"
        if submission.listing_url:
            text += f" View it here: {submission.listing_url}"
        text += f"\n\nView all submissions: {dashboard}"

        await self._email.send(email, f"Your {directory} listing is now LIVE!", html, text)
        await self._record(submission.user_id, submission.id, NOTIFICATION_SUBMISSION_LIVE, self._clock())
        logger.info("[reminders] live notification sent | submission=%s", submission.id)
        return "sent"

    async def _record(
        self,
        user_id: int,
        submission_id: int,
        notification_type: str,
        now: datetime,
        error_message: str | None = None,
    ) -> None:
        try:
            await asyncio.to_thread(
                self._repository.record_notification,
                user_id,
                submission_id,
                notification_type,
                now,
                "email",
                error_message,
            )
        except Exception:
            logger.exception(
                "[reminders] failed to record notification | submission=%s | type=%s",
                submission_id,
                notification_type,
            )


def build_reminder_service(
    repository: AbstractSubmissionRepository, config: Settings = settings
) -> ReminderService:
    sender = ResendEmailSender(
        api_key=config.RESEND_API_KEY,
        sender=config.EMAIL_FROM,
        api_url=config.EMAIL_API_URL,
        timeout=config.EMAIL_TIMEOUT_SECONDS,
    )
    return ReminderService(
        repository,
        sender,
        frontend_url=config.FRONTEND_URL,
        default_timezone=config.DEFAULT_TIMEZONE,
        quiet_hours_fail_open=config.QUIET_HOURS_FAIL_OPEN,
    )


def main() -> int:
    configure_logging()
    run_migrations(settings.DB_PATH)
    service = build_reminder_service(SubmissionRepository(settings.DB_PATH))
    try:
        result = asyncio.run(service.run_reminder_pass())
    except Exception:
        logger.exception("[reminders] job failed")
        return 1
    logger.info("[reminders] job complete | %s", result.model_dump())
    return 0


if __name__ == "__main__":
    sys.exit(main())
