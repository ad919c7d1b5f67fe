"""
Job-state contract shared by the claimer, processor, retry controller and
reminder scheduler.

    queued -> in_progress -> submitted | action_needed | failed
    action_needed -> blocked            (deadline elapsed)
    failed -> queued                    (retry) or stays failed (terminal)
"""
from dataclasses import dataclass

STATUS_QUEUED = "queued"
STATUS_IN_PROGRESS = "in_progress"
STATUS_SUBMITTED = "submitted"
STATUS_PENDING_VERIFICATION = "pending_verification"
STATUS_ACTION_NEEDED = "action_needed"
STATUS_NEEDS_ACTION = "needs_action"
STATUS_FAILED = "failed"
STATUS_BLOCKED = "blocked"

# Statuses that wait on the user and carry an action deadline
ACTIONABLE_STATUSES = (STATUS_ACTION_NEEDED, STATUS_NEEDS_ACTION, STATUS_PENDING_VERIFICATION)

# Statuses counted against a directory's hourly throughput
RATE_COUNTED_STATUSES = (STATUS_IN_PROGRESS, STATUS_SUBMITTED, STATUS_PENDING_VERIFICATION)

ERROR_MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"

BLOCKED_REASON_DEADLINE = "Action deadline expired without response"

# Campaign counter column for each status that has one
CAMPAIGN_COUNTERS = {
    STATUS_QUEUED: "directories_queued",
    STATUS_IN_PROGRESS: "directories_in_progress",
    STATUS_ACTION_NEEDED: "directories_action_needed",
    STATUS_SUBMITTED: "directories_submitted",
    STATUS_FAILED: "directories_failed",
}


@dataclass(frozen=True)
class FailureDecision:
    status: str
    retry_count: int
    error_code: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status == STATUS_FAILED


def decide_failure(retry_count: int, max_retry_count: int) -> FailureDecision:
    """Requeue while retries remain; the failure that reaches the cap is terminal."""
    if retry_count < max_retry_count - 1:
        return FailureDecision(status=STATUS_QUEUED, retry_count=retry_count + 1)
    return FailureDecision(
        status=STATUS_FAILED,
        retry_count=retry_count + 1,
        error_code=ERROR_MAX_RETRIES_EXCEEDED,
    )


# Notification ledger types
NOTIFICATION_REMINDER_DAY2 = "action_reminder_day2"
NOTIFICATION_REMINDER_DAY5 = "action_reminder_day5"
NOTIFICATION_FINAL_WARNING = "action_final_warning"
NOTIFICATION_SUBMISSION_BLOCKED = "submission_blocked"
NOTIFICATION_SUBMISSION_LIVE = "submission_live"
