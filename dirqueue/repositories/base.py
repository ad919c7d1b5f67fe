from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import datetime

from dirqueue.models.submission import (
    BlockedSubmission,
    BusinessProfile,
    CampaignRun,
    ClaimedSubmission,
    ReminderCandidate,
    Submission,
)

# (directory_id, directory_slug, recent_count) rows -> directory ids to exclude
RateLimitPolicy = Callable[[Iterable[tuple[int, str, int]]], set[int]]


class AbstractSubmissionRepository(ABC):
    @abstractmethod
    def create_campaign_run(self, user_id: int, now: datetime) -> int:
        """Create an empty campaign run and return its id."""

    @abstractmethod
    def enqueue(
        self,
        user_id: int,
        directory_id: int,
        now: datetime,
        campaign_run_id: int | None = None,
        queue_position: int = 0,
    ) -> int:
        """Insert a queued submission and count it on its campaign. Returns the new id."""

    @abstractmethod
    def claim_batch(
        self,
        max_batch_size: int,
        now: datetime,
        max_retry_count: int,
        rate_limit: RateLimitPolicy,
        window_seconds: int,
    ) -> list[ClaimedSubmission]:
        """Atomically move up to max_batch_size eligible queued submissions to in_progress."""

    @abstractmethod
    def release(self, submission: ClaimedSubmission, now: datetime) -> None:
        """Return a claimed but unprocessed submission to the queue without using a retry."""

    @abstractmethod
    def mark_action_needed(
        self,
        submission: ClaimedSubmission,
        action_type: str,
        instructions: str,
        action_url: str | None,
        deadline: datetime,
        now: datetime,
    ) -> None:
        """Move an in_progress submission to action_needed with a deadline."""

    @abstractmethod
    def mark_submitted(
        self, submission: ClaimedSubmission, now: datetime, listing_url: str | None = None
    ) -> None:
        """Move an in_progress submission to submitted."""

    @abstractmethod
    def record_failure(
        self, submission_id: int, error_message: str, now: datetime, max_retry_count: int
    ) -> str:
        """Requeue or terminally fail an in_progress submission. Returns the new status."""

    @abstractmethod
    def get_submission(self, submission_id: int) -> Submission | None:
        """Return a submission by id."""

    @abstractmethod
    def get_campaign_run(self, campaign_run_id: int) -> CampaignRun | None:
        """Return a campaign run by id."""

    @abstractmethod
    def get_business_profile(self, user_id: int) -> BusinessProfile | None:
        """Return the user's most recently updated business profile."""

    @abstractmethod
    def get_user_contact(self, user_id: int) -> tuple[str, str | None] | None:
        """Return (email, name) for a user."""

    @abstractmethod
    def list_reminder_candidates(self, now: datetime, default_timezone: str) -> list[ReminderCandidate]:
        """Actionable submissions with a future deadline whose owners accept email reminders."""

    @abstractmethod
    def notification_sent(self, user_id: int, submission_id: int, notification_type: str) -> bool:
        """Return True if the ledger already holds this notification."""

    @abstractmethod
    def record_notification(
        self,
        user_id: int,
        submission_id: int,
        notification_type: str,
        now: datetime,
        channel: str = "email",
        error_message: str | None = None,
    ) -> bool:
        """Append a ledger row. Returns False if one already existed."""

    @abstractmethod
    def block_expired(self, now: datetime, reason: str) -> list[BlockedSubmission]:
        """Block every actionable submission whose deadline has passed."""
