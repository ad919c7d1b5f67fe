from dataclasses import dataclass
from datetime import datetime

from dirqueue.models.lifecycle import STATUS_QUEUED


@dataclass
class Submission:
    id: int
    user_id: int
    directory_id: int
    status: str = STATUS_QUEUED
    campaign_run_id: int | None = None
    directory_name: str | None = None
    retry_count: int = 0
    queue_position: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    action_type: str | None = None
    action_instructions: str | None = None
    action_url: str | None = None
    action_deadline: datetime | None = None
    action_required_at: datetime | None = None
    submitted_at: datetime | None = None
    listing_url: str | None = None
    error_message: str | None = None
    error_code: str | None = None
    failed_at: datetime | None = None
    blocked_at: datetime | None = None
    blocked_reason: str | None = None


@dataclass
class ClaimedSubmission:
    """A submission row returned by a claim, joined with its directory."""

    id: int
    user_id: int
    directory_id: int
    campaign_run_id: int | None
    queue_position: int
    retry_count: int
    directory_name: str
    directory_slug: str
    directory_url: str | None
    submission_mode: str


@dataclass
class CampaignRun:
    id: int
    user_id: int
    total_directories: int = 0
    directories_queued: int = 0
    directories_in_progress: int = 0
    directories_action_needed: int = 0
    directories_submitted: int = 0
    directories_failed: int = 0

    @property
    def counted(self) -> int:
        return (
            self.directories_queued
            + self.directories_in_progress
            + self.directories_action_needed
            + self.directories_submitted
            + self.directories_failed
        )


@dataclass
class BusinessProfile:
    user_id: int
    business_name: str
    website_url: str | None = None
    description: str | None = None


@dataclass
class ReminderCandidate:
    """An actionable submission joined with its owner's contact details and preferences."""

    submission_id: int
    user_id: int
    user_email: str
    user_name: str | None
    directory_name: str
    directory_url: str | None
    action_type: str | None
    action_instructions: str | None
    action_deadline: datetime
    timezone: str
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None


@dataclass
class BlockedSubmission:
    id: int
    user_id: int
    directory_name: str | None = None
