import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass

from dirqueue.models.lifecycle import STATUS_ACTION_NEEDED, STATUS_SUBMITTED
from dirqueue.models.submission import BusinessProfile, ClaimedSubmission

logger = logging.getLogger(__name__)

ACTION_MANUAL_SUBMISSION = "manual_submission"

MANUAL_INSTRUCTIONS = "Please submit your business listing manually at the directory website."
API_FALLBACK_INSTRUCTIONS = (
    "Automated submission is not yet available for this directory. Please submit manually."
)


class IntegrationNotImplemented(Exception):
    """Raised by an integration that cannot submit to its directory yet."""


@dataclass(frozen=True)
class Outcome:
    status: str
    listing_url: str | None = None
    action_type: str | None = None
    instructions: str | None = None
    action_url: str | None = None

    @classmethod
    def submitted(cls, listing_url: str | None = None) -> "Outcome":
        return cls(status=STATUS_SUBMITTED, listing_url=listing_url)

    @classmethod
    def action_needed(cls, instructions: str, action_url: str | None) -> "Outcome":
        return cls(
            status=STATUS_ACTION_NEEDED,
            action_type=ACTION_MANUAL_SUBMISSION,
            instructions=instructions,
            action_url=action_url,
        )


class DirectoryIntegration(ABC):
    @abstractmethod
    async def submit(self, submission: ClaimedSubmission, profile: BusinessProfile) -> str | None:
        """Submit the listing. Returns the listing URL when the directory provides one."""


class SubmissionStrategy(ABC):
    @abstractmethod
    async def attempt(self, submission: ClaimedSubmission, profile: BusinessProfile) -> Outcome:
        """Try to submit; return what state the submission should move to."""


class ManualSubmissionStrategy(SubmissionStrategy):
    async def attempt(self, submission: ClaimedSubmission, profile: BusinessProfile) -> Outcome:
        return Outcome.action_needed(MANUAL_INSTRUCTIONS, submission.directory_url)


class ApiSubmissionStrategy(SubmissionStrategy):
    """
    Automated submission through a per-directory integration keyed by slug.

    Directories without a working integration fall back to manual action;
    any other integration error propagates so the job is retried.
    """

    def __init__(self, integrations: Mapping[str, DirectoryIntegration] | None = None) -> None:
        self._integrations = dict(integrations or {})

    def register(self, slug: str, integration: DirectoryIntegration) -> None:
        self._integrations[slug] = integration

    async def attempt(self, submission: ClaimedSubmission, profile: BusinessProfile) -> Outcome:
        integration = self._integrations.get(submission.directory_slug)
        if integration is None:
            logger.info(
                "[worker] api submission not implemented | directory=%s", submission.directory_name
            )
            return Outcome.action_needed(API_FALLBACK_INSTRUCTIONS, submission.directory_url)
        try:
            listing_url = await integration.submit(submission, profile)
        except IntegrationNotImplemented as exc:
            logger.info(
                "[worker] api integration declined | directory=%s | reason=%s",
                submission.directory_name,
                exc,
            )
            return Outcome.action_needed(API_FALLBACK_INSTRUCTIONS, submission.directory_url)
        return Outcome.submitted(listing_url)
