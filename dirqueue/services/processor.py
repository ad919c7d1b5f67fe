import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timedelta

from dirqueue.models.lifecycle import STATUS_SUBMITTED
from dirqueue.models.submission import ClaimedSubmission
from dirqueue.repositories.base import AbstractSubmissionRepository
from dirqueue.services.strategies import (
    ApiSubmissionStrategy,
    ManualSubmissionStrategy,
    Outcome,
    SubmissionStrategy,
)

logger = logging.getLogger(__name__)

SUBMISSION_MODE_MANUAL = "manual"
SUBMISSION_MODE_API = "api"

LiveNotifier = Callable[[int], Awaitable[object]]


class ProfileMissing(Exception):
    pass


class JobProcessor:
    def __init__(
        self,
        repository: AbstractSubmissionRepository,
        clock: Callable[[], datetime],
        strategies: Mapping[str, SubmissionStrategy] | None = None,
        action_deadline_days: int = 10,
        notify_live: LiveNotifier | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._strategies = dict(strategies) if strategies else {
            SUBMISSION_MODE_API: ApiSubmissionStrategy(),
            SUBMISSION_MODE_MANUAL: ManualSubmissionStrategy(),
        }
        self._strategies.setdefault(SUBMISSION_MODE_MANUAL, ManualSubmissionStrategy())
        self._action_deadline = timedelta(days=action_deadline_days)
        self._notify_live = notify_live

    def strategy_for(self, submission_mode: str | None) -> SubmissionStrategy:
        """Modes without a registered strategy are handled as manual."""
        manual = self._strategies[SUBMISSION_MODE_MANUAL]
        return self._strategies.get(submission_mode or SUBMISSION_MODE_MANUAL, manual)

    async def process(self, submission: ClaimedSubmission) -> Outcome:
        """Run one claimed submission to submitted or action_needed. Raises on failure."""
        logger.info("[worker] processing | directory=%s | id=%s", submission.directory_name, submission.id)

        profile = await asyncio.to_thread(self._repository.get_business_profile, submission.user_id)
        if profile is None:
            raise ProfileMissing("Business profile not found for user")

        outcome = await self.strategy_for(submission.submission_mode).attempt(submission, profile)

        if outcome.status == STATUS_SUBMITTED:
            await asyncio.to_thread(
                self._repository.mark_submitted, submission, self._clock(), outcome.listing_url
            )
            logger.info("[worker] submitted | id=%s | listing_url=%s", submission.id, outcome.listing_url)
            await self._send_live_notification(submission.id)
            return outcome

        now = self._clock()
        deadline = now + self._action_deadline
        await asyncio.to_thread(
            self._repository.mark_action_needed,
            submission,
            outcome.action_type,
            outcome.instructions,
            outcome.action_url,
            deadline,
            now,
        )
        logger.info("[worker] action needed | id=%s | deadline=%s", submission.id, deadline.isoformat())
        return outcome

    async def _send_live_notification(self, submission_id: int) -> None:
        if self._notify_live is None:
            return
        try:
            await self._notify_live(submission_id)
        except Exception:
            logger.exception("[worker] live notification failed | id=%s", submission_id)
