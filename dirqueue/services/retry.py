import logging
from collections.abc import Callable
from datetime import datetime

from dirqueue.repositories.base import AbstractSubmissionRepository

logger = logging.getLogger(__name__)


class RetryController:
    def __init__(
        self,
        repository: AbstractSubmissionRepository,
        clock: Callable[[], datetime],
        max_retry_count: int = 3,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self.max_retry_count = max_retry_count

    def on_failure(self, submission_id: int, error_message: str) -> str | None:
        """
        Requeue the submission or fail it for good. Returns the new status.

        If the failure itself cannot be persisted the submission stays
        in_progress and None is returned.
        """
        try:
            status = self._repository.record_failure(
                submission_id, error_message, self._clock(), self.max_retry_count
            )
        except Exception:
            logger.exception("[retry] failed to record failure | id=%s", submission_id)
            return None
        logger.info("[retry] failure recorded | id=%s | status=%s | error=%s", submission_id, status, error_message)
        return status
