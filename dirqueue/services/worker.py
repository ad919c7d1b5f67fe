"""
Submission worker: claims queued directory submissions in batches and runs them.

Run standalone with ``python -m dirqueue.services.worker`` or embedded in the
API host by setting ENABLE_SUBMISSION_WORKER=1.
"""
import asyncio
import logging
import signal
from collections.abc import Callable, Mapping
from datetime import datetime

from dirqueue.config import Settings, configure_logging, settings
from dirqueue.db.connection import run_migrations, utcnow
from dirqueue.models.submission import ClaimedSubmission
from dirqueue.repositories.base import AbstractSubmissionRepository
from dirqueue.repositories.submission_repository import SubmissionRepository
from dirqueue.schemas.worker import WorkerStatus
from dirqueue.services.processor import JobProcessor, LiveNotifier
from dirqueue.services.rate_limiter import DailyBudget, RateLimiter
from dirqueue.services.reminder_service import build_reminder_service
from dirqueue.services.retry import RetryController
from dirqueue.services.strategies import SubmissionStrategy

logger = logging.getLogger(__name__)


class SubmissionWorker:
    def __init__(
        self,
        repository: AbstractSubmissionRepository,
        processor: JobProcessor,
        retry: RetryController,
        rate_limiter: RateLimiter,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = 5,
        max_per_day: int = 50,
        batch_interval: float = 5 * 60,
        error_backoff: float = 60,
        rate_limit_window: int = 60 * 60,
    ) -> None:
        self._repository = repository
        self._processor = processor
        self._retry = retry
        self._rate_limiter = rate_limiter
        self._clock = clock
        self.batch_size = batch_size
        self.batch_interval = batch_interval
        self.error_backoff = error_backoff
        self.rate_limit_window = rate_limit_window
        self.budget = DailyBudget(max_per_day, clock().date())
        self.is_running = False
        self._shutdown = asyncio.Event()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    async def start(self) -> None:
        """Run batches until stop() is called."""
        if self.is_running:
            logger.info("[worker] already running")
            return

        self._shutdown.clear()
        self.is_running = True
        logger.info(
            "[worker] starting | daily_limit=%d | batch_size=%d",
            self.budget.max_per_day,
            self.batch_size,
        )
        try:
            while not self.shutdown_requested:
                try:
                    await self.process_next_batch()
                except Exception:
                    logger.exception("[worker] batch error")
                    await self._sleep(self.error_backoff)
                    continue
                await self._sleep(self.batch_interval)
        finally:
            self.is_running = False
            logger.info("[worker] stopped")

    def stop(self) -> None:
        """Ask the loop to exit once the job in flight has finished."""
        logger.info("[worker] shutdown requested")
        self._shutdown.set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def process_next_batch(self) -> int:
        """Claim and process one batch. Returns the number of submissions processed."""
        self.budget.roll_over(self._clock().date())
        if self.budget.exhausted:
            logger.info(
                "[worker] daily limit reached, waiting | processed=%d | limit=%d",
                self.budget.processed,
                self.budget.max_per_day,
            )
            return 0

        batch = await asyncio.to_thread(
            self._repository.claim_batch,
            min(self.batch_size, self.budget.remaining),
            self._clock(),
            self._retry.max_retry_count,
            self._rate_limiter.limited_directories,
            self.rate_limit_window,
        )
        if not batch:
            logger.info("[worker] no queued submissions to process")
            return 0
        logger.info("[worker] claimed submissions | count=%d", len(batch))

        processed = 0
        for index, submission in enumerate(batch):
            if self.shutdown_requested:
                logger.info("[worker] shutdown requested, stopping batch")
                await self._release(batch[index:])
                break
            if self.budget.exhausted:
                logger.info("[worker] daily limit reached mid-batch")
                await self._release(batch[index:])
                break

            try:
                await self._processor.process(submission)
            except Exception as exc:
                logger.error("[worker] failed to process | id=%s | error=%s", submission.id, exc)
                error_message = str(exc) or type(exc).__name__
                await asyncio.to_thread(self._retry.on_failure, submission.id, error_message)
                continue
            self.budget.record()
            processed += 1

        logger.info(
            "[worker] batch complete | processed=%d | today=%d/%d",
            processed,
            self.budget.processed,
            self.budget.max_per_day,
        )
        return processed

    async def _release(self, submissions: list[ClaimedSubmission]) -> None:
        for submission in submissions:
            try:
                await asyncio.to_thread(self._repository.release, submission, self._clock())
            except Exception:
                logger.exception("[worker] failed to release claimed submission | id=%s", submission.id)

    def status(self) -> WorkerStatus:
        return WorkerStatus(
            is_running=self.is_running,
            processed_today=self.budget.processed,
            daily_limit=self.budget.max_per_day,
            last_reset_date=self.budget.day,
        )


def build_worker(
    repository: AbstractSubmissionRepository,
    config: Settings = settings,
    strategies: Mapping[str, SubmissionStrategy] | None = None,
    notify_live: LiveNotifier | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> SubmissionWorker:
    processor = JobProcessor(
        repository,
        clock,
        strategies=strategies,
        action_deadline_days=config.ACTION_DEADLINE_DAYS,
        notify_live=notify_live,
    )
    retry = RetryController(repository, clock, max_retry_count=config.MAX_RETRY_COUNT)
    rate_limiter = RateLimiter(config.DEFAULT_DIRECTORY_RATE_LIMIT, config.DIRECTORY_RATE_LIMITS)
    return SubmissionWorker(
        repository,
        processor,
        retry,
        rate_limiter,
        clock=clock,
        batch_size=config.BATCH_SIZE,
        max_per_day=config.MAX_SUBMISSIONS_PER_DAY,
        batch_interval=config.BATCH_INTERVAL_SECONDS,
        error_backoff=config.ERROR_BACKOFF_SECONDS,
        rate_limit_window=config.RATE_LIMIT_WINDOW_SECONDS,
    )


async def run_standalone(config: Settings = settings) -> None:
    run_migrations(config.DB_PATH)
    repository = SubmissionRepository(config.DB_PATH)
    notify_live = None
    if config.RESEND_API_KEY:
        notify_live = build_reminder_service(repository, config).notify_submission_live
    worker = build_worker(repository, config, notify_live=notify_live)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.stop)
    await worker.start()


def main() -> None:
    configure_logging()
    logger.info("[worker] running as standalone worker")
    asyncio.run(run_standalone())


if __name__ == "__main__":
    main()
