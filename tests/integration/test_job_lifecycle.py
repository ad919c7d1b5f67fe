"""Processing outcomes, retries and campaign counter bookkeeping."""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from dirqueue.services.processor import JobProcessor, ProfileMissing
from dirqueue.services.rate_limiter import RateLimiter
from dirqueue.services.retry import RetryController
from dirqueue.services.strategies import (
    ApiSubmissionStrategy,
    DirectoryIntegration,
    ManualSubmissionStrategy,
)

from conftest import START


class ListingIntegration(DirectoryIntegration):
    async def submit(self, submission, profile):
        return f"https://{submission.directory_slug}.example.com/listing/{submission.id}"


def _claim_all(repository, now=START, size=10):
    return repository.claim_batch(size, now, 3, RateLimiter(default_limit=100).limited_directories, 3600)


def _conserved(run) -> bool:
    return run.counted == run.total_directories


@pytest.fixture
def owner(seed):
    user = seed.user()
    seed.profile(user)
    return user


@pytest.mark.asyncio
async def test_manual_directory_needs_action_with_deadline(repository, seed, clock, owner):
    directory = seed.directory(slug="local-pages", url="https://localpages.example.com/add")
    campaign = repository.create_campaign_run(owner, START)
    submission_id = repository.enqueue(owner, directory, START, campaign_run_id=campaign)
    [claimed] = _claim_all(repository)

    outcome = await JobProcessor(repository, clock).process(claimed)

    assert outcome.status == "action_needed"
    row = repository.get_submission(submission_id)
    assert row.status == "action_needed"
    assert row.action_type == "manual_submission"
    assert row.action_url == "https://localpages.example.com/add"
    assert row.action_required_at == START
    assert row.action_deadline == START + timedelta(days=10)
    run = repository.get_campaign_run(campaign)
    assert (run.directories_in_progress, run.directories_action_needed) == (0, 1)
    assert _conserved(run)


@pytest.mark.asyncio
async def test_unknown_mode_is_handled_as_manual(repository, seed, clock, owner):
    submission_id = repository.enqueue(owner, seed.directory(mode="browser"), START)
    [claimed] = _claim_all(repository)

    await JobProcessor(repository, clock).process(claimed)

    assert repository.get_submission(submission_id).status == "action_needed"


@pytest.mark.asyncio
async def test_api_directory_without_integration_falls_back_to_action(repository, seed, clock, owner):
    submission_id = repository.enqueue(owner, seed.directory(slug="g2", mode="api"), START)
    [claimed] = _claim_all(repository)

    await JobProcessor(repository, clock).process(claimed)

    row = repository.get_submission(submission_id)
    assert row.status == "action_needed"
    assert "not yet available" in row.action_instructions


@pytest.mark.asyncio
async def test_api_directory_with_integration_is_submitted(repository, seed, clock, owner):
    campaign = repository.create_campaign_run(owner, START)
    submission_id = repository.enqueue(
        owner, seed.directory(slug="betalist", mode="api"), START, campaign_run_id=campaign
    )
    [claimed] = _claim_all(repository)
    notified = []

    async def notify_live(submission_id):
        notified.append(submission_id)

    processor = JobProcessor(
        repository,
        clock,
        strategies={"api": ApiSubmissionStrategy({"betalist": ListingIntegration()})},
        notify_live=notify_live,
    )
    await processor.process(claimed)

    row = repository.get_submission(submission_id)
    assert row.status == "submitted"
    assert row.submitted_at == START
    assert row.listing_url == f"https://betalist.example.com/listing/{submission_id}"
    assert notified == [submission_id]
    run = repository.get_campaign_run(campaign)
    assert (run.directories_in_progress, run.directories_submitted) == (0, 1)


@pytest.mark.asyncio
async def test_live_notification_failure_does_not_fail_job(repository, seed, clock, owner):
    submission_id = repository.enqueue(owner, seed.directory(slug="betalist", mode="api"), START)
    [claimed] = _claim_all(repository)

    async def broken_notifier(submission_id):
        raise RuntimeError("smtp down")

    processor = JobProcessor(
        repository,
        clock,
        strategies={"api": ApiSubmissionStrategy({"betalist": ListingIntegration()})},
        notify_live=broken_notifier,
    )
    outcome = await processor.process(claimed)

    assert outcome.status == "submitted"
    assert repository.get_submission(submission_id).status == "submitted"


@pytest.mark.asyncio
async def test_missing_profile_raises(repository, seed, clock):
    user = seed.user(email="noprofile@example.com")
    repository.enqueue(user, seed.directory(), START)
    [claimed] = _claim_all(repository)

    with pytest.raises(ProfileMissing):
        await JobProcessor(repository, clock).process(claimed)


def test_three_failures_exhaust_retries(repository, seed, clock):
    user = seed.user()
    campaign = repository.create_campaign_run(user, START)
    submission_id = repository.enqueue(user, seed.directory(), START, campaign_run_id=campaign)
    retry = RetryController(repository, clock, max_retry_count=3)

    for attempt, expected_status in ((1, "queued"), (2, "queued"), (3, "failed")):
        [claimed] = _claim_all(repository, now=clock())
        assert claimed.id == submission_id
        assert retry.on_failure(submission_id, "directory timed out") == expected_status

        row = repository.get_submission(submission_id)
        assert row.status == expected_status
        assert row.retry_count == attempt
        assert row.error_message == "directory timed out"
        assert _conserved(repository.get_campaign_run(campaign))
        clock.advance(minutes=5)

    row = repository.get_submission(submission_id)
    assert row.error_code == "MAX_RETRIES_EXCEEDED"
    assert row.failed_at is not None
    run = repository.get_campaign_run(campaign)
    assert (run.directories_queued, run.directories_in_progress, run.directories_failed) == (0, 0, 1)
    assert _claim_all(repository, now=clock()) == []


def test_failure_on_job_not_in_progress_is_ignored(repository, seed, clock):
    user = seed.user()
    submission_id = seed.submission(user, seed.directory(), "submitted")

    status = RetryController(repository, clock).on_failure(submission_id, "late error")

    assert status == "submitted"
    row = repository.get_submission(submission_id)
    assert row.retry_count == 0
    assert row.error_message is None


def test_unpersistable_failure_leaves_job_in_progress(clock):
    repository = MagicMock()
    repository.record_failure.side_effect = RuntimeError("database is locked")

    assert RetryController(repository, clock).on_failure(7, "boom") is None
    repository.record_failure.assert_called_once()


def test_release_returns_job_to_queue_without_retry(repository, seed):
    user = seed.user()
    campaign = repository.create_campaign_run(user, START)
    submission_id = repository.enqueue(user, seed.directory(), START, campaign_run_id=campaign)
    [claimed] = _claim_all(repository)

    repository.release(claimed, START)

    row = repository.get_submission(submission_id)
    assert (row.status, row.retry_count, row.started_at) == ("queued", 0, None)
    run = repository.get_campaign_run(campaign)
    assert (run.directories_queued, run.directories_in_progress) == (1, 0)


@pytest.mark.asyncio
async def test_campaign_counters_conserved_across_mixed_outcomes(repository, seed, clock, owner):
    campaign = repository.create_campaign_run(owner, START)
    manual = seed.directory(slug="manual-dir")
    api = seed.directory(slug="betalist", mode="api")
    for directory in (manual, manual, api, api, manual, api):
        repository.enqueue(owner, directory, START, campaign_run_id=campaign)
    processor = JobProcessor(
        repository,
        clock,
        strategies={
            "api": ApiSubmissionStrategy({"betalist": ListingIntegration()}),
            "manual": ManualSubmissionStrategy(),
        },
    )
    retry = RetryController(repository, clock)
    assert _conserved(repository.get_campaign_run(campaign))

    batch = _claim_all(repository, size=4)
    assert _conserved(repository.get_campaign_run(campaign))
    await processor.process(batch[0])
    await processor.process(batch[2])
    retry.on_failure(batch[1].id, "flaky")
    retry.on_failure(batch[3].id, "flaky")

    run = repository.get_campaign_run(campaign)
    assert _conserved(run)
    assert run.total_directories == 6
    assert (run.directories_queued, run.directories_action_needed, run.directories_submitted) == (4, 1, 1)
