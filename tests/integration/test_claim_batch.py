"""Claiming queued submissions: ordering, batch bound, rate limits and mutual exclusion."""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from dirqueue.services.rate_limiter import RateLimiter

from conftest import START

WINDOW = 60 * 60


@pytest.fixture
def limiter():
    return RateLimiter(default_limit=5, overrides={"bbb": 1})


def _claim(repository, limiter, size=5, now=START, max_retry_count=3):
    return repository.claim_batch(size, now, max_retry_count, limiter.limited_directories, WINDOW)


def test_claim_never_exceeds_batch_size(repository, seed, limiter):
    user = seed.user()
    directory = seed.directory()
    for position in range(8):
        repository.enqueue(user, directory, START, queue_position=position)

    batch = _claim(repository, limiter, size=5)

    assert len(batch) == 5
    for claimed in batch:
        row = repository.get_submission(claimed.id)
        assert row.status == "in_progress"
        assert row.started_at == START


def test_empty_queue_returns_empty_batch(repository, limiter):
    assert _claim(repository, limiter) == []


def test_zero_batch_size_claims_nothing(repository, seed, limiter):
    user = seed.user()
    submission_id = repository.enqueue(user, seed.directory(), START)

    assert _claim(repository, limiter, size=0) == []
    assert repository.get_submission(submission_id).status == "queued"


def test_claim_orders_by_queue_position_then_age(repository, seed, limiter):
    user = seed.user()
    directory = seed.directory()
    late_low = repository.enqueue(user, directory, START, queue_position=5)
    early_low = repository.enqueue(user, directory, START - timedelta(minutes=5), queue_position=5)
    priority = repository.enqueue(user, directory, START, queue_position=1)

    batch = _claim(repository, limiter, size=3)

    assert [c.id for c in batch] == [priority, early_low, late_low]


def test_claim_joins_directory_details(repository, seed, limiter):
    user = seed.user()
    directory = seed.directory(slug="betalist", name="BetaList", mode="api", url="https://betalist.example.com")
    repository.enqueue(user, directory, START)

    [claimed] = _claim(repository, limiter)

    assert claimed.directory_name == "BetaList"
    assert claimed.directory_slug == "betalist"
    assert claimed.directory_url == "https://betalist.example.com"
    assert claimed.submission_mode == "api"


def test_rate_limited_directory_is_excluded(repository, seed, limiter):
    user = seed.user()
    busy = seed.directory(slug="busy-dir")
    quiet = seed.directory(slug="quiet-dir")
    for _ in range(5):
        seed.submission(user, busy, "in_progress", started_at=START - timedelta(minutes=10))
    for _ in range(7):
        repository.enqueue(user, busy, START)
    other = repository.enqueue(user, quiet, START, queue_position=10)

    batch = _claim(repository, limiter, size=5)

    assert [c.directory_id for c in batch] == [quiet]
    assert [c.id for c in batch] == [other]


def test_all_jobs_rate_limited_yields_nothing(repository, seed, limiter):
    user = seed.user()
    busy = seed.directory(slug="busy-dir")
    for _ in range(5):
        seed.submission(user, busy, "in_progress", started_at=START - timedelta(minutes=10))
    queued = [repository.enqueue(user, busy, START) for _ in range(7)]

    assert _claim(repository, limiter, size=5) == []
    assert all(repository.get_submission(i).status == "queued" for i in queued)


def test_submitted_and_verifying_jobs_count_toward_limit(repository, seed, limiter):
    user = seed.user()
    busy = seed.directory(slug="busy-dir")
    recent = START - timedelta(minutes=30)
    for status in ("submitted", "submitted", "pending_verification", "in_progress", "pending_verification"):
        seed.submission(user, busy, status, started_at=recent)
    repository.enqueue(user, busy, START)

    assert _claim(repository, limiter) == []


def test_old_activity_does_not_limit(repository, seed, limiter):
    user = seed.user()
    busy = seed.directory(slug="busy-dir")
    for _ in range(5):
        seed.submission(user, busy, "submitted", started_at=START - timedelta(hours=2))
    repository.enqueue(user, busy, START)

    assert len(_claim(repository, limiter)) == 1


def test_named_override_limits_strict_directory(repository, seed, limiter):
    user = seed.user()
    strict = seed.directory(slug="bbb")
    seed.submission(user, strict, "in_progress", started_at=START - timedelta(minutes=5))
    repository.enqueue(user, strict, START)

    assert _claim(repository, limiter) == []


def test_cap_applies_between_batches_not_within_one(repository, seed, limiter):
    user = seed.user()
    strict = seed.directory(slug="bbb")
    for position in range(4):
        repository.enqueue(user, strict, START, queue_position=position)

    assert len(_claim(repository, limiter, size=3)) == 3
    assert _claim(repository, limiter, size=3) == []
    assert _claim(repository, limiter, now=START + timedelta(hours=1, seconds=1)) != []


def test_exhausted_retries_are_not_claimed(repository, seed, limiter):
    user = seed.user()
    directory = seed.directory()
    seed.submission(user, directory, "queued", retry_count=3)
    eligible = seed.submission(user, directory, "queued", retry_count=2)

    assert [c.id for c in _claim(repository, limiter)] == [eligible]


def test_claim_moves_campaign_counters(repository, seed, limiter):
    user = seed.user()
    directory = seed.directory()
    campaign = repository.create_campaign_run(user, START)
    other_campaign = repository.create_campaign_run(user, START)
    for _ in range(3):
        repository.enqueue(user, directory, START, campaign_run_id=campaign)
    repository.enqueue(user, directory, START, campaign_run_id=other_campaign)

    _claim(repository, limiter, size=5)

    run = repository.get_campaign_run(campaign)
    assert (run.directories_queued, run.directories_in_progress, run.total_directories) == (0, 3, 3)
    other = repository.get_campaign_run(other_campaign)
    assert (other.directories_queued, other.directories_in_progress) == (0, 1)


def test_concurrent_claims_never_overlap(repository, seed, limiter):
    user = seed.user()
    directories = [seed.directory(slug=f"dir-{i}") for i in range(4)]
    for i in range(12):
        repository.enqueue(user, directories[i % 4], START, queue_position=i)

    barrier = threading.Barrier(3)

    def claim_once():
        barrier.wait()
        return {c.id for c in _claim(repository, limiter, size=5)}

    with ThreadPoolExecutor(max_workers=3) as pool:
        results = list(pool.map(lambda _: claim_once(), range(3)))

    assert results[0].isdisjoint(results[1])
    assert results[0].isdisjoint(results[2])
    assert results[1].isdisjoint(results[2])
    assert sum(len(r) for r in results) == 12
