import logging
from collections.abc import Iterable, Mapping
from datetime import date

logger = logging.getLogger(__name__)


class RateLimiter:
    """Per-directory hourly caps, looked up by slug with a default for unlisted directories."""

    def __init__(self, default_limit: int = 5, overrides: Mapping[str, int] | None = None) -> None:
        self._default_limit = default_limit
        self._overrides = dict(overrides or {})

    def limit_for(self, slug: str | None) -> int:
        if slug is None:
            return self._default_limit
        return self._overrides.get(slug, self._default_limit)

    def limited_directories(self, recent_counts: Iterable[tuple[int, str, int]]) -> set[int]:
        """Return ids of directories whose recent submission count has reached their cap."""
        return {
            directory_id
            for directory_id, slug, count in recent_counts
            if count >= self.limit_for(slug)
        }


class DailyBudget:
    """
    Process-local count of submissions processed today.

    Not shared between worker processes: with N workers the effective cap is
    N times max_per_day.
    """

    def __init__(self, max_per_day: int, today: date) -> None:
        self.max_per_day = max_per_day
        self.processed = 0
        self.day = today

    def roll_over(self, today: date) -> None:
        if today != self.day:
            logger.info("[worker] new day, resetting daily counter | was=%d", self.processed)
            self.processed = 0
            self.day = today

    @property
    def remaining(self) -> int:
        return max(0, self.max_per_day - self.processed)

    @property
    def exhausted(self) -> bool:
        return self.processed >= self.max_per_day

    def record(self) -> None:
        self.processed += 1
