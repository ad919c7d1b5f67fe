import tempfile
from contextlib import closing
from datetime import datetime, timedelta, timezone

import pytest

from dirqueue.db.connection import get_connection, run_migrations, to_db_timestamp
from dirqueue.repositories.submission_repository import SubmissionRepository
from dirqueue.services.email_service import EmailDeliveryError, EmailSender

# A Monday, 09:00 in Toronto
START = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeEmailSender(EmailSender):
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail_for: set[str] = set()

    async def send(self, to: str, subject: str, html: str, text: str) -> None:
        if to in self.fail_for:
            raise EmailDeliveryError(f"mailbox unavailable: {to}")
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})


class Seeder:
    """Writes fixture rows straight into the database."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def _insert(self, sql: str, params: tuple) -> int:
        with closing(get_connection(self.db_path)) as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.lastrowid

    def user(self, email: str = "owner@example.com", name: str | None = "Dana") -> int:
        return self._insert("INSERT INTO users (email, name) VALUES (?, ?)", (email, name))

    def directory(
        self,
        slug: str = "yelp-ca",
        name: str | None = None,
        mode: str = "manual",
        url: str | None = None,
    ) -> int:
        return self._insert(
            "INSERT INTO directories (name, slug, website_url, submission_mode) VALUES (?, ?, ?, ?)",
            (name or slug.title(), slug, url or f"https://{slug}.example.com/add", mode),
        )

    def profile(self, user_id: int, business_name: str = "Acme Plumbing") -> int:
        return self._insert(
            "INSERT INTO business_profiles (user_id, business_name, website_url, updated_at) "
            "VALUES (?, ?, ?, ?)",
            (user_id, business_name, "https://acme.example.com", to_db_timestamp(START)),
        )

    def preferences(
        self,
        user_id: int,
        reminders_enabled: bool = True,
        email_enabled: bool = True,
        quiet_hours: tuple[str, str] | None = None,
        tz: str | None = None,
    ) -> int:
        start, end = quiet_hours or (None, None)
        return self._insert(
            """
            INSERT INTO user_notification_preferences
                (user_id, citation_reminders_enabled, citation_email_enabled,
                 quiet_hours_start, quiet_hours_end, timezone)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (user_id, int(reminders_enabled), int(email_enabled), start, end, tz),
        )

    def submission(
        self,
        user_id: int,
        directory_id: int,
        status: str,
        now: datetime = START,
        started_at: datetime | None = None,
        action_deadline: datetime | None = None,
        retry_count: int = 0,
        queue_position: int = 0,
    ) -> int:
        return self._insert(
            """
            INSERT INTO submissions
                (user_id, directory_id, status, retry_count, queue_position,
                 created_at, updated_at, started_at, action_deadline)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                directory_id,
                status,
                retry_count,
                queue_position,
                to_db_timestamp(now),
                to_db_timestamp(now),
                to_db_timestamp(started_at) if started_at else None,
                to_db_timestamp(action_deadline) if action_deadline else None,
            ),
        )

    def notifications(self, submission_id: int) -> list[dict]:
        with closing(get_connection(self.db_path)) as conn:
            rows = conn.execute(
                "SELECT * FROM notification_events WHERE submission_id = ? ORDER BY id",
                (submission_id,),
            ).fetchall()
        return [dict(row) for row in rows]


@pytest.fixture
def db_path():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    run_migrations(path)
    return path


@pytest.fixture
def repository(db_path):
    return SubmissionRepository(db_path)


@pytest.fixture
def seed(db_path):
    return Seeder(db_path)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def email():
    return FakeEmailSender()
