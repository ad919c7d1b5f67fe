import logging
import sqlite3
from collections import Counter
from collections.abc import Sequence
from contextlib import closing
from datetime import datetime, timedelta

from dirqueue.db.connection import from_db_timestamp, get_connection, to_db_timestamp, transaction
from dirqueue.models.lifecycle import (
    ACTIONABLE_STATUSES,
    CAMPAIGN_COUNTERS,
    NOTIFICATION_SUBMISSION_BLOCKED,
    RATE_COUNTED_STATUSES,
    STATUS_ACTION_NEEDED,
    STATUS_BLOCKED,
    STATUS_IN_PROGRESS,
    STATUS_QUEUED,
    STATUS_SUBMITTED,
    decide_failure,
)
from dirqueue.models.submission import (
    BlockedSubmission,
    BusinessProfile,
    CampaignRun,
    ClaimedSubmission,
    ReminderCandidate,
    Submission,
)
from dirqueue.repositories.base import AbstractSubmissionRepository, RateLimitPolicy

logger = logging.getLogger(__name__)

_SUBMISSION_TIMESTAMPS = (
    "created_at",
    "updated_at",
    "started_at",
    "action_deadline",
    "action_required_at",
    "submitted_at",
    "failed_at",
    "blocked_at",
)


class TransitionConflict(RuntimeError):
    """The submission was not in the status a transition expected."""


def _marks(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


def _move_counter(
    conn: sqlite3.Connection,
    campaign_run_id: int | None,
    from_status: str,
    to_status: str,
    now_ts: str,
    count: int = 1,
) -> None:
    """Shift count jobs between two campaign counters inside the caller's transaction."""
    if campaign_run_id is None:
        return
    from_col = CAMPAIGN_COUNTERS[from_status]
    to_col = CAMPAIGN_COUNTERS[to_status]
    conn.execute(
        f"""
        UPDATE campaign_runs
        SET {to_col} = {to_col} + ?,
            {from_col} = MAX(0, {from_col} - ?),
            updated_at = ?
        WHERE id = ?
        """,
        (count, count, now_ts, campaign_run_id),
    )


def _row_to_submission(row: sqlite3.Row) -> Submission:
    data = dict(row)
    for key in _SUBMISSION_TIMESTAMPS:
        data[key] = from_db_timestamp(data[key])
    return Submission(**data)


class SubmissionRepository(AbstractSubmissionRepository):
    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def create_campaign_run(self, user_id: int, now: datetime) -> int:
        now_ts = to_db_timestamp(now)
        with transaction(self._db_path) as conn:
            cursor = conn.execute(
                "INSERT INTO campaign_runs (user_id, created_at, updated_at) VALUES (?, ?, ?)",
                (user_id, now_ts, now_ts),
            )
            return cursor.lastrowid

    def enqueue(
        self,
        user_id: int,
        directory_id: int,
        now: datetime,
        campaign_run_id: int | None = None,
        queue_position: int = 0,
    ) -> int:
        now_ts = to_db_timestamp(now)
        with transaction(self._db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO submissions
                    (user_id, directory_id, campaign_run_id, directory_name,
                     status, queue_position, created_at, updated_at)
                SELECT ?, d.id, ?, d.name, ?, ?, ?, ?
                FROM directories d WHERE d.id = ?
                """,
                (user_id, campaign_run_id, STATUS_QUEUED, queue_position, now_ts, now_ts, directory_id),
            )
            if cursor.rowcount != 1:
                raise LookupError(f"directory {directory_id} does not exist")
            if campaign_run_id is not None:
                conn.execute(
                    """
                    UPDATE campaign_runs
                    SET directories_queued = directories_queued + 1,
                        total_directories = total_directories + 1,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (now_ts, campaign_run_id),
                )
            return cursor.lastrowid

    def claim_batch(
        self,
        max_batch_size: int,
        now: datetime,
        max_retry_count: int,
        rate_limit: RateLimitPolicy,
        window_seconds: int,
    ) -> list[ClaimedSubmission]:
        """
        Claim up to max_batch_size queued submissions in one write transaction.

        Directories the rate limit excludes are skipped. Selected rows are marked
        in_progress and their campaign counters moved before the transaction
        commits, so no other claimer can return the same rows.
        """
        if max_batch_size <= 0:
            return []

        now_ts = to_db_timestamp(now)
        window_start = to_db_timestamp(now - timedelta(seconds=window_seconds))

        with transaction(self._db_path) as conn:
            recent = conn.execute(
                f"""
                SELECT s.directory_id, d.slug, COUNT(*) AS recent_count
                FROM submissions s
                JOIN directories d ON d.id = s.directory_id
                WHERE s.status IN ({_marks(RATE_COUNTED_STATUSES)})
                  AND s.started_at > ?
                GROUP BY s.directory_id, d.slug
                """,
                (*RATE_COUNTED_STATUSES, window_start),
            ).fetchall()
            excluded = sorted(
                rate_limit((row["directory_id"], row["slug"], row["recent_count"]) for row in recent)
            )
            if excluded:
                logger.info("[claim] rate-limited directories | ids=%s", excluded)

            query = """
                SELECT s.id, s.user_id, s.directory_id, s.campaign_run_id,
                       s.queue_position, s.retry_count,
                       COALESCE(s.directory_name, d.name) AS directory_name,
                       d.slug AS directory_slug,
                       d.website_url AS directory_url,
                       d.submission_mode
                FROM submissions s
                JOIN directories d ON d.id = s.directory_id
                WHERE s.status = ?
                  AND s.retry_count < ?
            """
            params: list = [STATUS_QUEUED, max_retry_count]
            if excluded:
                query += f" AND s.directory_id NOT IN ({_marks(excluded)})"
                params.extend(excluded)
            query += " ORDER BY s.queue_position ASC, s.created_at ASC, s.id ASC LIMIT ?"
            params.append(max_batch_size)

            rows = conn.execute(query, params).fetchall()
            if not rows:
                return []

            ids = [row["id"] for row in rows]
            conn.execute(
                f"""
                UPDATE submissions
                SET status = ?, started_at = ?, updated_at = ?
                WHERE id IN ({_marks(ids)}) AND status = ?
                """,
                (STATUS_IN_PROGRESS, now_ts, now_ts, *ids, STATUS_QUEUED),
            )

            per_campaign = Counter(
                row["campaign_run_id"] for row in rows if row["campaign_run_id"] is not None
            )
            for campaign_run_id, count in per_campaign.items():
                _move_counter(conn, campaign_run_id, STATUS_QUEUED, STATUS_IN_PROGRESS, now_ts, count)

        return [
            ClaimedSubmission(
                id=row["id"],
                user_id=row["user_id"],
                directory_id=row["directory_id"],
                campaign_run_id=row["campaign_run_id"],
                queue_position=row["queue_position"],
                retry_count=row["retry_count"],
                directory_name=row["directory_name"],
                directory_slug=row["directory_slug"],
                directory_url=row["directory_url"],
                submission_mode=row["submission_mode"],
            )
            for row in rows
        ]

    def release(self, submission: ClaimedSubmission, now: datetime) -> None:
        now_ts = to_db_timestamp(now)
        with transaction(self._db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE submissions
                SET status = ?, started_at = NULL, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (STATUS_QUEUED, now_ts, submission.id, STATUS_IN_PROGRESS),
            )
            if cursor.rowcount == 1:
                _move_counter(conn, submission.campaign_run_id, STATUS_IN_PROGRESS, STATUS_QUEUED, now_ts)

    def mark_action_needed(
        self,
        submission: ClaimedSubmission,
        action_type: str,
        instructions: str,
        action_url: str | None,
        deadline: datetime,
        now: datetime,
    ) -> None:
        now_ts = to_db_timestamp(now)
        with transaction(self._db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE submissions
                SET status = ?,
                    action_type = ?,
                    action_instructions = ?,
                    action_url = ?,
                    action_deadline = ?,
                    action_required_at = ?,
                    updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    STATUS_ACTION_NEEDED,
                    action_type,
                    instructions,
                    action_url,
                    to_db_timestamp(deadline),
                    now_ts,
                    now_ts,
                    submission.id,
                    STATUS_IN_PROGRESS,
                ),
            )
            if cursor.rowcount != 1:
                raise TransitionConflict(f"submission {submission.id} is no longer in_progress")
            _move_counter(conn, submission.campaign_run_id, STATUS_IN_PROGRESS, STATUS_ACTION_NEEDED, now_ts)

    def mark_submitted(
        self, submission: ClaimedSubmission, now: datetime, listing_url: str | None = None
    ) -> None:
        now_ts = to_db_timestamp(now)
        with transaction(self._db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE submissions
                SET status = ?,
                    submitted_at = ?,
                    listing_url = COALESCE(?, listing_url),
                    updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (STATUS_SUBMITTED, now_ts, listing_url, now_ts, submission.id, STATUS_IN_PROGRESS),
            )
            if cursor.rowcount != 1:
                raise TransitionConflict(f"submission {submission.id} is no longer in_progress")
            _move_counter(conn, submission.campaign_run_id, STATUS_IN_PROGRESS, STATUS_SUBMITTED, now_ts)

    def record_failure(
        self, submission_id: int, error_message: str, now: datetime, max_retry_count: int
    ) -> str:
        now_ts = to_db_timestamp(now)
        with transaction(self._db_path) as conn:
            row = conn.execute(
                "SELECT status, retry_count, campaign_run_id FROM submissions WHERE id = ?",
                (submission_id,),
            ).fetchone()
            if row is None:
                raise LookupError(f"submission {submission_id} does not exist")
            if row["status"] != STATUS_IN_PROGRESS:
                logger.warning(
                    "[retry] failure ignored, not in_progress | id=%s | status=%s",
                    submission_id,
                    row["status"],
                )
                return row["status"]

            decision = decide_failure(row["retry_count"], max_retry_count)
            if decision.is_terminal:
                conn.execute(
                    """
                    UPDATE submissions
                    SET status = ?, error_message = ?, error_code = ?,
                        retry_count = ?, failed_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        decision.status,
                        error_message,
                        decision.error_code,
                        decision.retry_count,
                        now_ts,
                        now_ts,
                        submission_id,
                    ),
                )
            else:
                conn.execute(
                    """
                    UPDATE submissions
                    SET status = ?, error_message = ?, retry_count = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (decision.status, error_message, decision.retry_count, now_ts, submission_id),
                )
            _move_counter(conn, row["campaign_run_id"], STATUS_IN_PROGRESS, decision.status, now_ts)
            return decision.status

    def get_submission(self, submission_id: int) -> Submission | None:
        with closing(get_connection(self._db_path)) as conn:
            row = conn.execute("SELECT * FROM submissions WHERE id = ?", (submission_id,)).fetchone()
        return _row_to_submission(row) if row else None

    def get_campaign_run(self, campaign_run_id: int) -> CampaignRun | None:
        with closing(get_connection(self._db_path)) as conn:
            row = conn.execute(
                """
                SELECT id, user_id, total_directories, directories_queued,
                       directories_in_progress, directories_action_needed,
                       directories_submitted, directories_failed
                FROM campaign_runs WHERE id = ?
                """,
                (campaign_run_id,),
            ).fetchone()
        return CampaignRun(**dict(row)) if row else None

    def get_business_profile(self, user_id: int) -> BusinessProfile | None:
        with closing(get_connection(self._db_path)) as conn:
            row = conn.execute(
                """
                SELECT user_id, business_name, website_url, description
                FROM business_profiles
                WHERE user_id = ?
                ORDER BY updated_at IS NULL, updated_at DESC, id DESC
                LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return BusinessProfile(**dict(row)) if row else None

    def get_user_contact(self, user_id: int) -> tuple[str, str | None] | None:
        with closing(get_connection(self._db_path)) as conn:
            row = conn.execute("SELECT email, name FROM users WHERE id = ?", (user_id,)).fetchone()
        return (row["email"], row["name"]) if row else None

    def list_reminder_candidates(self, now: datetime, default_timezone: str) -> list[ReminderCandidate]:
        with closing(get_connection(self._db_path)) as conn:
            rows = conn.execute(
                f"""
                SELECT s.id AS submission_id,
                       s.user_id,
                       s.action_type,
                       s.action_instructions,
                       s.action_deadline,
                       COALESCE(s.directory_name, d.name) AS directory_name,
                       d.website_url AS directory_url,
                       u.email AS user_email,
                       u.name AS user_name,
                       p.quiet_hours_start,
                       p.quiet_hours_end,
                       COALESCE(p.timezone, ?) AS timezone
                FROM submissions s
                JOIN directories d ON d.id = s.directory_id
                JOIN users u ON u.id = s.user_id
                LEFT JOIN user_notification_preferences p ON p.user_id = u.id
                WHERE s.status IN ({_marks(ACTIONABLE_STATUSES)})
                  AND s.action_deadline IS NOT NULL
                  AND s.action_deadline > ?
                  AND COALESCE(p.citation_reminders_enabled, 1) = 1
                  AND COALESCE(p.citation_email_enabled, 1) = 1
                ORDER BY s.action_deadline ASC, s.id ASC
                """,
                (default_timezone, *ACTIONABLE_STATUSES, to_db_timestamp(now)),
            ).fetchall()

        candidates = []
        for row in rows:
            data = dict(row)
            data["action_deadline"] = from_db_timestamp(data["action_deadline"])
            candidates.append(ReminderCandidate(**data))
        return candidates

    def notification_sent(self, user_id: int, submission_id: int, notification_type: str) -> bool:
        with closing(get_connection(self._db_path)) as conn:
            row = conn.execute(
                """
                SELECT 1 FROM notification_events
                WHERE user_id = ? AND submission_id = ? AND notification_type = ?
                """,
                (user_id, submission_id, notification_type),
            ).fetchone()
        return row is not None

    def record_notification(
        self,
        user_id: int,
        submission_id: int,
        notification_type: str,
        now: datetime,
        channel: str = "email",
        error_message: str | None = None,
    ) -> bool:
        with transaction(self._db_path) as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO notification_events
                    (user_id, submission_id, notification_type, channel, sent_at, error_message)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, submission_id, notification_type, channel, to_db_timestamp(now), error_message),
            )
            return cursor.rowcount == 1

    def block_expired(self, now: datetime, reason: str) -> list[BlockedSubmission]:
        now_ts = to_db_timestamp(now)
        with transaction(self._db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT id, user_id, directory_name FROM submissions
                WHERE status IN ({_marks(ACTIONABLE_STATUSES)})
                  AND action_deadline IS NOT NULL
                  AND action_deadline < ?
                """,
                (*ACTIONABLE_STATUSES, now_ts),
            ).fetchall()
            if not rows:
                return []

            ids = [row["id"] for row in rows]
            conn.execute(
                f"""
                UPDATE submissions
                SET status = ?, blocked_at = ?, blocked_reason = ?,
                    error_message = ?, updated_at = ?
                WHERE id IN ({_marks(ids)})
                """,
                (STATUS_BLOCKED, now_ts, reason, reason, now_ts, *ids),
            )
            conn.executemany(
                """
                INSERT OR IGNORE INTO notification_events
                    (user_id, submission_id, notification_type, channel, sent_at)
                VALUES (?, ?, ?, 'in_app', ?)
                """,
                [(row["user_id"], row["id"], NOTIFICATION_SUBMISSION_BLOCKED, now_ts) for row in rows],
            )

        return [
            BlockedSubmission(id=row["id"], user_id=row["user_id"], directory_name=row["directory_name"])
            for row in rows
        ]
