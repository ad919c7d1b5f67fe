import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    PORT: int = 3003
    DB_PATH: str = "/data/dirqueue.db"
    LOG_LEVEL: str = "info"

    ENABLE_SUBMISSION_WORKER: bool = False
    ENABLE_CITATION_REMINDERS: bool = False

    MAX_SUBMISSIONS_PER_DAY: int = 50
    BATCH_SIZE: int = 5
    BATCH_INTERVAL_SECONDS: float = 5 * 60
    ERROR_BACKOFF_SECONDS: float = 60
    MAX_RETRY_COUNT: int = 3

    # Max submissions per directory per rate-limit window, keyed by directory slug
    DEFAULT_DIRECTORY_RATE_LIMIT: int = 5
    DIRECTORY_RATE_LIMITS: dict[str, int] = {
        "g2": 2,
        "capterra": 2,
        "product-hunt": 1,
        "trustpilot": 3,
        "yelp": 2,
        "bbb": 1,
    }
    RATE_LIMIT_WINDOW_SECONDS: int = 60 * 60

    ACTION_DEADLINE_DAYS: int = 10
    REMINDER_CRON: str = "0 9 * * *"
    DEFAULT_TIMEZONE: str = "America/Toronto"
    QUIET_HOURS_FAIL_OPEN: bool = True

    RESEND_API_KEY: str | None = None
    EMAIL_FROM: str = "AI Citation Network <notifications@example.com>"
    EMAIL_API_URL: str = "https://api.resend.com/emails"
    EMAIL_TIMEOUT_SECONDS: float = 30.0
    FRONTEND_URL: str = "http://localhost:8000"


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
