from datetime import date

from pydantic import BaseModel


class WorkerStatus(BaseModel):
    is_running: bool
    processed_today: int
    daily_limit: int
    last_reset_date: date


class ReminderPassResult(BaseModel):
    sent: int = 0
    skipped: int = 0
    errors: int = 0
    blocked: int = 0
