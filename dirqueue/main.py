import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dirqueue.api.routes import router
from dirqueue.config import configure_logging, settings
from dirqueue.db.connection import run_migrations
from dirqueue.repositories.submission_repository import SubmissionRepository
from dirqueue.services.reminder_service import ReminderService, build_reminder_service
from dirqueue.services.worker import build_worker


async def run_scheduled_reminders(service: ReminderService) -> None:
    logger = logging.getLogger(__name__)
    logger.info("[cron] running citation reminders")
    try:
        result = await service.run_reminder_pass()
    except Exception:
        logger.exception("[cron] reminder job failed")
        return
    logger.info("[cron] reminders complete | %s", result.model_dump())


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger = logging.getLogger(__name__)
    logger.info("dirqueue host starting | db=%s | port=%s", settings.DB_PATH, settings.PORT)
    run_migrations(settings.DB_PATH)
    repository = SubmissionRepository(settings.DB_PATH)
    reminders = build_reminder_service(repository, settings)
    app.state.repository = repository
    app.state.worker = None

    worker_task = None
    if settings.ENABLE_SUBMISSION_WORKER:
        notify_live = reminders.notify_submission_live if settings.RESEND_API_KEY else None
        app.state.worker = build_worker(repository, settings, notify_live=notify_live)
        worker_task = asyncio.create_task(app.state.worker.start())
        logger.info("Submission worker started")
    else:
        logger.info("Submission worker disabled (set ENABLE_SUBMISSION_WORKER=1 to enable)")

    scheduler = None
    if settings.ENABLE_CITATION_REMINDERS:
        scheduler = AsyncIOScheduler(job_defaults={"max_instances": 1, "coalesce": True})
        scheduler.add_job(
            run_scheduled_reminders,
            trigger=CronTrigger.from_crontab(settings.REMINDER_CRON, timezone="UTC"),
            id="citation_reminders",
            kwargs={"service": reminders},
        )
        scheduler.start()
        logger.info("Citation reminders scheduled | cron=%s UTC", settings.REMINDER_CRON)
    else:
        logger.info("Citation reminders disabled (set ENABLE_CITATION_REMINDERS=1 to enable)")

    yield

    logger.info("dirqueue host shutting down")
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    if worker_task is not None:
        app.state.worker.stop()
        try:
            await worker_task
        except Exception:
            logger.exception("Submission worker exited with an error")


def create_app() -> FastAPI:
    app = FastAPI(title="dirqueue", version="1.0.0", lifespan=lifespan)

    app.include_router(router)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logging.getLogger(__name__).exception("Unhandled exception")
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Internal server error"},
        )

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("dirqueue.main:app", host="0.0.0.0", port=settings.PORT, log_level=settings.LOG_LEVEL)
