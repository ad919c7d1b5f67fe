from fastapi import APIRouter, HTTPException, Request

from dirqueue.schemas.worker import WorkerStatus

router = APIRouter()


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.get("/worker/status", response_model=WorkerStatus)
async def worker_status(request: Request) -> WorkerStatus:
    worker = getattr(request.app.state, "worker", None)
    if worker is None:
        raise HTTPException(status_code=404, detail="Submission worker is not enabled")
    return worker.status()
