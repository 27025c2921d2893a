"""Jobs API router — enqueue and inspect jobs."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from jobworker.errors import StoreError
from jobworker.schemas.jobs import JobCreate, JobLogOut, JobOut
from jobworker.store import SqlJobStore
from jobworker.worker.enqueue import enqueue_jobs

router = APIRouter()


def get_store(request: Request) -> SqlJobStore:
    """The application's ``SqlJobStore`` (set up in the lifespan)."""
    return request.app.state.job_store


def _as_item(body: JobCreate) -> dict:
    return {
        "queue": body.queue,
        "payload": body.payload,
        "options": body.options.model_dump(exclude_none=True) if body.options else None,
    }


@router.post("", response_model=JobOut, status_code=201)
async def create_job(body: JobCreate, store: SqlJobStore = Depends(get_store)):
    try:
        jobs = await enqueue_jobs(store, [_as_item(body)])
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return jobs[0]


@router.post("/batch", response_model=list[JobOut], status_code=201)
async def create_jobs(body: list[JobCreate], store: SqlJobStore = Depends(get_store)):
    if not body:
        raise HTTPException(status_code=400, detail="At least one job is required")
    try:
        return await enqueue_jobs(store, [_as_item(item) for item in body])
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@router.get("", response_model=list[JobOut])
async def list_jobs(
    queue: str | None = None,
    status: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    store: SqlJobStore = Depends(get_store),
):
    return await store.list_jobs(queue=queue, status=status, limit=limit, offset=offset)


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, store: SqlJobStore = Depends(get_store)):
    job = await store.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.get("/{job_id}/logs", response_model=list[JobLogOut])
async def get_job_logs(job_id: str, store: SqlJobStore = Depends(get_store)):
    job = await store.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return await store.list_logs(job_id)
