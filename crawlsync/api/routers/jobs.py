from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from crawlsync.api.deps import get_deps
from crawlsync.models.jobs import JobKind, JobStatus
from crawlsync.services import pipeline_service
from crawlsync.services.pipeline_service import PipelineDeps

router = APIRouter(tags=["jobs"])


class EnqueueRequest(BaseModel):
    kind: str
    source_key: str
    payload: Optional[Dict[str, Any]] = None


@router.get("/jobs")
async def api_list_jobs(status: Optional[str] = None, deps: PipelineDeps = Depends(get_deps)):
    try:
        wanted = JobStatus(status) if status else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"unknown status {status!r}")
    jobs = await deps.queue.list_jobs(wanted)
    return {"count": len(jobs), "items": [j.status_view() for j in jobs]}


@router.get("/jobs/{job_id}")
async def api_get_job(job_id: str, deps: PipelineDeps = Depends(get_deps)):
    return await pipeline_service.get_job(deps, job_id)


@router.post("/jobs", status_code=201)
async def api_enqueue_job(req: EnqueueRequest, deps: PipelineDeps = Depends(get_deps)):
    try:
        kind = JobKind(req.kind)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"unknown job kind {req.kind!r}")
    job = await deps.queue.enqueue(kind, req.source_key, req.payload)
    return job.status_view()
