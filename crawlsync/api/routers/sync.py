from typing import Optional

from fastapi import APIRouter, Depends

from crawlsync.api.deps import get_deps
from crawlsync.services import pipeline_service
from crawlsync.services.pipeline_service import PipelineDeps

router = APIRouter(tags=["sync"])


@router.get("/sync/batches/{batch_id}")
async def api_get_batch(batch_id: str, deps: PipelineDeps = Depends(get_deps)):
    return await pipeline_service.get_batch(deps, batch_id)


@router.post("/sync/proposals/{proposal_id}/approve")
async def api_approve_proposal(proposal_id: str, deps: PipelineDeps = Depends(get_deps)):
    return await pipeline_service.approve_proposal(deps, proposal_id)


@router.post("/sync/proposals/{proposal_id}/reject")
async def api_reject_proposal(proposal_id: str, deps: PipelineDeps = Depends(get_deps)):
    return await pipeline_service.reject_proposal(deps, proposal_id)


@router.post("/sync/batches/{batch_id}/approve")
async def api_approve_batch(batch_id: str, deps: PipelineDeps = Depends(get_deps)):
    """Approve every pending proposal; one failure does not stop the rest."""
    return await pipeline_service.approve_batch(deps, batch_id)


@router.post("/sync/batches/{batch_id}/reject")
async def api_reject_batch(batch_id: str, deps: PipelineDeps = Depends(get_deps)):
    return await pipeline_service.reject_batch(deps, batch_id)


@router.post("/sync/cleanup")
async def api_cleanup(source_id: Optional[str] = None, deps: PipelineDeps = Depends(get_deps)):
    return await pipeline_service.cleanup(deps, source_id)
