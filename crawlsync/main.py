from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from crawlsync.db.neo4j_connector import close_driver
from crawlsync.errors import NotFoundError, PipelineError, ProposalStateError
from crawlsync.services.pipeline_service import PipelineDeps, build_deps

# Routers
from crawlsync.api.routers.jobs import router as jobs_router
from crawlsync.api.routers.sync import router as sync_router


def create_app(deps: Optional[PipelineDeps] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the pipeline on startup unless one was injected; close the Neo4j driver on shutdown."""
        if getattr(app.state, "deps", None) is None:
            app.state.deps = build_deps()
        try:
            yield
        finally:
            close_driver()

    app = FastAPI(title="crawlsync", version="0.1", lifespan=lifespan)
    app.state.deps = deps

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": exc.message})

    @app.exception_handler(ProposalStateError)
    async def _conflict(request: Request, exc: ProposalStateError):
        return JSONResponse(status_code=409, content={"detail": exc.message})

    @app.exception_handler(PipelineError)
    async def _pipeline_error(request: Request, exc: PipelineError):
        return JSONResponse(status_code=400, content={"detail": exc.message, "kind": exc.kind.value})

    app.include_router(jobs_router)
    app.include_router(sync_router)
    return app


app = create_app()
