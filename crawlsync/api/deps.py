from fastapi import Request

from crawlsync.services.pipeline_service import PipelineDeps


def get_deps(request: Request) -> PipelineDeps:
    return request.app.state.deps
