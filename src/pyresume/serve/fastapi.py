"""
Mount a workflow endpoint on a FastAPI application.

Example:
    ```python
    app = FastAPI()
    engine = WorkflowEngine(onboarding, store, scheduler)
    serve(app, "/api/onboarding", engine)
    ```
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import Response

from pyresume.executor.engine import WorkflowEngine
from pyresume.protocol import WorkflowRequest


def serve(app: FastAPI, path: str, engine: WorkflowEngine) -> None:
    """Add a POST route at ``path`` that hands every request to ``engine``."""

    async def endpoint(request: Request) -> Response:
        workflow_request = WorkflowRequest(
            url=str(request.url),
            headers=dict(request.headers),
            body=await request.body(),
            method=request.method,
        )
        response = await engine.handle(workflow_request)
        return Response(
            content=response.content(),
            status_code=response.status,
            headers=response.headers,
        )

    app.add_api_route(path, endpoint, methods=["POST"], name=f"workflow:{path}")
