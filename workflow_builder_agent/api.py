"""FastAPI service for the Workflow Builder Agent.

Wraps PipelineCoordinator in an HTTP API:

  POST /workflows/generate          run the pipeline, return the final result as JSON
  POST /workflows/generate/stream   run the pipeline, stream Server-Sent Events
  GET  /capabilities                list the capability catalogue
  GET  /health                      liveness + configured engine

SSE event types (``event: <type>`` / ``data: <json>``):
  progress  {"type": "progress", "stepName": ..., "stepNumber": n, "totalSteps": 6}
  chunk     {"type": "chunk", "text": "...", "complete": false}    structure synthesis only
  complete  {"type": "complete", "workflow": {...}, "tokenUsage": {...}, "summary": {...}}
  error     {"type": "error", "error": {"kind": ..., "stage": ..., "message": ...}}
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field, ValidationError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from workflow_builder_agent.catalogue.library import CapabilityLibrary
from workflow_builder_agent.errors import ErrorKind
from workflow_builder_agent.pipeline.coordinator import PipelineCoordinator
from workflow_builder_agent.pipeline.models import WorkflowGraph

logger = logging.getLogger("workflow_builder_agent.api")

_STATUS_FOR_KIND: dict[ErrorKind, int] = {
    ErrorKind.COLLABORATOR_UNAVAILABLE: 503,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.INTERNAL: 500,
}

# ---------------------------------------------------------------------------
# API key authentication (optional, enabled when AGENT_API_KEY is set)
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def _verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> None:
    """Verify Bearer token matches AGENT_API_KEY env var.

    If AGENT_API_KEY is not set, all requests are allowed (open dev mode).
    If set, every request must carry 'Authorization: Bearer <key>'.
    """
    api_key = os.getenv("AGENT_API_KEY")
    if not api_key:
        return
    if not credentials or credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class GenerateRequest(BaseModel):
    """Request body for POST /workflows/generate and /workflows/generate/stream."""

    request: str = Field(
        ...,
        min_length=1,
        description="Free-text description of the automation to build.",
        examples=["Email me whenever a new row is added to my Leads sheet"],
    )
    existing_workflow: dict[str, Any] | None = Field(
        default=None,
        alias="existingWorkflow",
        description="Current workflow graph when the request modifies it.",
    )
    integration_context: dict[str, Any] | None = Field(
        default=None,
        alias="integrationContext",
        description="The user's connected integrations and their resources.",
    )
    catalogue: list[dict[str, Any]] | None = Field(
        default=None,
        description="Capability catalogue to use instead of the server default.",
    )

    model_config = {"populate_by_name": True}


def _run_kwargs(body: GenerateRequest) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"integration_context": body.integration_context}
    if body.existing_workflow is not None:
        try:
            kwargs["existing_graph"] = WorkflowGraph.model_validate(body.existing_workflow)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=f"existingWorkflow is invalid: {exc.errors()[:3]}")
    if body.catalogue is not None:
        kwargs["library"] = CapabilityLibrary.from_entries(body.catalogue)
    return kwargs


def _format_sse(event: dict[str, Any]) -> str:
    return f"event: {event.get('type', 'message')}\ndata: {json.dumps(event, default=str)}\n\n"


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def _build_default_coordinator() -> PipelineCoordinator:
    from workflow_builder_agent.pipeline.settings import PipelineSettings
    from workflow_builder_agent.reasoning import ReasoningSettings, create_engine

    reasoning_settings = ReasoningSettings()
    pipeline_settings = PipelineSettings()
    logging.basicConfig(
        level=pipeline_settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine = create_engine(reasoning_settings)
    logger.info(
        "Starting Workflow Builder Agent | Engine: %s | Fast model: %s",
        engine.model_id, reasoning_settings.resolved_fast_model(),
    )
    return PipelineCoordinator(
        engine,
        settings=pipeline_settings,
        fast_model=reasoning_settings.resolved_fast_model(),
        model=reasoning_settings.model,
    )


def create_app(coordinator: PipelineCoordinator | None = None) -> FastAPI:
    """Build the FastAPI app. Pass a coordinator to skip environment-driven setup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            from dotenv import load_dotenv
            load_dotenv()
        except ImportError:
            pass
        app.state.coordinator = coordinator if coordinator is not None else _build_default_coordinator()
        yield
        logger.info("Shutting down Workflow Builder Agent")

    rate_limit = f"{os.getenv('RATE_LIMIT_GENERATIONS_PER_MIN', '10')}/minute"
    limiter = Limiter(key_func=get_remote_address)

    app = FastAPI(
        title="Workflow Builder Agent API",
        description=(
            "Turns a free-text automation request into a validated workflow graph "
            "(intent → matching → structure → configuration → custom code → validation)."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    def _coordinator(request: Request) -> PipelineCoordinator:
        return request.app.state.coordinator

    @app.get("/health", tags=["system"], dependencies=[Depends(_verify_api_key)])
    async def health(request: Request) -> dict:
        """Health check. Reports the configured engine and catalogue size."""
        coord = _coordinator(request)
        return {
            "api": "ok",
            "engine": coord.engine.model_id,
            "capabilities": len(coord.library),
        }

    @app.get("/capabilities", tags=["catalogue"], dependencies=[Depends(_verify_api_key)])
    async def list_capabilities(request: Request) -> list[dict]:
        return [c.to_wire() for c in _coordinator(request).library.all()]

    @app.post("/workflows/generate", tags=["workflows"], dependencies=[Depends(_verify_api_key)])
    @limiter.limit(rate_limit)
    async def generate_workflow(request: Request, body: GenerateRequest) -> JSONResponse:
        """Run the full pipeline and return the workflow, usage and run summary."""
        logger.info("Generate: %r", body.request[:80])
        outcome = await _coordinator(request).run(body.request, **_run_kwargs(body))
        status = 200
        if not outcome.success:
            status = _STATUS_FOR_KIND.get(outcome.error.kind, 422)
        return JSONResponse(outcome.to_dict(), status_code=status)

    @app.post("/workflows/generate/stream", tags=["workflows"], dependencies=[Depends(_verify_api_key)])
    @limiter.limit(rate_limit)
    async def stream_workflow(request: Request, body: GenerateRequest) -> StreamingResponse:
        """Run the pipeline and stream progress as Server-Sent Events."""
        coord = _coordinator(request)
        kwargs = _run_kwargs(body)
        logger.info("Streaming generate: %r", body.request[:80])

        async def event_stream():
            yield ": connected\n\n"  # flush immediately so the client sees an open connection
            try:
                async for event in coord.stream(body.request, **kwargs):
                    yield _format_sse(event)
            except Exception as e:
                logger.exception("SSE stream failed")
                yield _format_sse({"type": "error", "error": {"kind": "internal", "stage": None, "message": str(e)}})

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app


app = create_app()


# ---------------------------------------------------------------------------
# Entry point (for uvicorn programmatic launch)
# ---------------------------------------------------------------------------


def serve(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """Launch the FastAPI server via uvicorn."""
    import uvicorn

    uvicorn.run(
        "workflow_builder_agent.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    serve()
