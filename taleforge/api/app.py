"""
TaleForge FastAPI application.

Thin HTTP surface over ``StorySegmentPipeline``: every route hands the raw
request to the pipeline and mirrors its status, body, and CORS headers.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from taleforge.common.config import Settings
from taleforge.pipeline import (
    CORS_HEADERS,
    InboundRequest,
    PipelineResponse,
    StorySegmentPipeline,
)

logger = logging.getLogger(__name__)


def build_default_pipeline(settings: Settings | None = None) -> StorySegmentPipeline:
    """Production wiring: environment settings and the Supabase gateway."""
    from taleforge.pipeline.supabase_gateway import SupabaseStoryGateway

    settings = settings or Settings.from_env()
    gateway = SupabaseStoryGateway(url=settings.persistence_url, key=settings.persistence_key)
    return StorySegmentPipeline(gateway=gateway, settings=settings)


def _to_response(result: PipelineResponse) -> Response:
    if result.body is None:
        return Response(status_code=result.status, headers=dict(result.headers))
    return JSONResponse(
        status_code=result.status,
        content=result.body,
        headers=dict(result.headers),
    )


async def _inbound(request: Request) -> InboundRequest:
    return InboundRequest(
        method=request.method,
        headers=dict(request.headers),
        body=await request.body(),
    )


def create_app(pipeline: StorySegmentPipeline | None = None) -> FastAPI:
    """
    Build the application. Without an explicit pipeline, one is built on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "pipeline", None) is None:
            app.state.pipeline = build_default_pipeline()
        logger.info("Starting TaleForge API...")
        yield
        logger.info("Shutting down TaleForge API...")

    app = FastAPI(
        title="TaleForge API",
        description="Branching children's story segment generation",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    def current_pipeline() -> StorySegmentPipeline:
        if app.state.pipeline is None:
            app.state.pipeline = build_default_pipeline()
        return app.state.pipeline

    @app.options("/generate-story-segment")
    @app.options("/generate-story-image")
    async def preflight() -> Response:
        return Response(status_code=200, headers=dict(CORS_HEADERS))

    @app.post("/generate-story-segment")
    async def generate_story_segment(request: Request) -> Response:
        inbound = await _inbound(request)
        result = await run_in_threadpool(current_pipeline().handle, inbound)
        return _to_response(result)

    @app.post("/generate-story-image")
    async def generate_story_image(request: Request) -> Response:
        inbound = await _inbound(request)
        result = await run_in_threadpool(current_pipeline().handle_image_request, inbound)
        return _to_response(result)

    @app.get("/health")
    async def health() -> Response:
        summary = current_pipeline().validation_gate.validation_summary()
        status_code = 503 if summary["status"] == "offline" else 200
        return JSONResponse(status_code=status_code, content=summary, headers=dict(CORS_HEADERS))

    return app
