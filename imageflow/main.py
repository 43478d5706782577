from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from imageflow.application.dtos.common_dto import HealthResponse, RootResponse
from imageflow.infrastructure.api.dependencies import get_pipeline_repo, get_storage
from imageflow.infrastructure.api.middlewares import add_default_middlewares
from imageflow.infrastructure.api.routes.image_routes import router as image_router
from imageflow.infrastructure.api.routes.uploads_routes import router as uploads_router
from imageflow.infrastructure.database.repositories.memory_pipeline_repository import (
    InMemoryPipelineRepository,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # the in-memory store starts empty; recover what the stored files still describe
    storage = get_storage()
    repository = get_pipeline_repo(storage)
    if isinstance(repository, InMemoryPipelineRepository):
        report = repository.rebuild_index_from_storage(storage)
        logger.info(
            "Recovered %d pipelines and %d versions from storage (%d names skipped)",
            len(report.recovered_pipelines),
            len(report.recovered_versions),
            len(report.skipped),
        )
    yield


def create_app() -> FastAPI:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(
        title="ImageFlow",
        version="0.1.0",
        description="""
        ## ImageFlow API

        Upload an image, transform it repeatedly through external AI image models
        (angle generation, scene edits, upscaling) and browse the lineage of every
        derived version.

        ### Features
        - **Pipelines**: one per uploaded original, holding every derived version
        - **Processing**: fal.ai operations with retry and angle-to-prompt mapping
        - **Lineage tree**: versions grouped by parent, loop safe
        - **Prompt assistant**: correction prompts from a vision LLM

        ### Authentication
        All `/api/images` endpoints require a Bearer token:
        ```
        Authorization: Bearer your-jwt-token
        ```

        ### Error Responses
        - **400 Bad Request**: invalid upload, missing prompt or unknown operation
        - **401 Unauthorized**: missing or invalid token, or not the owner
        - **404 Not Found**: image or version does not exist
        - **500 Internal Server Error**: processing failed after retries
        - **502/503/504**: external AI service errors
        """,
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
        lifespan=lifespan,
    )
    add_default_middlewares(app)

    @app.get(
        "/",
        response_model=RootResponse,
        summary="API Root",
        description="Get basic information about the ImageFlow API",
        response_description="API information including status and version",
    )
    def root():
        """Get API root information."""
        return RootResponse(status="ok", service="imageflow", version=app.version)

    @app.get(
        "/health",
        response_model=HealthResponse,
        summary="Health Check",
        description="Check if the API service is running and healthy",
        response_description="Health status of the API service",
    )
    def health():
        """Check API health status."""
        return HealthResponse(status="healthy")

    app.include_router(image_router)
    app.include_router(uploads_router)
    return app


app = create_app()
