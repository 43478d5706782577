from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from imageflow.domain.entities.pipeline import PipelineEntity, UploadOptions, VersionEntity
from imageflow.domain.errors import UnauthorizedError
from imageflow.infrastructure.storage.base import StoragePort


def _to_datetime(value: Any) -> datetime:
    if value is None:
        return datetime.now(UTC)
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _to_json(value: Any, default: Any) -> Any:
    # PostgreSQL may hand back JSONB as text
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def row_to_version(row: dict) -> VersionEntity:
    """Convert a `pipeline_versions` row to a VersionEntity."""
    return VersionEntity(
        id=row["id"],
        operation=row["operation"],
        ai_model=row.get("ai_model") or "",
        parameters=_to_json(row.get("parameters"), {}),
        storage_name=row["storage_name"],
        url=row.get("url") or "",
        byte_size=row.get("byte_size") or 0,
        created_at=_to_datetime(row.get("created_at")),
        processing_time_ms=row.get("processing_time_ms") or 0,
        source_image_id=row.get("source_image_id"),
        source_processed_version_id=row.get("source_processed_version_id"),
    )


def row_to_pipeline(row: dict, versions: list[VersionEntity]) -> PipelineEntity:
    """Convert a `pipelines` row plus its version rows to a PipelineEntity."""
    return PipelineEntity(
        id=row["id"],
        user_id=row["user_id"],
        original_name=row["original_name"],
        storage_name=row["storage_name"],
        mime_type=row["mime_type"],
        byte_size=row.get("byte_size") or 0,
        uploaded_at=_to_datetime(row.get("uploaded_at")),
        width=row.get("width") or 0,
        height=row.get("height") or 0,
        tags=_to_json(row.get("tags"), []),
        description=row.get("description") or "",
        is_public=bool(row.get("is_public", False)),
        url=row.get("url"),
        processed_version_count=row.get("processed_version_count") or len(versions),
        versions=versions,
    )


def version_to_row(pipeline_id: str, version: VersionEntity) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": version.id,
        "pipeline_id": pipeline_id,
        "operation": version.operation,
        "ai_model": version.ai_model,
        "parameters": version.parameters,
        "storage_name": version.storage_name,
        "url": version.url or None,
        "byte_size": version.byte_size,
        "created_at": version.created_at.isoformat(),
        "processing_time_ms": version.processing_time_ms,
        "source_image_id": version.source_image_id,
        "source_processed_version_id": version.source_processed_version_id,
    }
    # unset lineage pointers are omitted rather than stored as explicit nulls
    return {k: v for k, v in row.items() if v is not None}


class PipelineRepository(ABC):
    """Persists one pipeline (original + versions) per (user, image).

    Every operation is scoped by user id. `get` treats foreign pipelines as
    absent; mutating operations raise UnauthorizedError for them.
    """

    def __init__(self, storage: StoragePort | None = None) -> None:
        self.storage = storage

    @abstractmethod
    def create_original(
        self, user_id: str, metadata: PipelineEntity, options: UploadOptions | None = None
    ) -> PipelineEntity: ...

    @abstractmethod
    def append_version(self, user_id: str, image_id: str, version: VersionEntity) -> None: ...

    @abstractmethod
    def get(self, user_id: str, image_id: str) -> PipelineEntity | None: ...

    @abstractmethod
    def list_all(self, user_id: str) -> list[PipelineEntity]: ...

    @abstractmethod
    def delete_version(self, user_id: str, image_id: str, version_id: str) -> None: ...

    @abstractmethod
    def delete_pipeline(self, user_id: str, image_id: str) -> None: ...

    @staticmethod
    def _ensure_owner(owner_id: str | None, user_id: str) -> None:
        if owner_id != user_id:
            raise UnauthorizedError("Unauthorized access to image")

    def _with_options(
        self, user_id: str, metadata: PipelineEntity, options: UploadOptions | None
    ) -> PipelineEntity:
        options = options or UploadOptions()
        return replace(
            metadata,
            user_id=user_id,
            tags=list(options.tags),
            description=options.description,
            is_public=options.is_public,
            processed_version_count=0,
            versions=[],
        )

    def _resolve_urls(self, pipeline: PipelineEntity) -> PipelineEntity:
        """Fill in urls that were never persisted, the same way every time."""
        if self.storage is None:
            return pipeline
        if not pipeline.url and pipeline.storage_name:
            pipeline.url = self.storage.resolve_url(pipeline.storage_name)
        pipeline.versions = [
            v if v.url or not v.storage_name else replace(v, url=self.storage.resolve_url(v.storage_name))
            for v in pipeline.versions
        ]
        return pipeline
