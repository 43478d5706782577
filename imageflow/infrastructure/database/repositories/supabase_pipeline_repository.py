"""Lineage repository on Supabase tables.

Uses the `pipelines` / `pipeline_versions` tables (see the PostgreSQL
repository for the schema) plus one RPC for the atomic counter:

    CREATE FUNCTION increment_processed_version_count(pipeline_id TEXT, delta INT)
    RETURNS VOID LANGUAGE SQL AS $$
        UPDATE pipelines
        SET processed_version_count = GREATEST(processed_version_count + delta, 0),
            updated_at = now()
        WHERE id = pipeline_id
    $$;
"""
from __future__ import annotations

import logging

from supabase import Client

from imageflow.domain.entities.pipeline import PipelineEntity, UploadOptions, VersionEntity
from imageflow.domain.errors import ConflictError, ExternalServiceError, NotFoundError
from imageflow.infrastructure.database.repositories.base import (
    PipelineRepository,
    row_to_pipeline,
    row_to_version,
    version_to_row,
)
from imageflow.infrastructure.storage.base import StoragePort

logger = logging.getLogger(__name__)


def _is_missing_index(exc: Exception) -> bool:
    message = str(exc).lower()
    return "index" in message or "failed-precondition" in message


class SupabasePipelineRepository(PipelineRepository):
    def __init__(self, client: Client, storage: StoragePort | None = None) -> None:
        super().__init__(storage)
        self.client = client

    def _pipeline_row(self, image_id: str) -> dict | None:
        res = self.client.table("pipelines").select("*").eq("id", image_id).limit(1).execute()
        rows = res.data or []
        return rows[0] if rows else None

    def _increment(self, image_id: str, delta: int) -> None:
        self.client.rpc(
            "increment_processed_version_count", {"pipeline_id": image_id, "delta": delta}
        ).execute()

    def _versions_for(self, pipeline_ids: list[str]) -> dict[str, list[VersionEntity]]:
        grouped: dict[str, list[VersionEntity]] = {pid: [] for pid in pipeline_ids}
        if not pipeline_ids:
            return grouped
        res = (
            self.client.table("pipeline_versions")
            .select("*")
            .in_("pipeline_id", pipeline_ids)
            .order("created_at")
            .execute()
        )
        for row in res.data or []:
            grouped[row["pipeline_id"]].append(row_to_version(row))
        return grouped

    def create_original(
        self, user_id: str, metadata: PipelineEntity, options: UploadOptions | None = None
    ) -> PipelineEntity:
        entity = self._with_options(user_id, metadata, options)
        if self._pipeline_row(entity.id) is not None:
            raise ConflictError(f"Pipeline already exists: {entity.id}")
        data = {
            "id": entity.id,
            "user_id": user_id,
            "original_name": entity.original_name,
            "storage_name": entity.storage_name,
            "mime_type": entity.mime_type,
            "byte_size": entity.byte_size,
            "width": entity.width,
            "height": entity.height,
            "uploaded_at": entity.uploaded_at.isoformat(),
            "tags": entity.tags,
            "description": entity.description,
            "is_public": entity.is_public,
            "processed_version_count": 0,
        }
        if entity.url:
            data["url"] = entity.url
        try:  # pragma: no cover - network
            self.client.table("pipelines").insert(data).execute()
        except Exception as exc:  # pragma: no cover
            raise ExternalServiceError(f"DB insert pipeline failed: {exc}", status_code=500) from exc
        return entity

    def append_version(self, user_id: str, image_id: str, version: VersionEntity) -> None:
        row = self._pipeline_row(image_id)
        if row is None:
            raise NotFoundError("Image not found")
        self._ensure_owner(row["user_id"], user_id)
        self.client.table("pipeline_versions").insert(version_to_row(image_id, version)).execute()
        self._increment(image_id, 1)

    def get(self, user_id: str, image_id: str) -> PipelineEntity | None:
        row = self._pipeline_row(image_id)
        if row is None or row["user_id"] != user_id:
            return None
        versions = self._versions_for([image_id])[image_id]
        return self._resolve_urls(row_to_pipeline(row, versions))

    def list_all(self, user_id: str) -> list[PipelineEntity]:
        query = self.client.table("pipelines").select("*").eq("user_id", user_id)
        try:
            rows = query.order("uploaded_at", desc=True).execute().data or []
        except Exception as exc:
            if not _is_missing_index(exc):
                raise
            logger.warning(
                "Ordered pipeline query failed (%s); falling back to unordered fetch. "
                "Create an index on pipelines (user_id, uploaded_at DESC).",
                exc,
            )
            rows = (
                self.client.table("pipelines").select("*").eq("user_id", user_id).execute().data
                or []
            )
        versions = self._versions_for([row["id"] for row in rows])
        pipelines = [
            self._resolve_urls(row_to_pipeline(row, versions[row["id"]])) for row in rows
        ]
        pipelines.sort(key=lambda p: p.uploaded_at, reverse=True)
        return pipelines

    def delete_version(self, user_id: str, image_id: str, version_id: str) -> None:
        row = self._pipeline_row(image_id)
        if row is None:
            raise NotFoundError("Image not found")
        self._ensure_owner(row["user_id"], user_id)
        res = (
            self.client.table("pipeline_versions")
            .delete()
            .eq("id", version_id)
            .eq("pipeline_id", image_id)
            .execute()
        )
        if not res.data:
            raise NotFoundError("Processed version not found")
        self._increment(image_id, -1)

    def delete_pipeline(self, user_id: str, image_id: str) -> None:
        row = self._pipeline_row(image_id)
        if row is None:
            return
        self._ensure_owner(row["user_id"], user_id)
        # versions go with the parent row through ON DELETE CASCADE, in one statement
        self.client.table("pipelines").delete().eq("id", image_id).execute()
