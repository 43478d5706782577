"""Lineage repository on a self-hosted PostgreSQL database.

Expected schema:

    CREATE TABLE pipelines (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        original_name TEXT NOT NULL,
        storage_name TEXT NOT NULL,
        mime_type TEXT NOT NULL,
        byte_size BIGINT NOT NULL DEFAULT 0,
        width INT NOT NULL DEFAULT 0,
        height INT NOT NULL DEFAULT 0,
        uploaded_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        tags JSONB NOT NULL DEFAULT '[]',
        description TEXT NOT NULL DEFAULT '',
        is_public BOOLEAN NOT NULL DEFAULT FALSE,
        url TEXT,
        processed_version_count INT NOT NULL DEFAULT 0
    );
    CREATE INDEX pipelines_user_uploaded ON pipelines (user_id, uploaded_at DESC);

    CREATE TABLE pipeline_versions (
        id TEXT PRIMARY KEY,
        pipeline_id TEXT NOT NULL REFERENCES pipelines (id) ON DELETE CASCADE,
        operation TEXT NOT NULL,
        ai_model TEXT NOT NULL,
        parameters JSONB NOT NULL DEFAULT '{}',
        storage_name TEXT NOT NULL,
        url TEXT,
        byte_size BIGINT NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL,
        processing_time_ms INT NOT NULL DEFAULT 0,
        source_image_id TEXT,
        source_processed_version_id TEXT
    );
"""
from __future__ import annotations

from imageflow.domain.entities.pipeline import PipelineEntity, UploadOptions, VersionEntity
from imageflow.domain.errors import ConflictError, NotFoundError
from imageflow.infrastructure.database.postgres_client import PostgresClient, as_json
from imageflow.infrastructure.database.repositories.base import (
    PipelineRepository,
    row_to_pipeline,
    row_to_version,
    version_to_row,
)
from imageflow.infrastructure.storage.base import StoragePort

_VERSION_COLUMNS = (
    "id",
    "pipeline_id",
    "operation",
    "ai_model",
    "parameters",
    "storage_name",
    "url",
    "byte_size",
    "created_at",
    "processing_time_ms",
    "source_image_id",
    "source_processed_version_id",
)


class PostgresPipelineRepository(PipelineRepository):
    def __init__(self, pg_client: PostgresClient, storage: StoragePort | None = None) -> None:
        super().__init__(storage)
        self.pg_client = pg_client

    def _owner_of(self, cursor, image_id: str, *, lock: bool = False) -> str | None:
        query = "SELECT user_id FROM pipelines WHERE id = %s"
        if lock:
            query += " FOR UPDATE"
        cursor.execute(query, (image_id,))
        row = cursor.fetchone()
        return row["user_id"] if row else None

    def _versions_for(self, pipeline_ids: list[str]) -> dict[str, list[VersionEntity]]:
        grouped: dict[str, list[VersionEntity]] = {pid: [] for pid in pipeline_ids}
        if not pipeline_ids:
            return grouped
        rows = self.pg_client.execute_many(
            "SELECT * FROM pipeline_versions WHERE pipeline_id = ANY(%s) ORDER BY created_at ASC",
            (pipeline_ids,),
        )
        for row in rows:
            grouped[row["pipeline_id"]].append(row_to_version(row))
        return grouped

    def create_original(
        self, user_id: str, metadata: PipelineEntity, options: UploadOptions | None = None
    ) -> PipelineEntity:
        entity = self._with_options(user_id, metadata, options)
        with self.pg_client.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO pipelines (
                    id, user_id, original_name, storage_name, mime_type, byte_size,
                    width, height, uploaded_at, tags, description, is_public, url,
                    processed_version_count
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 0)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    entity.id, user_id, entity.original_name, entity.storage_name,
                    entity.mime_type, entity.byte_size, entity.width, entity.height,
                    entity.uploaded_at, as_json(entity.tags), entity.description,
                    entity.is_public, entity.url,
                ),
            )
            if cursor.rowcount == 0:
                raise ConflictError(f"Pipeline already exists: {entity.id}")
        return entity

    def append_version(self, user_id: str, image_id: str, version: VersionEntity) -> None:
        row = version_to_row(image_id, version)
        columns = [c for c in _VERSION_COLUMNS if c in row]
        values = tuple(as_json(row[c]) if c == "parameters" else row[c] for c in columns)
        with self.pg_client.transaction() as cursor:
            owner = self._owner_of(cursor, image_id)
            if owner is None:
                raise NotFoundError("Image not found")
            self._ensure_owner(owner, user_id)
            cursor.execute(
                f"INSERT INTO pipeline_versions ({', '.join(columns)}) "
                f"VALUES ({', '.join(['%s'] * len(columns))})",
                values,
            )
            # increment happens in SQL so concurrent appends never lose updates
            cursor.execute(
                """
                UPDATE pipelines
                SET processed_version_count = processed_version_count + 1, updated_at = now()
                WHERE id = %s
                """,
                (image_id,),
            )

    def get(self, user_id: str, image_id: str) -> PipelineEntity | None:
        row = self.pg_client.execute_one("SELECT * FROM pipelines WHERE id = %s", (image_id,))
        if row is None or row["user_id"] != user_id:
            return None
        versions = self._versions_for([image_id])[image_id]
        return self._resolve_urls(row_to_pipeline(row, versions))

    def list_all(self, user_id: str) -> list[PipelineEntity]:
        rows = self.pg_client.execute_many(
            "SELECT * FROM pipelines WHERE user_id = %s ORDER BY uploaded_at DESC", (user_id,)
        )
        versions = self._versions_for([row["id"] for row in rows])
        return [self._resolve_urls(row_to_pipeline(row, versions[row["id"]])) for row in rows]

    def delete_version(self, user_id: str, image_id: str, version_id: str) -> None:
        with self.pg_client.transaction() as cursor:
            owner = self._owner_of(cursor, image_id)
            if owner is None:
                raise NotFoundError("Image not found")
            self._ensure_owner(owner, user_id)
            cursor.execute(
                "DELETE FROM pipeline_versions WHERE id = %s AND pipeline_id = %s",
                (version_id, image_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Processed version not found")
            cursor.execute(
                """
                UPDATE pipelines
                SET processed_version_count = GREATEST(processed_version_count - 1, 0),
                    updated_at = now()
                WHERE id = %s
                """,
                (image_id,),
            )

    def delete_pipeline(self, user_id: str, image_id: str) -> None:
        with self.pg_client.transaction() as cursor:
            owner = self._owner_of(cursor, image_id, lock=True)
            if owner is None:
                return
            self._ensure_owner(owner, user_id)
            cursor.execute("DELETE FROM pipeline_versions WHERE pipeline_id = %s", (image_id,))
            cursor.execute("DELETE FROM pipelines WHERE id = %s", (image_id,))
