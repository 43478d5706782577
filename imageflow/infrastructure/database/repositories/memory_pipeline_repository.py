from __future__ import annotations

import logging
import mimetypes
import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from imageflow.domain.entities.pipeline import PipelineEntity, UploadOptions, VersionEntity
from imageflow.domain.errors import ConflictError, NotFoundError
from imageflow.domain.services.naming import parse_storage_name
from imageflow.infrastructure.database.repositories.base import PipelineRepository
from imageflow.infrastructure.storage.base import StoragePort

logger = logging.getLogger(__name__)

# module-level arena for disabled mode; lost on restart
_MEM_PIPELINES: dict[str, PipelineEntity] = {}
_MEM_LOCK = threading.Lock()


@dataclass
class RebuildReport:
    recovered_pipelines: list[str] = field(default_factory=list)
    recovered_versions: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _copy(pipeline: PipelineEntity) -> PipelineEntity:
    return replace(pipeline, tags=list(pipeline.tags), versions=list(pipeline.versions))


class InMemoryPipelineRepository(PipelineRepository):
    """Process-local lineage store keyed by pipeline id."""

    def __init__(
        self, storage: StoragePort | None = None, store: dict[str, PipelineEntity] | None = None
    ) -> None:
        super().__init__(storage)
        self._store = _MEM_PIPELINES if store is None else store

    def create_original(
        self, user_id: str, metadata: PipelineEntity, options: UploadOptions | None = None
    ) -> PipelineEntity:
        entity = self._with_options(user_id, metadata, options)
        with _MEM_LOCK:
            if entity.id in self._store:
                raise ConflictError(f"Pipeline already exists: {entity.id}")
            self._store[entity.id] = entity
        return _copy(entity)

    def append_version(self, user_id: str, image_id: str, version: VersionEntity) -> None:
        with _MEM_LOCK:
            pipeline = self._store.get(image_id)
            if pipeline is None:
                raise NotFoundError("Image not found")
            self._ensure_owner(pipeline.user_id, user_id)
            pipeline.versions.append(version)
            pipeline.processed_version_count += 1

    def get(self, user_id: str, image_id: str) -> PipelineEntity | None:
        pipeline = self._store.get(image_id)
        if pipeline is None or pipeline.user_id != user_id:
            return None
        pipeline = _copy(pipeline)
        pipeline.versions.sort(key=lambda v: v.created_at)
        return self._resolve_urls(pipeline)

    def list_all(self, user_id: str) -> list[PipelineEntity]:
        owned = [_copy(p) for p in self._store.values() if p.user_id == user_id]
        for pipeline in owned:
            pipeline.versions.sort(key=lambda v: v.created_at)
            self._resolve_urls(pipeline)
        owned.sort(key=lambda p: p.uploaded_at, reverse=True)
        return owned

    def delete_version(self, user_id: str, image_id: str, version_id: str) -> None:
        with _MEM_LOCK:
            pipeline = self._store.get(image_id)
            if pipeline is None:
                raise NotFoundError("Image not found")
            self._ensure_owner(pipeline.user_id, user_id)
            if pipeline.find_version(version_id) is None:
                raise NotFoundError("Processed version not found")
            pipeline.versions = [v for v in pipeline.versions if v.id != version_id]
            pipeline.processed_version_count = max(0, pipeline.processed_version_count - 1)

    def delete_pipeline(self, user_id: str, image_id: str) -> None:
        with _MEM_LOCK:
            pipeline = self._store.get(image_id)
            if pipeline is None:
                return
            self._ensure_owner(pipeline.user_id, user_id)
            del self._store[image_id]

    def rebuild_index_from_storage(
        self, storage: StoragePort, owner_id: str | None = None
    ) -> RebuildReport:
        """Re-create pipelines from blob names after a restart.

        Lineage pointers cannot be recovered from names, so recovered versions
        carry no source pointers and show up as direct children of the
        original. Names that do not follow the storage layout are skipped.
        Upload and creation times come from the blob's last write time where
        the storage backend reports one.
        """
        report = RebuildReport()
        parsed_names = []
        for name in storage.list_names():
            parsed = parse_storage_name(name)
            if parsed is None:
                logger.warning("Skipping unrecognised blob name during rebuild: %s", name)
                report.skipped.append(name)
                continue
            parsed_names.append((name, parsed))

        now = datetime.now(UTC)
        # originals first so versions can find their pipeline
        parsed_names.sort(key=lambda item: item[1].is_version)
        for name, parsed in parsed_names:
            user_id = owner_id or parsed.user_id
            with _MEM_LOCK:
                pipeline = self._store.get(parsed.image_id)
                if not parsed.is_version:
                    if pipeline is not None:
                        continue
                    self._store[parsed.image_id] = PipelineEntity(
                        id=parsed.image_id,
                        user_id=user_id,
                        original_name=parsed.label,
                        storage_name=name,
                        mime_type=mimetypes.guess_type(parsed.label)[0] or "application/octet-stream",
                        byte_size=len(storage.read(name)),
                        uploaded_at=storage.modified_at(name) or now,
                    )
                    report.recovered_pipelines.append(parsed.image_id)
                    continue
                if pipeline is None:
                    logger.warning("Skipping version blob without original: %s", name)
                    report.skipped.append(name)
                    continue
                if pipeline.find_version(parsed.version_id) is not None:
                    continue
                angle = parsed.angle
                pipeline.versions.append(
                    VersionEntity(
                        id=parsed.version_id,
                        operation="unknown",
                        ai_model=parsed.ai_model,
                        parameters={"angle": angle} if angle is not None else {},
                        storage_name=name,
                        url=storage.get_file_url(name),
                        byte_size=len(storage.read(name)),
                        created_at=storage.modified_at(name) or now,
                        processing_time_ms=0,
                    )
                )
                pipeline.processed_version_count += 1
                report.recovered_versions.append(parsed.version_id)
        return report
