"""Orchestration of the version-lineage pipeline.

`PipelineService` resolves source bytes, derives the prompt, drives the AI
client under the retry policy, stores the result and records the new version
with its parent pointer. Listing and deletion go through the same repository
so every read reflects the backing store.
"""
from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from io import BytesIO
from typing import Any
from uuid import uuid4

from PIL import Image, UnidentifiedImageError

from imageflow.domain.entities.pipeline import (
    PipelineEntity,
    UploadedFile,
    UploadOptions,
    VersionEntity,
)
from imageflow.domain.errors import (
    NotFoundError,
    ProcessingFailedError,
    UnsupportedOperationError,
    ValidationError,
)
from imageflow.domain.services.angle_prompts import generate_final_prompt
from imageflow.domain.services.naming import (
    ai_model_name,
    original_storage_name,
    smart_filename,
    version_storage_name,
)
from imageflow.domain.services.pipeline_tree import TreeLevel, build_pipeline_levels
from imageflow.domain.services.retry_policy import RetryPolicy
from imageflow.infrastructure.ai.base import AITransformClient, is_retryable_ai_error
from imageflow.infrastructure.database.repositories.base import PipelineRepository
from imageflow.infrastructure.storage.base import StoragePort

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/gif"})
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024
MAX_TAGS = 10
MAX_TAG_LENGTH = 50
MAX_DESCRIPTION_LENGTH = 500
VERSION_MIME_TYPE = "image/jpeg"


@dataclass(frozen=True)
class Page:
    items: list[Any]
    total: int
    page: int
    total_pages: int


@dataclass(frozen=True)
class ProcessedVersionItem:
    """A version flattened out of its pipeline, tagged with the owning original."""

    source_image_id: str
    original_name: str
    version: VersionEntity


@dataclass(frozen=True)
class PipelineTree:
    pipeline: PipelineEntity
    levels: list[TreeLevel]


def read_dimensions(data: bytes) -> tuple[int, int]:
    """Best-effort (width, height); (0, 0) when the bytes do not decode."""
    try:
        with Image.open(BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.warning("Could not read image dimensions: %s", exc)
        return 0, 0


def paginate(items: list[Any], page: int, limit: int) -> Page:
    page = max(1, page)
    limit = max(1, limit)
    start = (page - 1) * limit
    return Page(
        items=items[start : start + limit],
        total=len(items),
        page=page,
        total_pages=max(1, math.ceil(len(items) / limit)),
    )


@dataclass
class PipelineService:
    storage: StoragePort
    repository: PipelineRepository
    ai_client: AITransformClient
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    max_upload_bytes: int = field(
        default_factory=lambda: int(os.getenv("MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES))
    )

    # -- upload -------------------------------------------------------------

    def validate_upload(self, file: UploadedFile, options: UploadOptions) -> None:
        if not file.content:
            raise ValidationError("No file uploaded")
        if file.mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError(
                f"Unsupported file type {file.mime_type}; allowed: JPEG, PNG, WEBP, GIF"
            )
        if file.size > self.max_upload_bytes:
            raise ValidationError(f"File too large; maximum is {self.max_upload_bytes} bytes")
        if len(options.tags) > MAX_TAGS:
            raise ValidationError(f"At most {MAX_TAGS} tags are allowed")
        if any(len(tag) > MAX_TAG_LENGTH for tag in options.tags):
            raise ValidationError(f"Tags must be at most {MAX_TAG_LENGTH} characters")
        if len(options.description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters"
            )

    def upload(
        self, user_id: str, file: UploadedFile, options: UploadOptions | None = None
    ) -> PipelineEntity:
        """Store the original and create its pipeline record.

        The storage name embeds the new id so a lost index can be rebuilt
        from the blobs alone.
        """
        options = options or UploadOptions()
        self.validate_upload(file, options)

        image_id = str(uuid4())
        stored = self.storage.save(
            file.content, original_storage_name(user_id, image_id, file.filename), file.mime_type
        )
        width, height = read_dimensions(file.content)
        entity = PipelineEntity(
            id=image_id,
            user_id=user_id,
            original_name=file.filename,
            storage_name=stored.name,
            mime_type=file.mime_type,
            byte_size=stored.size,
            uploaded_at=datetime.now(UTC),
            width=width,
            height=height,
            url=stored.url,
        )
        try:
            return self.repository.create_original(user_id, entity, options)
        except Exception:
            self._delete_blob(stored.name)
            raise

    def upload_many(
        self, user_id: str, files: list[UploadedFile], options: UploadOptions | None = None
    ) -> list[PipelineEntity]:
        """Upload each file in turn; failed files are logged and skipped."""
        uploaded: list[PipelineEntity] = []
        for file in files:
            try:
                uploaded.append(self.upload(user_id, file, options))
            except Exception as exc:
                logger.error("Upload of %s failed, skipping: %s", file.filename, exc)
        return uploaded

    # -- process ------------------------------------------------------------

    def _source_bytes(self, pipeline: PipelineEntity, source_version_id: str | None) -> bytes:
        if not source_version_id:
            return self.storage.read(pipeline.storage_name)
        source = pipeline.find_version(source_version_id)
        if source is None:
            raise NotFoundError("Selected source version not found")
        return self.storage.read(source.storage_name)

    @staticmethod
    def derive_parameters(
        parameters: dict[str, Any] | None,
        angles: list[float] | None = None,
        custom_prompt: str | None = None,
    ) -> dict[str, Any]:
        """Request parameters as sent to the AI client and persisted on the version.

        Only the first angle is used; batching over angles is the caller's loop.
        """
        params = dict(parameters or {})
        if angles:
            angle = angles[0]
            params["prompt"] = generate_final_prompt(angle, custom_prompt)
            params["angle"] = angle
        elif custom_prompt and custom_prompt.strip():
            params["prompt"] = custom_prompt
        return params

    async def process(
        self,
        user_id: str,
        image_id: str,
        operation: str,
        parameters: dict[str, Any] | None = None,
        *,
        source_version_id: str | None = None,
        angles: list[float] | None = None,
        custom_prompt: str | None = None,
    ) -> VersionEntity:
        pipeline = self.repository.get(user_id, image_id)
        if pipeline is None:
            raise NotFoundError("Image not found")

        try:
            source_bytes = self._source_bytes(pipeline, source_version_id)
            params = self.derive_parameters(parameters, angles, custom_prompt)
            prompt = params.get("prompt") if isinstance(params.get("prompt"), str) else None

            started = time.perf_counter()
            result = await self.retry_policy.run(
                lambda: self.ai_client.transform(source_bytes, operation, params),
                is_retryable=is_retryable_ai_error,
                label=f"AI transform {operation} (prompt length {len(prompt or '')})",
            )
            processing_time_ms = int((time.perf_counter() - started) * 1000)

            ai_model = ai_model_name(operation)
            version_id = str(uuid4())
            name = smart_filename(pipeline.original_name, ai_model, operation, prompt)
            stored = self.storage.save(
                result.data,
                version_storage_name(user_id, image_id, version_id, name),
                VERSION_MIME_TYPE,
            )
            version = VersionEntity(
                id=version_id,
                operation=operation,
                ai_model=ai_model,
                parameters=params,
                storage_name=stored.name,
                url=stored.url,
                byte_size=stored.size,
                created_at=datetime.now(UTC),
                processing_time_ms=processing_time_ms,
                source_image_id=None if source_version_id else pipeline.id,
                source_processed_version_id=source_version_id or None,
            )
            try:
                self.repository.append_version(user_id, image_id, version)
            except Exception:
                # an unrecorded blob would come back as a version on index rebuild
                self._delete_blob(stored.name)
                raise
        except (NotFoundError, ValidationError, UnsupportedOperationError):
            raise
        except Exception as exc:
            logger.error("Processing %s on %s failed: %s", operation, image_id, exc)
            raise ProcessingFailedError(f"Image processing failed: {exc}") from exc

        logger.info(
            "Created version %s of %s with %s in %d ms",
            version.id,
            image_id,
            operation,
            processing_time_ms,
        )
        return version

    # -- read ---------------------------------------------------------------

    def get(self, user_id: str, image_id: str) -> PipelineEntity:
        pipeline = self.repository.get(user_id, image_id)
        if pipeline is None:
            raise NotFoundError("Image not found")
        return pipeline

    def get_tree(self, user_id: str, image_id: str) -> PipelineTree:
        pipeline = self.get(user_id, image_id)
        return PipelineTree(pipeline=pipeline, levels=build_pipeline_levels(pipeline))

    def list(
        self, user_id: str, page: int = 1, limit: int = 10, search: str | None = None
    ) -> Page:
        pipelines = self.repository.list_all(user_id)
        if search:
            needle = search.lower()
            pipelines = [
                p
                for p in pipelines
                if needle in p.original_name.lower() or needle in p.mime_type.lower()
            ]
        return paginate(pipelines, page, limit)

    def list_processed_versions(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10,
        ai_model: str | None = None,
        min_ms: int | None = None,
        max_ms: int | None = None,
    ) -> Page:
        items = [
            ProcessedVersionItem(
                source_image_id=pipeline.id,
                original_name=pipeline.original_name,
                version=version,
            )
            for pipeline in self.repository.list_all(user_id)
            for version in pipeline.versions
        ]
        if ai_model:
            items = [i for i in items if i.version.ai_model == ai_model]
        if min_ms is not None:
            items = [i for i in items if i.version.processing_time_ms >= min_ms]
        if max_ms is not None:
            items = [i for i in items if i.version.processing_time_ms <= max_ms]
        items.sort(key=lambda i: i.version.created_at, reverse=True)
        return paginate(items, page, limit)

    # -- delete -------------------------------------------------------------

    def _delete_blob(self, name: str) -> None:
        try:
            self.storage.delete(name)
        except Exception as exc:
            logger.warning("Could not delete blob %s: %s", name, exc)

    def delete(self, user_id: str, image_id: str) -> None:
        pipeline = self.get(user_id, image_id)
        for version in pipeline.versions:
            self._delete_blob(version.storage_name)
        self._delete_blob(pipeline.storage_name)
        self.repository.delete_pipeline(user_id, image_id)

    def delete_version(self, user_id: str, image_id: str, version_id: str) -> None:
        pipeline = self.get(user_id, image_id)
        version = pipeline.find_version(version_id)
        if version is None:
            raise NotFoundError("Processed version not found")
        self._delete_blob(version.storage_name)
        self.repository.delete_version(user_id, image_id, version_id)

