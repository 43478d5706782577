from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class VersionEntity:
    id: str
    operation: str  # AI operation key, e.g. "nano-banana-edit"
    ai_model: str  # display name derived from operation
    parameters: dict[str, Any]
    storage_name: str
    url: str
    byte_size: int
    created_at: datetime
    processing_time_ms: int
    # Lineage pointers: at most one is set for new records, both may be None for legacy ones
    source_image_id: str | None = None  # direct parent is the pipeline original
    source_processed_version_id: str | None = None  # direct parent is another version


@dataclass
class PipelineEntity:
    id: str
    user_id: str
    original_name: str
    storage_name: str
    mime_type: str
    byte_size: int
    uploaded_at: datetime
    width: int = 0
    height: int = 0
    tags: list[str] = field(default_factory=list)
    description: str = ""
    is_public: bool = False
    url: str | None = None  # resolved from storage_name when absent
    processed_version_count: int = 0  # eventually consistent, never used for queries
    versions: list[VersionEntity] = field(default_factory=list)

    def find_version(self, version_id: str) -> VersionEntity | None:
        return next((v for v in self.versions if v.id == version_id), None)


@dataclass(frozen=True)
class UploadOptions:
    tags: list[str] = field(default_factory=list)
    description: str = ""
    is_public: bool = False


@dataclass(frozen=True)
class UploadedFile:
    """Raw upload as handed over by the routing layer."""

    filename: str
    content: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.content)
