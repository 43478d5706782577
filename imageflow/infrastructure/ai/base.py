from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from imageflow.domain.errors import (
    ExternalServiceError,
    UnsupportedOperationError,
    ValidationError,
)

CLIENT_ERROR_STATUSES = frozenset({400, 401, 403})


@dataclass(frozen=True)
class TransformResult:
    data: bytes
    metadata: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None


class AITransformClient(ABC):
    """Runs one named operation against an external image model."""

    @abstractmethod
    async def transform(
        self, image_bytes: bytes, operation: str, parameters: dict[str, Any]
    ) -> TransformResult:
        """Single attempt; callers own the retry policy."""

    @abstractmethod
    def list_operations(self) -> list[str]: ...


def is_retryable_ai_error(exc: Exception) -> bool:
    """False for errors that would fail the same way on every attempt."""
    if isinstance(exc, (ValidationError, UnsupportedOperationError)):
        return False
    if isinstance(exc, ExternalServiceError):
        if exc.upstream_status in CLIENT_ERROR_STATUSES:
            return False
        if "Forbidden" in exc.message or "Unauthorized" in exc.message:
            return False
    return True


def to_data_uri(data: bytes, mime_type: str = "image/jpeg") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_uri(uri: str) -> bytes:
    _, _, encoded = uri.partition(",")
    return base64.b64decode(encoded)
