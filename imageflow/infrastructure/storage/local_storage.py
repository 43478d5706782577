from __future__ import annotations

import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import quote

from imageflow.domain.errors import ExternalServiceError, NotFoundError, ValidationError
from imageflow.infrastructure.storage.base import StoragePort, StoredFile, with_extension

logger = logging.getLogger(__name__)


class LocalFileStorage(StoragePort):
    """Storage on the local filesystem, served back under `/api/uploads/`."""

    def __init__(self, root: str | Path | None = None, base_url: str | None = None) -> None:
        self.root = Path(root or os.getenv("UPLOAD_DIR", "uploads"))
        self.base_url = (base_url or os.getenv("BASE_URL", "http://localhost:4000")).rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        path = (self.root / name).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValidationError(f"Invalid storage name: {name}")
        return path

    def save(self, data: bytes, name: str, mime_type: str) -> StoredFile:
        name = with_extension(name, mime_type)
        path = self._path(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise ExternalServiceError(f"Failed to save file: {exc}", status_code=500) from exc
        return StoredFile(name=name, url=self.get_file_url(name), size=len(data))

    def read(self, name: str) -> bytes:
        try:
            return self._path(name).read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError(f"File not found: {name}") from exc

    def delete(self, name: str) -> None:
        try:
            self._path(name).unlink()
        except Exception as exc:
            logger.warning("Could not delete file %s: %s", name, exc)

    def exists(self, name: str) -> bool:
        try:
            return self._path(name).is_file()
        except ValidationError:
            return False

    def get_file_url(self, name: str) -> str:
        return f"{self.base_url}/api/uploads/{quote(name, safe='/')}"

    def modified_at(self, name: str) -> datetime | None:
        try:
            return datetime.fromtimestamp(self._path(name).stat().st_mtime, tz=UTC)
        except (OSError, ValidationError):
            return None

    def list_names(self) -> list[str]:
        return sorted(
            path.relative_to(self.root).as_posix() for path in self.root.rglob("*") if path.is_file()
        )
