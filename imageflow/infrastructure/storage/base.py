from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

MIME_EXTENSIONS: dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


@dataclass(frozen=True)
class StoredFile:
    name: str
    url: str
    size: int


class StoragePort(ABC):
    """Blob storage addressed by name.

    The same name always resolves to the same bytes for the lifetime of the
    pipeline that owns it.
    """

    @abstractmethod
    def save(self, data: bytes, name: str, mime_type: str) -> StoredFile: ...

    @abstractmethod
    def read(self, name: str) -> bytes:
        """Raises NotFoundError when the blob does not exist."""

    @abstractmethod
    def delete(self, name: str) -> None:
        """Never raises; failures are logged."""

    @abstractmethod
    def exists(self, name: str) -> bool: ...

    @abstractmethod
    def get_file_url(self, name: str) -> str: ...

    def resolve_url(self, name: str) -> str:
        """URL handed to clients; backends with expiring links override this."""
        return self.get_file_url(name)

    @abstractmethod
    def list_names(self) -> list[str]: ...

    def modified_at(self, name: str) -> datetime | None:
        """Last write time of the blob, or None when the backend cannot tell."""
        return None


def with_extension(name: str, mime_type: str) -> str:
    """Append an extension derived from the MIME type when the name has none."""
    filename = name.rsplit("/", 1)[-1]
    if "." in filename:
        return name
    return f"{name}{MIME_EXTENSIONS.get(mime_type, '.jpg')}"
