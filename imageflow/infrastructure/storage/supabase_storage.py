from __future__ import annotations

import logging
import os
from datetime import datetime
from urllib.parse import quote

from supabase import Client

from imageflow.domain.errors import ExternalServiceError, NotFoundError
from imageflow.infrastructure.storage.base import StoragePort, StoredFile, with_extension

logger = logging.getLogger(__name__)

SIGNED_URL_TTL_SECONDS = 365 * 24 * 60 * 60


class SupabaseStorage(StoragePort):
    """Storage adapter for a Supabase Storage bucket.

    Objects live under `uploads/{name}`. URLs are public bucket URLs when
    USE_PUBLIC_URLS=1, otherwise long-lived signed URLs.
    """

    prefix = "uploads"

    def __init__(self, client: Client) -> None:
        self.client = client
        self.bucket = os.getenv("SUPABASE_STORAGE_BUCKET", "images")
        self.public_urls = os.getenv("USE_PUBLIC_URLS", "0") == "1"
        self.base_url = os.getenv("BASE_URL", "http://localhost:4000").rstrip("/")

    def _object_path(self, name: str) -> str:
        return f"{self.prefix}/{name}"

    def _bucket(self):
        return self.client.storage.from_(self.bucket)  # type: ignore[attr-defined]

    def save(self, data: bytes, name: str, mime_type: str) -> StoredFile:
        name = with_extension(name, mime_type)
        try:  # pragma: no cover - network
            self._bucket().upload(
                path=self._object_path(name),
                file=data,
                file_options={"content-type": mime_type, "upsert": "false"},
            )
        except Exception as exc:  # pragma: no cover
            raise ExternalServiceError(f"Storage upload failed: {exc}", status_code=500) from exc
        return StoredFile(name=name, url=self.resolve_url(name), size=len(data))

    def read(self, name: str) -> bytes:
        try:  # pragma: no cover - network
            return self._bucket().download(self._object_path(name))
        except Exception as exc:  # pragma: no cover
            if "not found" in str(exc).lower() or "404" in str(exc):
                raise NotFoundError(f"File not found: {name}") from exc
            raise ExternalServiceError(f"Storage download failed: {exc}", status_code=500) from exc

    def delete(self, name: str) -> None:
        try:  # pragma: no cover - network
            self._bucket().remove([self._object_path(name)])
        except Exception as exc:
            logger.warning("Could not delete file %s from bucket %s: %s", name, self.bucket, exc)

    def exists(self, name: str) -> bool:
        folder, _, filename = self._object_path(name).rpartition("/")
        try:  # pragma: no cover - network
            entries = self._bucket().list(folder, {"search": filename})
        except Exception:
            return False
        return any(entry.get("name") == filename for entry in entries or [])

    def modified_at(self, name: str) -> datetime | None:
        folder, _, filename = self._object_path(name).rpartition("/")
        try:  # pragma: no cover - network
            entries = self._bucket().list(folder, {"search": filename})
        except Exception as exc:
            logger.warning("Could not stat %s in bucket %s: %s", name, self.bucket, exc)
            return None
        for entry in entries or []:
            stamp = entry.get("updated_at") or entry.get("created_at")
            if entry.get("name") == filename and stamp:
                return datetime.fromisoformat(stamp)
        return None

    def get_file_url(self, name: str) -> str:
        """Deterministic URL for a stored name (public or static-file form)."""
        if self.public_urls:
            encoded = quote(self._object_path(name), safe="/")
            return (
                f"{self.client.supabase_url}/storage/v1/object/public/"  # type: ignore[attr-defined]
                f"{self.bucket}/{encoded}"
            )
        return f"{self.base_url}/api/uploads/{quote(name, safe='/')}"

    def resolve_url(self, name: str) -> str:
        """URL handed to clients; signed when the bucket is private."""
        if self.public_urls:
            return self.get_file_url(name)
        try:  # pragma: no cover - network
            res = self._bucket().create_signed_url(self._object_path(name), SIGNED_URL_TTL_SECONDS)
            signed = res.get("signedURL") or res.get("signedUrl")
            if signed:
                return signed
        except Exception as exc:  # pragma: no cover
            logger.warning("Failed to sign URL for %s: %s", name, exc)
        return self.get_file_url(name)

    def list_names(self) -> list[str]:
        names: list[str] = []
        pending = [self.prefix]
        while pending:  # pragma: no cover - network
            folder = pending.pop()
            for entry in self._bucket().list(folder) or []:
                path = f"{folder}/{entry['name']}"
                # folders come back without an id
                if entry.get("id") is None:
                    pending.append(path)
                else:
                    names.append(path[len(self.prefix) + 1 :])
        return sorted(names)
