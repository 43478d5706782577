from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass

from supabase import Client, create_client

from imageflow.domain.errors import UnauthorizedError

logger = logging.getLogger(__name__)


def supabase_disabled() -> bool:
    return os.getenv("SUPABASE_DISABLED", "0") == "1"


@dataclass(slots=True)
class UserInfo:
    id: str
    email: str | None


class SupabaseAuthAdapter:
    """Resolves bearer tokens to users through Supabase Auth.

    With SUPABASE_DISABLED=1 (or no credentials configured) every token maps
    to a stable fake user derived from the token itself, so two requests with
    the same token see the same pipelines.
    """

    def __init__(self, client: Client | None = None) -> None:
        self._client = client if client is not None else get_supabase_client()

    def validate_token(self, token: str) -> UserInfo:
        if not token:
            raise UnauthorizedError("Missing access token")
        if self._client is None:
            digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
            return UserInfo(id=f"local-{digest}", email=None)
        try:  # pragma: no cover - network path
            res = self._client.auth.get_user(token)
        except Exception as exc:  # pragma: no cover
            logger.info("Token rejected by Supabase Auth: %s", exc)
            raise UnauthorizedError("Invalid access token") from exc
        user = res.user if res else None  # pragma: no cover
        if not user:  # pragma: no cover
            raise UnauthorizedError("Invalid access token")
        return UserInfo(id=user.id, email=user.email)  # pragma: no cover


_CLIENT_SINGLETON: Client | None = None


def get_supabase_client() -> Client | None:
    global _CLIENT_SINGLETON
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_ANON_KEY")
    if supabase_disabled() or not url or not key:
        return None
    if _CLIENT_SINGLETON is None:
        _CLIENT_SINGLETON = create_client(url, key)
    return _CLIENT_SINGLETON
