from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from imageflow.domain.errors import (
    ExternalServiceError,
    MalformedResponseError,
    ValidationError,
)
from imageflow.domain.services.retry_policy import RetryPolicy
from imageflow.infrastructure.ai.base import (
    AITransformClient,
    TransformResult,
    decode_data_uri,
    to_data_uri,
)
from imageflow.infrastructure.ai.operations import get_operation, list_operations

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 30.0


def extract_image_url(payload: Any) -> str:
    """Find the result image URL in a model response.

    Checks `images[0].url`, then `image.url`, then a top-level `url`.
    """
    if isinstance(payload, dict):
        images = payload.get("images")
        if isinstance(images, list) and images:
            first = images[0]
            if isinstance(first, dict) and first.get("url"):
                return first["url"]
            if isinstance(first, str) and first:
                return first
        image = payload.get("image")
        if isinstance(image, dict) and image.get("url"):
            return image["url"]
        if isinstance(payload.get("url"), str) and payload["url"]:
            return payload["url"]
    raise MalformedResponseError("No image URL found in model response")


def _forbidden_message(operation: str, parameters: dict[str, Any]) -> str:
    prompt = parameters.get("prompt") or ""
    return (
        "fal.ai API Forbidden (403): this may be due to API key permissions, "
        "content policy violation, or model access restrictions. "
        f"Operation: {operation}, prompt length: {len(prompt)}"
    )


class FalAIClient(AITransformClient):
    """fal.ai synchronous endpoints over httpx."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        download_policy: RetryPolicy | None = None,
    ) -> None:
        self.api_key = api_key or os.getenv("FAL_KEY") or os.getenv("FAL_SUBSCRIBER_KEY")
        self.base_url = (base_url or os.getenv("FAL_BASE_URL", "https://fal.run")).rstrip("/")
        self.timeout = timeout if timeout is not None else float(os.getenv("FAL_TIMEOUT", "180"))
        self._transport = transport
        self.download_policy = download_policy or RetryPolicy(max_attempts=5, base_delay=2.0)

    def list_operations(self) -> list[str]:
        return list_operations()

    async def transform(
        self, image_bytes: bytes, operation: str, parameters: dict[str, Any]
    ) -> TransformResult:
        spec = get_operation(operation)
        prompt = parameters.get("prompt")
        if spec.requires_prompt and (not isinstance(prompt, str) or not prompt.strip()):
            raise ValidationError(f"Prompt is required for operation {operation}")
        if not self.api_key:
            raise ExternalServiceError("FAL_KEY is not configured", status_code=500)

        body = spec.build_input(parameters, to_data_uri(image_bytes))
        url = f"{self.base_url}/{spec.endpoint}"
        headers = {"Authorization": f"Key {self.api_key}", "Content-Type": "application/json"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(url, json=body, headers=headers)
            except httpx.TimeoutException as exc:
                raise ExternalServiceError(
                    f"fal.ai {operation} timed out after {self.timeout:.0f}s", status_code=504
                ) from exc
            except httpx.HTTPError as exc:
                raise ExternalServiceError(f"fal.ai request failed: {exc}") from exc

            if response.status_code == 403:
                raise ExternalServiceError(
                    _forbidden_message(operation, parameters),
                    status_code=403,
                    upstream_status=403,
                )
            if response.status_code >= 400:
                raise ExternalServiceError(
                    f"fal.ai {operation} failed with status {response.status_code}: "
                    f"{response.text[:300]}",
                    status_code=response.status_code if response.status_code < 500 else 502,
                    upstream_status=response.status_code,
                )
            try:
                payload = response.json()
            except ValueError as exc:
                raise MalformedResponseError("fal.ai returned a non-JSON response") from exc

            image_url = extract_image_url(payload)
            data = await self.download(client, image_url)

        request_id = response.headers.get("x-fal-request-id")
        if not request_id and isinstance(payload, dict):
            request_id = payload.get("request_id")
        return TransformResult(
            data=data,
            metadata={
                "operation": operation,
                "endpoint": spec.endpoint,
                "parameters": dict(parameters),
                "original_size": len(image_bytes),
                "processed_size": len(data),
                "model_response": payload,
            },
            request_id=request_id,
        )

    async def download(self, client: httpx.AsyncClient, url: str) -> bytes:
        """Fetch result bytes; 404 means the file is not published yet."""
        if url.startswith("data:"):
            return decode_data_uri(url)

        async def fetch() -> bytes:
            try:
                response = await client.get(url, timeout=DOWNLOAD_TIMEOUT_SECONDS)
            except httpx.TimeoutException as exc:
                raise ExternalServiceError(
                    f"Timed out downloading result from {url}", status_code=504
                ) from exc
            if response.status_code >= 400:
                raise ExternalServiceError(
                    f"Result download failed with status {response.status_code}",
                    upstream_status=response.status_code,
                )
            return response.content

        return await self.download_policy.run(
            fetch,
            is_retryable=lambda exc: not (
                isinstance(exc, ExternalServiceError) and exc.status_code == 504
            ),
            label=f"download {url}",
        )
