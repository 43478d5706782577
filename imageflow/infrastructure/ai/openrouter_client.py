from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from imageflow.domain.errors import ExternalServiceError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "meta-llama/llama-3.2-90b-vision-instruct"

DEFAULT_SYSTEM_PROMPT = " ".join(
    [
        "You will receive two images in this exact order:",
        "1) Reference image (pre-rotation source).",
        "2) Generated image (supposedly rotated to the target degree) that must be corrected.",
        "Compare them and output a short English correction prompt (1-3 sentences) for img2img "
        "describing concrete fixes in the generated image.",
        "Check whether the generated image really matches the requested rotation "
        "(0, 45, 90, 135, 180, 225, 270 or 315 degrees) compared to the reference.",
        "If the angle is wrong, describe the adjustments needed to reach the target angle; "
        "never revert to the original, unrotated pose.",
        "Focus on pose, head angle, expression, proportions, hands, framing, camera height, "
        "shadows, lighting, background details and sharpness.",
        "Never mention identity, age, gender, hair, skin tone or clothing style.",
        "Output only the final correction prompt, without analysis or bullet points.",
    ]
)


@dataclass(frozen=True)
class PromptSuggestion:
    prompt: str
    model: str
    latency_ms: int
    usage: dict[str, Any] = field(default_factory=dict)


def extract_text(content: Any) -> str:
    """Message content may be a string, a list of text parts, or a part object."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                parts.append(part.get("text") or "")
        return " ".join(parts).strip()
    if isinstance(content, dict):
        return content.get("text") or ""
    return ""


class OpenRouterClient:
    """Vision LLM that writes correction prompts for a generated image."""

    temperature = 0.4
    max_tokens = 320
    top_p = 0.9

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = 180.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY", "")
        self.api_url = os.getenv("OPENROUTER_API_URL", DEFAULT_API_URL)
        self.model = os.getenv("OPENROUTER_MODEL", DEFAULT_MODEL)
        self.system_prompt = os.getenv("PROMPT_ASSISTANT_SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT
        self.timeout = timeout
        self._transport = transport

    def build_user_content(
        self,
        original_data_uri: str,
        reference_data_uri: str,
        target_angles: list[int] | None = None,
        user_notes: str | None = None,
        embedded_prompt: str | None = None,
    ) -> list[dict[str, Any]]:
        lines = [
            "The first image is the reference (img1). The second image is the generated "
            "output (img2) that needs corrections.",
            "Craft a short prompt (up to 3 sentences) that tells img2img what to fix in img2.",
            "Only call for additional rotation if img2 visibly deviates from the target degree.",
        ]
        if target_angles:
            angles = ", ".join(str(a) for a in target_angles)
            lines.append(f"Target rotation relative to img1: {angles} degrees.")
        if user_notes:
            lines.append(f"User request (include in context): {user_notes}")
        if embedded_prompt:
            lines.append(f"System note: {embedded_prompt}")
        return [
            {"type": "text", "text": " ".join(lines)},
            {"type": "image_url", "image_url": {"url": original_data_uri, "detail": "low"}},
            {"type": "image_url", "image_url": {"url": reference_data_uri, "detail": "low"}},
        ]

    async def generate_prompt(
        self,
        original_data_uri: str,
        reference_data_uri: str,
        target_angles: list[int] | None = None,
        user_notes: str | None = None,
        embedded_prompt: str | None = None,
    ) -> PromptSuggestion:
        if not self.api_key:
            raise ExternalServiceError("OPENROUTER_API_KEY is not configured", status_code=500)

        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {
                    "role": "user",
                    "content": self.build_user_content(
                        original_data_uri,
                        reference_data_uri,
                        target_angles,
                        user_notes,
                        embedded_prompt,
                    ),
                },
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "ImageFlow Prompt Assistant",
        }

        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.api_url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            logger.error("OpenRouter request timed out after %.0fs", time.perf_counter() - started)
            raise ExternalServiceError("OpenRouter request timed out", status_code=504) from exc
        except httpx.ConnectError as exc:
            logger.error("Could not reach OpenRouter at %s: %s", self.api_url, exc)
            raise ExternalServiceError("Could not connect to OpenRouter", status_code=503) from exc

        if response.status_code >= 400:
            logger.error("OpenRouter error %s: %s", response.status_code, response.text[:200])
            raise ExternalServiceError(
                f"OpenRouter request failed: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code or 502,
                upstream_status=response.status_code,
            )

        data = response.json()
        choices = data.get("choices") or [{}]
        text = extract_text((choices[0].get("message") or {}).get("content"))
        if not text:
            raise ExternalServiceError("OpenRouter returned an empty response", status_code=502)

        return PromptSuggestion(
            prompt=text.strip(),
            model=data.get("model") or self.model,
            latency_ms=int((time.perf_counter() - started) * 1000),
            usage=data.get("usage") or {},
        )
