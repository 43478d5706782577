from __future__ import annotations

import os
from dataclasses import dataclass

from imageflow.domain.errors import NotFoundError
from imageflow.infrastructure.ai.base import to_data_uri
from imageflow.infrastructure.ai.openrouter_client import OpenRouterClient
from imageflow.infrastructure.database.repositories.base import PipelineRepository
from imageflow.infrastructure.storage.base import StoragePort


@dataclass(frozen=True)
class PromptAssistantResult:
    prompt: str
    model: str
    latency_ms: int
    usage: dict
    reference_version_id: str


@dataclass
class PromptAssistantUseCase:
    """Ask the vision LLM for a correction prompt comparing a version to its original."""

    storage: StoragePort
    repository: PipelineRepository
    llm: OpenRouterClient

    async def execute(
        self,
        user_id: str,
        image_id: str,
        version_id: str,
        target_angles: list[int] | None = None,
        user_notes: str | None = None,
    ) -> PromptAssistantResult:
        pipeline = self.repository.get(user_id, image_id)
        if pipeline is None:
            raise NotFoundError("Reference image not found")
        version = pipeline.find_version(version_id)
        if version is None:
            raise NotFoundError("Selected processed version not found")

        original = self.storage.read(pipeline.storage_name)
        processed = self.storage.read(version.storage_name)

        suggestion = await self.llm.generate_prompt(
            to_data_uri(original, pipeline.mime_type or "image/jpeg"),
            to_data_uri(processed, "image/jpeg"),
            target_angles=target_angles,
            user_notes=user_notes,
            embedded_prompt=os.getenv("PROMPT_ASSISTANT_EMBEDDED_PROMPT"),
        )
        return PromptAssistantResult(
            prompt=suggestion.prompt,
            model=suggestion.model,
            latency_ms=suggestion.latency_ms,
            usage=suggestion.usage,
            reference_version_id=version_id,
        )
