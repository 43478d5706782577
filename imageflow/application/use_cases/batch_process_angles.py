from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from imageflow.application.use_cases.pipeline_service import PipelineService
from imageflow.domain.entities.pipeline import VersionEntity
from imageflow.domain.errors import PipelineError, ProcessingFailedError

logger = logging.getLogger(__name__)

DEFAULT_INTER_REQUEST_DELAY = 0.5


@dataclass(frozen=True)
class AngleFailure:
    angle: float
    message: str
    status_code: int = 500


@dataclass
class BatchAngleResult:
    versions: list[VersionEntity] = field(default_factory=list)
    failures: list[AngleFailure] = field(default_factory=list)

    def raise_for_failures(self) -> None:
        if not self.failures:
            return
        detail = "; ".join(f"{f.angle}°: {f.message}" for f in self.failures)
        raise ProcessingFailedError(
            f"{len(self.failures)} of {len(self.failures) + len(self.versions)} angles failed: {detail}"
        )


@dataclass
class BatchAngleProcessUseCase:
    """
    Generate one version per requested angle.

    Angles are processed one after another with a short pause in between so
    the AI endpoint sees a single request at a time and only one image buffer
    is in flight. A failed angle is recorded and the loop moves on; each
    angle is a separate `PipelineService.process` call with its own retries.
    """

    service: PipelineService
    inter_request_delay: float = DEFAULT_INTER_REQUEST_DELAY
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    async def execute(
        self,
        user_id: str,
        image_id: str,
        operation: str,
        angles: list[float],
        *,
        parameters: dict[str, Any] | None = None,
        source_version_id: str | None = None,
        custom_prompt: str | None = None,
    ) -> BatchAngleResult:
        result = BatchAngleResult()
        for index, angle in enumerate(angles):
            if index > 0 and self.inter_request_delay > 0:
                await self.sleep(self.inter_request_delay)
            try:
                version = await self.service.process(
                    user_id,
                    image_id,
                    operation,
                    parameters,
                    source_version_id=source_version_id,
                    angles=[angle],
                    custom_prompt=custom_prompt,
                )
            except PipelineError as exc:
                logger.warning("Angle %s of %s failed: %s", angle, image_id, exc.message)
                result.failures.append(AngleFailure(angle, exc.message, exc.status_code))
                continue
            result.versions.append(version)
        return result
