"""Catalog of AI operations and their request shapes.

Callers hand over an open parameter map; each operation validates it into its
own pydantic input model before anything is sent to the model endpoint.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from imageflow.domain.errors import UnsupportedOperationError, ValidationError


class SeedreamEditInput(BaseModel):
    model_config = ConfigDict(extra="allow")

    prompt: str = Field(..., min_length=1)
    image_urls: list[str] = Field(..., min_length=1)


class FluxKontextInput(BaseModel):
    model_config = ConfigDict(extra="allow")

    prompt: str = Field(..., min_length=1)
    image_url: str


class NanoBananaEditInput(BaseModel):
    # the endpoint rejects unknown keys
    model_config = ConfigDict(extra="ignore")

    prompt: str = Field(..., min_length=1)
    image_urls: list[str] = Field(..., min_length=1)
    num_images: int = 1
    seed: int | None = None

    @field_validator("seed", mode="before")
    @classmethod
    def _integer_seed_only(cls, value: Any) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value


class TopazUpscaleInput(BaseModel):
    model_config = ConfigDict(extra="allow")

    image_url: str


@dataclass(frozen=True)
class OperationSpec:
    key: str
    endpoint: str
    input_model: type[BaseModel]
    requires_prompt: bool = True
    multi_image: bool = False

    def build_input(self, parameters: dict[str, Any], image_data_uri: str) -> dict[str, Any]:
        payload = dict(parameters)
        payload.pop("angle", None)
        if self.multi_image:
            payload.setdefault("image_urls", [image_data_uri])
        else:
            payload.setdefault("image_url", image_data_uri)
        try:
            model = self.input_model.model_validate(payload)
        except Exception as exc:
            raise ValidationError(f"Invalid parameters for {self.key}: {exc}") from exc
        return model.model_dump(exclude_none=True)


OPERATIONS: dict[str, OperationSpec] = {
    spec.key: spec
    for spec in (
        OperationSpec(
            "seedream-edit",
            "fal-ai/bytedance/seedream/v4/edit",
            SeedreamEditInput,
            multi_image=True,
        ),
        OperationSpec("flux-pro-kontext", "fal-ai/flux-pro/kontext", FluxKontextInput),
        OperationSpec(
            "nano-banana-edit",
            "fal-ai/nano-banana/edit",
            NanoBananaEditInput,
            multi_image=True,
        ),
        OperationSpec(
            "topaz-upscale",
            "fal-ai/topaz/upscale/image",
            TopazUpscaleInput,
            requires_prompt=False,
        ),
    )
}


def get_operation(key: str) -> OperationSpec:
    try:
        return OPERATIONS[key]
    except KeyError:
        raise UnsupportedOperationError(f"Unsupported operation: {key}") from None


def list_operations() -> list[str]:
    return list(OPERATIONS)
