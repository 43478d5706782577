"""Display names, smart filenames and storage-name layout.

Storage names follow a fixed layout so blobs can be re-associated with their
pipeline after the lineage index is lost:

    {user_id}/{image_id}_{original_name}                 original upload
    {user_id}/{image_id}/{version_id}_{smart_name}.jpg   AI-derived version
"""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from pathlib import PurePosixPath

from imageflow.domain.services.angle_prompts import extract_angle_from_prompt

AI_MODEL_NAMES: dict[str, str] = {
    "flux-pro-kontext": "flux",
    "seedream-edit": "seedream",
    "nano-banana-edit": "nano-banana",
    "flux-multi-angles": "flux-2-lora-multi-angles",
    "topaz-upscale": "topaz",
}

MAX_BASENAME_LENGTH = 50
VERSION_EXTENSION = ".jpg"

_EXTENSION = re.compile(r"\.[^/.]+$")
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9\s\-_]")
_WHITESPACE = re.compile(r"\s+")
_ANGLE_SUFFIX = re.compile(r"_(\d+)deg$")


def ai_model_name(operation: str) -> str:
    if operation in AI_MODEL_NAMES:
        return AI_MODEL_NAMES[operation]
    return operation.split("-")[0] or "unknown"


def sanitize_basename(original_name: str) -> str:
    base = _EXTENSION.sub("", original_name)
    base = _UNSAFE_CHARS.sub("", base).strip()
    base = _WHITESPACE.sub("-", base)
    return base[:MAX_BASENAME_LENGTH]


def smart_filename(original_name: str, ai_model: str, operation: str, prompt: str | None) -> str:
    """Human readable name: `{base}_{model}[_{angle}deg]`."""
    parts: list[str] = []
    base = sanitize_basename(original_name)
    if base:
        parts.append(base)

    model_part = ai_model.replace("-", "_").strip()
    parts.append(model_part or operation.split("-")[0] or "processed")

    angle = extract_angle_from_prompt(prompt)
    if angle is not None:
        parts.append(f"{angle}deg")
    return "_".join(parts)


def _safe_original_name(original_name: str) -> str:
    name = PurePosixPath(original_name.replace("\\", "/")).name
    return name or "upload"


def original_storage_name(user_id: str, image_id: str, original_name: str) -> str:
    return f"{user_id}/{image_id}_{_safe_original_name(original_name)}"


def version_storage_name(user_id: str, image_id: str, version_id: str, smart_name: str) -> str:
    return f"{user_id}/{image_id}/{version_id}_{smart_name}{VERSION_EXTENSION}"


@dataclass(frozen=True)
class ParsedStorageName:
    user_id: str
    image_id: str
    label: str  # original filename, or smart name for versions
    version_id: str | None = None

    @property
    def is_version(self) -> bool:
        return self.version_id is not None

    @property
    def angle(self) -> int | None:
        if not self.is_version:
            return None
        match = _ANGLE_SUFFIX.search(_EXTENSION.sub("", self.label))
        return int(match.group(1)) if match else None

    @property
    def ai_model(self) -> str:
        if not self.is_version:
            return ""
        stem = _ANGLE_SUFFIX.sub("", _EXTENSION.sub("", self.label))
        # longest display names first so "flux_2_lora_multi_angles" beats "flux"
        for model in sorted(set(AI_MODEL_NAMES.values()), key=len, reverse=True):
            if stem.endswith(model.replace("-", "_")):
                return model
        return "unknown"


def _split_id(segment: str) -> tuple[str, str] | None:
    head, sep, rest = segment.partition("_")
    if not sep or not rest:
        return None
    try:
        uuid.UUID(head)
    except ValueError:
        return None
    return head, rest


def parse_storage_name(name: str) -> ParsedStorageName | None:
    """Inverse of the storage layout; None for names that do not follow it."""
    segments = name.strip("/").split("/")
    if len(segments) == 2:
        user_id, filename = segments
        parsed = _split_id(filename)
        if not user_id or parsed is None:
            return None
        image_id, label = parsed
        return ParsedStorageName(user_id=user_id, image_id=image_id, label=label)
    if len(segments) == 3:
        user_id, image_id, filename = segments
        parsed = _split_id(filename)
        if not user_id or parsed is None:
            return None
        try:
            uuid.UUID(image_id)
        except ValueError:
            return None
        version_id, label = parsed
        return ParsedStorageName(
            user_id=user_id, image_id=image_id, label=label, version_id=version_id
        )
    return None
