"""Rotation angle -> model instruction mapping.

All edit models share the same eight canonical orientations. Prompts are kept
short because the upstream API tends to reject long instructions as Forbidden.
"""
from __future__ import annotations

import re
from typing import Any

CANONICAL_ANGLES: tuple[int, ...] = (0, 45, 90, 135, 180, 225, 270, 315)

ROTATION_PROMPTS: dict[int, str] = {
    0: (
        "FULL FRONTAL VIEW (0°). Perfectly symmetrical face and torso facing the camera. "
        "Both ears equally visible. Direct gaze at camera."
    ),
    45: (
        "RIGHT FRONT THREE-QUARTER VIEW (45°). Oblique angle shot showing the front torso "
        "and the right side profile at once. Right shoulder prominent, far left side "
        "foreshortened by perspective. Gaze directed right."
    ),
    90: (
        "RIGHT SIDE PROFILE VIEW (90°). Strictly a side view. Only the right half of the "
        "body and face is visible, nose pointing 90 degrees to the right. No part of the "
        "left eye or left arm is visible."
    ),
    135: (
        "RIGHT REAR THREE-QUARTER VIEW (135°). View from behind the right shoulder. Back of "
        "the head and right shoulder blade prominent. Face fully occluded by the head angle."
    ),
    180: (
        "FULL DORSAL VIEW (180°). Strictly from behind. Spine and back visible, back of head "
        "only. No facial features visible."
    ),
    225: (
        "LEFT REAR THREE-QUARTER VIEW (225°). View from behind the left shoulder. Back of "
        "the head and left shoulder blade prominent. Face fully occluded by the head angle."
    ),
    270: (
        "LEFT SIDE PROFILE VIEW (270°). Strictly a side view. Only the left half of the "
        "body and face is visible, nose pointing 90 degrees to the left. No part of the "
        "right eye or right arm is visible."
    ),
    315: (
        "LEFT FRONT THREE-QUARTER VIEW (315°). Oblique angle shot showing the front torso "
        "and the left side profile at once. Left shoulder prominent, far right side "
        "foreshortened by perspective. Gaze directed left."
    ),
}

# Phrases recognised in free-text prompts that carry no explicit degree token
_SEMANTIC_ANGLES: tuple[tuple[str, int], ...] = (
    ("front view", 0),
    ("side profile", 90),
    ("back view", 180),
    ("three-quarter view", 45),
    ("rear three-quarter", 135),
)

_DEGREE_TOKEN = re.compile(r"(\d+)\s*(?:degree|deg|°)", re.IGNORECASE)


def normalize_angle(angle: float) -> float:
    """Fold any angle into [0, 360)."""
    return angle % 360


def _circular_distance(a: float, b: float) -> float:
    diff = abs(a - b) % 360
    return min(diff, 360 - diff)


def snap_to_canonical(angle: float) -> int:
    """Nearest canonical angle; on an exact tie the earlier-listed one wins."""
    normalized = normalize_angle(angle)
    closest = CANONICAL_ANGLES[0]
    for candidate in CANONICAL_ANGLES[1:]:
        if _circular_distance(candidate, normalized) < _circular_distance(closest, normalized):
            closest = candidate
    return closest


def generate_rotation_prompt(angle: float) -> str:
    return ROTATION_PROMPTS[snap_to_canonical(angle)]


def generate_final_prompt(angle: float | None, custom_prompt: str | None = None) -> str:
    """Rotation instruction followed by the user's addendum, comma-joined.

    Without an angle only the (trimmed) custom prompt is returned.
    """
    custom = (custom_prompt or "").strip()
    if angle is None:
        return custom
    rotation = generate_rotation_prompt(angle)
    if custom:
        return f"{rotation}, {custom}"
    return rotation


def extract_angle_from_prompt(prompt: str | None) -> int | None:
    """Canonical angle mentioned in a prompt, or None.

    An explicit degree token wins over semantic phrases.
    """
    if not prompt:
        return None
    text = prompt.lower()
    match = _DEGREE_TOKEN.search(text)
    if match:
        return snap_to_canonical(int(match.group(1)))
    for phrase, angle in _SEMANTIC_ANGLES:
        if phrase in text:
            return angle
    return None


def extract_angle(parameters: dict[str, Any] | None) -> float | None:
    """Angle a version was generated for, as shown to clients."""
    if not parameters:
        return None
    raw = parameters.get("angle")
    if raw is not None:
        try:
            value = float(raw)
        except (TypeError, ValueError):
            value = None
        if value is not None:
            return int(value) if value.is_integer() else value
    prompt = parameters.get("prompt")
    return extract_angle_from_prompt(prompt if isinstance(prompt, str) else None)
