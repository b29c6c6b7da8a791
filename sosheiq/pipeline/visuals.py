"""Visual consistency: the canonical "established visuals" record.

Image prompts are rebuilt from this record every time, so any drift in it
shows up as the persona changing face or outfit between pictures. The text
service is told to copy the stable fields forward, but models paraphrase.

reconcile() therefore treats the two stable fields (character, clothing)
differently from the rest:

  stable    Replaced only when the proposal differs non-trivially, i.e.
            after normalising case, whitespace and punctuation. A reworded
            but equivalent description is copied forward from `previous`.
  volatile  Taken from the proposal whenever it provides a non-empty value.

should_generate_image() honours the service's own flag, and forces a new image
whenever the environment or the clothing changed.
"""

from __future__ import annotations

import re

from sosheiq.models import EstablishedVisuals, VisualsUpdate

STABLE_FIELDS = ("character_description", "clothing_description")

VOLATILE_FIELDS = (
    "held_objects",
    "body_position",
    "gaze_direction",
    "position_relative_to_user",
    "environment_description",
    "current_pose_and_action",
    "facial_accessories",
)

_ARTICLES = {"a", "an", "the"}


def normalise(text: str | None) -> str:
    """Comparison key: lowercase words, punctuation and articles dropped."""
    if not text:
        return ""
    words = re.findall(r"[a-z0-9']+", text.casefold())
    return " ".join(w for w in words if w not in _ARTICLES)


def differs(a: str | None, b: str | None) -> bool:
    return normalise(a) != normalise(b)


def reconcile(previous: EstablishedVisuals, proposed: VisualsUpdate | None) -> EstablishedVisuals:
    if proposed is None:
        return previous

    updates: dict[str, str] = {}
    for name in STABLE_FIELDS:
        value = getattr(proposed, name)
        if value and value.strip() and differs(value, getattr(previous, name)):
            updates[name] = value.strip()
    for name in VOLATILE_FIELDS:
        value = getattr(proposed, name)
        if value is not None and value.strip():
            updates[name] = value.strip()

    if not updates:
        return previous
    return previous.model_copy(update=updates)


def changed_fields(previous: EstablishedVisuals, current: EstablishedVisuals) -> list[str]:
    return [
        name for name in STABLE_FIELDS + VOLATILE_FIELDS
        if differs(getattr(previous, name), getattr(current, name))
    ]


def should_generate_image(
    previous: EstablishedVisuals,
    reconciled: EstablishedVisuals,
    explicit_flag: bool,
) -> bool:
    """Environment and clothing are compared normalised, so a reworded but equivalent value does not force an image."""
    if explicit_flag:
        return True
    return (
        differs(previous.environment_description, reconciled.environment_description)
        or differs(previous.clothing_description, reconciled.clothing_description)
    )


def summarise_change(previous: EstablishedVisuals, current: EstablishedVisuals) -> str | None:
    """Fallback visual-change summary when the service does not provide one."""
    fields = changed_fields(previous, current)
    if "environment_description" in fields:
        return f"The scene shifts: {current.environment_description}."
    if "clothing_description" in fields:
        return f"New look: {current.clothing_description}."
    if "current_pose_and_action" in fields:
        return f"Now {current.current_pose_and_action}."
    return None
