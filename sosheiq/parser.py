"""Text-service output parsing.

The text service is asked for a single JSON object but offers no guarantee:
replies arrive wrapped in markdown fences, prefixed with prose ("Sure!
Here's my response:"), or cut off mid-object. Parsing happens in two steps:

  1. extract_json_object() strips fencing and salvages the object body,
     from the first "{" to its matching "}" (or the last "}" when the
     braces never balance).
  2. The body is deserialised and handed to the wire model's validating
     constructor (TurnResult, StartResult, AnalysisReport).

Every failure in either step raises MalformedResponse. Nothing here has
side effects and nothing returns a partially populated result.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from sosheiq.errors import MalformedResponse
from sosheiq.models import AnalysisReport, StartResult, TurnResult

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_FENCE_RE = re.compile(r"^```[\w-]*[ \t]*\n?(.*?)\n?\s*```$", re.DOTALL)


def _strip_fences(text: str) -> str:
    cleaned = text.strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        return match.group(1).strip()
    if "```" in cleaned:
        lines = [l for l in cleaned.split("\n") if not l.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()
    return cleaned


def _matching_brace(text: str, start: int) -> int | None:
    """Index of the "}" closing the "{" at `start`, ignoring braces in strings."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def extract_json_object(raw: str) -> str:
    """Return the JSON object body embedded in `raw`.

    Raises MalformedResponse if there is no "{ ... }" span to salvage.
    """
    text = _strip_fences(raw or "")
    start = text.find("{")
    if start == -1:
        raise MalformedResponse("Response contains no JSON object", raw)

    end = _matching_brace(text, start)
    if end is None:
        end = text.rfind("}")
        if end <= start:
            raise MalformedResponse("Response JSON object is truncated", raw)

    if start > 0 or end < len(text) - 1:
        logger.warning(
            "Salvaged JSON object from surrounding text (%d leading, %d trailing chars)",
            start, len(text) - 1 - end,
        )
    return text[start:end + 1]


def _load_object(raw: str) -> dict[str, Any]:
    body = extract_json_object(raw)
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"Response is not valid JSON: {e}", raw) from e
    if not isinstance(data, dict):
        raise MalformedResponse(
            f"Response must be a JSON object, got {type(data).__name__}", raw
        )
    return data


def _validate(model: type[M], raw: str) -> M:
    data = _load_object(raw)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning("%s failed validation: %s", model.__name__, e)
        raise MalformedResponse(
            f"{model.__name__} failed validation ({e.error_count()} error(s))", raw
        ) from e


def parse_turn_response(raw: str) -> TurnResult:
    """Parse one turn's raw text-service output into a TurnResult."""
    return _validate(TurnResult, raw)


def parse_start_response(raw: str) -> StartResult:
    """Parse the session-opening response."""
    return _validate(StartResult, raw)


def parse_analysis_report(raw: str) -> AnalysisReport:
    """Parse the end-of-session analysis report."""
    return _validate(AnalysisReport, raw)


def serialize_turn_result(result: TurnResult) -> str:
    """Render a TurnResult in the wire shape parse_turn_response() accepts."""
    return result.model_dump_json(by_alias=True)
