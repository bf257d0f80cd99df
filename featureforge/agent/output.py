"""Structured output extraction from agent text."""

from __future__ import annotations

import json
import re
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from featureforge.errors import OutputParseError


T = TypeVar("T", bound=BaseModel)

_FENCE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)


def extract_json(text: str) -> Any:
    """Pull a JSON object out of model text.

    Tries, in order: a fenced code block, the whole text, then the span from
    the first ``{`` to the last ``}``.
    """
    candidates: list[str] = []
    match = _FENCE.search(text)
    if match:
        candidates.append(match.group(1).strip())
    candidates.append(text.strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise OutputParseError("No JSON object found in agent output", raw_text=text)


def parse_agent_output(text: str, model: type[T], **overrides: Any) -> T:
    """Parse and validate agent text against ``model``.

    Keyword overrides replace fields after extraction (e.g. a judge's
    criterion, which the pipeline already knows).
    """
    data = extract_json(text)
    if not isinstance(data, dict):
        raise OutputParseError(f"Expected a JSON object for {model.__name__}", raw_text=text)
    data.update(overrides)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise OutputParseError(f"Agent output does not match {model.__name__}: {e}", raw_text=text) from e
