"""Locate the structured answer in the agent's free-text output."""

from __future__ import annotations

import json
import re
from typing import Iterable

from research_engine.runners.events import Event

_FENCED_JSON = re.compile(r"```json\s*\n?([\s\S]*?)\n?\s*```")


def _parse_object(text: str) -> dict | None:
    try:
        value = json.loads(text)
    except (ValueError, RecursionError):
        # json.loads raises plain ValueError on oversized integer literals.
        return None
    return value if isinstance(value, dict) else None


def extract_from_text(content: str) -> dict | None:
    """Parse a fenced ```json block, else the whole block if it is an object."""
    match = _FENCED_JSON.search(content)
    if match:
        parsed = _parse_object(match.group(1))
        if parsed is not None:
            return parsed

    trimmed = content.strip()
    if trimmed.startswith("{"):
        return _parse_object(trimmed)
    return None


def extract_json_result(events: Iterable[Event]) -> dict | None:
    """Return the most recent parseable JSON object among text events.

    The agent tends to think out loud before answering, so later text is
    trusted over earlier text. Returns None when nothing parses.
    """
    text_events = [e for e in events if e.type == "text"]
    for event in reversed(text_events):
        content = event.data.get("content")
        if not isinstance(content, str) or not content:
            continue
        result = extract_from_text(content)
        if result is not None:
            return result
    return None
