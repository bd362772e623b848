"""Log markers for the tool calls a research agent makes.

Each tool_use block in the CLI output is logged as a bracketed marker, e.g.
  [WebSearch: query='titanium screw price']

Input previews are off unless RESEARCH_LOG_TOOL_INPUT is set, and anything
under a credential-looking key is masked before it reaches the log.
"""

from __future__ import annotations

import json
import os
from pathlib import Path


_SENSITIVE_MARKERS = ("key", "token", "secret", "password", "auth", "cookie")
_MASK = "[REDACTED]"


def _previews_enabled() -> bool:
    return os.getenv("RESEARCH_LOG_TOOL_INPUT", "").lower() in {"1", "true", "yes"}


def _preview_limit() -> int:
    return int(os.getenv("RESEARCH_LOG_TOOL_INPUT_MAX", "2000"))


def _is_sensitive(key: object) -> bool:
    name = str(key).lower()
    return any(marker in name for marker in _SENSITIVE_MARKERS)


def redact_tool_input(value: object) -> object:
    """Copy of a tool input with credential-looking keys masked at any depth."""
    if isinstance(value, dict):
        return {
            k: _MASK if _is_sensitive(k) else redact_tool_input(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact_tool_input(item) for item in value]
    return value


def format_tool_input_preview(tool: str, raw_input: object) -> str | None:
    """Return a short, human-readable tool input preview (redacted if needed)."""

    if not raw_input:
        return None

    if tool == "Bash" and isinstance(raw_input, dict):
        cmd = raw_input.get("command")
        if isinstance(cmd, str) and cmd.strip():
            return cmd.strip()

    if tool in {"Read", "Write", "Edit"} and isinstance(raw_input, dict):
        fp = raw_input.get("file_path")
        if isinstance(fp, str) and fp:
            return Path(fp).name

    if tool == "WebSearch" and isinstance(raw_input, dict):
        query = raw_input.get("query")
        if isinstance(query, str) and query:
            return f"query={query!r}"

    if tool == "WebFetch" and isinstance(raw_input, dict):
        url = raw_input.get("url")
        if isinstance(url, str) and url:
            return url

    redacted = redact_tool_input(raw_input)
    return json.dumps(redacted, ensure_ascii=True, sort_keys=True, default=str)


def describe_tool(tool: str, raw_input: object) -> str:
    """Marker for a tool call, with an input preview when enabled."""
    if not _previews_enabled():
        return f"[{tool}]"
    preview = format_tool_input_preview(tool, raw_input)
    if not preview:
        return f"[{tool}]"
    limit = _preview_limit()
    if len(preview) > limit:
        preview = preview[:limit] + "..."
    return f"[{tool}: {preview}]"
