"""Line-delimited JSON decoding for CLI output.

The Claude CLI writes one JSON object per line on stdout when run with
``--output-format stream-json``. Output arrives in arbitrary chunks, and the
CLI occasionally interleaves banners or array-wrapper lines, so decoding is
buffered and forgiving: anything that is not a JSON object is dropped.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field


@dataclass
class JSONLineStats:
    decoded: int = 0
    non_json_lines: list[str] = field(default_factory=list)


class LineDecoder:
    """Reassembles newline-delimited records from raw byte chunks."""

    def __init__(self, non_json_limit: int = 50):
        self._buffer = b""
        self.non_json_limit = non_json_limit
        self.stats = JSONLineStats()

    def feed(self, chunk: bytes) -> list[dict]:
        """Buffer a chunk and decode every line it completes."""
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        messages = []
        for raw_line in lines:
            message = self._decode(raw_line)
            if message is not None:
                messages.append(message)
        return messages

    def flush(self) -> list[dict]:
        """Decode whatever is left once the stream has ended."""
        remainder, self._buffer = self._buffer, b""
        message = self._decode(remainder)
        return [message] if message is not None else []

    def _decode(self, raw_line: bytes) -> dict | None:
        line = raw_line.decode(errors="replace").strip()
        if not line or line.startswith("["):
            return None

        try:
            message = json.loads(line)
        except (ValueError, RecursionError):
            if len(self.stats.non_json_lines) < self.non_json_limit:
                self.stats.non_json_lines.append(line)
            return None

        if not isinstance(message, dict):
            return None

        self.stats.decoded += 1
        return message
