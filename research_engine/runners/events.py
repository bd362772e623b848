"""Research execution data structures.

Events are the engine's record of what the Claude CLI did during a run. They
are stored on the execution in arrival order and republished to stream
clients as-is, so `data` keys use the wire (camelCase) spelling.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Event:
    """One timestamped unit of progress from the CLI output stream."""

    type: str  # init | text | tool_use | tool_result | result | error
    data: dict[str, Any]
    timestamp: int = field(default_factory=now_ms)


def init_event(session_id: str | None, model: str | None, tools: list[str]) -> Event:
    return Event("init", {"sessionId": session_id, "model": model, "tools": tools})


def text_event(content: str, model: str | None) -> Event:
    return Event("text", {"content": content, "model": model})


def tool_use_event(tool_id: str, name: str, tool_input: dict) -> Event:
    return Event("tool_use", {"id": tool_id, "name": name, "input": tool_input})


def tool_result_event(tool_use_id: str | None, content: object) -> Event:
    return Event("tool_result", {"toolUseId": tool_use_id, "content": content})


def result_event(
    session_id: str | None,
    usage: dict | None,
    duration_ms: int | None,
    cost_usd: float | None,
    is_error: bool = False,
) -> Event:
    return Event(
        "result",
        {
            "sessionId": session_id,
            "usage": usage,
            "durationMs": duration_ms,
            "costUsd": cost_usd,
            "isError": is_error,
        },
    )


def error_event(message: str, exit_code: int | None = None) -> Event:
    data: dict[str, Any] = {"message": message}
    if exit_code is not None:
        data["exitCode"] = exit_code
    return Event("error", data)


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ResearchExecution:
    """One research run, from start request to terminal status."""

    id: str
    subject_key: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    events: list[Event] = field(default_factory=list)
    result: dict | None = None
    error: str | None = None
    started_at: int = field(default_factory=now_ms)
    ended_at: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not ExecutionStatus.RUNNING

    def to_status_dict(self) -> dict[str, Any]:
        """Status snapshot; the event list itself is left to the stream."""
        return {
            "id": self.id,
            "subjectKey": self.subject_key,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "eventCount": len(self.events),
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
        }
