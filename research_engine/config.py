"""Research engine configuration.

Every knob has an environment override so deployments don't need code
changes; tests construct the dataclass directly.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


@dataclass(frozen=True)
class ResearchConfig:
    claude_command: tuple[str, ...] = ("claude",)
    model: str | None = None
    working_dir: str | None = None  # None = the server's cwd

    timeout_s: float = 300.0
    retention_s: float = 3600.0
    sweep_interval_s: float = 300.0

    # Stream relay
    poll_interval_s: float = 0.1
    heartbeat_interval_s: float = 15.0
    not_found_limit: int = 30

    host: str = "127.0.0.1"
    port: int = 8080

    @classmethod
    def from_env(cls) -> "ResearchConfig":
        command = os.getenv("RESEARCH_CLAUDE_COMMAND", "").strip()
        return cls(
            claude_command=tuple(shlex.split(command)) if command else ("claude",),
            model=os.getenv("RESEARCH_MODEL") or None,
            working_dir=os.getenv("RESEARCH_WORKING_DIR") or None,
            timeout_s=_env_float("RESEARCH_TIMEOUT_S", 300.0),
            retention_s=_env_float("RESEARCH_RETENTION_S", 3600.0),
            sweep_interval_s=_env_float("RESEARCH_SWEEP_INTERVAL_S", 300.0),
            poll_interval_s=_env_float("RESEARCH_POLL_INTERVAL_S", 0.1),
            heartbeat_interval_s=_env_float("RESEARCH_HEARTBEAT_INTERVAL_S", 15.0),
            not_found_limit=_env_int("RESEARCH_NOT_FOUND_LIMIT", 30),
            host=os.getenv("RESEARCH_HOST", "127.0.0.1"),
            port=_env_int("RESEARCH_PORT", 8080),
        )
