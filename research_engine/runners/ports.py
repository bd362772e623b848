"""Ports (interfaces) for research runners.

The HTTP layer depends on this contract rather than on the concrete CLI
runner, so tests and alternative engines can be swapped in at the
composition root.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from research_engine.runners.events import ResearchExecution


@runtime_checkable
class ResearchRunner(Protocol):
    """Starts research executions and answers lifecycle questions about them."""

    def start(self, subject_key: str, prompt: str) -> str:
        ...

    def get(self, execution_id: str) -> ResearchExecution | None:
        ...

    def abort(self, execution_id: str) -> bool:
        ...

    async def shutdown(self) -> None:
        ...
