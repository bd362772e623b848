"""Execution registry.

Goal: one owned, in-process table of research executions shared by the runner
(which writes) and any number of status/stream readers. State lives for the
life of the process only.

Semantics:
- Only the runner appends events and finalizes; everything else reads
- Reads return snapshot copies, never the live record
- Finalize is first-wins; later calls are no-ops
- Terminal records are swept after a retention window
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading

from research_engine.runners.events import (
    Event,
    ExecutionStatus,
    ResearchExecution,
    now_ms,
)

_log = logging.getLogger("lifecycle.executions")


class ExecutionRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._executions: dict[str, ResearchExecution] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._executions)

    def __contains__(self, execution_id: object) -> bool:
        with self._lock:
            return execution_id in self._executions

    def create(self, execution_id: str, subject_key: str) -> ResearchExecution:
        with self._lock:
            if execution_id in self._executions:
                raise ValueError(f"Execution already exists: {execution_id}")
            execution = ResearchExecution(id=execution_id, subject_key=subject_key)
            self._executions[execution_id] = execution
            return self._snapshot(execution)

    def get(self, execution_id: str) -> ResearchExecution | None:
        with self._lock:
            execution = self._executions.get(execution_id)
            return self._snapshot(execution) if execution else None

    def count_running(self) -> int:
        with self._lock:
            return sum(1 for e in self._executions.values() if not e.is_terminal)

    def append_event(self, execution_id: str, event: Event) -> bool:
        """Append to a running execution. Returns False if it is gone or terminal."""
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.is_terminal:
                return False
            execution.events.append(event)
            return True

    def finalize(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        result: dict | None = None,
        error: str | None = None,
        event: Event | None = None,
    ) -> bool:
        """Move a running execution to a terminal status.

        `event` is appended only if this call is the one that finalizes, so
        racing exit paths never both leave a trace. Returns True if applied.
        """
        if status is ExecutionStatus.RUNNING:
            raise ValueError("Cannot finalize to running")
        if status is ExecutionStatus.COMPLETED and result is None:
            raise ValueError("Completed executions need a result")
        if status is ExecutionStatus.FAILED and not error:
            raise ValueError("Failed executions need an error")

        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.is_terminal:
                return False
            if event is not None:
                execution.events.append(event)
            execution.status = status
            execution.result = result if status is ExecutionStatus.COMPLETED else None
            execution.error = error if status is ExecutionStatus.FAILED else None
            execution.ended_at = now_ms()

        _log.info(f"Execution {execution_id} finalized: {status.value}")
        return True

    def sweep(self, max_age_s: float, now: int | None = None) -> int:
        """Drop terminal executions that ended more than `max_age_s` ago."""
        cutoff = (now if now is not None else now_ms()) - int(max_age_s * 1000)
        with self._lock:
            expired = [
                execution_id
                for execution_id, e in self._executions.items()
                if e.is_terminal and e.ended_at is not None and e.ended_at < cutoff
            ]
            for execution_id in expired:
                del self._executions[execution_id]

        if expired:
            _log.info(f"Swept {len(expired)} expired executions")
        return len(expired)

    async def run_sweeper(self, interval_s: float, max_age_s: float) -> None:
        """Sweep forever; run as a background task and cancel to stop."""
        while True:
            await asyncio.sleep(interval_s)
            try:
                self.sweep(max_age_s)
            except Exception:
                _log.exception("Execution sweep failed")

    @staticmethod
    def _snapshot(execution: ResearchExecution) -> ResearchExecution:
        return dataclasses.replace(execution, events=list(execution.events))
