"""Execution lifecycle state."""

from research_engine.lifecycle.executions import ExecutionRegistry

__all__ = ["ExecutionRegistry"]
