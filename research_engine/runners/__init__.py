"""CLI runners for research executions."""

from research_engine.runners.claude import ClaudeResearchRunner
from research_engine.runners.events import Event, ExecutionStatus, ResearchExecution
from research_engine.runners.extract import extract_json_result
from research_engine.runners.pipeline import LineDecoder
from research_engine.runners.ports import ResearchRunner

__all__ = [
    "ClaudeResearchRunner",
    "Event",
    "ExecutionStatus",
    "LineDecoder",
    "ResearchExecution",
    "ResearchRunner",
    "extract_json_result",
]
