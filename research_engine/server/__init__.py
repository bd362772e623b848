"""HTTP surface for research executions."""

from research_engine.server.app import create_app, main

__all__ = ["create_app", "main"]
