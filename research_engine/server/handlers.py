"""HTTP handlers for research executions."""

from __future__ import annotations

import json
import logging

from aiohttp import web

from research_engine.config import ResearchConfig
from research_engine.lifecycle.executions import ExecutionRegistry
from research_engine.prompts import PromptBuilder, build_research_prompt
from research_engine.runners.ports import ResearchRunner
from research_engine.server.relay import stream_execution

log = logging.getLogger("server.handlers")

RESEARCH_PATH = "/api/sets/research"
STREAM_PATH = f"{RESEARCH_PATH}/stream"


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


class ResearchHandlers:
    """Start, inspect, abort and stream research executions.

    Errors here are operator-facing, so exception messages are returned to
    the caller as-is.
    """

    def __init__(
        self,
        runner: ResearchRunner,
        registry: ExecutionRegistry,
        config: ResearchConfig,
        prompt_builder: PromptBuilder = build_research_prompt,
    ):
        self.runner = runner
        self.registry = registry
        self.config = config
        self.prompt_builder = prompt_builder

    def register(self, app: web.Application) -> None:
        app.router.add_post(RESEARCH_PATH, self.start)
        app.router.add_get(RESEARCH_PATH, self.status)
        app.router.add_delete(RESEARCH_PATH, self.abort)
        app.router.add_get(STREAM_PATH, self.stream)
        app.router.add_get("/health", self.health)

    async def start(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _error(400, "Request body must be JSON")

        if not isinstance(body, dict):
            return _error(400, "Request body must be a JSON object")

        subject_key = body.get("subjectKey")
        entries = body.get("inputEntries")
        matched = body.get("matchedContext") or []
        if (
            not isinstance(subject_key, str)
            or not subject_key.strip()
            or not isinstance(entries, list)
            or not entries
        ):
            return _error(400, "subjectKey and inputEntries are required")
        if not isinstance(matched, list):
            return _error(400, "matchedContext must be a list")

        try:
            prompt = self.prompt_builder(subject_key, entries, matched)
            execution_id = self.runner.start(subject_key, prompt)
        except Exception as e:
            log.exception("Research start error")
            return _error(500, str(e) or "Failed to start research")

        return web.json_response(
            {
                "executionId": execution_id,
                "streamUrl": f"{STREAM_PATH}?executionId={execution_id}",
            }
        )

    async def status(self, request: web.Request) -> web.Response:
        execution_id = request.query.get("executionId")
        if not execution_id:
            return _error(400, "executionId required")

        execution = self.registry.get(execution_id)
        if execution is None:
            return _error(404, "Execution not found")
        return web.json_response(execution.to_status_dict())

    async def abort(self, request: web.Request) -> web.Response:
        execution_id = request.query.get("executionId")
        if not execution_id:
            return _error(400, "executionId required")

        if execution_id not in self.registry:
            return _error(404, "Execution not found")
        if not self.runner.abort(execution_id):
            return _error(409, "Execution is not running")

        log.info(f"Research {execution_id} aborted")
        return web.json_response({"executionId": execution_id, "aborted": True})

    async def stream(self, request: web.Request) -> web.StreamResponse:
        return await stream_execution(
            request,
            self.registry,
            poll_interval_s=self.config.poll_interval_s,
            heartbeat_interval_s=self.config.heartbeat_interval_s,
            not_found_limit=self.config.not_found_limit,
        )

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "healthy",
                "executions": len(self.registry),
                "running": self.registry.count_running(),
            }
        )
