"""Server-sent event relay for research executions.

Each connected client gets its own `StreamRelay`, which re-reads the
execution from the registry on a short interval and forwards events it has
not sent yet. Clients may attach at any time, including after the run has
finished; disconnecting never affects the execution itself.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from aiohttp import web

from research_engine.lifecycle.executions import ExecutionRegistry
from research_engine.runners.events import Event, now_ms

log = logging.getLogger("relay")

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

NOT_FOUND_ERROR = "Execution not found"


def sse_message(message_type: str, data: dict[str, Any], timestamp: int | None = None) -> dict:
    return {
        "type": message_type,
        "data": data,
        "timestamp": timestamp if timestamp is not None else now_ms(),
    }


def encode_sse(message: dict) -> bytes:
    return f"data: {json.dumps(message, default=str)}\n\n".encode()


def convert_event(execution_id: str, event: Event) -> dict:
    """Map a stored event onto the wire schema."""
    data = event.data
    if event.type == "init":
        return sse_message(
            "connected",
            {
                "executionId": execution_id,
                "sessionId": data.get("sessionId"),
                "model": data.get("model"),
            },
            event.timestamp,
        )
    if event.type == "text":
        return sse_message(
            "message", {"content": data.get("content"), "model": data.get("model")}, event.timestamp
        )
    if event.type == "tool_use":
        return sse_message(
            "tool_use", {"toolName": data.get("name"), "toolInput": data.get("input")}, event.timestamp
        )
    if event.type == "tool_result":
        return sse_message(
            "tool_result",
            {"toolUseId": data.get("toolUseId"), "content": data.get("content")},
            event.timestamp,
        )
    if event.type == "result":
        return sse_message(
            "result",
            {
                "sessionId": data.get("sessionId"),
                "usage": data.get("usage"),
                "durationMs": data.get("durationMs"),
                "costUsd": data.get("costUsd"),
            },
            event.timestamp,
        )
    if event.type == "error":
        return sse_message(
            "error", {"error": data.get("message"), "exitCode": data.get("exitCode")}, event.timestamp
        )
    return sse_message("message", dict(data), event.timestamp)


class StreamRelay:
    """Per-client cursor over one execution's events."""

    def __init__(
        self,
        registry: ExecutionRegistry,
        execution_id: str,
        *,
        not_found_limit: int = 30,
    ):
        self.registry = registry
        self.execution_id = execution_id
        self.not_found_limit = not_found_limit
        self.last_sent_index = 0
        self.closed = False
        self._misses = 0
        self._error_sent = False

    def connected(self) -> dict:
        return sse_message("connected", {"executionId": self.execution_id})

    def heartbeat(self) -> dict:
        return sse_message("heartbeat", {"executionId": self.execution_id})

    def poll(self) -> list[dict]:
        """Return the messages due since the last poll; sets `closed` when done."""
        if self.closed:
            return []

        execution = self.registry.get(self.execution_id)
        if execution is None:
            self._misses += 1
            if self._misses >= self.not_found_limit:
                self.closed = True
                return [sse_message("error", {"error": NOT_FOUND_ERROR})]
            return []
        self._misses = 0

        messages = []
        for event in execution.events[self.last_sent_index:]:
            messages.append(convert_event(self.execution_id, event))
            if event.type == "error":
                self._error_sent = True
        self.last_sent_index = len(execution.events)

        # A `result` event from the CLI arrives before the process exits, so
        # the stream stays open until the execution itself is terminal.
        if execution.is_terminal:
            if execution.result is not None:
                messages.append(sse_message("result", {"result": execution.result}))
            elif execution.error and not self._error_sent:
                messages.append(sse_message("error", {"error": execution.error}))
            self.closed = True

        return messages


async def stream_execution(
    request: web.Request,
    registry: ExecutionRegistry,
    *,
    poll_interval_s: float = 0.1,
    heartbeat_interval_s: float = 15.0,
    not_found_limit: int = 30,
) -> web.StreamResponse:
    """Serve one execution as `text/event-stream` until it ends or the client leaves."""
    execution_id = request.query.get("executionId")
    if not execution_id:
        return web.Response(status=400, text="executionId required")

    response = web.StreamResponse(headers=SSE_HEADERS)
    await response.prepare(request)

    relay = StreamRelay(registry, execution_id, not_found_limit=not_found_limit)
    loop = asyncio.get_running_loop()
    next_heartbeat = loop.time() + heartbeat_interval_s

    try:
        await response.write(encode_sse(relay.connected()))
        while True:
            for message in relay.poll():
                await response.write(encode_sse(message))
            if relay.closed:
                break

            if loop.time() >= next_heartbeat:
                await response.write(encode_sse(relay.heartbeat()))
                next_heartbeat = loop.time() + heartbeat_interval_s

            await asyncio.sleep(poll_interval_s)
        await response.write_eof()
    except ConnectionResetError:
        log.debug(f"Stream client for {execution_id} disconnected")
    return response
