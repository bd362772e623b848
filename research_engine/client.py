"""HTTP client for the research server."""

from __future__ import annotations

import json
import logging
import os
from typing import AsyncIterator, Sequence

import aiohttp

from research_engine.server.handlers import RESEARCH_PATH

log = logging.getLogger("client")


class ResearchClient:
    """HTTP + SSE transport for the research server."""

    def __init__(self, server_url: str | None = None):
        self.server_url = (server_url or self._resolve_server_url()).rstrip("/")

    def _resolve_server_url(self) -> str:
        base_url = os.getenv("RESEARCH_SERVER_URL")
        if base_url:
            return base_url

        host = os.getenv("RESEARCH_HOST", "127.0.0.1")
        port = os.getenv("RESEARCH_PORT", "8080")
        return f"http://{host}:{port}"

    def _make_url(self, path: str) -> str:
        return f"{self.server_url}{path}"

    async def request_json(
        self, session: aiohttp.ClientSession, method: str, url: str, **kwargs
    ) -> object | None:
        async with session.request(method, url, **kwargs) as resp:
            text = await resp.text()
            if resp.status >= 400:
                detail = text.strip() or resp.reason
                try:
                    payload = json.loads(text)
                except json.JSONDecodeError:
                    payload = None
                if isinstance(payload, dict) and payload.get("error"):
                    detail = payload["error"]
                raise RuntimeError(f"Research HTTP {resp.status}: {detail}")
            if not text:
                return None
            return json.loads(text)

    async def start_research(
        self,
        session: aiohttp.ClientSession,
        subject_key: str,
        input_entries: Sequence[object],
        matched_context: Sequence[object] = (),
    ) -> dict:
        body = {
            "subjectKey": subject_key,
            "inputEntries": list(input_entries),
            "matchedContext": list(matched_context),
        }
        response = await self.request_json(
            session, "POST", self._make_url(RESEARCH_PATH), json=body
        )
        if isinstance(response, dict) and response.get("executionId"):
            return response
        raise RuntimeError("Research start returned no execution id")

    async def get_status(self, session: aiohttp.ClientSession, execution_id: str) -> dict:
        response = await self.request_json(
            session, "GET", self._make_url(RESEARCH_PATH), params={"executionId": execution_id}
        )
        if not isinstance(response, dict):
            raise RuntimeError("Research status returned no body")
        return response

    async def abort(self, session: aiohttp.ClientSession, execution_id: str) -> bool:
        try:
            await self.request_json(
                session, "DELETE", self._make_url(RESEARCH_PATH), params={"executionId": execution_id}
            )
            return True
        except RuntimeError as e:
            log.debug(f"Failed to abort {execution_id}: {e}")
            return False

    async def stream_events(
        self, session: aiohttp.ClientSession, stream_url: str
    ) -> AsyncIterator[dict]:
        """Yield wire events from a stream URL until the server closes it."""
        url = stream_url if stream_url.startswith("http") else self._make_url(stream_url)
        headers = {"Accept": "text/event-stream"}
        async with session.get(url, headers=headers) as resp:
            if resp.status >= 400:
                raise RuntimeError(f"Research SSE HTTP {resp.status}")
            async for event in self.read_sse_stream(resp):
                yield event

    async def read_sse_stream(self, resp: aiohttp.ClientResponse) -> AsyncIterator[dict]:
        data_lines: list[str] = []
        async for raw in resp.content:
            line = raw.decode("utf-8", errors="replace").strip("\r\n")
            if not line:
                if not data_lines:
                    continue
                payload = "\n".join(data_lines)
                data_lines = []
                try:
                    event = json.loads(payload)
                except json.JSONDecodeError:
                    continue
                if isinstance(event, dict):
                    yield event
                continue
            if line.startswith(":"):
                continue
            if line.startswith("data:"):
                data_lines.append(line[len("data:") :].lstrip())
