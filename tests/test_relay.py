"""Tests for the SSE relay."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp.test_utils import TestClient, TestServer

from research_engine.config import ResearchConfig
from research_engine.runners.events import (
    ExecutionStatus,
    error_event,
    init_event,
    result_event,
    text_event,
    tool_result_event,
    tool_use_event,
)
from research_engine.server import relay as relay_module
from research_engine.server.app import RUNNER_KEY, create_app
from research_engine.server.relay import (
    StreamRelay,
    convert_event,
    encode_sse,
    stream_execution,
)
from tests.fakes import FENCED_RESULT_LINE, INIT_LINE


def parse_sse(body: str) -> list[dict]:
    return [
        json.loads(frame[len("data: ") :])
        for frame in body.split("\n\n")
        if frame.startswith("data: ")
    ]


class TestConvertEvent:
    def test_init_becomes_connected(self):
        message = convert_event("r1", init_event("s1", "opus", []))
        assert message["type"] == "connected"
        assert message["data"] == {"executionId": "r1", "sessionId": "s1", "model": "opus"}

    def test_text_becomes_message(self):
        event = text_event("hi", "opus")
        message = convert_event("r1", event)
        assert message == {
            "type": "message",
            "data": {"content": "hi", "model": "opus"},
            "timestamp": event.timestamp,
        }

    def test_tool_events(self):
        assert convert_event("r1", tool_use_event("t1", "Bash", {"command": "ls"}))["data"] == {
            "toolName": "Bash",
            "toolInput": {"command": "ls"},
        }
        assert convert_event("r1", tool_result_event("t1", "ok"))["data"] == {
            "toolUseId": "t1",
            "content": "ok",
        }

    def test_result_and_error(self):
        result = convert_event("r1", result_event("s1", None, 10, 0.1))
        assert result["type"] == "result"
        assert result["data"]["durationMs"] == 10

        error = convert_event("r1", error_event("Process exited with code 2", 2))
        assert error["type"] == "error"
        assert error["data"] == {"error": "Process exited with code 2", "exitCode": 2}

    def test_encode_sse(self):
        assert encode_sse({"type": "heartbeat"}) == b'data: {"type": "heartbeat"}\n\n'


class TestStreamRelay:
    def test_emits_unseen_events_once(self, registry):
        registry.create("r1", "G86")
        relay = StreamRelay(registry, "r1")

        registry.append_event("r1", text_event("one", None))
        assert [m["data"]["content"] for m in relay.poll()] == ["one"]
        assert relay.poll() == []

        registry.append_event("r1", text_event("two", None))
        assert [m["data"]["content"] for m in relay.poll()] == ["two"]
        assert relay.last_sent_index == 2
        assert relay.closed is False

    def test_cli_result_event_does_not_close_while_running(self, registry):
        registry.create("r1", "G86")
        registry.append_event("r1", result_event("s1", None, 10, 0.1))
        relay = StreamRelay(registry, "r1")

        assert [m["type"] for m in relay.poll()] == ["result"]
        assert relay.closed is False

        registry.finalize("r1", ExecutionStatus.COMPLETED, result={"confidence": "low"})
        messages = relay.poll()
        assert messages[-1]["type"] == "result"
        assert messages[-1]["data"] == {"result": {"confidence": "low"}}
        assert relay.closed is True
        assert relay.poll() == []

    def test_terminal_error_event_is_not_repeated(self, registry):
        registry.create("r1", "G86")
        registry.finalize(
            "r1", ExecutionStatus.FAILED, error="Process exited with code 1",
            event=error_event("Process exited with code 1", 1),
        )
        relay = StreamRelay(registry, "r1")
        messages = relay.poll()
        assert [m["type"] for m in messages] == ["error"]
        assert messages[0]["data"]["exitCode"] == 1
        assert relay.closed is True

    def test_terminal_without_event_synthesizes_error(self, registry):
        registry.create("r1", "G86")
        registry.finalize("r1", ExecutionStatus.FAILED, error="Aborted by user")
        relay = StreamRelay(registry, "r1")
        messages = relay.poll()
        assert messages == [
            {"type": "error", "data": {"error": "Aborted by user"}, "timestamp": messages[0]["timestamp"]}
        ]
        assert relay.closed is True

    def test_not_found_grace_window(self, registry):
        relay = StreamRelay(registry, "missing", not_found_limit=3)
        assert relay.poll() == []
        assert relay.poll() == []
        messages = relay.poll()
        assert messages[0]["type"] == "error"
        assert messages[0]["data"] == {"error": "Execution not found"}
        assert relay.closed is True

    def test_not_found_counter_resets(self, registry):
        relay = StreamRelay(registry, "late", not_found_limit=2)
        assert relay.poll() == []
        registry.create("late", "G86")
        assert relay.poll() == []
        registry._executions.pop("late")
        assert relay.poll() == []
        assert relay.closed is False

    def test_connected_and_heartbeat(self, registry):
        relay = StreamRelay(registry, "r1")
        assert relay.connected()["type"] == "connected"
        assert relay.heartbeat()["data"] == {"executionId": "r1"}


class TestStreamEndpoint:
    @pytest.mark.asyncio
    async def test_missing_execution_id(self):
        async with TestClient(TestServer(create_app(ResearchConfig()))) as client:
            resp = await client.get("/api/sets/research/stream")
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_late_client_gets_buffered_result(self, make_config):
        config = make_config([INIT_LINE, FENCED_RESULT_LINE], poll_interval_s=0.01)
        app = create_app(config)
        async with TestClient(TestServer(app)) as client:
            start = await client.post(
                "/api/sets/research",
                json={"subjectKey": "G86", "inputEntries": [{"price": 1}], "matchedContext": []},
            )
            started = await start.json()
            await app[RUNNER_KEY].wait(started["executionId"])

            resp = await client.get(started["streamUrl"])
            assert resp.status == 200
            assert resp.headers["Content-Type"].startswith("text/event-stream")
            messages = parse_sse(await resp.text())

        assert messages[0] == {
            "type": "connected",
            "data": {"executionId": started["executionId"]},
            "timestamp": messages[0]["timestamp"],
        }
        assert [m["type"] for m in messages[1:]] == ["connected", "message", "result"]
        assert messages[-1]["data"] == {"result": {"components": [], "confidence": "low"}}

    @pytest.mark.asyncio
    async def test_unknown_execution_closes_after_grace(self):
        config = ResearchConfig(poll_interval_s=0.01, not_found_limit=5)
        async with TestClient(TestServer(create_app(config))) as client:
            resp = await client.get("/api/sets/research/stream", params={"executionId": "nope"})
            messages = parse_sse(await resp.text())
        assert [m["type"] for m in messages] == ["connected", "error"]
        assert messages[-1]["data"]["error"] == "Execution not found"

    @pytest.mark.asyncio
    async def test_heartbeats_while_running(self, make_config):
        config = make_config([INIT_LINE], sleep_s=0.5, poll_interval_s=0.01, heartbeat_interval_s=0.1)
        async with TestClient(TestServer(create_app(config))) as client:
            start = await client.post(
                "/api/sets/research", json={"subjectKey": "G86", "inputEntries": [{"price": 1}]}
            )
            started = await start.json()
            resp = await client.get(started["streamUrl"])
            messages = parse_sse(await resp.text())

        types = [m["type"] for m in messages]
        assert "heartbeat" in types
        assert types[-1] == "error"
        assert messages[-1]["data"]["error"] == "No valid JSON result found in assistant output"

    @pytest.mark.asyncio
    async def test_client_disconnect_leaves_execution_running(self, make_config):
        config = make_config([INIT_LINE, FENCED_RESULT_LINE], sleep_s=0.5, poll_interval_s=0.01)
        app = create_app(config)
        async with TestClient(TestServer(app)) as client:
            start = await client.post(
                "/api/sets/research", json={"subjectKey": "G86", "inputEntries": [{"price": 1}]}
            )
            started = await start.json()

            resp = await client.get(started["streamUrl"])
            first = await resp.content.readline()
            assert first.startswith(b"data: ")
            resp.close()

            execution = await app[RUNNER_KEY].wait(started["executionId"])
            assert execution.status is ExecutionStatus.COMPLETED

            resp = await client.get(started["streamUrl"])
            messages = parse_sse(await resp.text())

        assert messages[-1]["type"] == "result"
        assert messages[-1]["data"] == {"result": {"components": [], "confidence": "low"}}


def fake_stream_response(*, write_side_effect=None, write_eof_side_effect=None):
    response = MagicMock()
    response.prepare = AsyncMock()
    response.write = AsyncMock(side_effect=write_side_effect)
    response.write_eof = AsyncMock(side_effect=write_eof_side_effect)
    return response


class TestStreamExecution:
    @pytest.mark.asyncio
    async def test_disconnect_stops_only_the_poll_loop(self, registry):
        registry.create("r1", "G86")
        registry.append_event("r1", text_event("one", None))
        response = fake_stream_response(write_side_effect=[None, ConnectionResetError()])
        request = MagicMock(query={"executionId": "r1"})

        with patch.object(relay_module.web, "StreamResponse", return_value=response):
            returned = await asyncio.wait_for(
                stream_execution(request, registry, poll_interval_s=0.01), timeout=1.0
            )

        assert returned is response
        response.write_eof.assert_not_awaited()
        assert registry.get("r1").status is ExecutionStatus.RUNNING
        assert registry.append_event("r1", text_event("two", None)) is True

    @pytest.mark.asyncio
    async def test_disconnect_while_closing(self, registry):
        registry.create("r1", "G86")
        registry.finalize("r1", ExecutionStatus.COMPLETED, result={"confidence": "low"})
        response = fake_stream_response(write_eof_side_effect=ConnectionResetError())
        request = MagicMock(query={"executionId": "r1"})

        with patch.object(relay_module.web, "StreamResponse", return_value=response):
            returned = await stream_execution(request, registry, poll_interval_s=0.01)

        assert returned is response
        response.write_eof.assert_awaited_once()
        sent = [json.loads(call.args[0][len(b"data: "):]) for call in response.write.await_args_list]
        assert [m["type"] for m in sent] == ["connected", "result"]
