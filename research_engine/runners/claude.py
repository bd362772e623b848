"""Claude Code CLI research runner."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import TYPE_CHECKING

from research_engine.config import ResearchConfig
from research_engine.runners.events import (
    Event,
    ExecutionStatus,
    ResearchExecution,
    error_event,
    init_event,
    result_event,
    text_event,
    tool_result_event,
    tool_use_event,
)
from research_engine.runners.extract import extract_json_result
from research_engine.runners.pipeline import LineDecoder
from research_engine.runners.tool_logging import describe_tool

if TYPE_CHECKING:
    from research_engine.lifecycle.executions import ExecutionRegistry

log = logging.getLogger("claude")

_CHUNK_SIZE = 64 * 1024

NO_RESULT_ERROR = "No valid JSON result found in assistant output"
ABORTED_ERROR = "Aborted by user"


def new_execution_id() -> str:
    return f"research-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def _format_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g}s"


class ClaudeResearchRunner:
    """Runs one Claude CLI process per research execution.

    `start` returns as soon as the execution is registered; the process is
    spawned and driven by a background task that appends events to the
    registry and finalizes the execution exactly once.
    """

    def __init__(self, registry: ExecutionRegistry, config: ResearchConfig | None = None):
        self.registry = registry
        self.config = config or ResearchConfig()
        self._tasks: dict[str, asyncio.Task] = {}
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    def _build_command(self) -> list[str]:
        """Build the claude command line. The prompt goes in on stdin."""
        cmd = [
            *self.config.claude_command,
            "-p", "-",
            "--output-format", "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        if self.config.model:
            cmd.extend(["--model", self.config.model])
        return cmd

    # -- lifecycle ---------------------------------------------------------

    def start(self, subject_key: str, prompt: str) -> str:
        """Register a new execution and launch it in the background."""
        execution_id = new_execution_id()
        self.registry.create(execution_id, subject_key)

        task = asyncio.get_running_loop().create_task(self._execute(execution_id, prompt))
        self._tasks[execution_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(execution_id, None))

        log.info(f"Research {execution_id} started for {subject_key}: {prompt[:50]}...")
        return execution_id

    def get(self, execution_id: str) -> ResearchExecution | None:
        return self.registry.get(execution_id)

    async def wait(self, execution_id: str) -> ResearchExecution | None:
        """Wait for an execution's background task, then return its record."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait({task})
        return self.registry.get(execution_id)

    def abort(self, execution_id: str) -> bool:
        """Fail a running execution and terminate its process if we still hold it."""
        aborted = self.registry.finalize(
            execution_id,
            ExecutionStatus.FAILED,
            error=ABORTED_ERROR,
            event=error_event(ABORTED_ERROR),
        )
        process = self._processes.get(execution_id)
        if aborted and process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        return aborted

    async def shutdown(self) -> None:
        """Cancel every in-flight execution."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- execution ---------------------------------------------------------

    async def _execute(self, execution_id: str, prompt: str) -> None:
        cmd = self._build_command()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.config.working_dir,
            )
        except asyncio.CancelledError:
            self._fail(execution_id, "Execution cancelled")
            raise
        except Exception as e:
            log.error(f"Research {execution_id}: failed to spawn {cmd[0]}: {e}")
            self._fail(execution_id, str(e) or "Failed to spawn CLI")
            return

        self._processes[execution_id] = process
        try:
            await asyncio.wait_for(
                self._drive(execution_id, process, prompt),
                timeout=self.config.timeout_s,
            )
            self._finish(execution_id, process.returncode)
        except asyncio.TimeoutError:
            await self._kill(process)
            log.warning(f"Research {execution_id} timed out")
            self._fail(
                execution_id,
                f"Execution timed out after {_format_duration(self.config.timeout_s)}",
            )
        except asyncio.CancelledError:
            await self._kill(process)
            self._fail(execution_id, "Execution cancelled")
            raise
        except Exception as e:
            log.exception("Claude runner error")
            await self._kill(process)
            self._fail(execution_id, str(e) or type(e).__name__)
        finally:
            self._processes.pop(execution_id, None)

    async def _drive(
        self, execution_id: str, process: asyncio.subprocess.Process, prompt: str
    ) -> None:
        """Feed the prompt, decode stdout until EOF, then reap the process."""
        if process.stdin is None or process.stdout is None or process.stderr is None:
            raise RuntimeError("Claude process pipes missing")

        stderr_task = asyncio.create_task(self._drain_stderr(execution_id, process.stderr))
        try:
            await self._write_prompt(process.stdin, prompt)

            decoder = LineDecoder()
            while True:
                chunk = await process.stdout.read(_CHUNK_SIZE)
                if not chunk:
                    break
                for message in decoder.feed(chunk):
                    self._dispatch(execution_id, message)
            for message in decoder.flush():
                self._dispatch(execution_id, message)

            if decoder.stats.non_json_lines:
                log.debug(
                    f"Research {execution_id}: skipped {len(decoder.stats.non_json_lines)} non-JSON lines"
                )

            await process.wait()
            await stderr_task
        finally:
            if not stderr_task.done():
                stderr_task.cancel()

    async def _write_prompt(self, stdin: asyncio.StreamWriter, prompt: str) -> None:
        try:
            stdin.write(prompt.encode())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            # The process exited before reading; its exit code tells the story.
            log.debug(f"Prompt write failed: {e}")
        finally:
            stdin.close()

    async def _drain_stderr(self, execution_id: str, stderr: asyncio.StreamReader) -> None:
        while True:
            chunk = await stderr.read(_CHUNK_SIZE)
            if not chunk:
                return
            text = chunk.decode(errors="replace").rstrip()
            if text:
                log.debug(f"Research {execution_id} stderr: {text}")

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    def _finish(self, execution_id: str, returncode: int | None) -> None:
        """Decide the terminal status from the exit code and accumulated events."""
        if returncode is None or returncode < 0:
            signal_no = -returncode if returncode is not None else "unknown"
            self._fail(
                execution_id,
                f"Process terminated by signal {signal_no}",
                exit_code=returncode,
            )
            return

        if returncode != 0:
            self._fail(
                execution_id, f"Process exited with code {returncode}", exit_code=returncode
            )
            return

        execution = self.registry.get(execution_id)
        if execution is None:
            log.warning(f"Research {execution_id} vanished before completion")
            return

        result = extract_json_result(execution.events)
        if result is None:
            self._fail(execution_id, NO_RESULT_ERROR)
            return

        if self.registry.finalize(execution_id, ExecutionStatus.COMPLETED, result=result):
            log.info(f"Research {execution_id} completed ({len(execution.events)} events)")

    def _fail(self, execution_id: str, message: str, exit_code: int | None = None) -> None:
        self.registry.finalize(
            execution_id,
            ExecutionStatus.FAILED,
            error=message,
            event=error_event(message, exit_code),
        )

    # -- message parsing -----------------------------------------------------

    def _dispatch(self, execution_id: str, message: dict) -> None:
        for event in self._parse_message(message):
            self.registry.append_event(execution_id, event)

    def _handle_system(self, message: dict) -> list[Event]:
        """Handle system init message - session, model and tool list."""
        if message.get("subtype") != "init":
            return []
        tools = message.get("tools")
        return [
            init_event(
                message.get("session_id"),
                message.get("model"),
                tools if isinstance(tools, list) else [],
            )
        ]

    def _handle_assistant(self, message: dict) -> list[Event]:
        """Handle assistant message - one text event plus one per tool call."""
        body = message.get("message")
        if not isinstance(body, dict):
            return []
        content = body.get("content")
        if not isinstance(content, list):
            return []

        texts = []
        tools = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text = block.get("text") or ""
                if text:
                    texts.append(text)
            elif block_type == "tool_use":
                name = block.get("name") or ""
                tool_input = block.get("input") or {}
                log.info(describe_tool(name or "?", tool_input))
                tools.append(tool_use_event(block.get("id") or "", name, tool_input))

        events = []
        if texts:
            events.append(text_event("\n".join(texts), body.get("model")))
        events.extend(tools)
        return events

    def _handle_user(self, message: dict) -> list[Event]:
        """Handle user message - tool results fed back to the agent."""
        body = message.get("message")
        content = body.get("content") if isinstance(body, dict) else None
        if not isinstance(content, list):
            return []
        return [
            tool_result_event(block.get("tool_use_id"), block.get("content"))
            for block in content
            if isinstance(block, dict) and block.get("type") == "tool_result"
        ]

    def _handle_result(self, message: dict) -> list[Event]:
        """Handle result message - final run stats."""
        nested = message.get("result") if isinstance(message.get("result"), dict) else {}
        cost = message.get("total_cost_usd", message.get("cost_usd"))
        return [
            result_event(
                message.get("session_id") or nested.get("session_id"),
                message.get("usage") or nested.get("usage"),
                message.get("duration_ms"),
                cost,
                bool(message.get("is_error")),
            )
        ]

    def _parse_message(self, message: dict) -> list[Event]:
        """Map one decoded CLI message to zero or more events."""
        handlers = {
            "system": self._handle_system,
            "assistant": self._handle_assistant,
            "user": self._handle_user,
            "result": self._handle_result,
        }
        handler = handlers.get(message.get("type"))
        return handler(message) if handler else []
