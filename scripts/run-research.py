#!/usr/bin/env python3
"""Start a research execution and follow its event stream.

This is an operator helper. It posts the entries from a JSON file to a
running research server, prints every streamed event as it arrives, and
prints the final result (or error) when the stream closes.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import aiohttp
from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from research_engine.client import ResearchClient


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run set decomposition research")
    parser.add_argument("subject_key", help="product group code, e.g. G86")
    parser.add_argument(
        "entries_file",
        type=Path,
        help="JSON file with {inputEntries: [...], matchedContext: [...]} or a bare entries list",
    )
    parser.add_argument(
        "--server",
        default=None,
        help="server URL (default: RESEARCH_SERVER_URL or http://RESEARCH_HOST:RESEARCH_PORT)",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="only print the final result",
    )
    return parser.parse_args(argv)


def _load_entries(path: Path) -> tuple[list, list]:
    payload = json.loads(path.read_text())
    if isinstance(payload, list):
        return payload, []
    return list(payload.get("inputEntries") or []), list(payload.get("matchedContext") or [])


def _describe(event: dict) -> str:
    event_type = event.get("type")
    data = event.get("data") or {}
    if event_type == "message":
        return str(data.get("content", ""))
    if event_type == "tool_use":
        return f"[{data.get('toolName')}]"
    if event_type == "tool_result":
        return f"[result for {data.get('toolUseId')}]"
    return f"[{event_type}]"


async def _run(args: argparse.Namespace) -> int:
    entries, matched = _load_entries(args.entries_file)
    client = ResearchClient(args.server)

    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None)) as session:
        started = await client.start_research(session, args.subject_key, entries, matched)
        execution_id = started["executionId"]
        print(f"Execution {execution_id}", file=sys.stderr)

        exit_code = 1
        async for event in client.stream_events(session, started["streamUrl"]):
            event_type = event.get("type")
            if event_type == "heartbeat":
                continue
            if not args.quiet and event_type not in ("result", "error"):
                print(_describe(event), file=sys.stderr)

            data = event.get("data") or {}
            if event_type == "result" and "result" in data:
                print(json.dumps(data["result"], indent=2, ensure_ascii=False))
                exit_code = 0
            elif event_type == "error":
                print(f"Error: {data.get('error')}", file=sys.stderr)
                exit_code = 1

        status = await client.get_status(session, execution_id)
        print(f"Status: {status.get('status')} ({status.get('eventCount')} events)", file=sys.stderr)
        return exit_code


def main(argv: list[str]) -> int:
    load_dotenv()
    args = _parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
