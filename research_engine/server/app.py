"""Research server composition root.

Builds the single registry and runner for the process and wires them into
the aiohttp application. Nothing here is module-global: every app owns its
own execution table.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import AsyncIterator

from aiohttp import web
from aiohttp.web_log import AccessLogger
from dotenv import load_dotenv

from research_engine.config import ResearchConfig
from research_engine.lifecycle.executions import ExecutionRegistry
from research_engine.prompts import PromptBuilder, build_research_prompt
from research_engine.runners.claude import ClaudeResearchRunner
from research_engine.runners.ports import ResearchRunner
from research_engine.server.handlers import ResearchHandlers

log = logging.getLogger("server")

REGISTRY_KEY = web.AppKey("registry", ExecutionRegistry)
RUNNER_KEY = web.AppKey("runner", ResearchRunner)
CONFIG_KEY = web.AppKey("config", ResearchConfig)


class _QuietAccessLogger(AccessLogger):
    """Suppress access logs for /health to reduce noise."""

    def log(self, request, response, req_time):
        if request.path == "/health":
            return
        super().log(request, response, req_time)


def create_app(
    config: ResearchConfig | None = None,
    *,
    registry: ExecutionRegistry | None = None,
    runner: ResearchRunner | None = None,
    prompt_builder: PromptBuilder = build_research_prompt,
) -> web.Application:
    config = config or ResearchConfig()
    if registry is None:
        registry = ExecutionRegistry()
    if runner is None:
        runner = ClaudeResearchRunner(registry, config)

    app = web.Application()
    app[CONFIG_KEY] = config
    app[REGISTRY_KEY] = registry
    app[RUNNER_KEY] = runner

    ResearchHandlers(runner, registry, config, prompt_builder).register(app)
    app.cleanup_ctx.append(_background_ctx)
    return app


async def _background_ctx(app: web.Application) -> AsyncIterator[None]:
    """Run the retention sweeper; cancel in-flight research on shutdown."""
    config = app[CONFIG_KEY]
    sweeper = asyncio.create_task(
        app[REGISTRY_KEY].run_sweeper(config.sweep_interval_s, config.retention_s)
    )
    yield
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass
    await app[RUNNER_KEY].shutdown()


def _parse_args(argv: list[str], config: ResearchConfig) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Research execution server")
    parser.add_argument("--host", default=config.host, help=f"bind host (default: {config.host})")
    parser.add_argument("--port", type=int, default=config.port, help=f"bind port (default: {config.port})")
    parser.add_argument("--log-level", default="INFO", help="logging level (default: INFO)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    config = ResearchConfig.from_env()
    args = _parse_args(sys.argv[1:] if argv is None else argv, config)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info(f"Research server on {args.host}:{args.port} (timeout {config.timeout_s:g}s)")

    web.run_app(
        create_app(config),
        host=args.host,
        port=args.port,
        access_log=logging.getLogger("aiohttp.access"),
        access_log_class=_QuietAccessLogger,
        print=None,
    )


if __name__ == "__main__":
    main()
