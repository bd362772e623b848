"""Shared fixtures."""

import pytest

from research_engine.config import ResearchConfig
from research_engine.lifecycle.executions import ExecutionRegistry
from research_engine.runners.claude import ClaudeResearchRunner
from tests.fakes import write_fake_cli


@pytest.fixture
def registry():
    return ExecutionRegistry()


@pytest.fixture
def make_config(tmp_path):
    """Build a config whose CLI command is a fake script."""

    def _make(lines, *, exit_code=0, sleep_s=0.0, stderr="", timeout_s=10.0, **overrides):
        command = write_fake_cli(
            tmp_path, lines, exit_code=exit_code, sleep_s=sleep_s, stderr=stderr
        )
        return ResearchConfig(
            claude_command=command,
            timeout_s=timeout_s,
            working_dir=str(tmp_path),
            **overrides,
        )

    return _make


@pytest.fixture
def make_runner(registry, make_config):
    """Build a runner around a fake CLI script."""

    def _make(lines, **kwargs):
        return ClaudeResearchRunner(registry, make_config(lines, **kwargs))

    return _make
