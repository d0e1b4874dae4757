"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import pytest

from wiggle_puppy.backend import process_driver
from wiggle_puppy.config import PromptSource, RunConfig

_SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_AGENT_ARGS = ("-m", "wiggle_puppy.backend.echo_agent")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop WIGGLE_PUPPY_* overrides and make the package importable for child agents."""

    for name in list(os.environ):
        if name.startswith("WIGGLE_PUPPY_"):
            monkeypatch.delenv(name)
    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join([str(_SRC_DIR), existing]) if existing else str(_SRC_DIR),
    )


@pytest.fixture()
def counter_file(tmp_path) -> Path:
    return tmp_path / "calls.txt"


@pytest.fixture()
def echo_config(counter_file):
    """Build a RunConfig that drives the local echo agent."""

    def _build(*agent_args: str, **overrides) -> RunConfig:
        fields = {
            "agent_command": sys.executable,
            "agent_args": (*ECHO_AGENT_ARGS, "--counter-file", str(counter_file), *agent_args),
            "delay_seconds": 0.0,
            "max_iterations": 5,
            "prompt": PromptSource.inline("Fix the failing tests."),
            "terminate_grace_seconds": 2.0,
        }
        fields.update(overrides)
        return RunConfig(**fields)

    return _build


@pytest.fixture()
def write_document(tmp_path):
    """Write a work document with the given stories and return its path."""

    def _write(stories: list[dict], *, name: str = "demo") -> Path:
        path = tmp_path / "prd.json"
        payload = {
            "name": name,
            "branchName": "feature/demo",
            "description": "Demo project",
            "stories": [
                {
                    "title": story.get("title", story["id"]),
                    "description": "",
                    "passes": False,
                    "acceptance_criteria": [],
                    "depends_on": [],
                    **story,
                }
                for story in stories
            ],
        }
        path.write_text(json.dumps(payload, indent=2), "utf-8")
        return path

    return _write


@pytest.fixture()
def read_calls(counter_file):
    """Number of times the echo agent has been invoked."""

    def _read() -> int:
        if not counter_file.exists():
            return 0
        return int(counter_file.read_text("utf-8").strip() or "0")

    return _read


class BrokenStream:
    """Pipe stand-in whose reads always fail."""

    def __init__(self) -> None:
        self.closed = False

    def readline(self) -> str:
        raise OSError("simulated read failure")

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def broken_stderr(monkeypatch):
    """Make every agent's stderr pipe fail on the first read."""

    original_pump = process_driver._pump
    streams: list[BrokenStream] = []

    def _pump(stream, signals, is_stderr):
        if is_stderr:
            stream.close()
            stream = BrokenStream()
            streams.append(stream)
        original_pump(stream, signals, is_stderr)

    monkeypatch.setattr(process_driver, "_pump", _pump)
    return streams
