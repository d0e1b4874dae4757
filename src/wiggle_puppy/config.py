"""Run configuration snapshot and environment defaults."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path

from wiggle_puppy.errors import ConfigError, NoPromptError, PromptReadError

DEFAULT_AGENT_COMMAND = "claude"
DEFAULT_AGENT_ARGS = "-p"
DEFAULT_MAX_ITERATIONS = 20
DEFAULT_DELAY_SECONDS = 2.0
DEFAULT_COMPLETION_PHRASE = "<promise>COMPLETE</promise>"
DEFAULT_EVENT_BUFFER_SIZE = 1_000
DEFAULT_TERMINATE_GRACE_SECONDS = 2.0


@dataclass(frozen=True, slots=True)
class PromptSource:
    """Inline prompt text or a prompt file re-read on every iteration."""

    text: str | None = None
    path: Path | None = None

    def __post_init__(self) -> None:
        if (self.text is None) == (self.path is None):
            raise ConfigError("Prompt source needs exactly one of inline text or a file path.")

    @classmethod
    def inline(cls, text: str) -> PromptSource:
        return cls(text=text)

    @classmethod
    def from_file(cls, path: Path) -> PromptSource:
        return cls(path=Path(path))

    def read(self) -> str:
        """Return the current prompt text, reading the file fresh when configured."""

        if self.path is None:
            return self.text or ""
        try:
            return self.path.read_text("utf-8")
        except (OSError, UnicodeDecodeError) as error:
            raise PromptReadError(self.path, str(error)) from error

    def describe(self) -> str:
        if self.path is not None:
            return str(self.path)
        return "<inline>"


@dataclass(frozen=True, slots=True)
class RunConfig:
    """Immutable configuration captured when a runner is constructed."""

    agent_command: str = DEFAULT_AGENT_COMMAND
    agent_args: tuple[str, ...] = field(default_factory=lambda: parse_agent_args(DEFAULT_AGENT_ARGS))
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    delay_seconds: float = DEFAULT_DELAY_SECONDS
    completion_phrase: str = DEFAULT_COMPLETION_PHRASE
    prompt: PromptSource | None = None
    work_document_path: Path | None = None
    verbose: bool = False
    auto_completion_instruction: bool = True
    agent_timeout_seconds: float | None = None
    terminate_grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS
    event_buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE
    short_circuit_when_complete: bool = True

    @classmethod
    def from_env(cls) -> RunConfig:
        """Load defaults from ``WIGGLE_PUPPY_*`` environment variables."""

        timeout_raw = os.getenv("WIGGLE_PUPPY_AGENT_TIMEOUT_SECONDS", "").strip()
        return cls(
            agent_command=os.getenv("WIGGLE_PUPPY_AGENT", DEFAULT_AGENT_COMMAND).strip(),
            agent_args=parse_agent_args(os.getenv("WIGGLE_PUPPY_AGENT_ARGS", DEFAULT_AGENT_ARGS)),
            max_iterations=_env_int("WIGGLE_PUPPY_MAX_ITERATIONS", DEFAULT_MAX_ITERATIONS),
            delay_seconds=_env_float("WIGGLE_PUPPY_DELAY_SECONDS", DEFAULT_DELAY_SECONDS),
            completion_phrase=os.getenv(
                "WIGGLE_PUPPY_COMPLETION_PHRASE",
                DEFAULT_COMPLETION_PHRASE,
            ),
            auto_completion_instruction=_env_bool("WIGGLE_PUPPY_AUTO_INSTRUCTION", default=True),
            agent_timeout_seconds=(
                _env_float("WIGGLE_PUPPY_AGENT_TIMEOUT_SECONDS", 0.0) if timeout_raw else None
            ),
            event_buffer_size=_env_int(
                "WIGGLE_PUPPY_EVENT_BUFFER_SIZE",
                DEFAULT_EVENT_BUFFER_SIZE,
            ),
        )

    def with_overrides(self, **overrides: object) -> RunConfig:
        """Return a copy with every non-``None`` override applied."""

        return replace(self, **{key: value for key, value in overrides.items() if value is not None})

    def validate(self) -> None:
        """Raise :class:`ConfigError` if the snapshot cannot drive a run."""

        if not self.agent_command.strip():
            raise ConfigError("Agent command must be a non-empty string.")
        if self.max_iterations < 1:
            raise ConfigError(f"max_iterations must be >= 1, got {self.max_iterations}.")
        if self.delay_seconds < 0:
            raise ConfigError(f"delay_seconds must be >= 0, got {self.delay_seconds}.")
        if not self.completion_phrase:
            raise ConfigError("Completion phrase must be a non-empty string.")
        if self.agent_timeout_seconds is not None and self.agent_timeout_seconds <= 0:
            raise ConfigError(
                f"agent_timeout_seconds must be > 0 when set, got {self.agent_timeout_seconds}.",
            )
        if self.terminate_grace_seconds < 0:
            raise ConfigError("terminate_grace_seconds must be >= 0.")
        if self.event_buffer_size < 1:
            raise ConfigError(f"event_buffer_size must be >= 1, got {self.event_buffer_size}.")
        if self.prompt is None:
            raise NoPromptError()

    def agent_display(self) -> str:
        """Human-readable agent invocation, e.g. ``claude -p``."""

        return shlex.join([self.agent_command, *self.agent_args])


def parse_agent_args(raw: str) -> tuple[str, ...]:
    """Split an argument string the way a POSIX shell would."""

    try:
        return tuple(shlex.split(raw))
    except ValueError as error:
        raise ConfigError(f"Invalid agent arguments {raw!r}: {error}") from error


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ConfigError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ConfigError(f"Invalid number value for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {value!r}")
