"""Backend interface for one agent process invocation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from wiggle_puppy.cancellation import CancellationToken

TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True, slots=True)
class OutputLine:
    """One chunk of agent output as it arrived on a pipe."""

    text: str
    is_stderr: bool = False


@dataclass(slots=True)
class ProcessRequest:
    """Inputs required to run the agent once."""

    command: str
    args: tuple[str, ...]
    prompt: str
    cancel_token: CancellationToken
    on_output: Callable[[OutputLine], None] | None = None
    on_stream_error: Callable[[str], None] | None = None
    timeout_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Terminal outcome of one process run."""

    exit_code: int | None
    stdout: str
    stderr: str
    combined: str
    duration_seconds: float
    timed_out: bool = False
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.cancelled and not self.timed_out

    @property
    def line_count(self) -> int:
        return len(self.combined.splitlines())

    def last_lines(self, count: int) -> list[str]:
        if count <= 0:
            return []
        return self.combined.splitlines()[-count:]
