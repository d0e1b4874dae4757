"""Subprocess driver that streams agent output and honours cancellation."""

from __future__ import annotations

import logging
import queue
import subprocess
import threading
import time
from contextlib import ExitStack
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import IO, NamedTuple

from wiggle_puppy.backend.base import (
    TIMEOUT_EXIT_CODE,
    OutputLine,
    ProcessRequest,
    ProcessResult,
)
from wiggle_puppy.errors import SpawnError

logger = logging.getLogger(__name__)

PROMPT_PLACEHOLDER = "{prompt}"
PROMPT_FILE_PLACEHOLDER = "{prompt_file}"

_LINE = "line"
_STREAM_ERROR = "stream_error"
_EOF = "eof"
_EXITED = "exited"
_CANCELLED = "cancelled"


class _Signal(NamedTuple):
    kind: str
    text: str = ""
    is_stderr: bool = False
    exit_code: int | None = None


class ProcessDriver:
    """Run the agent command once per call, one child process at a time.

    Output pipes are read by pump threads feeding a single queue. The calling
    thread blocks on that queue, so a new line, process exit, timeout, or a
    cancellation request (which posts its own wake-up item) is handled as soon
    as it happens.
    """

    def __init__(
        self,
        *,
        terminate_grace_seconds: float = 2.0,
        exit_drain_seconds: float = 1.0,
    ) -> None:
        self.terminate_grace_seconds = terminate_grace_seconds
        self.exit_drain_seconds = exit_drain_seconds

    def run(self, request: ProcessRequest) -> ProcessResult:
        with ExitStack() as stack:
            prompt_file: Path | None = None
            if any(PROMPT_FILE_PLACEHOLDER in arg for arg in request.args):
                workdir = Path(stack.enter_context(TemporaryDirectory(prefix="wiggle-puppy-")))
                prompt_file = workdir / "prompt.txt"
                prompt_file.write_text(request.prompt, "utf-8")
            argv = build_argv(
                command=request.command,
                args=request.args,
                prompt=request.prompt,
                prompt_file=prompt_file,
            )
            return self._run_argv(argv, request)

    def _run_argv(self, argv: list[str], request: ProcessRequest) -> ProcessResult:
        logger.debug("Spawning agent: %s", argv[:-1] if len(argv) > 1 else argv)
        start = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as error:
            raise SpawnError(request.command, str(error), not_found=True) from error
        except OSError as error:
            raise SpawnError(request.command, str(error)) from error

        signals: queue.SimpleQueue[_Signal] = queue.SimpleQueue()

        def _wake() -> None:
            signals.put(_Signal(_CANCELLED))

        threads = [
            threading.Thread(
                target=_pump,
                args=(process.stdout, signals, False),
                daemon=True,
                name="agent-stdout",
            ),
            threading.Thread(
                target=_pump,
                args=(process.stderr, signals, True),
                daemon=True,
                name="agent-stderr",
            ),
            threading.Thread(
                target=_await_exit,
                args=(process, signals),
                daemon=True,
                name="agent-wait",
            ),
        ]
        for thread in threads:
            thread.start()
        request.cancel_token.add_listener(_wake)
        try:
            return self._collect(process=process, signals=signals, request=request, start=start)
        finally:
            request.cancel_token.remove_listener(_wake)
            if process.poll() is None:
                _terminate_process(process, grace_seconds=self.terminate_grace_seconds)
            for thread in threads:
                thread.join(timeout=self.terminate_grace_seconds)
                if thread.is_alive():
                    # Another process still holds the pipe; the pump closes it on EOF.
                    logger.debug("Thread %s still reading after agent exit", thread.name)

    def _collect(  # noqa: C901, PLR0912
        self,
        *,
        process: subprocess.Popen[str],
        signals: queue.SimpleQueue[_Signal],
        request: ProcessRequest,
        start: float,
    ) -> ProcessResult:
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        combined_parts: list[str] = []
        open_streams = 2
        exited = False
        exit_code: int | None = None
        timed_out = False
        cancelled = False
        deadline = start + request.timeout_seconds if request.timeout_seconds else None
        drain_deadline: float | None = None

        while open_streams > 0 or not exited:
            now = time.monotonic()
            wait_for = _earliest(
                None if deadline is None or exited else deadline - now,
                None if drain_deadline is None else drain_deadline - now,
            )
            if wait_for is not None and wait_for <= 0:
                if exited:
                    logger.warning("Agent exited but its output pipes stayed open; not waiting")
                    break
                logger.warning("Agent timed out after %.1fs", now - start)
                _terminate_process(process, grace_seconds=self.terminate_grace_seconds)
                timed_out = True
                exit_code = TIMEOUT_EXIT_CODE
                break

            try:
                signal = signals.get(timeout=wait_for)
            except queue.Empty:
                continue

            if signal.kind == _LINE:
                (stderr_parts if signal.is_stderr else stdout_parts).append(signal.text)
                combined_parts.append(signal.text)
                if request.on_output is not None:
                    request.on_output(OutputLine(text=signal.text, is_stderr=signal.is_stderr))
            elif signal.kind == _STREAM_ERROR:
                logger.warning("Agent output stream error: %s", signal.text)
                if request.on_stream_error is not None:
                    request.on_stream_error(signal.text)
            elif signal.kind == _EOF:
                open_streams -= 1
            elif signal.kind == _EXITED:
                exited = True
                exit_code = signal.exit_code
                drain_deadline = time.monotonic() + self.exit_drain_seconds
            elif signal.kind == _CANCELLED:
                _terminate_process(process, grace_seconds=self.terminate_grace_seconds)
                cancelled = True
                exit_code = process.returncode
                break

        return ProcessResult(
            exit_code=exit_code,
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
            combined="".join(combined_parts),
            duration_seconds=time.monotonic() - start,
            timed_out=timed_out,
            cancelled=cancelled,
        )


def build_argv(
    *,
    command: str,
    args: tuple[str, ...],
    prompt: str,
    prompt_file: Path | None = None,
) -> list[str]:
    """Render the argument template for one invocation.

    Arguments containing ``{prompt}`` or ``{prompt_file}`` receive the prompt
    text or the prompt file path. Without any placeholder the prompt is passed
    as the final argument.
    """

    if not command.strip():
        raise SpawnError(command, "agent command is empty")
    has_placeholder = False
    rendered: list[str] = []
    for arg in args:
        if PROMPT_PLACEHOLDER in arg or PROMPT_FILE_PLACEHOLDER in arg:
            has_placeholder = True
            if PROMPT_FILE_PLACEHOLDER in arg:
                if prompt_file is None:
                    raise SpawnError(command, "{prompt_file} used without a prompt file")
                arg = arg.replace(PROMPT_FILE_PLACEHOLDER, str(prompt_file))  # noqa: PLW2901
            arg = arg.replace(PROMPT_PLACEHOLDER, prompt)  # noqa: PLW2901
        rendered.append(arg)
    if not has_placeholder:
        rendered.append(prompt)
    return [command, *rendered]


def _pump(stream: IO[str] | None, signals: queue.SimpleQueue[_Signal], is_stderr: bool) -> None:
    if stream is None:
        signals.put(_Signal(_EOF, is_stderr=is_stderr))
        return
    try:
        for line in iter(stream.readline, ""):
            signals.put(_Signal(_LINE, text=line, is_stderr=is_stderr))
    except (OSError, ValueError) as error:
        name = "stderr" if is_stderr else "stdout"
        signals.put(_Signal(_STREAM_ERROR, text=f"error reading {name}: {error}"))
    finally:
        stream.close()
        signals.put(_Signal(_EOF, is_stderr=is_stderr))


def _await_exit(process: subprocess.Popen[str], signals: queue.SimpleQueue[_Signal]) -> None:
    exit_code = process.wait()
    signals.put(_Signal(_EXITED, exit_code=exit_code))


def _earliest(*values: float | None) -> float | None:
    present = [value for value in values if value is not None]
    return min(present) if present else None


def _terminate_process(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=grace_seconds)
