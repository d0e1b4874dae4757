"""CLI controller: runs the iteration loop and renders its events as text."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from wiggle_puppy.config import PromptSource, RunConfig, parse_agent_args
from wiggle_puppy.events import (
    CompletionObserved,
    DocumentLoaded,
    Event,
    IterationFinished,
    IterationOutput,
    IterationStarted,
    RunFinished,
    RunStarted,
    RunState,
    RunWarning,
    WorkItemCompleted,
    WorkItemSelected,
)
from wiggle_puppy.runner import IterationRunner, RunnerHandle, RunResult

logger = logging.getLogger(__name__)

EXIT_CODES: dict[RunState, int] = {
    RunState.COMPLETED: 0,
    RunState.FAILED: 1,
    RunState.MAX_ITERATIONS_REACHED: 3,
    RunState.CANCELLED: 130,
}


@dataclass(slots=True)
class RunCommand:
    """Input for the main run command."""

    prompt_file: Path | None = None
    prompt_text: str | None = None
    agent: str | None = None
    agent_args: str | None = None
    max_iterations: int | None = None
    state_file: Path | None = None
    completion_phrase: str | None = None
    delay_seconds: float | None = None
    verbose: bool = False
    auto_instruction: bool = True
    timeout_seconds: float | None = None
    always_spawn: bool = False


class RunCliController:
    """Drives one :class:`IterationRunner` and streams its events as lines."""

    def build_config(self, command: RunCommand) -> RunConfig:
        """Merge CLI inputs over environment defaults and validate the result."""

        base = RunConfig.from_env()
        prompt: PromptSource | None = None
        if command.prompt_text is not None:
            prompt = PromptSource.inline(command.prompt_text)
        elif command.prompt_file is not None:
            prompt = PromptSource.from_file(command.prompt_file)

        config = base.with_overrides(
            agent_command=command.agent,
            agent_args=(
                parse_agent_args(command.agent_args) if command.agent_args is not None else None
            ),
            max_iterations=command.max_iterations,
            delay_seconds=command.delay_seconds,
            completion_phrase=command.completion_phrase,
            prompt=prompt,
            work_document_path=command.state_file,
            agent_timeout_seconds=command.timeout_seconds,
        )
        if command.verbose:
            config = config.with_overrides(verbose=True)
        if not command.auto_instruction:
            config = config.with_overrides(auto_completion_instruction=False)
        if command.always_spawn:
            config = config.with_overrides(short_circuit_when_complete=False)
        config.validate()
        return config

    def run(self, command: RunCommand, emit: Callable[[str], None]) -> RunResult:
        """Run to a terminal state, passing rendered lines to ``emit`` as they arrive."""

        config = self.build_config(command)
        runner = IterationRunner(config)
        subscription = runner.subscribe()

        result_holder: list[RunResult] = []
        error_holder: list[BaseException] = []

        def _run() -> None:
            try:
                result_holder.append(runner.run())
            except BaseException as exc:  # noqa: BLE001
                error_holder.append(exc)

        worker_thread = threading.Thread(target=_run, name="wiggle-puppy-runner", daemon=True)
        with _signal_handlers(runner.handle):
            worker_thread.start()
            for event in subscription:
                for line in format_event(event, verbose=config.verbose):
                    emit(line)
            worker_thread.join()

        if subscription.dropped:
            logger.warning("Dropped %d event(s): output consumer fell behind", subscription.dropped)
        if error_holder:
            raise error_holder[0]
        return result_holder[0]


def format_event(event: Event, *, verbose: bool = False) -> list[str]:  # noqa: C901, PLR0911
    """Render one event as zero or more display lines."""

    if isinstance(event, RunStarted):
        return [f"Starting run (max {event.max_iterations} iterations)"]
    if isinstance(event, IterationStarted):
        return [f"=== Iteration {event.index}/{event.max_iterations} ==="]
    if isinstance(event, DocumentLoaded):
        return [f"Work items: {event.completed}/{event.total} complete"] if verbose else []
    if isinstance(event, WorkItemSelected):
        return [f"Working on {event.item_id}: {event.title} (priority {event.priority})"]
    if isinstance(event, IterationOutput):
        return [f"[stderr] {event.text}" if event.is_stderr else event.text]
    if isinstance(event, CompletionObserved):
        return [f"Completion phrase seen in iteration {event.index}"] if verbose else []
    if isinstance(event, RunWarning):
        return [f"Warning: {event.message}"]
    if isinstance(event, IterationFinished):
        if not verbose:
            return []
        suffix = " (timed out)" if event.timed_out else ""
        return [
            f"Iteration {event.index} finished: exit code {event.exit_code}, "
            f"{event.line_count} lines in {event.duration_seconds:.1f}s{suffix}",
        ]
    if isinstance(event, WorkItemCompleted):
        return [f"Completed {event.item_id}: {event.title}"]
    if isinstance(event, RunFinished):
        return [
            f"Run {event.describe()} after {event.iterations} iteration(s) "
            f"in {event.elapsed_seconds:.1f}s",
        ]
    return []


@contextmanager
def _signal_handlers(handle: RunnerHandle) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s; cancelling run", name)
        handle.cancel()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
