from __future__ import annotations

import os
import signal
import threading
import time

import allure
import pytest

from wiggle_puppy.backend import ProcessDriver, ProcessRequest, ProcessResult
from wiggle_puppy.config import PromptSource
from wiggle_puppy.errors import DependencyGraphError, PromptReadError, SpawnError
from wiggle_puppy.events import (
    CompletionObserved,
    CompletionReason,
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
from wiggle_puppy.runner import IterationRunner

pytestmark = [
    allure.epic("Iteration Loop"),
    allure.feature("Iteration Runner"),
]


def _run(config):
    runner = IterationRunner(config)
    subscription = runner.subscribe()
    result = runner.run()
    return result, list(subscription)


def _of_type(events, event_type):
    return [event for event in events if isinstance(event, event_type)]


class _RecordingDriver(ProcessDriver):
    """Fake driver that records prompts and runs a hook per call."""

    def __init__(self, on_call=None) -> None:
        super().__init__()
        self.prompts: list[str] = []
        self._on_call = on_call

    def run(self, request: ProcessRequest) -> ProcessResult:
        self.prompts.append(request.prompt)
        output = ""
        if self._on_call is not None:
            output = self._on_call(len(self.prompts)) or ""
        return ProcessResult(
            exit_code=0,
            stdout=output,
            stderr="",
            combined=output,
            duration_seconds=0.0,
        )


def test_stops_at_max_iterations(echo_config, read_calls) -> None:
    result, events = _run(echo_config(max_iterations=3))

    assert result.state is RunState.MAX_ITERATIONS_REACHED
    assert result.iterations == 3
    assert result.completion_reason is None
    assert read_calls() == 3
    assert [event.index for event in _of_type(events, IterationStarted)] == [1, 2, 3]


def test_completes_when_phrase_detected(echo_config, read_calls) -> None:
    result, events = _run(echo_config("--complete-on", "3", max_iterations=10))

    assert result.state is RunState.COMPLETED
    assert result.completion_reason is CompletionReason.COMPLETION_PHRASE_DETECTED
    assert result.iterations == 3
    assert read_calls() == 3
    finished = _of_type(events, IterationFinished)
    assert [event.completion_detected for event in finished] == [False, False, True]
    assert [event.index for event in _of_type(events, CompletionObserved)] == [3]


def test_event_stream_is_bracketed(echo_config) -> None:
    result, events = _run(echo_config(max_iterations=2))

    assert isinstance(events[0], RunStarted)
    assert isinstance(events[-1], RunFinished)
    assert len(_of_type(events, RunFinished)) == 1
    assert events[-1].state is result.state
    outputs = _of_type(events, IterationOutput)
    assert any(event.text == "> Fix the failing tests." for event in outputs)
    assert all(not event.text.endswith("\n") for event in outputs)


def test_instruction_appended_to_prompt(echo_config) -> None:
    driver = _RecordingDriver()
    runner = IterationRunner(echo_config(max_iterations=1), driver=driver)

    runner.run()

    assert driver.prompts[0].startswith("Fix the failing tests.")
    assert driver.prompts[0].rstrip().endswith("Only output it once at the very end.")


def test_instruction_can_be_disabled(echo_config) -> None:
    driver = _RecordingDriver()
    config = echo_config(max_iterations=1, auto_completion_instruction=False)

    IterationRunner(config, driver=driver).run()

    assert driver.prompts == ["Fix the failing tests."]


def test_prompt_file_is_reread_each_iteration(echo_config, tmp_path) -> None:
    prompt_path = tmp_path / "PROMPT.md"
    prompt_path.write_text("version 1", "utf-8")

    def _edit(call: int) -> None:
        prompt_path.write_text(f"version {call + 1}", "utf-8")

    driver = _RecordingDriver(on_call=_edit)
    config = echo_config(
        max_iterations=3,
        prompt=PromptSource.from_file(prompt_path),
        auto_completion_instruction=False,
    )

    IterationRunner(config, driver=driver).run()

    assert driver.prompts == ["version 1", "version 2", "version 3"]


def test_missing_prompt_file_fails_before_spawning(echo_config, read_calls, tmp_path) -> None:
    config = echo_config(prompt=PromptSource.from_file(tmp_path / "missing.md"))

    result, events = _run(config)

    assert result.state is RunState.FAILED
    assert isinstance(result.error, PromptReadError)
    assert events[-1].error is result.error
    assert read_calls() == 0


def test_missing_agent_fails(echo_config) -> None:
    result, _ = _run(echo_config(agent_command="wiggle-puppy-no-such-agent", agent_args=()))

    assert result.state is RunState.FAILED
    assert isinstance(result.error, SpawnError)
    assert result.iterations == 1


def test_nonzero_exit_is_not_fatal(echo_config, read_calls) -> None:
    result, events = _run(echo_config("--exit-code", "2", max_iterations=2))

    assert result.state is RunState.MAX_ITERATIONS_REACHED
    assert read_calls() == 2
    assert [event.exit_code for event in _of_type(events, IterationFinished)] == [2, 2]
    assert len(_of_type(events, RunWarning)) == 2


def test_run_can_only_be_called_once(echo_config) -> None:
    runner = IterationRunner(echo_config(max_iterations=1))
    runner.run()

    with pytest.raises(RuntimeError):
        runner.run()


def test_document_items_worked_in_dependency_order(
    echo_config,
    write_document,
    read_calls,
) -> None:
    path = write_document(
        [
            {"id": "B", "priority": 1, "depends_on": ["A"]},
            {"id": "A", "priority": 2},
        ],
    )
    config = echo_config("--pass-next", str(path), work_document_path=path, max_iterations=5)

    result, events = _run(config)

    assert result.state is RunState.COMPLETED
    assert result.completion_reason is CompletionReason.ALL_ITEMS_COMPLETE
    assert result.iterations == 2
    assert read_calls() == 2
    assert [event.item_id for event in _of_type(events, WorkItemSelected)] == ["A", "B"]
    assert [event.item_id for event in _of_type(events, WorkItemCompleted)] == ["A", "B"]


def test_phrase_with_pending_items_keeps_iterating(
    echo_config,
    write_document,
    read_calls,
) -> None:
    path = write_document([{"id": "A", "priority": 1}, {"id": "B", "priority": 2}])
    config = echo_config("--complete-on", "1", work_document_path=path, max_iterations=2)

    result, events = _run(config)

    assert result.state is RunState.MAX_ITERATIONS_REACHED
    assert read_calls() == 2
    warnings = _of_type(events, RunWarning)
    assert len(warnings) == 2
    assert "still pending" in warnings[0].message


def test_phrase_and_finished_document_reports_both(echo_config, write_document) -> None:
    path = write_document([{"id": "A", "priority": 1}])
    config = echo_config(
        "--pass-next",
        str(path),
        "--complete-on",
        "1",
        work_document_path=path,
    )

    result, _ = _run(config)

    assert result.state is RunState.COMPLETED
    assert result.completion_reason is CompletionReason.BOTH
    assert result.iterations == 1


def test_finished_document_short_circuits(echo_config, write_document, read_calls) -> None:
    path = write_document([{"id": "A", "priority": 1, "passes": True}])

    result, events = _run(echo_config(work_document_path=path))

    assert result.state is RunState.COMPLETED
    assert result.completion_reason is CompletionReason.ALL_ITEMS_COMPLETE
    assert result.iterations == 0
    assert read_calls() == 0
    assert not _of_type(events, IterationStarted)
    assert not _of_type(events, IterationFinished)


def test_finished_document_spawns_when_short_circuit_disabled(
    echo_config,
    write_document,
    read_calls,
) -> None:
    path = write_document([{"id": "A", "priority": 1, "passes": True}])
    config = echo_config(work_document_path=path, short_circuit_when_complete=False)

    result, _ = _run(config)

    assert result.state is RunState.COMPLETED
    assert result.iterations == 1
    assert read_calls() == 1


def test_dependency_cycle_fails_without_spawning(echo_config, write_document, read_calls) -> None:
    path = write_document(
        [
            {"id": "A", "priority": 1, "depends_on": ["B"]},
            {"id": "B", "priority": 2, "depends_on": ["A"]},
        ],
    )

    result, events = _run(echo_config(work_document_path=path))

    assert result.state is RunState.FAILED
    assert isinstance(result.error, DependencyGraphError)
    assert result.error.is_cycle
    assert read_calls() == 0
    assert isinstance(events[-1], RunFinished)


def test_cancel_mid_stream_stops_without_another_iteration(echo_config, read_calls) -> None:
    runner = IterationRunner(echo_config("--sleep", "30", max_iterations=5))
    subscription = runner.subscribe()
    results = []
    worker = threading.Thread(target=lambda: results.append(runner.run()))
    begin = time.monotonic()
    worker.start()

    pid = None
    for event in subscription:
        if isinstance(event, IterationOutput) and event.text.startswith("pid="):
            pid = int(event.text.removeprefix("pid="))
            runner.handle.cancel()
    worker.join(timeout=10)

    assert not worker.is_alive()
    assert time.monotonic() - begin < 15
    assert results[0].state is RunState.CANCELLED
    assert results[0].iterations == 1
    assert read_calls() == 1
    assert pid is not None
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_cancel_during_delay(echo_config, read_calls) -> None:
    runner = IterationRunner(echo_config(max_iterations=5, delay_seconds=30.0))
    subscription = runner.subscribe()
    results = []
    worker = threading.Thread(target=lambda: results.append(runner.run()))
    begin = time.monotonic()
    worker.start()

    for event in subscription:
        if isinstance(event, IterationFinished):
            runner.handle.cancel()
    worker.join(timeout=10)

    assert time.monotonic() - begin < 15
    assert results[0].state is RunState.CANCELLED
    assert read_calls() == 1


def test_cancel_before_run_spawns_nothing(echo_config, read_calls) -> None:
    runner = IterationRunner(echo_config())
    runner.handle.cancel()

    result = runner.run()

    assert result.state is RunState.CANCELLED
    assert result.iterations == 0
    assert read_calls() == 0


@pytest.mark.skipif(not hasattr(signal, "pthread_kill"), reason="requires POSIX signals")
def test_cancel_from_signal_handler_on_runner_thread(echo_config, read_calls) -> None:
    runner = IterationRunner(echo_config("--sleep", "30", max_iterations=5))
    subscription = runner.subscribe()
    main_thread_id = threading.main_thread().ident

    def _interrupt_when_agent_starts() -> None:
        for event in subscription:
            if isinstance(event, IterationOutput) and event.text.startswith("pid="):
                signal.pthread_kill(main_thread_id, signal.SIGUSR1)
                return

    previous = signal.signal(signal.SIGUSR1, lambda *_: runner.handle.cancel())
    watcher = threading.Thread(target=_interrupt_when_agent_starts, daemon=True)
    begin = time.monotonic()
    try:
        watcher.start()
        result = runner.run()
    finally:
        signal.signal(signal.SIGUSR1, previous)
    watcher.join(timeout=5)

    assert time.monotonic() - begin < 15
    assert result.state is RunState.CANCELLED
    assert result.iterations == 1
    assert read_calls() == 1


def test_stream_read_error_becomes_warning(echo_config, broken_stderr) -> None:
    result, events = _run(echo_config(max_iterations=1))

    assert result.state is RunState.MAX_ITERATIONS_REACHED
    assert result.error is None
    warnings = [event.message for event in _of_type(events, RunWarning)]
    assert warnings == ["error reading stderr: simulated read failure"]
    assert [event.exit_code for event in _of_type(events, IterationFinished)] == [0]
