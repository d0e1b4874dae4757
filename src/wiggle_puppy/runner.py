"""Iteration runner: drives the agent until completion, budget, cancel, or failure."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from wiggle_puppy.backend import OutputLine, ProcessDriver, ProcessRequest, ProcessResult
from wiggle_puppy.cancellation import CancellationToken
from wiggle_puppy.completion import CompletionDetector
from wiggle_puppy.config import RunConfig
from wiggle_puppy.document import WorkDocument, WorkItem, load_document
from wiggle_puppy.errors import CancellationRequested, WigglePuppyError
from wiggle_puppy.events import (
    CompletionObserved,
    CompletionReason,
    DocumentLoaded,
    Event,
    EventBus,
    EventSubscription,
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
from wiggle_puppy.graph import next_eligible
from wiggle_puppy.prompts import (
    ALL_ITEMS_COMPLETE_NOTICE,
    build_iteration_prompt,
    render_work_item,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IterationOutcome:
    """Result of one spawn-stream-evaluate cycle."""

    index: int
    exit_code: int | None
    output: str
    stdout: str
    stderr: str
    duration_seconds: float
    completion_detected: bool
    timed_out: bool = False
    cancelled: bool = False

    @classmethod
    def from_process(
        cls,
        index: int,
        result: ProcessResult,
        *,
        completion_detected: bool,
    ) -> IterationOutcome:
        return cls(
            index=index,
            exit_code=result.exit_code,
            output=result.combined,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_seconds=result.duration_seconds,
            completion_detected=completion_detected,
            timed_out=result.timed_out,
            cancelled=result.cancelled,
        )

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    @property
    def line_count(self) -> int:
        return len(self.output.splitlines())


@dataclass(frozen=True, slots=True)
class RunResult:
    """Terminal summary returned by :meth:`IterationRunner.run`."""

    state: RunState
    iterations: int
    elapsed_seconds: float
    completion_reason: CompletionReason | None = None
    error: WigglePuppyError | None = None

    @property
    def completed(self) -> bool:
        return self.state is RunState.COMPLETED


class RunnerHandle:
    """Cancellation handle safe to trigger from signal handlers or other threads."""

    def __init__(self, token: CancellationToken) -> None:
        self._token = token

    def cancel(self) -> None:
        self._token.cancel()

    @property
    def is_cancelled(self) -> bool:
        return self._token.is_cancelled


class IterationRunner:
    """Runs the configured agent repeatedly, one process at a time.

    Prompt text and the work document are re-read at the top of every
    iteration. Progress is published on :attr:`bus`; the final
    :class:`RunFinished` event is published exactly once and closes the bus.
    """

    def __init__(
        self,
        config: RunConfig,
        *,
        bus: EventBus | None = None,
        driver: ProcessDriver | None = None,
    ) -> None:
        config.validate()
        self.config = config
        self.bus = bus or EventBus(max_buffer=config.event_buffer_size)
        self._token = CancellationToken()
        self.handle = RunnerHandle(self._token)
        self._detector = CompletionDetector(config.completion_phrase)
        self._driver = driver or ProcessDriver(
            terminate_grace_seconds=config.terminate_grace_seconds,
        )
        self._state = RunState.IDLE
        self._iteration = 0
        self._started_at = 0.0
        self._result: RunResult | None = None

    def subscribe(self, *, max_buffer: int | None = None) -> EventSubscription:
        return self.bus.subscribe(max_buffer=max_buffer)

    def run(self) -> RunResult:
        if self._state is not RunState.IDLE:
            raise RuntimeError("IterationRunner.run() can only be called once per runner")
        self._state = RunState.RUNNING
        self._started_at = time.monotonic()
        self._publish(RunStarted(max_iterations=self.config.max_iterations))
        logger.info(
            "Starting run: agent=%s max_iterations=%d",
            self.config.agent_display(),
            self.config.max_iterations,
        )
        try:
            return self._loop()
        except CancellationRequested:
            return self._finish(RunState.CANCELLED)
        except WigglePuppyError as error:
            logger.error("Run failed: %s", error)  # noqa: TRY400
            return self._finish(RunState.FAILED, error=error)
        except BaseException as error:
            self._finish(RunState.FAILED, error=WigglePuppyError(f"Unexpected error: {error!r}"))
            raise

    def _loop(self) -> RunResult:  # noqa: C901
        config = self.config
        while True:
            self._raise_if_cancelled()
            document: WorkDocument | None = None
            if config.work_document_path is not None:
                document = self._load_document()
                if document.is_complete() and config.short_circuit_when_complete:
                    logger.info("All work items already pass; not spawning the agent")
                    return self._finish(
                        RunState.COMPLETED,
                        reason=CompletionReason.ALL_ITEMS_COMPLETE,
                    )

            self._iteration += 1
            index = self._iteration
            self._state = RunState.RUNNING
            self._publish(IterationStarted(index=index, max_iterations=config.max_iterations))
            logger.info("Iteration %d/%d started", index, config.max_iterations)

            assert config.prompt is not None  # noqa: S101
            base_prompt = config.prompt.read()

            work_context: str | None = None
            selected: WorkItem | None = None
            if document is not None:
                selected = next_eligible(document)
                if selected is None:
                    work_context = ALL_ITEMS_COMPLETE_NOTICE
                else:
                    self._publish(
                        WorkItemSelected(
                            item_id=selected.id,
                            title=selected.title,
                            priority=selected.priority,
                        ),
                    )
                    work_context = render_work_item(document, selected)

            prompt = build_iteration_prompt(
                base_prompt,
                work_context=work_context,
                completion_phrase=(
                    config.completion_phrase if config.auto_completion_instruction else None
                ),
            )

            self._raise_if_cancelled()
            outcome = self._run_agent(index, prompt)
            self._publish(
                IterationFinished(
                    index=index,
                    exit_code=outcome.exit_code,
                    duration_seconds=outcome.duration_seconds,
                    completion_detected=outcome.completion_detected,
                    timed_out=outcome.timed_out,
                    line_count=outcome.line_count,
                ),
            )
            logger.info(
                "Iteration %d finished: exit_code=%s duration=%.1fs completion=%s",
                index,
                outcome.exit_code,
                outcome.duration_seconds,
                outcome.completion_detected,
            )
            if outcome.cancelled:
                raise CancellationRequested()
            self._raise_if_cancelled()
            if not outcome.success:
                self._warn(_failure_summary(outcome))

            if config.work_document_path is not None:
                document = self._load_document()
                if selected is not None:
                    current = document.get_item(selected.id)
                    if current is not None and current.passes:
                        self._publish(WorkItemCompleted(item_id=current.id, title=current.title))
                if document.is_complete():
                    return self._finish(
                        RunState.COMPLETED,
                        reason=(
                            CompletionReason.BOTH
                            if outcome.completion_detected
                            else CompletionReason.ALL_ITEMS_COMPLETE
                        ),
                    )
                if outcome.completion_detected:
                    self._warn(
                        "Completion phrase detected but "
                        f"{document.total - document.completed_count} work item(s) still pending",
                    )
            elif outcome.completion_detected:
                return self._finish(
                    RunState.COMPLETED,
                    reason=CompletionReason.COMPLETION_PHRASE_DETECTED,
                )

            if index >= config.max_iterations:
                return self._finish(RunState.MAX_ITERATIONS_REACHED)

            self._state = RunState.CONTINUING
            if self._token.wait(config.delay_seconds):
                raise CancellationRequested()

    def _run_agent(self, index: int, prompt: str) -> IterationOutcome:
        scanner = self._detector.scanner()

        def _on_output(line: OutputLine) -> None:
            self._publish(
                IterationOutput(index=index, text=line.text.rstrip("\n"), is_stderr=line.is_stderr),
            )
            if scanner.feed(line.text):
                self._publish(CompletionObserved(index=index))

        result = self._driver.run(
            ProcessRequest(
                command=self.config.agent_command,
                args=self.config.agent_args,
                prompt=prompt,
                cancel_token=self._token,
                on_output=_on_output,
                on_stream_error=self._warn,
                timeout_seconds=self.config.agent_timeout_seconds,
            ),
        )
        detected = not result.cancelled and self._detector.detect(result.combined)
        return IterationOutcome.from_process(index, result, completion_detected=detected)

    def _load_document(self) -> WorkDocument:
        assert self.config.work_document_path is not None  # noqa: S101
        document = load_document(self.config.work_document_path)
        self._publish(DocumentLoaded(completed=document.completed_count, total=document.total))
        return document

    def _raise_if_cancelled(self) -> None:
        if self._token.is_cancelled:
            raise CancellationRequested()

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self._publish(RunWarning(message=message))

    def _publish(self, event: Event) -> None:
        self.bus.publish(event)

    def _finish(
        self,
        state: RunState,
        *,
        reason: CompletionReason | None = None,
        error: WigglePuppyError | None = None,
    ) -> RunResult:
        if self._result is not None:
            return self._result
        self._state = state
        result = RunResult(
            state=state,
            iterations=self._iteration,
            elapsed_seconds=time.monotonic() - self._started_at,
            completion_reason=reason,
            error=error,
        )
        self._result = result
        self._publish(
            RunFinished(
                state=result.state,
                iterations=result.iterations,
                elapsed_seconds=result.elapsed_seconds,
                completion_reason=result.completion_reason,
                error=result.error,
            ),
        )
        self.bus.close()
        logger.info(
            "Run finished: state=%s iterations=%d elapsed=%.1fs",
            state.value,
            result.iterations,
            result.elapsed_seconds,
        )
        return result


def _failure_summary(outcome: IterationOutcome) -> str:
    if outcome.timed_out:
        return f"Agent timed out in iteration {outcome.index}"
    return f"Agent exited with code {outcome.exit_code} in iteration {outcome.index}"
