"""Lifecycle events and the bounded event bus consumed by presentation layers."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum

from wiggle_puppy.config import DEFAULT_EVENT_BUFFER_SIZE
from wiggle_puppy.errors import WigglePuppyError

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    """Iteration runner state machine."""

    IDLE = "idle"
    RUNNING = "running"
    CONTINUING = "continuing"
    COMPLETED = "completed"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {
        RunState.COMPLETED,
        RunState.MAX_ITERATIONS_REACHED,
        RunState.CANCELLED,
        RunState.FAILED,
    },
)


class CompletionReason(str, Enum):
    """Why a run reached ``COMPLETED``."""

    ALL_ITEMS_COMPLETE = "all_items_complete"
    COMPLETION_PHRASE_DETECTED = "completion_phrase_detected"
    BOTH = "both"

    def describe(self) -> str:
        return _COMPLETION_DESCRIPTIONS[self]


_COMPLETION_DESCRIPTIONS = {
    CompletionReason.ALL_ITEMS_COMPLETE: "all work items complete",
    CompletionReason.COMPLETION_PHRASE_DETECTED: "completion phrase detected",
    CompletionReason.BOTH: "all work items complete and completion phrase detected",
}


@dataclass(frozen=True, slots=True)
class RunStarted:
    max_iterations: int


@dataclass(frozen=True, slots=True)
class IterationStarted:
    index: int
    max_iterations: int


@dataclass(frozen=True, slots=True)
class DocumentLoaded:
    completed: int
    total: int


@dataclass(frozen=True, slots=True)
class WorkItemSelected:
    item_id: str
    title: str
    priority: int


@dataclass(frozen=True, slots=True)
class IterationOutput:
    index: int
    text: str
    is_stderr: bool = False


@dataclass(frozen=True, slots=True)
class CompletionObserved:
    """Completion phrase seen in live output before the process exited."""

    index: int


@dataclass(frozen=True, slots=True)
class RunWarning:
    message: str


@dataclass(frozen=True, slots=True)
class IterationFinished:
    index: int
    exit_code: int | None
    duration_seconds: float
    completion_detected: bool
    timed_out: bool
    line_count: int


@dataclass(frozen=True, slots=True)
class WorkItemCompleted:
    item_id: str
    title: str


@dataclass(frozen=True, slots=True)
class RunFinished:
    state: RunState
    iterations: int
    elapsed_seconds: float
    completion_reason: CompletionReason | None = None
    error: WigglePuppyError | None = None

    def describe(self) -> str:
        if self.state is RunState.COMPLETED and self.completion_reason is not None:
            return f"completed: {self.completion_reason.describe()}"
        if self.state is RunState.MAX_ITERATIONS_REACHED:
            return "stopped: maximum iterations reached"
        if self.state is RunState.CANCELLED:
            return "stopped: cancelled"
        if self.state is RunState.FAILED:
            return f"failed: {self.error}"
        return self.state.value


Event = (
    RunStarted
    | IterationStarted
    | DocumentLoaded
    | WorkItemSelected
    | IterationOutput
    | CompletionObserved
    | RunWarning
    | IterationFinished
    | WorkItemCompleted
    | RunFinished
)


class EventSubscription:
    """One consumer's bounded view of the bus.

    When the buffer is full the oldest event is discarded so the producer never
    blocks; :attr:`dropped` counts discarded events.
    """

    def __init__(self, bus: EventBus, max_buffer: int) -> None:
        if max_buffer < 1:
            raise ValueError(f"max_buffer must be >= 1, got {max_buffer}")
        self._bus = bus
        self._buffer: deque[Event] = deque(maxlen=max_buffer)
        self._condition = threading.Condition()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, event: Event) -> None:
        with self._condition:
            if self._closed:
                return
            if len(self._buffer) == self._buffer.maxlen:
                self.dropped += 1
            self._buffer.append(event)
            self._condition.notify_all()

    def _close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    def get(self, timeout: float | None = None) -> Event | None:
        """Next event, or ``None`` on timeout or once closed and drained."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while not self._buffer:
                if self._closed:
                    return None
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._condition.wait(remaining)
            return self._buffer.popleft()

    def drain(self) -> list[Event]:
        """Take every buffered event without waiting."""

        with self._condition:
            events = list(self._buffer)
            self._buffer.clear()
            return events

    def unsubscribe(self) -> None:
        self._bus.unsubscribe(self)

    def __iter__(self) -> Iterator[Event]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class EventBus:
    """Single-producer channel fanning events out to zero or more subscriptions."""

    def __init__(self, *, max_buffer: int = DEFAULT_EVENT_BUFFER_SIZE) -> None:
        self.max_buffer = max_buffer
        self._lock = threading.Lock()
        self._subscriptions: list[EventSubscription] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, *, max_buffer: int | None = None) -> EventSubscription:
        subscription = EventSubscription(
            self,
            self.max_buffer if max_buffer is None else max_buffer,
        )
        with self._lock:
            if self._closed:
                subscription._close()  # noqa: SLF001
            else:
                self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        subscription._close()  # noqa: SLF001

    def publish(self, event: Event) -> None:
        with self._lock:
            if self._closed:
                logger.debug("Event published after close: %r", event)
                return
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription._push(event)  # noqa: SLF001

    def close(self) -> None:
        """Stop accepting events; subscribers finish after draining."""

        with self._lock:
            self._closed = True
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription._close()  # noqa: SLF001
