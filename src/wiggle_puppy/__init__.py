"""Iterative coding-agent runner."""

from wiggle_puppy.config import PromptSource, RunConfig
from wiggle_puppy.events import CompletionReason, EventBus, RunState
from wiggle_puppy.runner import IterationRunner, RunnerHandle, RunResult

__version__ = "0.1.0"

__all__ = [
    "CompletionReason",
    "EventBus",
    "IterationRunner",
    "PromptSource",
    "RunConfig",
    "RunResult",
    "RunState",
    "RunnerHandle",
    "__version__",
]
