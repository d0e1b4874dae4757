"""Agent process backends."""

from wiggle_puppy.backend.base import OutputLine, ProcessRequest, ProcessResult
from wiggle_puppy.backend.process_driver import ProcessDriver

__all__ = [
    "OutputLine",
    "ProcessDriver",
    "ProcessRequest",
    "ProcessResult",
]
