"""Completion phrase detection over agent output."""

from __future__ import annotations

from wiggle_puppy.config import DEFAULT_COMPLETION_PHRASE
from wiggle_puppy.errors import ConfigError


class CompletionDetector:
    """Case-sensitive exact substring match against the configured phrase."""

    def __init__(self, phrase: str = DEFAULT_COMPLETION_PHRASE) -> None:
        if not phrase:
            raise ConfigError("Completion phrase must be a non-empty string.")
        self.phrase = phrase

    def detect(self, text: str) -> bool:
        """Check the complete accumulated output of one iteration."""

        return self.phrase in text

    def scanner(self) -> CompletionScanner:
        return CompletionScanner(self.phrase)


class CompletionScanner:
    """Incremental observer fed with output chunks as they arrive.

    Only a tail of ``len(phrase) - 1`` characters is retained between chunks,
    which is enough to catch a phrase split across flush boundaries.
    """

    def __init__(self, phrase: str) -> None:
        self.phrase = phrase
        self._tail = ""
        self.found = False

    def feed(self, chunk: str) -> bool:
        """Add one chunk; return ``True`` only on the chunk that completes the phrase."""

        if self.found:
            return False
        window = self._tail + chunk
        if self.phrase in window:
            self.found = True
            self._tail = ""
            return True
        keep = len(self.phrase) - 1
        self._tail = window[-keep:] if keep else ""
        return False
