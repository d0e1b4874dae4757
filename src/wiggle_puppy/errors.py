"""Error taxonomy for the iteration runner."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

UNRESOLVED_REFERENCE = "unresolved_reference"
CYCLE = "cycle"


class WigglePuppyError(RuntimeError):
    """Base class for every fatal runner error."""


class ConfigError(WigglePuppyError):
    """Run configuration is invalid."""


class NoPromptError(ConfigError):
    """Neither a prompt file nor inline prompt text was configured."""

    def __init__(self) -> None:
        super().__init__("No prompt provided: pass a prompt file or inline prompt text.")


class IoError(WigglePuppyError):
    """A file the runner depends on could not be read."""

    def __init__(self, message: str, *, path: Path) -> None:
        super().__init__(message)
        self.path = path


class PromptReadError(IoError):
    """Prompt file is missing or unreadable."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Failed to read prompt file {str(path)!r}: {reason}", path=path)


class WorkDocumentError(WigglePuppyError):
    """Base class for work document failures."""


class DocumentReadError(IoError, WorkDocumentError):
    """Work document file is missing or unreadable."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Failed to read work document {str(path)!r}: {reason}", path=path)


class DocumentParseError(WorkDocumentError):
    """Work document is not valid JSON or does not match the expected shape."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        location = f" in {str(path)!r}" if path is not None else ""
        super().__init__(f"Invalid work document{location}: {message}")
        self.path = path


class DependencyGraphError(WorkDocumentError):
    """Unfinished work items can never become eligible.

    ``kind`` is either :data:`UNRESOLVED_REFERENCE` (a ``depends_on`` id names no
    item in the document) or :data:`CYCLE` (unfinished items wait on each other).
    """

    def __init__(
        self,
        kind: str,
        *,
        item_ids: Iterable[str],
        missing_ids: Iterable[str] = (),
    ) -> None:
        self.kind = kind
        self.item_ids = tuple(sorted(set(item_ids)))
        self.missing_ids = tuple(sorted(set(missing_ids)))
        if kind == UNRESOLVED_REFERENCE:
            message = (
                f"Work items {list(self.item_ids)} depend on unknown ids {list(self.missing_ids)}"
            )
        elif kind == CYCLE:
            message = f"Dependency cycle among unfinished work items {list(self.item_ids)}"
        else:
            raise ValueError(f"Unsupported dependency graph error kind: {kind!r}")
        super().__init__(message)

    @property
    def is_cycle(self) -> bool:
        return self.kind == CYCLE


class SpawnError(WigglePuppyError):
    """Agent process could not be started."""

    def __init__(self, command: str, reason: str, *, not_found: bool = False) -> None:
        prefix = "Agent command not found" if not_found else "Failed to start agent"
        super().__init__(f"{prefix}: {command!r} ({reason})")
        self.command = command
        self.not_found = not_found


class CancellationRequested(WigglePuppyError):  # noqa: N818
    """Run was cancelled through its handle; a normal terminal outcome."""

    def __init__(self) -> None:
        super().__init__("Operation cancelled")
