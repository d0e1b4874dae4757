"""Work document (PRD) model and its JSON file contract."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from wiggle_puppy.errors import DocumentParseError, DocumentReadError


class WorkItemStatus(str, Enum):
    """Derived status of one work item relative to the rest of the document."""

    COMPLETE = "complete"
    PENDING = "pending"
    BLOCKED = "blocked"


@dataclass(slots=True)
class WorkItem:
    """One tracked unit of work ("story")."""

    id: str
    title: str
    priority: int
    passes: bool = False
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)

    def status(self, completed_ids: set[str]) -> WorkItemStatus:
        if self.passes:
            return WorkItemStatus.COMPLETE
        if all(dep in completed_ids for dep in self.depends_on):
            return WorkItemStatus.PENDING
        return WorkItemStatus.BLOCKED


@dataclass(slots=True)
class WorkDocument:
    """Collection of work items in authored order."""

    name: str
    branch_name: str
    description: str
    items: list[WorkItem] = field(default_factory=list)

    def is_complete(self) -> bool:
        return all(item.passes for item in self.items)

    def completed_ids(self) -> set[str]:
        return {item.id for item in self.items if item.passes}

    @property
    def completed_count(self) -> int:
        return sum(1 for item in self.items if item.passes)

    @property
    def total(self) -> int:
        return len(self.items)

    def get_item(self, item_id: str) -> WorkItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


def load_document(path: Path) -> WorkDocument:
    """Read and validate a work document from disk."""

    try:
        content = path.read_text("utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise DocumentReadError(path, str(error)) from error
    try:
        raw = json.loads(content)
    except json.JSONDecodeError as error:
        raise DocumentParseError(f"malformed JSON ({error})", path=path) from error
    return parse_document(raw, path=path)


def parse_document(raw: Any, *, path: Path | None = None) -> WorkDocument:
    """Validate a decoded JSON payload and build a :class:`WorkDocument`."""

    if not isinstance(raw, dict):
        raise DocumentParseError("top-level value must be an object", path=path)
    name = _require_str(raw, "name", "document", path=path)
    branch_name = _require_str(raw, "branchName", "document", path=path)
    description = _optional_str(raw, "description", "document", path=path)
    raw_stories = raw.get("stories")
    if not isinstance(raw_stories, list):
        raise DocumentParseError("document.stories must be an array", path=path)

    items: list[WorkItem] = []
    seen: set[str] = set()
    for index, story in enumerate(raw_stories):
        item = _parse_story(story, index=index, path=path)
        if item.id in seen:
            raise DocumentParseError(f"duplicate story id {item.id!r}", path=path)
        seen.add(item.id)
        items.append(item)
    return WorkDocument(name=name, branch_name=branch_name, description=description, items=items)


def _parse_story(story: Any, *, index: int, path: Path | None) -> WorkItem:
    context = f"stories[{index}]"
    if not isinstance(story, dict):
        raise DocumentParseError(f"{context} must be an object", path=path)
    item_id = _require_str(story, "id", context, path=path)
    if not item_id.strip():
        raise DocumentParseError(f"{context}.id must be a non-empty string", path=path)
    priority = story.get("priority")
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise DocumentParseError(f"{context}.priority must be an integer", path=path)
    passes = story.get("passes", False)
    if not isinstance(passes, bool):
        raise DocumentParseError(f"{context}.passes must be a boolean", path=path)
    return WorkItem(
        id=item_id,
        title=_require_str(story, "title", context, path=path),
        description=_optional_str(story, "description", context, path=path),
        priority=priority,
        passes=passes,
        acceptance_criteria=_str_list(story, "acceptance_criteria", context, path=path),
        depends_on=_str_list(story, "depends_on", context, path=path),
    )


def _require_str(raw: dict[str, Any], key: str, context: str, *, path: Path | None) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise DocumentParseError(f"{context}.{key} must be a string", path=path)
    return value


def _optional_str(raw: dict[str, Any], key: str, context: str, *, path: Path | None) -> str:
    value = raw.get(key, "")
    if not isinstance(value, str):
        raise DocumentParseError(f"{context}.{key} must be a string", path=path)
    return value


def _str_list(raw: dict[str, Any], key: str, context: str, *, path: Path | None) -> list[str]:
    value = raw.get(key, [])
    if not isinstance(value, list) or not all(isinstance(entry, str) for entry in value):
        raise DocumentParseError(f"{context}.{key} must be an array of strings", path=path)
    return list(value)


def document_to_payload(document: WorkDocument) -> dict[str, Any]:
    """Serialize a document back to its on-disk JSON shape."""

    return {
        "name": document.name,
        "branchName": document.branch_name,
        "description": document.description,
        "stories": [
            {
                "id": item.id,
                "title": item.title,
                "description": item.description,
                "priority": item.priority,
                "passes": item.passes,
                "acceptance_criteria": list(item.acceptance_criteria),
                "depends_on": list(item.depends_on),
            }
            for item in document.items
        ],
    }


def write_document(path: Path, document: WorkDocument) -> None:
    """Persist a document using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(document_to_payload(document), ensure_ascii=False, indent=2) + "\n",
        "utf-8",
    )
