"""Dependency resolution over a work document.

Everything here is a pure function of the document passed in; callers reload
the document from disk before each query.
"""

from __future__ import annotations

from wiggle_puppy.document import WorkDocument, WorkItem, WorkItemStatus
from wiggle_puppy.errors import CYCLE, UNRESOLVED_REFERENCE, DependencyGraphError


def next_eligible(document: WorkDocument) -> WorkItem | None:
    """Return the next item to work on, or ``None`` when every item passes.

    Eligible items are unfinished items whose dependencies all pass. The lowest
    ``priority`` value wins; ties go to the item authored first.

    Raises:
        DependencyGraphError: unfinished items reference unknown ids, or wait on
            each other in a cycle, so the remainder can never be resolved.
    """

    unfinished = [item for item in document.items if not item.passes]
    if not unfinished:
        return None

    validate_graph(document)

    completed = document.completed_ids()
    eligible = [item for item in unfinished if all(dep in completed for dep in item.depends_on)]
    # min() keeps the first of equal keys, which gives authored-order tie breaking.
    return min(eligible, key=lambda item: item.priority)


def validate_graph(document: WorkDocument) -> None:
    """Check that the unfinished items can all eventually become eligible."""

    known_ids = {item.id for item in document.items}
    unfinished = [item for item in document.items if not item.passes]

    dangling_items: list[str] = []
    missing_ids: set[str] = set()
    for item in unfinished:
        missing = [dep for dep in item.depends_on if dep not in known_ids]
        if missing:
            dangling_items.append(item.id)
            missing_ids.update(missing)
    if dangling_items:
        raise DependencyGraphError(
            UNRESOLVED_REFERENCE,
            item_ids=dangling_items,
            missing_ids=missing_ids,
        )

    satisfied = document.completed_ids()
    remaining = list(unfinished)
    while remaining:
        ready = [item for item in remaining if all(dep in satisfied for dep in item.depends_on)]
        if not ready:
            raise DependencyGraphError(CYCLE, item_ids=[item.id for item in remaining])
        satisfied.update(item.id for item in ready)
        ready_ids = {item.id for item in ready}
        remaining = [item for item in remaining if item.id not in ready_ids]


def item_statuses(document: WorkDocument) -> dict[str, WorkItemStatus]:
    """Map every item id to its current status."""

    completed = document.completed_ids()
    return {item.id: item.status(completed) for item in document.items}
