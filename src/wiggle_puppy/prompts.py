"""Prompt assembly for each iteration."""

from __future__ import annotations

from wiggle_puppy.document import WorkDocument, WorkItem

COMPLETION_INSTRUCTION_TEMPLATE = (
    "IMPORTANT: When you have completed ALL tasks in this prompt and there is nothing "
    "left to do, output exactly: {phrase}\n"
    "Do NOT output this phrase until every single task is fully complete. "
    "Only output it once at the very end."
)

ALL_ITEMS_COMPLETE_NOTICE = (
    "## Work items\n"
    "Every work item in the tracking document already passes. "
    "Verify the work and finish up."
)


def completion_instruction(phrase: str) -> str:
    return COMPLETION_INSTRUCTION_TEMPLATE.format(phrase=phrase)


def render_work_item(document: WorkDocument, item: WorkItem) -> str:
    """Describe the selected work item and overall progress for the agent."""

    lines = [
        "## Current work item",
        f"Project: {document.name} (branch: {document.branch_name})",
        f"Progress: {document.completed_count}/{document.total} items pass",
        f"ID: {item.id}",
        f"Title: {item.title}",
        f"Priority: {item.priority}",
    ]
    if item.description:
        lines.append(f"Description: {item.description}")
    if item.acceptance_criteria:
        lines.append("Acceptance criteria:")
        lines.extend(f"- {criterion}" for criterion in item.acceptance_criteria)
    if item.depends_on:
        lines.append(f"Depends on (done): {', '.join(item.depends_on)}")
    return "\n".join(lines)


def build_iteration_prompt(
    base_prompt: str,
    *,
    work_context: str | None = None,
    completion_phrase: str | None = None,
) -> str:
    """Join the base prompt with optional work context and completion instruction."""

    parts = [base_prompt.rstrip("\n")]
    if work_context:
        parts.append(work_context)
    if completion_phrase:
        parts.append(completion_instruction(completion_phrase))
    return "\n\n".join(parts)
