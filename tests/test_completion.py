from __future__ import annotations

import allure
import pytest

from wiggle_puppy.completion import CompletionDetector
from wiggle_puppy.config import DEFAULT_COMPLETION_PHRASE
from wiggle_puppy.document import WorkDocument, WorkItem
from wiggle_puppy.errors import ConfigError
from wiggle_puppy.prompts import build_iteration_prompt, completion_instruction, render_work_item

pytestmark = [
    allure.epic("Iteration Loop"),
    allure.feature("Completion Detection"),
]


def test_detects_phrase_inside_output() -> None:
    detector = CompletionDetector()

    assert detector.detect(f"all done\n{DEFAULT_COMPLETION_PHRASE}\n")
    assert detector.detect(f"trailing text ends with {DEFAULT_COMPLETION_PHRASE}")


def test_match_is_case_sensitive_and_exact() -> None:
    detector = CompletionDetector("DONE")

    assert not detector.detect("done")
    assert not detector.detect("DON E")
    assert detector.detect("xxDONExx")


def test_fragments_are_not_concatenated_across_calls() -> None:
    detector = CompletionDetector("<promise>COMPLETE</promise>")

    assert not detector.detect("<promise>COMP")
    assert not detector.detect("LETE</promise>")


def test_empty_phrase_rejected() -> None:
    with pytest.raises(ConfigError):
        CompletionDetector("")


def test_scanner_catches_phrase_split_across_chunks() -> None:
    scanner = CompletionDetector("<promise>COMPLETE</promise>").scanner()

    assert scanner.feed("working... <promise>COMP") is False
    assert scanner.feed("LETE</promise>\n") is True
    assert scanner.found
    assert scanner.feed("<promise>COMPLETE</promise>") is False


def test_scanner_without_phrase() -> None:
    scanner = CompletionDetector("DONE").scanner()

    for chunk in ["D", "O", "N", "\n", "E"]:
        assert scanner.feed(chunk) is False
    assert not scanner.found


def test_iteration_prompt_appends_instruction_last() -> None:
    prompt = build_iteration_prompt(
        "Build it.\n",
        work_context="## Current work item",
        completion_phrase="DONE",
    )

    assert prompt.split("\n\n") == [
        "Build it.",
        "## Current work item",
        completion_instruction("DONE"),
    ]
    assert prompt.endswith(completion_instruction("DONE"))


def test_iteration_prompt_without_instruction() -> None:
    assert build_iteration_prompt("Build it.") == "Build it."


def test_render_work_item_includes_progress() -> None:
    done = WorkItem(id="A", title="Schema", priority=1, passes=True)
    item = WorkItem(
        id="B",
        title="API",
        priority=2,
        description="Expose endpoints",
        acceptance_criteria=["GET works"],
        depends_on=["A"],
    )
    document = WorkDocument(name="demo", branch_name="main", description="", items=[done, item])

    text = render_work_item(document, item)

    assert "Progress: 1/2 items pass" in text
    assert "ID: B" in text
    assert "- GET works" in text
    assert "Depends on (done): A" in text
