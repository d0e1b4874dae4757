from __future__ import annotations

import json

import allure
import pytest

from wiggle_puppy.document import (
    WorkItemStatus,
    load_document,
    parse_document,
    write_document,
)
from wiggle_puppy.errors import DocumentParseError, DocumentReadError, IoError

pytestmark = [
    allure.epic("Work Tracking"),
    allure.feature("Work Document"),
]


def _payload(**overrides):
    payload = {
        "name": "demo",
        "branchName": "feature/demo",
        "description": "Demo project",
        "stories": [
            {
                "id": "US-001",
                "title": "Schema",
                "description": "Create the schema",
                "priority": 1,
                "passes": True,
                "acceptance_criteria": ["tables exist"],
                "depends_on": [],
            },
            {
                "id": "US-002",
                "title": "API",
                "priority": 2,
                "depends_on": ["US-001"],
            },
            {
                "id": "US-003",
                "title": "UI",
                "priority": 3,
                "depends_on": ["US-002"],
            },
        ],
    }
    payload.update(overrides)
    return payload


def test_parse_document_reads_fields_and_defaults() -> None:
    document = parse_document(_payload())

    assert document.name == "demo"
    assert document.branch_name == "feature/demo"
    assert [item.id for item in document.items] == ["US-001", "US-002", "US-003"]
    api = document.get_item("US-002")
    assert api is not None
    assert api.passes is False
    assert api.description == ""
    assert api.acceptance_criteria == []
    assert api.depends_on == ["US-001"]
    assert document.completed_count == 1
    assert document.total == 3
    assert not document.is_complete()


def test_item_status_reflects_dependencies() -> None:
    document = parse_document(_payload())
    completed = document.completed_ids()

    statuses = [item.status(completed) for item in document.items]

    assert statuses == [WorkItemStatus.COMPLETE, WorkItemStatus.PENDING, WorkItemStatus.BLOCKED]


def test_empty_document_is_complete() -> None:
    document = parse_document(_payload(stories=[]))

    assert document.is_complete()
    assert document.total == 0


@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (lambda raw: raw.pop("branchName"), "branchName"),
        (lambda raw: raw.update(stories={}), "stories"),
        (lambda raw: raw["stories"][0].update(priority="high"), "priority"),
        (lambda raw: raw["stories"][0].update(priority=True), "priority"),
        (lambda raw: raw["stories"][0].update(passes="yes"), "passes"),
        (lambda raw: raw["stories"][1].update(depends_on="US-001"), "depends_on"),
        (lambda raw: raw["stories"][2].update(id="US-001"), "duplicate"),
    ],
)
def test_parse_document_rejects_invalid_shapes(mutate, message: str) -> None:
    raw = _payload()
    mutate(raw)

    with pytest.raises(DocumentParseError, match=message):
        parse_document(raw)


def test_load_document_missing_file_is_io_error(tmp_path) -> None:
    path = tmp_path / "missing.json"

    with pytest.raises(DocumentReadError) as exc_info:
        load_document(path)

    assert isinstance(exc_info.value, IoError)
    assert exc_info.value.path == path


def test_load_document_malformed_json(tmp_path) -> None:
    path = tmp_path / "prd.json"
    path.write_text("{not json", "utf-8")

    with pytest.raises(DocumentParseError, match="malformed JSON"):
        load_document(path)


def test_write_document_keeps_wire_format(tmp_path) -> None:
    path = tmp_path / "prd.json"
    document = parse_document(_payload())
    document.items[1].passes = True

    write_document(path, document)

    raw = json.loads(path.read_text("utf-8"))
    assert raw["branchName"] == "feature/demo"
    assert raw["stories"][1]["passes"] is True
    assert raw["stories"][0]["acceptance_criteria"] == ["tables exist"]
    assert load_document(path).completed_count == 2
