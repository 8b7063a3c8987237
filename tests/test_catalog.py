import json
from datetime import datetime, timedelta, timezone

import pytest

from oscesim.cases.catalog import Assignment, CaseCatalog
from oscesim.cases.document import CaseDocument, DEFAULT_MANAGEMENT_OPTIONS
from oscesim.config import settings
from oscesim.errors import AssignmentNotFound, CaseNotFound


def test_from_directory_loads_bundled_data():
    catalog = CaseCatalog.from_directory(settings.case_dir, settings.assignments_file)

    case = catalog.get_case("amlapitta-01")
    assignment = catalog.get_assignment("kc-osce-2026-a")
    assert case.patient.name == "Ramesh Kumar"
    assert assignment.case_id == case.id


def test_from_directory_skips_invalid_files(tmp_path, sample_case):
    cases = tmp_path / "cases"
    cases.mkdir()
    (cases / "good.json").write_text(sample_case.model_dump_json(by_alias=True), encoding="utf-8")
    (cases / "bad.json").write_text(json.dumps({"id": "bad"}), encoding="utf-8")
    assignments = tmp_path / "assignments.json"
    assignments.write_text(json.dumps([
        {"id": "a1", "case_id": sample_case.id, "start_at": "2026-01-01T00:00:00"},
        {"id": "a2"},
    ]), encoding="utf-8")

    catalog = CaseCatalog.from_directory(cases, assignments)

    assert catalog.get_case(sample_case.id) == sample_case
    with pytest.raises(CaseNotFound):
        catalog.get_case("bad")
    assert catalog.get_assignment("a1").start_at.tzinfo is not None
    with pytest.raises(AssignmentNotFound):
        catalog.get_assignment("a2")


def test_assignment_window():
    now = datetime.now(timezone.utc)
    assignment = Assignment(id="a", case_id="c", start_at=now - timedelta(minutes=5), end_at=now + timedelta(minutes=5))

    assert assignment.is_active(now)
    assert not assignment.is_active(now + timedelta(minutes=10))
    assert not assignment.is_active(now - timedelta(minutes=10))


def test_case_defaults_and_flat_management_list():
    case = CaseDocument.model_validate({
        "id": "flat",
        "patient": {"name": "Kiran", "age": 60},
        "stem": "Breathless on exertion.",
        "managementOptions": [{"id": "X1", "text": "Start oxygen"}],
    })

    offered = case.offered_management
    assert [o.id for o in offered.immediate] == ["X1"]
    assert offered.definitive == DEFAULT_MANAGEMENT_OPTIONS.definitive
    assert case.free_text_option_id == "other"
    assert case.exam_finding("chest") == ("chest", "No abnormality detected.")


def test_duplicate_rubric_ids_rejected():
    with pytest.raises(ValueError):
        CaseDocument.model_validate({
            "id": "dup",
            "patient": {"name": "Kiran", "age": 60},
            "stem": "Cough.",
            "rubric": [
                {"section": "A", "max": 2, "items": [{"id": "X", "text": "one"}]},
                {"section": "B", "max": 2, "items": [{"id": "X", "text": "two"}]},
            ],
        })


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({}, False),
        ({"subject": "Kaumarabhritya"}, True),
        ({"childAppropriate": True}, True),
        ({"patient": {"name": "Anu", "age": 7}}, True),
    ],
)
def test_child_case_detection(overrides, expected):
    document = {"id": "c", "patient": {"name": "Kiran", "age": 30}, "stem": "Fever.", **overrides}

    assert CaseDocument.model_validate(document).is_child_case is expected
