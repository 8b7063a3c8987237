"""
Decision Capture — Validates the diagnosis and management choices.

Turns the student's structured selections into ledger payloads, rejecting
anything the case did not offer. Nothing is written here; the session
controller appends the returned payload.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from oscesim.cases.document import CaseDocument, ManagementOption
from oscesim.errors import (
    IncompleteManagementSelection,
    InvalidDiagnosisSelection,
    InvalidManagementSelection,
)
from oscesim.workflow.state import DiagnosisPayload, ManagementPayload

MAX_DIAGNOSIS_TEXT = 250
MAX_JUSTIFICATION = 250
MAX_RATIONALE = 400


# ── Selections (what the student submits) ────────────────────────

class DiagnosisSelection(BaseModel):
    selected_option_id: str | None = None
    free_text: str | None = None
    justification: str | None = None
    confirmed: bool = False


class ManagementSelection(BaseModel):
    immediate: list[str] = Field(default_factory=list)
    investigations: list[str] = Field(default_factory=list)
    definitive: str | None = None
    rationale: str | None = None
    confirmed: bool = False


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def _unique(ids: list[str]) -> list[str]:
    seen: list[str] = []
    for raw in ids:
        item = raw.strip()
        if item and item not in seen:
            seen.append(item)
    return seen


# ── Diagnosis ────────────────────────────────────────────────────

def capture_diagnosis(case: CaseDocument, selection: DiagnosisSelection) -> DiagnosisPayload:
    """
    Exactly one of an offered option or free text (≤250 chars), plus an
    optional justification. Choosing the free-text option requires text.
    """
    if not selection.confirmed:
        raise InvalidDiagnosisSelection("Confirm your diagnosis before submitting")

    option_id = _clean(selection.selected_option_id)
    free_text = _clean(selection.free_text)
    justification = _clean(selection.justification)

    if free_text and len(free_text) > MAX_DIAGNOSIS_TEXT:
        raise InvalidDiagnosisSelection(f"Diagnosis text must be at most {MAX_DIAGNOSIS_TEXT} characters")
    if justification and len(justification) > MAX_JUSTIFICATION:
        raise InvalidDiagnosisSelection(f"Justification must be at most {MAX_JUSTIFICATION} characters")

    if option_id == case.free_text_option_id:
        if not free_text:
            raise InvalidDiagnosisSelection("Describe your diagnosis when choosing 'Other'")
        return DiagnosisPayload(free_text=free_text, justification=justification)

    if option_id:
        if free_text:
            raise InvalidDiagnosisSelection("Choose a listed diagnosis or describe your own, not both")
        option = next((o for o in case.diagnosis_options if o.id == option_id), None)
        if option is None:
            raise InvalidDiagnosisSelection(f"Unknown diagnosis option '{option_id}'")
        return DiagnosisPayload(
            selected_option_id=option.id,
            option_text=option.text,
            justification=justification,
        )

    if free_text:
        return DiagnosisPayload(free_text=free_text, justification=justification)

    raise InvalidDiagnosisSelection()


# ── Management ───────────────────────────────────────────────────

def _check_subset(chosen: list[str], offered: list[ManagementOption], group: str) -> list[str]:
    offered_ids = {o.id for o in offered}
    unknown = [c for c in chosen if c not in offered_ids]
    if unknown:
        raise InvalidManagementSelection(f"Unknown {group} option(s): {', '.join(unknown)}")
    return [o.text for o in offered if o.id in chosen]


def capture_management(case: CaseDocument, selection: ManagementSelection) -> ManagementPayload:
    """
    Immediate and investigation choices are multi-select subsets of the
    offered options; definitive is a single offered option, optional when
    at least one immediate action is chosen.
    """
    if not selection.confirmed:
        raise InvalidManagementSelection("Confirm your management plan before submitting")

    offered = case.offered_management
    immediate = _unique(selection.immediate)
    investigations = _unique(selection.investigations)
    definitive = _clean(selection.definitive)
    rationale = _clean(selection.rationale)

    texts = _check_subset(immediate, offered.immediate, "immediate")
    texts += _check_subset(investigations, offered.investigations, "investigation")
    if definitive:
        texts += _check_subset([definitive], offered.definitive, "definitive")

    if not immediate and not definitive:
        raise IncompleteManagementSelection()
    if rationale and len(rationale) > MAX_RATIONALE:
        raise InvalidManagementSelection(f"Rationale must be at most {MAX_RATIONALE} characters")

    return ManagementPayload(
        immediate=immediate,
        investigations=investigations,
        definitive=definitive,
        selected_texts=texts,
        rationale=rationale,
    )
