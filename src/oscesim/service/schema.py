"""
API Schemas — The external contract for the REST API.

Defines the JSON structures for Requests and Responses.
Diagnosis and management requests reuse the decision selections directly.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from oscesim.cases.document import CaseDocument, ManagementOptions, PatientProfile
from oscesim.workflow.state import (
    ActionRecord,
    RunStatus,
    SimulationRun,
    SubmitReason,
    TranscriptTurn,
)


# ── Case View ────────────────────────────────────────────────────

class OfferedDiagnosis(BaseModel):
    """A diagnosis option as the student sees it (correctness hidden)."""
    id: str
    text: str
    hint: str | None = None
    is_free_text: bool = False


class CaseBrief(BaseModel):
    """What the student may see of the case during a run."""
    case_id: str
    title: str
    patient: PatientProfile
    stem: str
    vitals: dict[str, str | float]
    exam_items: list[str]
    lab_items: list[str]
    diagnosis_options: list[OfferedDiagnosis]
    management_options: ManagementOptions

    @classmethod
    def from_case(cls, case: CaseDocument) -> CaseBrief:
        return cls(
            case_id=case.id,
            title=case.title,
            patient=case.patient,
            stem=case.stem,
            vitals=dict(case.vitals),
            exam_items=list(case.script.on_request_exam),
            lab_items=list(case.script.labs_on_order),
            diagnosis_options=[
                OfferedDiagnosis(id=o.id, text=o.text, hint=o.hint, is_free_text=o.is_free_text)
                for o in case.diagnosis_options
            ],
            management_options=case.offered_management,
        )


# ── Session Management ───────────────────────────────────────────

class SessionStartRequest(BaseModel):
    """Request payload for POST /api/sessions"""
    assignment_id: str
    student_id: str


class SessionStartResponse(BaseModel):
    """Response payload for POST /api/sessions"""
    run_id: str
    status: RunStatus
    greeting: str
    countdown_seconds: int
    case: CaseBrief


class RunStateResponse(BaseModel):
    """Payload for GET /api/runs/{run_id}"""
    run_id: str
    status: RunStatus
    countdown_seconds: int
    submit_reason: SubmitReason | None = None
    transcript: list[TranscriptTurn]
    actions: list[ActionRecord]
    case: CaseBrief

    @classmethod
    def build(cls, run: SimulationRun, countdown_seconds: int, case: CaseDocument) -> RunStateResponse:
        return cls(
            run_id=run.id,
            status=run.status,
            countdown_seconds=countdown_seconds,
            submit_reason=run.submit_reason,
            transcript=run.transcript,
            actions=run.actions,
            case=CaseBrief.from_case(case),
        )


# ── Chat Operations ──────────────────────────────────────────────

class ChatRequest(BaseModel):
    """Request payload for POST /api/runs/{run_id}/messages"""
    message: str = Field(min_length=1)


class ChatResponse(BaseModel):
    """Response payload for POST /api/runs/{run_id}/messages"""
    run_id: str
    patient_response: str
    status: RunStatus
    countdown_seconds: int


# ── Ledger Operations ────────────────────────────────────────────

class ItemRequest(BaseModel):
    """Request payload for exam reveals and lab orders."""
    item_id: str = Field(min_length=1)

    @field_validator("item_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("item_id must not be blank")
        return value


class ActionResponse(BaseModel):
    run_id: str
    status: RunStatus
    action: ActionRecord


class RunStatusResponse(BaseModel):
    run_id: str
    status: RunStatus
    countdown_seconds: int
