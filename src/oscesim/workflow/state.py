"""
Simulation State & Types — The core data structures of a run.

• Enums: MessageRole, RunStatus, ActionType, SubmitReason, CreditSource, GradeBand
• Models: TranscriptTurn, ActionRecord variants, SimulationRun
• Scores: ItemCredit, ItemVerdict, SectionScore, MissedItem, ScoreResult, DebriefArtifact
• State: The ScoringState dict used by the LangGraph scoring pipeline
"""

from __future__ import annotations

import math
import operator
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, TypedDict, Union

from pydantic import BaseModel, ConfigDict, Field

from oscesim.cases.document import CaseDocument, LearningPearl, RemediationQuestion
from oscesim.errors import InvalidPhaseTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Core Enums ───────────────────────────────────────────────────

class MessageRole(str, Enum):
    """Who spoke a transcript turn."""
    STUDENT = "student"
    PATIENT = "patient"


class RunStatus(str, Enum):
    """Lifecycle of a simulation run."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DIAGNOSIS_PHASE = "diagnosis_phase"
    MANAGEMENT_PHASE = "management_phase"
    SUBMITTED = "submitted"
    SCORED = "scored"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        """No further student input is accepted."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RunStatus.SUBMITTED, RunStatus.SCORED, RunStatus.EXPIRED})

# Every status must appear as a key; the tests check the table is exhaustive.
ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.NOT_STARTED: frozenset({RunStatus.IN_PROGRESS}),
    RunStatus.IN_PROGRESS: frozenset({
        RunStatus.DIAGNOSIS_PHASE, RunStatus.MANAGEMENT_PHASE, RunStatus.SUBMITTED, RunStatus.EXPIRED,
    }),
    RunStatus.DIAGNOSIS_PHASE: frozenset({
        RunStatus.MANAGEMENT_PHASE, RunStatus.SUBMITTED, RunStatus.EXPIRED,
    }),
    RunStatus.MANAGEMENT_PHASE: frozenset({RunStatus.SUBMITTED, RunStatus.EXPIRED}),
    RunStatus.EXPIRED: frozenset({RunStatus.SUBMITTED}),
    RunStatus.SUBMITTED: frozenset({RunStatus.SCORED}),
    RunStatus.SCORED: frozenset({RunStatus.SCORED}),  # rescoring
}


class ActionType(str, Enum):
    EXAM_REVEAL = "exam_reveal"
    LAB_ORDER = "lab_order"
    DIAGNOSIS_SUBMITTED = "diagnosis_submitted"
    MANAGEMENT_SUBMITTED = "management_submitted"


class SubmitReason(str, Enum):
    """Why a run entered SUBMITTED."""
    COMPLETED = "completed"
    EARLY_SUBMIT = "early_submit"
    EXPIRED = "expired"


class CreditSource(str, Enum):
    """Which scoring pass credited a rubric item."""
    DETERMINISTIC = "deterministic"
    SEMANTIC = "semantic"


class GradeBand(str, Enum):
    DISTINCTION = "Distinction"
    PASS = "Pass"
    BORDERLINE = "Borderline"
    FAIL = "Fail"

    @classmethod
    def for_percentage(cls, percentage: float) -> GradeBand:
        if percentage >= 85:
            return cls.DISTINCTION
        if percentage >= 70:
            return cls.PASS
        if percentage >= 50:
            return cls.BORDERLINE
        return cls.FAIL


# ── Transcript ───────────────────────────────────────────────────

class TranscriptTurn(BaseModel):
    """A single utterance in the encounter."""
    model_config = ConfigDict(frozen=True)

    role: MessageRole
    text: str
    timestamp: datetime = Field(default_factory=utcnow)


# ── Action Ledger Records ────────────────────────────────────────

class ExamRevealPayload(BaseModel):
    item_id: str
    finding: str


class LabOrderPayload(BaseModel):
    item_id: str
    result: str


class DiagnosisPayload(BaseModel):
    selected_option_id: str | None = None
    option_text: str | None = None
    free_text: str | None = None
    justification: str | None = None


class ManagementPayload(BaseModel):
    immediate: list[str] = Field(default_factory=list)
    investigations: list[str] = Field(default_factory=list)
    definitive: str | None = None
    selected_texts: list[str] = Field(default_factory=list)
    rationale: str | None = None


class ExamRevealAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal[ActionType.EXAM_REVEAL] = ActionType.EXAM_REVEAL
    payload: ExamRevealPayload
    timestamp: datetime = Field(default_factory=utcnow)

    def identifiers(self) -> list[str]:
        return [self.payload.item_id]

    def terms(self) -> list[str]:
        # Findings are what the patient shows, not what the student did.
        return [self.payload.item_id]


class LabOrderAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal[ActionType.LAB_ORDER] = ActionType.LAB_ORDER
    payload: LabOrderPayload
    timestamp: datetime = Field(default_factory=utcnow)

    def identifiers(self) -> list[str]:
        return [self.payload.item_id]

    def terms(self) -> list[str]:
        return [self.payload.item_id]


class DiagnosisAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal[ActionType.DIAGNOSIS_SUBMITTED] = ActionType.DIAGNOSIS_SUBMITTED
    payload: DiagnosisPayload
    timestamp: datetime = Field(default_factory=utcnow)

    def identifiers(self) -> list[str]:
        # Option ids live in their own namespace, not the rubric's.
        return []

    def terms(self) -> list[str]:
        # The justification is reasoning, not something the student did.
        p = self.payload
        return [t for t in (p.option_text, p.free_text) if t]


class ManagementAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal[ActionType.MANAGEMENT_SUBMITTED] = ActionType.MANAGEMENT_SUBMITTED
    payload: ManagementPayload
    timestamp: datetime = Field(default_factory=utcnow)

    def identifiers(self) -> list[str]:
        return []

    def terms(self) -> list[str]:
        return list(self.payload.selected_texts)


ActionRecord = Annotated[
    Union[ExamRevealAction, LabOrderAction, DiagnosisAction, ManagementAction],
    Field(discriminator="type"),
]


# ── Scores ───────────────────────────────────────────────────────

class ItemCredit(BaseModel):
    """One entry of the per-item credit map built by the scoring passes."""
    model_config = ConfigDict(frozen=True)

    item_id: str
    achieved: float = Field(ge=0, le=1)
    confidence: float = Field(ge=0, le=1)
    evidence: str | None = None
    source: CreditSource


class ItemVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    text: str
    weight: float
    achieved: float = Field(ge=0, le=1)
    points: float
    confidence: float = 0.0
    evidence: str | None = None
    source: CreditSource | None = None


class SectionScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    score: float
    max: float
    items: list[ItemVerdict] = Field(default_factory=list)


class MissedItem(BaseModel):
    """A rubric item not fully achieved, with its remediation pointer."""
    model_config = ConfigDict(frozen=True)

    item_id: str
    text: str
    section: str
    weight: float
    achieved: float
    confidence: float
    tip: str
    reference: str


class ScoreResult(BaseModel):
    """
    The itemized grade of a run. Recomputed wholesale on rescoring.
    """
    model_config = ConfigDict(frozen=True)

    sections: list[SectionScore] = Field(default_factory=list)
    total_points: float = 0.0
    max_points: float = 0.0
    percentage: int = Field(default=0, ge=0, le=100)
    grade: GradeBand = GradeBand.FAIL
    missed_items: list[MissedItem] = Field(default_factory=list)
    not_applicable_item_ids: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    partial: bool = False

    @property
    def verdicts(self) -> list[ItemVerdict]:
        return [item for section in self.sections for item in section.items]

    @property
    def credited_item_ids(self) -> list[str]:
        return [v.item_id for v in self.verdicts if v.achieved > 0]


def percentage_of(total_points: float, max_points: float) -> int:
    """Half-up rounded percentage, clamped to 0..100."""
    if max_points <= 0:
        return 0
    raw = math.floor(100 * total_points / max_points + 0.5)
    return max(0, min(100, raw))


# ── The Run Aggregate ────────────────────────────────────────────

class StatusChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: RunStatus
    at: datetime = Field(default_factory=utcnow)


class SimulationRun(BaseModel):
    """
    One student's timed attempt at a case.
    `transcript`, `actions` and `timeline` are append-only.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    assignment_id: str
    student_id: str
    case_id: str
    status: RunStatus = RunStatus.NOT_STARTED
    started_at: datetime | None = None
    ended_at: datetime | None = None
    time_limit_seconds: float = 0.0
    transcript: list[TranscriptTurn] = Field(default_factory=list)
    actions: list[ActionRecord] = Field(default_factory=list)
    timeline: list[StatusChange] = Field(default_factory=list)
    submit_reason: SubmitReason | None = None
    score: ScoreResult | None = None
    scored_at: datetime | None = None

    def transition_to(self, target: RunStatus, at: datetime | None = None) -> None:
        """Move to `target` if the transition table allows it."""
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidPhaseTransition(self.id, self.status, target)
        self.status = target
        self.timeline.append(StatusChange(status=target, at=at or utcnow()))

    def actions_of(self, action_type: ActionType) -> list[ActionRecord]:
        return [a for a in self.actions if a.type == action_type]

    @property
    def time_taken_seconds(self) -> int:
        if not self.started_at:
            return 0
        end = self.ended_at or utcnow()
        return max(0, int((end - self.started_at).total_seconds()))


# ── Debrief ──────────────────────────────────────────────────────

class PartialCreditItem(BaseModel):
    item_id: str
    text: str
    evidence: str | None = None
    tip: str = "Demonstrated understanding but needs more explicit verbalization"


class DebriefArtifact(BaseModel):
    """Feedback shown to the student after scoring. Regenerated on every view."""
    run_id: str
    case_id: str
    student_id: str
    total_points: float
    max_points: float
    percentage: int
    grade: GradeBand
    time_taken_seconds: int
    sections: list[SectionScore]
    missed_items: list[MissedItem]
    partial_credit_items: list[PartialCreditItem] = Field(default_factory=list)
    stepwise_reasoning: list[str] = Field(default_factory=list)
    learning_pearls: list[LearningPearl] = Field(default_factory=list)
    remediation_questions: list[RemediationQuestion] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    events: list[ActionRecord] = Field(default_factory=list)


# ── Scoring Pipeline State ───────────────────────────────────────

def first_credit_wins(
    left: dict[str, ItemCredit] | None, right: dict[str, ItemCredit] | None
) -> dict[str, ItemCredit]:
    """
    Custom reducer for the credit map.
    An item already credited keeps its credit; later passes only fill gaps.
    """
    merged = dict(left or {})
    for item_id, credit in (right or {}).items():
        merged.setdefault(item_id, credit)
    return merged


class ScoringState(TypedDict):
    """
    The shared state dictionary for the LangGraph scoring workflow.
    """
    case: CaseDocument
    transcript: list[TranscriptTurn]
    actions: list[ActionRecord]
    credits: Annotated[dict[str, ItemCredit], first_credit_wins]
    not_applicable: Annotated[list[str], operator.add]
    warnings: Annotated[list[str], operator.add]
    result: ScoreResult | None
