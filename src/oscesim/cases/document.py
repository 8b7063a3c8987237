"""
Case Document — The immutable input contract of a simulation.

• Models: PatientProfile, CaseScript, RubricItem/RubricSection,
  DiagnosisOption, ManagementOptions, RemediationQuestion, LearningPearl
• Root: CaseDocument (frozen, accepts the authoring tool's camelCase JSON)
• Defaults: DEFAULT_RUBRIC, DEFAULT_MANAGEMENT_OPTIONS and normal findings,
  used when a case document is missing the corresponding section.
"""

from __future__ import annotations

from typing import Collection

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_FREE_TEXT_OPTION_ID = "other"
DEFAULT_EXAM_FINDING = "No abnormality detected."
DEFAULT_LAB_RESULT = "Result within normal limits."
CHILD_AGE_LIMIT = 12


class CaseModel(BaseModel):
    """Base for case models: immutable, camelCase on the wire."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


# ── Patient & Script ─────────────────────────────────────────────

class PatientProfile(CaseModel):
    name: str
    age: int
    gender: str = "Other"
    language_preference: str = "English"


class CaseScript(CaseModel):
    """Scripted answers: history questions, exam findings, lab results."""
    history: dict[str, str] = Field(default_factory=dict)
    on_request_exam: dict[str, str] = Field(default_factory=dict)
    labs_on_order: dict[str, str] = Field(default_factory=dict)


# ── Rubric ───────────────────────────────────────────────────────

class RubricItem(CaseModel):
    """Smallest scored unit of expected clinical behaviour."""
    id: str
    text: str
    weight: float = Field(
        default=2.0,
        ge=0,
        validation_alias=AliasChoices("weight", "maxMarks", "max_marks"),
    )
    tip: str | None = Field(
        default=None,
        validation_alias=AliasChoices("tip", "examinerNotes", "examiner_notes"),
    )
    reference: str | None = None
    not_applicable: bool = False
    implicit_reasoning_cues: list[str] = Field(default_factory=list)


class RubricSection(CaseModel):
    name: str = Field(validation_alias=AliasChoices("name", "section"))
    max_points: float | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("max_points", "maxPoints", "max"),
    )
    items: list[RubricItem] = Field(default_factory=list)

    @property
    def scored_items(self) -> list[RubricItem]:
        return [item for item in self.items if not item.not_applicable]

    @property
    def cap(self) -> float:
        """Points available in this section once N/A items are removed."""
        return self.cap_excluding()

    def cap_excluding(self, item_ids: Collection[str] = ()) -> float:
        """Like `cap`, with `item_ids` also judged not applicable."""
        excluded = [item for item in self.items if item.not_applicable or item.id in item_ids]
        if self.max_points is None:
            return sum(item.weight for item in self.items) - sum(item.weight for item in excluded)
        return max(0.0, self.max_points - sum(item.weight for item in excluded))


# ── Decisions ────────────────────────────────────────────────────

class DiagnosisOption(CaseModel):
    id: str
    text: str
    hint: str | None = None
    is_correct: bool = False
    is_free_text: bool = False


class ManagementOption(CaseModel):
    id: str
    text: str
    hint: str | None = None


class ManagementOptions(CaseModel):
    immediate: list[ManagementOption] = Field(default_factory=list)
    investigations: list[ManagementOption] = Field(default_factory=list)
    definitive: list[ManagementOption] = Field(default_factory=list)


# ── Learning Support ─────────────────────────────────────────────

class RemediationQuestion(CaseModel):
    """Multiple-choice question attached to a case for remediation."""
    id: str
    stem: str
    choices: list[str]
    correct_index: int
    rationale: str = ""


class LearningPearl(CaseModel):
    text: str
    ref: str = ""


# ── Documented Defaults ──────────────────────────────────────────

DEFAULT_MANAGEMENT_OPTIONS = ManagementOptions(
    immediate=[
        ManagementOption(id="A1", text="Start initial stabilization measures", hint="First-line intervention"),
        ManagementOption(id="A2", text="Start supportive care", hint="Symptomatic relief"),
        ManagementOption(id="A3", text="Monitor vital signs", hint="Ongoing assessment"),
    ],
    investigations=[
        ManagementOption(id="B1", text="Order relevant investigations"),
        ManagementOption(id="B2", text="Perform targeted examination"),
    ],
    definitive=[
        ManagementOption(id="C1", text="Outpatient care with follow-up"),
        ManagementOption(id="C2", text="Admit for observation and treatment"),
        ManagementOption(id="C3", text="Refer to specialist/tertiary center"),
    ],
)

DEFAULT_RUBRIC = [
    RubricSection(
        name="History Taking",
        max_points=8,
        items=[
            RubricItem(id="H1", text="Elicited chief complaint with onset, duration and severity",
                       implicit_reasoning_cues=["when started", "how long", "onset", "duration"]),
            RubricItem(id="H2", text="Explored aggravating and relieving factors",
                       implicit_reasoning_cues=["worse when", "better after", "triggers", "relief"]),
            RubricItem(id="H3", text="Inquired about associated symptoms"),
            RubricItem(id="H4", text="Explored appetite, digestion, bowel habits and sleep",
                       implicit_reasoning_cues=["appetite", "digestion", "bowel", "sleep"]),
        ],
    ),
    RubricSection(
        name="Examination & Investigation",
        max_points=6,
        items=[
            RubricItem(id="E1", text="Performed pulse examination"),
            RubricItem(id="E2", text="Assessed relevant physical signs"),
            RubricItem(id="E3", text="Ordered relevant investigations"),
        ],
    ),
    RubricSection(
        name="Diagnosis",
        max_points=4,
        items=[
            RubricItem(id="D1", text="Formulated the correct diagnosis"),
            RubricItem(id="D2", text="Considered appropriate differential diagnoses"),
        ],
    ),
    RubricSection(
        name="Management",
        max_points=4,
        items=[
            RubricItem(id="M1", text="Proposed an appropriate management plan"),
            RubricItem(id="M2", text="Explained treatment and follow-up to the patient"),
        ],
    ),
]


# ── The Case Document ────────────────────────────────────────────

class CaseDocument(CaseModel):
    """
    A validated, approved clinical case. Never mutated during a session.
    """
    id: str
    title: str = ""
    subject: str = ""
    child_appropriate: bool = False
    duration_minutes: float | None = None
    patient: PatientProfile
    stem: str
    vitals: dict[str, str | float] = Field(default_factory=dict)
    script: CaseScript = Field(default_factory=CaseScript)
    rubric: list[RubricSection] = Field(default_factory=list)
    diagnosis_options: list[DiagnosisOption] = Field(default_factory=list)
    management_options: ManagementOptions = Field(default_factory=ManagementOptions)
    mcqs: list[RemediationQuestion] = Field(default_factory=list)
    reasoning: list[str] = Field(default_factory=list)
    pearls: list[LearningPearl] = Field(default_factory=list)

    @field_validator("management_options", mode="before")
    @classmethod
    def _flat_list_is_immediate(cls, value):
        # Older cases store a single list of immediate actions.
        if value is None:
            return {}
        if isinstance(value, list):
            return {"immediate": value}
        return value

    @model_validator(mode="after")
    def _rubric_ids_unique(self) -> CaseDocument:
        seen: set[str] = set()
        for section in self.rubric:
            for item in section.items:
                if item.id in seen:
                    raise ValueError(f"Duplicate rubric item id '{item.id}'")
                seen.add(item.id)
        return self

    # ── Derived Views ────────────────────────────────────────────

    @property
    def scored_rubric(self) -> list[RubricSection]:
        return self.rubric or DEFAULT_RUBRIC

    @property
    def is_child_case(self) -> bool:
        """Kaumarabhritya (paediatric) station: flagged, by subject, or patient under 12."""
        return (
            self.child_appropriate
            or "kaumarabhritya" in self.subject.lower()
            or self.patient.age < CHILD_AGE_LIMIT
        )

    @property
    def free_text_option_id(self) -> str:
        for option in self.diagnosis_options:
            if option.is_free_text:
                return option.id
        return DEFAULT_FREE_TEXT_OPTION_ID

    @property
    def correct_diagnoses(self) -> list[str]:
        return [o.text for o in self.diagnosis_options if o.is_correct and not o.is_free_text]

    @property
    def offered_management(self) -> ManagementOptions:
        """Management options with empty sub-lists replaced by the defaults."""
        offered = self.management_options
        return ManagementOptions(
            immediate=offered.immediate or DEFAULT_MANAGEMENT_OPTIONS.immediate,
            investigations=offered.investigations or DEFAULT_MANAGEMENT_OPTIONS.investigations,
            definitive=offered.definitive or DEFAULT_MANAGEMENT_OPTIONS.definitive,
        )

    def exam_finding(self, item_id: str) -> tuple[str, str]:
        """Canonical exam key and its finding; unknown items are normal."""
        return _lookup(self.script.on_request_exam, item_id, DEFAULT_EXAM_FINDING)

    def lab_result(self, item_id: str) -> tuple[str, str]:
        return _lookup(self.script.labs_on_order, item_id, DEFAULT_LAB_RESULT)


def _lookup(table: dict[str, str], item_id: str, default: str) -> tuple[str, str]:
    wanted = item_id.strip()
    if wanted in table:
        return wanted, table[wanted]
    for key, value in table.items():
        if key.lower() == wanted.lower():
            return key, value
    return wanted, default
