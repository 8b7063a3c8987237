"""
Debrief Compiler — Feedback assembled from a scored run.

A pure projection of (run, case, score). Nothing is stored; the debrief is
rebuilt every time a student opens it.
"""

from __future__ import annotations

from oscesim.cases.document import CaseDocument, LearningPearl
from oscesim.workflow.state import (
    DebriefArtifact,
    MissedItem,
    PartialCreditItem,
    ScoreResult,
    SimulationRun,
)

MAX_MISSED_ITEMS = 3
MAX_PEARLS = 3
MAX_REMEDIATION_QUESTIONS = 3

DEFAULT_REASONING = [
    "1. Identify red flags: review the chief complaint and key presenting symptoms",
    "2. Systematic history: characterize onset, duration, character and severity",
    "3. Focused examination: examine the systems the history points to",
    "4. Targeted investigations: order only clinically indicated tests",
    "5. Formulate diagnosis: integrate history, examination and results",
    "6. Plan management: propose treatment with follow-up and safety-netting",
]

GENERIC_PEARLS = [
    LearningPearl(
        text="Implicit clinical reasoning earns partial credit; verbalize your thinking for full marks",
        ref="OSCE Best Practices: Miller's Pyramid Assessment",
    ),
    LearningPearl(
        text="Order only relevant tests; unnecessary investigations cost marks",
        ref="Clinical Methods: Diagnostic Reasoning",
    ),
    LearningPearl(
        text="Summarize back to the patient to confirm your history before examining",
        ref="Calgary-Cambridge Guide to the Medical Interview",
    ),
]


def lowest_signal(missed: list[MissedItem], limit: int = MAX_MISSED_ITEMS) -> list[MissedItem]:
    """Least achieved first, then least confident, then heaviest."""
    ranked = sorted(missed, key=lambda m: (m.achieved, m.confidence, -m.weight))
    return ranked[:limit]


def select_pearls(candidates: list[LearningPearl], limit: int = MAX_PEARLS) -> list[LearningPearl]:
    chosen: list[LearningPearl] = []
    seen: set[str] = set()
    for pearl in candidates:
        key = " ".join(pearl.text.lower().split())
        if not key or key in seen:
            continue
        seen.add(key)
        chosen.append(pearl)
        if len(chosen) == limit:
            break
    return chosen


def compile_debrief(run: SimulationRun, case: CaseDocument, score: ScoreResult) -> DebriefArtifact:
    missed = lowest_signal(score.missed_items)

    partial_credit = [
        PartialCreditItem(item_id=v.item_id, text=v.text, evidence=v.evidence)
        for v in score.verdicts
        if 0 < v.achieved < 1
    ]

    pearls = select_pearls(
        [
            *case.pearls,
            *(LearningPearl(text=m.tip, ref=m.reference) for m in missed),
            *GENERIC_PEARLS,
        ]
    )

    return DebriefArtifact(
        run_id=run.id,
        case_id=run.case_id,
        student_id=run.student_id,
        total_points=score.total_points,
        max_points=score.max_points,
        percentage=score.percentage,
        grade=score.grade,
        time_taken_seconds=run.time_taken_seconds,
        sections=score.sections,
        missed_items=missed,
        partial_credit_items=partial_credit,
        stepwise_reasoning=list(case.reasoning) or list(DEFAULT_REASONING),
        learning_pearls=pearls,
        remediation_questions=case.mcqs[:MAX_REMEDIATION_QUESTIONS],
        warnings=score.warnings,
        events=run.actions,
    )
