"""
Action Ledger — What the student actually did.

Append-only record of exam reveals, lab orders and the two structured
decisions. Each exam/lab item is recorded at most once; asking again
returns the entry already on the ledger.
"""

from __future__ import annotations

import logging
from datetime import datetime

from oscesim.cases.document import CaseDocument
from oscesim.errors import InvalidDiagnosisSelection, InvalidManagementSelection
from oscesim.workflow.state import (
    ActionRecord,
    ActionType,
    DiagnosisAction,
    DiagnosisPayload,
    ExamRevealAction,
    ExamRevealPayload,
    LabOrderAction,
    LabOrderPayload,
    ManagementAction,
    ManagementPayload,
    SimulationRun,
    utcnow,
)

logger = logging.getLogger(__name__)


class ActionLedger:
    """Append operations over a run's `actions` list."""

    def __init__(self, run: SimulationRun, case: CaseDocument):
        self.run = run
        self.case = case

    def find(self, action_type: ActionType, item_id: str | None = None) -> ActionRecord | None:
        for action in self.run.actions:
            if action.type != action_type:
                continue
            if item_id is None or getattr(action.payload, "item_id", "").lower() == item_id.lower():
                return action
        return None

    # ── Exam & Labs (idempotent) ─────────────────────────────────

    def reveal_exam(self, item_id: str, at: datetime | None = None) -> ExamRevealAction:
        key, finding = self.case.exam_finding(item_id)
        existing = self.find(ActionType.EXAM_REVEAL, key)
        if existing is not None:
            logger.debug(f"Exam '{key}' already revealed for run {self.run.id}")
            return existing

        record = ExamRevealAction(
            payload=ExamRevealPayload(item_id=key, finding=finding),
            timestamp=at or utcnow(),
        )
        self.run.actions.append(record)
        return record

    def order_lab(self, item_id: str, at: datetime | None = None) -> LabOrderAction:
        key, result = self.case.lab_result(item_id)
        existing = self.find(ActionType.LAB_ORDER, key)
        if existing is not None:
            logger.debug(f"Lab '{key}' already ordered for run {self.run.id}")
            return existing

        record = LabOrderAction(
            payload=LabOrderPayload(item_id=key, result=result),
            timestamp=at or utcnow(),
        )
        self.run.actions.append(record)
        return record

    # ── Decisions (once per run) ─────────────────────────────────

    def record_diagnosis(self, payload: DiagnosisPayload, at: datetime | None = None) -> DiagnosisAction:
        if self.find(ActionType.DIAGNOSIS_SUBMITTED) is not None:
            raise InvalidDiagnosisSelection("A diagnosis has already been submitted for this run")
        record = DiagnosisAction(payload=payload, timestamp=at or utcnow())
        self.run.actions.append(record)
        return record

    def record_management(self, payload: ManagementPayload, at: datetime | None = None) -> ManagementAction:
        if self.find(ActionType.MANAGEMENT_SUBMITTED) is not None:
            raise InvalidManagementSelection("A management plan has already been submitted for this run")
        record = ManagementAction(payload=payload, timestamp=at or utcnow())
        self.run.actions.append(record)
        return record
