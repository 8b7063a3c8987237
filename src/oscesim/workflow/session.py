"""
Session Controller — The phase state machine of a simulation run.

This module owns a run from start to score:
Start → Chat / Exam / Labs → Diagnosis → Management → Submitted → Scored

• Every mutation of a run happens under that run's asyncio.Lock, and a
  ledger append and its phase transition are committed together.
• The patient LLM call happens outside the lock, so the countdown can
  still expire the run while a reply is pending.
• Each run owns one Countdown; every terminal transition cancels it.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from functools import partial

from oscesim.agents.patient import PersonaPolicy, Responder, reply
from oscesim.cases.catalog import CaseCatalog
from oscesim.cases.document import CaseDocument
from oscesim.config import settings
from oscesim.errors import (
    AssignmentInactive,
    ConversationBusy,
    EmptyMessage,
    InvalidPhaseTransition,
    RunNotFound,
)
from oscesim.workflow.debrief import compile_debrief
from oscesim.workflow.decisions import (
    DiagnosisSelection,
    ManagementSelection,
    capture_diagnosis,
    capture_management,
)
from oscesim.workflow.graph import ScoringEngine
from oscesim.workflow.ledger import ActionLedger
from oscesim.workflow.persistence import InMemoryRunStore
from oscesim.workflow.state import (
    ActionRecord,
    ActionType,
    DebriefArtifact,
    DiagnosisAction,
    ManagementAction,
    MessageRole,
    RunStatus,
    SimulationRun,
    SubmitReason,
    TranscriptTurn,
    utcnow,
)
from oscesim.workflow.timer import Countdown

logger = logging.getLogger(__name__)

DECISION_STATUSES = frozenset({RunStatus.IN_PROGRESS, RunStatus.DIAGNOSIS_PHASE})


@dataclass
class StartedSession:
    """What `start_session` hands back: the run, its greeting and its clock."""
    run: SimulationRun
    greeting: str
    countdown: Countdown | None

    @property
    def countdown_seconds(self) -> int:
        if self.countdown is None or self.run.status.is_terminal:
            return 0
        return math.ceil(self.countdown.remaining())


class SessionController:
    """Drives every run through its phases. One instance serves all runs."""

    def __init__(
        self,
        catalog: CaseCatalog,
        store: InMemoryRunStore | None = None,
        responder: Responder = reply,
        scoring: ScoringEngine | None = None,
    ):
        self.catalog = catalog
        self.store = store or InMemoryRunStore()
        self.responder = responder
        self.scoring = scoring or ScoringEngine()
        self._timers: dict[str, Countdown] = {}
        self._pending_turns: set[str] = set()

    # ── Helpers ──────────────────────────────────────────────────

    def _lock(self, run_id: str) -> asyncio.Lock:
        return self.store.lock(run_id)

    def _case(self, run: SimulationRun) -> CaseDocument:
        return self.catalog.get_case(run.case_id)

    def _require_open(self, run: SimulationRun, attempted: str) -> None:
        if run.status.is_terminal or run.status == RunStatus.NOT_STARTED:
            raise InvalidPhaseTransition(run.id, run.status, attempted)

    def _close(self, run: SimulationRun, reason: SubmitReason) -> None:
        """Non-terminal → SUBMITTED (via EXPIRED on timeout); stops the clock."""
        now = utcnow()
        if reason == SubmitReason.EXPIRED:
            run.transition_to(RunStatus.EXPIRED, now)
        run.transition_to(RunStatus.SUBMITTED, now)
        run.ended_at = now
        run.submit_reason = reason
        self.store.save(run)

        timer = self._timers.pop(run.id, None)
        if timer is not None:
            timer.cancel()
        logger.info(f"Run {run.id} submitted ({reason.value})")

    async def _score(self, run: SimulationRun) -> DebriefArtifact:
        case = self._case(run)
        score = await self.scoring.score(case, run.transcript, run.actions)
        run.score = score
        run.scored_at = utcnow()
        run.transition_to(RunStatus.SCORED, run.scored_at)
        self.store.save(run)
        if score.partial:
            logger.warning(f"Run {run.id} scored from the action log only")
        return compile_debrief(run, case, score)

    # ── Queries ──────────────────────────────────────────────────

    def get_run(self, run_id: str) -> SimulationRun:
        return self.store.get(run_id)

    def countdown_remaining(self, run_id: str) -> int:
        """Whole seconds left on the run's clock; 0 once the run is closed."""
        run = self.store.get(run_id)
        if run.status.is_terminal:
            return 0
        timer = self._timers.get(run_id)
        if timer is not None:
            return math.ceil(timer.remaining())
        elapsed = (utcnow() - run.started_at).total_seconds() if run.started_at else 0
        return max(0, math.ceil(run.time_limit_seconds - elapsed))

    def get_debrief(self, run_id: str) -> DebriefArtifact:
        run = self.store.get(run_id)
        if run.score is None:
            raise InvalidPhaseTransition(run.id, run.status, RunStatus.SCORED)
        return compile_debrief(run, self._case(run), run.score)

    # ── Start ────────────────────────────────────────────────────

    async def start_session(self, assignment_id: str, student_id: str) -> StartedSession:
        """
        Opens the student's run for an assignment, seeded with the patient's
        greeting and a running countdown. A repeat start returns the same run.
        """
        assignment = self.catalog.get_assignment(assignment_id)

        existing = self.store.find_attempt(assignment_id, student_id)
        if existing is not None:
            greeting = existing.transcript[0].text if existing.transcript else ""
            return StartedSession(existing, greeting, self._timers.get(existing.id))

        if not assignment.is_active():
            raise AssignmentInactive(f"Assignment '{assignment_id}' is not open")

        case = self.catalog.get_case(assignment.case_id)
        minutes = assignment.time_limit or case.duration_minutes or settings.default_time_limit_minutes
        now = utcnow()
        greeting = settings.greeting_template.format(stem=case.stem)

        run = SimulationRun(
            assignment_id=assignment_id,
            student_id=student_id,
            case_id=case.id,
            started_at=now,
            time_limit_seconds=minutes * 60,
        )
        run.transition_to(RunStatus.IN_PROGRESS, now)
        run.transcript.append(TranscriptTurn(role=MessageRole.PATIENT, text=greeting, timestamp=now))
        self.store.save(run)

        countdown = Countdown(run.time_limit_seconds, partial(self.expire, run.id)).start()
        self._timers[run.id] = countdown

        logger.info(f"Started run {run.id} for student {student_id} ({minutes:g} min)")
        return StartedSession(run, greeting, countdown)

    # ── Conversation ─────────────────────────────────────────────

    async def post_message(self, run_id: str, text: str) -> TranscriptTurn:
        """
        Sends a student message to the patient and returns the patient's turn.
        Both turns are appended only once the reply exists.
        """
        text = (text or "").strip()
        if not text:
            raise EmptyMessage()
        received_at = utcnow()

        async with self._lock(run_id):
            run = self.store.get(run_id)
            if run.status != RunStatus.IN_PROGRESS:
                raise InvalidPhaseTransition(run.id, run.status, "chat")
            if run_id in self._pending_turns:
                raise ConversationBusy()
            self._pending_turns.add(run_id)
            policy = PersonaPolicy.from_case(self._case(run))
            history = list(run.transcript)

        try:
            utterance = await self.responder(policy, history, text)

            async with self._lock(run_id):
                self._pending_turns.discard(run_id)
                if run.status != RunStatus.IN_PROGRESS:
                    raise InvalidPhaseTransition(run.id, run.status, "chat")
                patient_turn = TranscriptTurn(role=MessageRole.PATIENT, text=utterance)
                run.transcript.append(
                    TranscriptTurn(role=MessageRole.STUDENT, text=text, timestamp=received_at)
                )
                run.transcript.append(patient_turn)
                self.store.save(run)
        finally:
            self._pending_turns.discard(run_id)

        return patient_turn

    # ── Action Ledger ────────────────────────────────────────────

    async def record_action(self, run_id: str, action_type: ActionType, item_id: str) -> ActionRecord:
        """Reveal an exam item or order a lab. Repeats return the existing entry."""
        async with self._lock(run_id):
            run = self.store.get(run_id)
            self._require_open(run, action_type.value)
            ledger = ActionLedger(run, self._case(run))
            if action_type == ActionType.EXAM_REVEAL:
                record = ledger.reveal_exam(item_id)
            elif action_type == ActionType.LAB_ORDER:
                record = ledger.order_lab(item_id)
            else:
                raise InvalidPhaseTransition(run.id, run.status, action_type.value)
            self.store.save(run)
            return record

    async def reveal_exam(self, run_id: str, item_id: str) -> ActionRecord:
        return await self.record_action(run_id, ActionType.EXAM_REVEAL, item_id)

    async def order_lab(self, run_id: str, item_id: str) -> ActionRecord:
        return await self.record_action(run_id, ActionType.LAB_ORDER, item_id)

    # ── Decisions ────────────────────────────────────────────────

    async def enter_diagnosis(self, run_id: str) -> SimulationRun:
        async with self._lock(run_id):
            run = self.store.get(run_id)
            if run.status == RunStatus.DIAGNOSIS_PHASE:
                return run
            run.transition_to(RunStatus.DIAGNOSIS_PHASE)
            self.store.save(run)
            return run

    async def submit_diagnosis(self, run_id: str, selection: DiagnosisSelection) -> DiagnosisAction:
        async with self._lock(run_id):
            run = self.store.get(run_id)
            if run.status not in DECISION_STATUSES:
                raise InvalidPhaseTransition(run.id, run.status, RunStatus.MANAGEMENT_PHASE)

            case = self._case(run)
            payload = capture_diagnosis(case, selection)
            record = ActionLedger(run, case).record_diagnosis(payload)
            run.transition_to(RunStatus.MANAGEMENT_PHASE)
            self.store.save(run)
            logger.info(f"Run {run.id} diagnosis accepted")
            return record

    async def submit_management(self, run_id: str, selection: ManagementSelection) -> ManagementAction:
        async with self._lock(run_id):
            run = self.store.get(run_id)
            if run.status != RunStatus.MANAGEMENT_PHASE:
                raise InvalidPhaseTransition(run.id, run.status, RunStatus.SUBMITTED)

            case = self._case(run)
            payload = capture_management(case, selection)
            record = ActionLedger(run, case).record_management(payload)
            self._close(run, SubmitReason.COMPLETED)
            return record

    # ── Submission & Scoring ─────────────────────────────────────

    async def force_submit(self, run_id: str, reason: SubmitReason = SubmitReason.EARLY_SUBMIT) -> SimulationRun:
        """Closes the run from any open phase. A closed run is left as it is."""
        async with self._lock(run_id):
            run = self.store.get(run_id)
            if not run.status.is_terminal:
                self._close(run, reason)
            return run

    async def expire(self, run_id: str) -> bool:
        """
        Countdown reached zero: submit and score the run.
        Returns False when the run was already closed.
        """
        try:
            lock = self._lock(run_id)
        except RunNotFound:
            logger.warning(f"Expiry for unknown run {run_id}")
            return False

        async with lock:
            run = self.store.get(run_id)
            if run.status.is_terminal:
                logger.info(f"Ignoring late expiry for run {run_id} ({run.status.value})")
                return False
            self._close(run, SubmitReason.EXPIRED)

        await self.submit_run(run_id)
        return True

    async def submit_run(self, run_id: str) -> DebriefArtifact:
        """
        Submits (if still open) and scores the run. An already scored run
        returns its stored result.
        """
        async with self._lock(run_id):
            run = self.store.get(run_id)
            if not run.status.is_terminal:
                self._close(run, SubmitReason.EARLY_SUBMIT)
            if run.status == RunStatus.SCORED and run.score is not None:
                return compile_debrief(run, self._case(run), run.score)
            return await self._score(run)

    async def retry_scoring(self, run_id: str) -> DebriefArtifact:
        """Re-runs both scoring passes and replaces the stored score."""
        async with self._lock(run_id):
            run = self.store.get(run_id)
            if run.status not in (RunStatus.SUBMITTED, RunStatus.SCORED):
                raise InvalidPhaseTransition(run.id, run.status, RunStatus.SCORED)
            return await self._score(run)

    # ── Shutdown ─────────────────────────────────────────────────

    async def aclose(self) -> None:
        """Cancels every running countdown."""
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*(t.wait() for t in timers))
