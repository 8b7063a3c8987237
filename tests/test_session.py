import asyncio

import pytest

from oscesim.agents.professor import SemanticMatch
from oscesim.errors import (
    AssignmentInactive,
    AssignmentNotFound,
    ConversationBusy,
    EmptyMessage,
    IncompleteManagementSelection,
    InvalidDiagnosisSelection,
    InvalidManagementSelection,
    InvalidPhaseTransition,
    PatientResponseUnavailable,
    RunNotFound,
)
from oscesim.workflow.decisions import DiagnosisSelection, ManagementSelection
from oscesim.workflow.state import (
    ALLOWED_TRANSITIONS,
    ActionType,
    MessageRole,
    RunStatus,
    SimulationRun,
    SubmitReason,
)
from oscesim.workflow.timer import Countdown

STUDENT = "student-001"


async def _start(controller, assignment_id="asg-open"):
    started = await controller.start_session(assignment_id, STUDENT)
    return started.run.id


async def _to_management(controller, run_id):
    await controller.submit_diagnosis(run_id, DiagnosisSelection(selected_option_id="dx1", confirmed=True))


# ── Start ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_start_session_seeds_greeting_and_countdown(controller, sample_case):
    started = await controller.start_session("asg-open", STUDENT)

    assert started.run.status == RunStatus.IN_PROGRESS
    assert started.greeting == f"Namaste Doctor. {sample_case.stem}"
    assert started.run.transcript[0].role == MessageRole.PATIENT
    assert started.run.transcript[0].text == started.greeting
    assert 700 < started.countdown_seconds <= 720
    assert started.run.time_limit_seconds == 720


@pytest.mark.asyncio
async def test_start_session_twice_returns_same_run(controller):
    first = await controller.start_session("asg-open", STUDENT)
    second = await controller.start_session("asg-open", STUDENT)

    assert first.run.id == second.run.id
    assert len(controller.store) == 1


@pytest.mark.asyncio
async def test_start_session_rejects_unknown_and_inactive(controller):
    with pytest.raises(AssignmentNotFound):
        await controller.start_session("asg-missing", STUDENT)
    with pytest.raises(AssignmentInactive):
        await controller.start_session("asg-closed", STUDENT)
    assert len(controller.store) == 0


# ── Conversation ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_post_message_appends_both_turns(controller, responder):
    run_id = await _start(controller)

    turn = await controller.post_message(run_id, "  When did it start?  ")

    run = controller.get_run(run_id)
    assert turn.text == responder.text
    assert [t.role for t in run.transcript] == [MessageRole.PATIENT, MessageRole.STUDENT, MessageRole.PATIENT]
    assert run.transcript[1].text == "When did it start?"

    policy, history, message = responder.calls[0]
    assert policy.patient_name == "Ramesh Kumar"
    assert len(history) == 1, "The responder sees the transcript before this message."


@pytest.mark.asyncio
async def test_post_message_failure_leaves_transcript_untouched(controller, responder):
    run_id = await _start(controller)
    responder.fail = True

    with pytest.raises(PatientResponseUnavailable):
        await controller.post_message(run_id, "How is your appetite?")
    assert len(controller.get_run(run_id).transcript) == 1

    # The student may simply send the same message again.
    responder.fail = False
    await controller.post_message(run_id, "How is your appetite?")
    assert len(controller.get_run(run_id).transcript) == 3


@pytest.mark.asyncio
async def test_second_message_while_pending_is_busy(controller, responder):
    run_id = await _start(controller)
    responder.gate = asyncio.Event()

    pending = asyncio.create_task(controller.post_message(run_id, "First question"))
    while not responder.calls:
        await asyncio.sleep(0)

    with pytest.raises(ConversationBusy):
        await controller.post_message(run_id, "Second question")

    responder.gate.set()
    await pending
    assert [t.text for t in controller.get_run(run_id).transcript][1] == "First question"
    assert len(controller.get_run(run_id).transcript) == 3


@pytest.mark.asyncio
async def test_reply_arriving_after_expiry_is_discarded(controller, responder, matcher):
    run_id = await _start(controller)
    responder.gate = asyncio.Event()

    pending = asyncio.create_task(controller.post_message(run_id, "Any pain at night?"))
    while not responder.calls:
        await asyncio.sleep(0)

    # The clock keeps running while the patient is still answering.
    assert await controller.expire(run_id) is True
    responder.gate.set()

    with pytest.raises(InvalidPhaseTransition):
        await pending
    run = controller.get_run(run_id)
    assert len(run.transcript) == 1
    assert run.status == RunStatus.SCORED
    assert run.submit_reason == SubmitReason.EXPIRED
    assert matcher.calls == []


@pytest.mark.asyncio
async def test_post_message_rejects_empty_and_closed_phase(controller):
    run_id = await _start(controller)

    with pytest.raises(EmptyMessage):
        await controller.post_message(run_id, "   ")

    await controller.enter_diagnosis(run_id)
    with pytest.raises(InvalidPhaseTransition):
        await controller.post_message(run_id, "One more question")


@pytest.mark.asyncio
async def test_unknown_run(controller):
    with pytest.raises(RunNotFound):
        await controller.post_message("nope", "Hello")
    with pytest.raises(RunNotFound):
        controller.get_run("nope")


@pytest.mark.asyncio
async def test_run_locks_belong_to_stored_runs(controller):
    run_id = await _start(controller)

    assert controller.store.lock(run_id) is controller.store.lock(run_id)

    with pytest.raises(RunNotFound):
        await controller.reveal_exam("nope", "pulse")
    with pytest.raises(RunNotFound):
        controller.store.lock("nope")
    assert await controller.expire("nope") is False


# ── Action Ledger ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reveal_exam_is_idempotent(controller):
    run_id = await _start(controller)

    first = await controller.reveal_exam(run_id, "pulse")
    second = await controller.reveal_exam(run_id, "Pulse")

    run = controller.get_run(run_id)
    assert first == second
    assert len(run.actions_of(ActionType.EXAM_REVEAL)) == 1
    assert first.payload.finding == "Pitta-predominant pulse, 82/min, regular"


@pytest.mark.asyncio
async def test_unknown_exam_and_lab_items_are_normal(controller):
    run_id = await _start(controller)

    exam = await controller.reveal_exam(run_id, "reflexes")
    lab = await controller.order_lab(run_id, "lipid_profile")

    assert exam.payload.finding == "No abnormality detected."
    assert lab.payload.result == "Result within normal limits."
    assert [a.type for a in controller.get_run(run_id).actions] == [ActionType.EXAM_REVEAL, ActionType.LAB_ORDER]


@pytest.mark.asyncio
async def test_actions_rejected_after_submission(controller):
    run_id = await _start(controller)
    await controller.force_submit(run_id)

    with pytest.raises(InvalidPhaseTransition):
        await controller.reveal_exam(run_id, "pulse")
    with pytest.raises(InvalidPhaseTransition):
        await controller.order_lab(run_id, "cbc")


# ── Diagnosis ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_free_text_sentinel_requires_text(controller):
    run_id = await _start(controller)

    with pytest.raises(InvalidDiagnosisSelection):
        await controller.submit_diagnosis(run_id, DiagnosisSelection(selected_option_id="other", confirmed=True))

    run = controller.get_run(run_id)
    assert run.status == RunStatus.IN_PROGRESS
    assert run.actions == []

    record = await controller.submit_diagnosis(
        run_id, DiagnosisSelection(selected_option_id="other", free_text="Amavata", confirmed=True)
    )
    assert record.payload.free_text == "Amavata"
    assert record.payload.selected_option_id is None
    assert controller.get_run(run_id).status == RunStatus.MANAGEMENT_PHASE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "selection",
    [
        DiagnosisSelection(selected_option_id="dx1", confirmed=False),
        DiagnosisSelection(selected_option_id="dx1", free_text="Also this", confirmed=True),
        DiagnosisSelection(selected_option_id="dx9", confirmed=True),
        DiagnosisSelection(confirmed=True),
        DiagnosisSelection(free_text="x" * 251, confirmed=True),
    ],
)
async def test_invalid_diagnosis_selections(controller, selection):
    run_id = await _start(controller)

    with pytest.raises(InvalidDiagnosisSelection):
        await controller.submit_diagnosis(run_id, selection)
    assert controller.get_run(run_id).status == RunStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_diagnosis_from_diagnosis_phase(controller):
    run_id = await _start(controller)
    await controller.enter_diagnosis(run_id)
    await controller.enter_diagnosis(run_id)

    record = await controller.submit_diagnosis(run_id, DiagnosisSelection(selected_option_id="dx1", confirmed=True))

    assert record.payload.option_text == "Amlapitta (hyperacidity)"
    assert controller.get_run(run_id).status == RunStatus.MANAGEMENT_PHASE
    with pytest.raises(InvalidPhaseTransition):
        await controller.submit_diagnosis(run_id, DiagnosisSelection(selected_option_id="dx1", confirmed=True))


# ── Management ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_management_requires_management_phase(controller):
    run_id = await _start(controller)

    with pytest.raises(InvalidPhaseTransition):
        await controller.submit_management(run_id, ManagementSelection(immediate=["A1"], confirmed=True))


@pytest.mark.asyncio
async def test_management_validation_leaves_run_unchanged(controller):
    run_id = await _start(controller)
    await _to_management(controller, run_id)

    with pytest.raises(InvalidManagementSelection):
        await controller.submit_management(run_id, ManagementSelection(immediate=["Z9"], confirmed=True))
    with pytest.raises(IncompleteManagementSelection):
        await controller.submit_management(run_id, ManagementSelection(investigations=["B1"], confirmed=True))

    run = controller.get_run(run_id)
    assert run.status == RunStatus.MANAGEMENT_PHASE
    assert run.actions_of(ActionType.MANAGEMENT_SUBMITTED) == []


@pytest.mark.asyncio
async def test_management_submission_closes_run(controller):
    run_id = await _start(controller)
    await _to_management(controller, run_id)

    # Investigations fall back to the default options (B1, B2) for this case.
    record = await controller.submit_management(
        run_id, ManagementSelection(immediate=["A1", "A1"], investigations=["B1"], definitive="C1", confirmed=True)
    )

    run = controller.get_run(run_id)
    assert record.payload.immediate == ["A1"]
    assert "Dietary modification and regular meal timings" in record.payload.selected_texts
    assert run.status == RunStatus.SUBMITTED
    assert run.submit_reason == SubmitReason.COMPLETED
    assert run.ended_at is not None
    assert controller.countdown_remaining(run_id) == 0


# ── Submission, Expiry & Scoring ─────────────────────────────────

@pytest.mark.asyncio
async def test_force_submit_from_any_open_phase(controller):
    run_id = await _start(controller)
    await controller.enter_diagnosis(run_id)

    run = await controller.force_submit(run_id)
    assert run.status == RunStatus.SUBMITTED
    assert run.submit_reason == SubmitReason.EARLY_SUBMIT

    again = await controller.force_submit(run_id, SubmitReason.EXPIRED)
    assert again.submit_reason == SubmitReason.EARLY_SUBMIT


@pytest.mark.asyncio
async def test_expire_submits_and_scores_once(controller, matcher):
    run_id = await _start(controller)
    await controller.reveal_exam(run_id, "pulse")

    assert await controller.expire(run_id) is True
    run = controller.get_run(run_id)
    timeline = [change.status for change in run.timeline]

    assert run.status == RunStatus.SCORED
    assert run.submit_reason == SubmitReason.EXPIRED
    assert timeline[-3:] == [RunStatus.EXPIRED, RunStatus.SUBMITTED, RunStatus.SCORED]
    assert "E1" in run.score.credited_item_ids

    assert await controller.expire(run_id) is False
    assert len(controller.get_run(run_id).timeline) == len(timeline)


@pytest.mark.asyncio
async def test_countdown_expiry_scores_run(controller):
    run_id = await _start(controller, "asg-quick")

    for _ in range(100):
        if controller.get_run(run_id).status == RunStatus.SCORED:
            break
        await asyncio.sleep(0.02)

    run = controller.get_run(run_id)
    assert run.status == RunStatus.SCORED
    assert run.submit_reason == SubmitReason.EXPIRED
    assert controller.countdown_remaining(run_id) == 0


@pytest.mark.asyncio
async def test_submit_run_returns_stored_score(controller, matcher):
    run_id = await _start(controller)
    await controller.post_message(run_id, "When did the burning start?")
    matcher.matches = [SemanticMatch(item_id="H1", demonstrated=True, confidence=0.9, evidence="Line 2")]

    first = await controller.submit_run(run_id)
    second = await controller.submit_run(run_id)

    assert len(matcher.calls) == 1
    assert first.total_points == second.total_points == 2
    assert controller.get_run(run_id).status == RunStatus.SCORED


@pytest.mark.asyncio
async def test_retry_scoring_replaces_partial_score(controller, matcher):
    run_id = await _start(controller)
    await controller.post_message(run_id, "When did the burning start?")
    await controller.reveal_exam(run_id, "pulse")
    matcher.fail = True

    degraded = await controller.submit_run(run_id)
    assert degraded.warnings
    assert degraded.total_points == 2

    matcher.fail = False
    matcher.matches = [SemanticMatch(item_id="H1", demonstrated=True, confidence=0.9, evidence="Line 2")]
    refreshed = await controller.retry_scoring(run_id)

    assert refreshed.warnings == []
    assert refreshed.total_points == 4
    assert controller.get_run(run_id).score.partial is False


@pytest.mark.asyncio
async def test_scoring_requires_submission(controller):
    run_id = await _start(controller)

    with pytest.raises(InvalidPhaseTransition):
        await controller.retry_scoring(run_id)
    with pytest.raises(InvalidPhaseTransition):
        controller.get_debrief(run_id)


# ── Transition Table & Countdown ─────────────────────────────────

def test_transition_table_covers_every_status():
    assert set(ALLOWED_TRANSITIONS) == set(RunStatus)
    for targets in ALLOWED_TRANSITIONS.values():
        assert RunStatus.NOT_STARTED not in targets


@pytest.mark.parametrize(
    "current, target",
    [
        (RunStatus.SCORED, RunStatus.IN_PROGRESS),
        (RunStatus.SUBMITTED, RunStatus.IN_PROGRESS),
        (RunStatus.MANAGEMENT_PHASE, RunStatus.DIAGNOSIS_PHASE),
        (RunStatus.NOT_STARTED, RunStatus.SUBMITTED),
        (RunStatus.EXPIRED, RunStatus.SCORED),
    ],
)
def test_invalid_transitions_raise(current, target):
    run = SimulationRun(assignment_id="a", student_id="s", case_id="c", status=current)

    with pytest.raises(InvalidPhaseTransition):
        run.transition_to(target)
    assert run.status == current


@pytest.mark.asyncio
async def test_countdown_decreases_and_cancels():
    fired = []

    async def on_expire():
        fired.append(True)

    countdown = Countdown(10, on_expire).start()
    first = countdown.remaining()
    await asyncio.sleep(0.05)
    second = countdown.remaining()

    assert 0 < second < first <= 10
    countdown.cancel()
    countdown.cancel()
    await asyncio.sleep(0.01)
    assert fired == []
    assert not countdown.active


@pytest.mark.asyncio
async def test_countdown_fires_once_and_can_cancel_itself():
    fired = []

    async def on_expire():
        fired.append(True)
        countdown.cancel()

    countdown = Countdown(0.01, on_expire).start()
    await asyncio.sleep(0.1)

    assert fired == [True]
    assert countdown.remaining() == 0
