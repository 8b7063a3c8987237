"""
Error Taxonomy — every failure the engine reports to a caller.

• Not found: the run, assignment or case does not exist.
• Validation: the request is rejected before any state changes.
• Upstream: the language-model service failed; the caller may retry.

Each error carries a stable `code` and the HTTP status the service maps it to.
"""

from __future__ import annotations


class OsceError(Exception):
    """Base class for all engine errors."""

    code = "osce_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.code)


# ── Not Found ────────────────────────────────────────────────────

class NotFoundError(OsceError):
    code = "not_found"
    status_code = 404


class RunNotFound(NotFoundError):
    """Simulation run not found."""
    code = "run_not_found"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Simulation run '{run_id}' not found")


class AssignmentNotFound(NotFoundError):
    """Assignment not found."""
    code = "assignment_not_found"

    def __init__(self, assignment_id: str):
        self.assignment_id = assignment_id
        super().__init__(f"Assignment '{assignment_id}' not found")


class CaseNotFound(NotFoundError):
    """Case not found."""
    code = "case_not_found"

    def __init__(self, case_id: str):
        self.case_id = case_id
        super().__init__(f"Case '{case_id}' not found")


# ── Validation ───────────────────────────────────────────────────

class AssignmentInactive(OsceError):
    """Assignment is outside its availability window."""
    code = "assignment_inactive"
    status_code = 409


class InvalidPhaseTransition(OsceError):
    code = "invalid_phase_transition"
    status_code = 409

    def __init__(self, run_id: str, current, target):
        self.run_id = run_id
        self.current = current
        self.target = target
        super().__init__(
            f"Run '{run_id}' cannot move from {getattr(current, 'value', current)} "
            f"to {getattr(target, 'value', target)}"
        )


class ConversationBusy(OsceError):
    """The patient is still answering the previous message."""
    code = "conversation_busy"
    status_code = 409


class EmptyMessage(OsceError):
    """Type a question for the patient before sending."""
    code = "empty_message"
    status_code = 422


class InvalidDiagnosisSelection(OsceError):
    """Select a diagnosis option or describe your own diagnosis."""
    code = "invalid_diagnosis_selection"
    status_code = 422


class InvalidManagementSelection(OsceError):
    """The management plan references options that were not offered."""
    code = "invalid_management_selection"
    status_code = 422


class IncompleteManagementSelection(InvalidManagementSelection):
    """Select at least one immediate action or a definitive plan."""
    code = "incomplete_management_selection"


# ── Upstream ─────────────────────────────────────────────────────

class UpstreamError(OsceError):
    status_code = 503


class PatientResponseUnavailable(UpstreamError):
    """The patient could not respond. Please try sending your message again."""
    code = "patient_response_unavailable"


class ScoringUnavailable(UpstreamError):
    """Semantic scoring is unavailable. Scores reflect recorded actions only."""
    code = "scoring_unavailable"
