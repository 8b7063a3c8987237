"""
FastAPI Application — The main entry point.

• Lifespan: Loads the case catalog and builds the SessionController.
• Routes: One endpoint per session operation, keyed by `run_id`.
• Errors: Every OsceError maps to its status code and a stable error code.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import litellm
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from oscesim.cases.catalog import CaseCatalog
from oscesim.config import settings
from oscesim.errors import OsceError
from oscesim.service.schema import (
    ActionResponse,
    CaseBrief,
    ChatRequest,
    ChatResponse,
    ItemRequest,
    RunStateResponse,
    RunStatusResponse,
    SessionStartRequest,
    SessionStartResponse,
)
from oscesim.workflow.decisions import DiagnosisSelection, ManagementSelection
from oscesim.workflow.persistence import InMemoryRunStore
from oscesim.workflow.session import SessionController
from oscesim.workflow.state import DebriefArtifact

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
    1. Configure logging and LangSmith tracing.
    2. Load cases + assignments, build the controller.
    Shutdown: cancel every running countdown.
    """
    logging.basicConfig(level=settings.log_level)
    logger.info("Initializing OSCE simulator...")

    # 1. Observability (LangSmith)
    if settings.langchain_tracing_v2.lower() == "true" and settings.langchain_api_key:
        logger.info("LangSmith tracing enabled via LiteLLM.")
        litellm.success_callback = ["langsmith"]
        litellm.failure_callback = ["langsmith"]
    else:
        logger.info("LangSmith tracing is disabled.")

    # 2. Catalog & Controller
    catalog = CaseCatalog.from_directory(settings.case_dir, settings.assignments_file)
    controller = SessionController(catalog, InMemoryRunStore())

    app.state.catalog = catalog
    app.state.controller = controller

    logger.info("✅ System Ready.")
    yield

    logger.info("🛑 Shutting down, cancelling countdowns...")
    await controller.aclose()


app = FastAPI(title="OsceSim", version="1.0.0", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(OsceError)
async def osce_error_handler(request: Request, exc: OsceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": str(exc)})


def _controller() -> SessionController:
    return app.state.controller


def _status(controller: SessionController, run_id: str) -> RunStatusResponse:
    run = controller.get_run(run_id)
    return RunStatusResponse(
        run_id=run.id,
        status=run.status,
        countdown_seconds=controller.countdown_remaining(run_id),
    )


# ── Session Endpoints ────────────────────────────────────────────

@app.post("/api/sessions", response_model=SessionStartResponse)
async def start_session(request: SessionStartRequest):
    """Begin (or resume) the student's run for an assignment."""
    controller = _controller()
    started = await controller.start_session(request.assignment_id, request.student_id)
    case = controller.catalog.get_case(started.run.case_id)

    return SessionStartResponse(
        run_id=started.run.id,
        status=started.run.status,
        greeting=started.greeting,
        countdown_seconds=started.countdown_seconds,
        case=CaseBrief.from_case(case),
    )


@app.get("/api/runs/{run_id}", response_model=RunStateResponse)
async def get_run_state(run_id: str):
    """Retrieve full run state for resumption."""
    controller = _controller()
    run = controller.get_run(run_id)
    return RunStateResponse.build(
        run, controller.countdown_remaining(run_id), controller.catalog.get_case(run.case_id)
    )


@app.post("/api/runs/{run_id}/messages", response_model=ChatResponse)
async def post_message(run_id: str, request: ChatRequest):
    """Send a student message to the patient."""
    controller = _controller()
    turn = await controller.post_message(run_id, request.message)
    status = _status(controller, run_id)

    return ChatResponse(
        run_id=run_id,
        patient_response=turn.text,
        status=status.status,
        countdown_seconds=status.countdown_seconds,
    )


# ── Ledger Endpoints ─────────────────────────────────────────────

@app.post("/api/runs/{run_id}/exam", response_model=ActionResponse)
async def reveal_exam(run_id: str, request: ItemRequest):
    controller = _controller()
    action = await controller.reveal_exam(run_id, request.item_id)
    return ActionResponse(run_id=run_id, status=controller.get_run(run_id).status, action=action)


@app.post("/api/runs/{run_id}/labs", response_model=ActionResponse)
async def order_lab(run_id: str, request: ItemRequest):
    controller = _controller()
    action = await controller.order_lab(run_id, request.item_id)
    return ActionResponse(run_id=run_id, status=controller.get_run(run_id).status, action=action)


# ── Decision Endpoints ───────────────────────────────────────────

@app.post("/api/runs/{run_id}/diagnosis/start", response_model=RunStatusResponse)
async def enter_diagnosis(run_id: str):
    controller = _controller()
    await controller.enter_diagnosis(run_id)
    return _status(controller, run_id)


@app.post("/api/runs/{run_id}/diagnosis", response_model=ActionResponse)
async def submit_diagnosis(run_id: str, selection: DiagnosisSelection):
    controller = _controller()
    action = await controller.submit_diagnosis(run_id, selection)
    return ActionResponse(run_id=run_id, status=controller.get_run(run_id).status, action=action)


@app.post("/api/runs/{run_id}/management", response_model=ActionResponse)
async def submit_management(run_id: str, selection: ManagementSelection):
    controller = _controller()
    action = await controller.submit_management(run_id, selection)
    return ActionResponse(run_id=run_id, status=controller.get_run(run_id).status, action=action)


# ── Scoring Endpoints ────────────────────────────────────────────

@app.post("/api/runs/{run_id}/submit", response_model=DebriefArtifact)
async def submit_run(run_id: str):
    """Submit (if still open) and score the run."""
    return await _controller().submit_run(run_id)


@app.post("/api/runs/{run_id}/rescore", response_model=DebriefArtifact)
async def retry_scoring(run_id: str):
    """Re-run scoring, e.g. after a degraded semantic pass."""
    return await _controller().retry_scoring(run_id)


@app.get("/api/runs/{run_id}/debrief", response_model=DebriefArtifact)
async def get_debrief(run_id: str):
    return _controller().get_debrief(run_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("oscesim.service.api:app", host=settings.host, port=settings.port, reload=False)
