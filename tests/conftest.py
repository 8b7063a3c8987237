from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import AsyncGenerator
import asyncio
import pytest
from httpx import AsyncClient

# We need to set up environment variables BEFORE importing the app
import os
os.environ["LLM_API_KEY"] = "fake-llm-key"
os.environ["LANGCHAIN_TRACING_V2"] = "false"

# Now we can safely import the FastAPI app
from oscesim.service.api import app
from oscesim.cases.catalog import Assignment, CaseCatalog
from oscesim.cases.document import CaseDocument
from oscesim.config import settings
from oscesim.errors import PatientResponseUnavailable, ScoringUnavailable
from oscesim.workflow.graph import ScoringEngine
from oscesim.workflow.persistence import InMemoryRunStore
from oscesim.workflow.session import SessionController

SAMPLE_CASE_FILE = settings.case_dir / "amlapitta-01.json"


# --- Case Fixtures ---

@pytest.fixture
def sample_case() -> CaseDocument:
    """The bundled Amlapitta case, loaded exactly as the catalog loads it."""
    return CaseDocument.model_validate_json(SAMPLE_CASE_FILE.read_text(encoding="utf-8"))


@pytest.fixture
def scenario_case() -> CaseDocument:
    """One section worth 2 points: a pulse exam item and a digestion history item."""
    return CaseDocument.model_validate({
        "id": "scenario-01",
        "patient": {"name": "Asha", "age": 35, "gender": "F"},
        "stem": "I feel bloated after meals.",
        "rubric": [
            {
                "section": "Clinical Skills",
                "max": 2,
                "items": [
                    {"id": "A1", "weight": 1, "text": "orders pulse exam"},
                    {"id": "A2", "weight": 1, "text": "asks about digestion"},
                ],
            }
        ],
    })


@pytest.fixture
def catalog(sample_case) -> CaseCatalog:
    now = datetime.now(timezone.utc)
    return CaseCatalog(
        cases=[sample_case],
        assignments=[
            Assignment(id="asg-open", case_id=sample_case.id,
                       start_at=now - timedelta(hours=1), end_at=now + timedelta(hours=1), time_limit=12),
            Assignment(id="asg-closed", case_id=sample_case.id,
                       start_at=now - timedelta(days=2), end_at=now - timedelta(days=1)),
            Assignment(id="asg-quick", case_id=sample_case.id,
                       start_at=now - timedelta(hours=1), time_limit=0.002),
        ],
    )


# --- Fake Collaborators ---

class FakeResponder:
    """Stands in for the patient LLM. Set `fail` or `gate` to shape a turn."""

    def __init__(self):
        self.text = "It started about three months ago, doctor."
        self.fail = False
        self.gate: asyncio.Event | None = None
        self.calls = []

    async def __call__(self, policy, transcript, message):
        self.calls.append((policy, list(transcript), message))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise PatientResponseUnavailable()
        return self.text


class FakeMatcher:
    """Stands in for the examiner LLM; returns `matches` or raises when `fail`."""

    def __init__(self):
        self.matches = []
        self.fail = False
        self.calls = []
        self.child_cases = []

    async def __call__(self, rubric, transcript, pending_ids, child_case=False):
        self.calls.append(list(pending_ids))
        self.child_cases.append(child_case)
        if self.fail:
            raise ScoringUnavailable()
        return list(self.matches)


@pytest.fixture
def responder() -> FakeResponder:
    return FakeResponder()


@pytest.fixture
def matcher() -> FakeMatcher:
    return FakeMatcher()


@pytest.fixture
async def controller(catalog, responder, matcher) -> AsyncGenerator[SessionController, None]:
    controller = SessionController(
        catalog, InMemoryRunStore(), responder=responder, scoring=ScoringEngine(matcher)
    )
    yield controller
    await controller.aclose()


# --- Mock FastAPI App State (Bypassing Lifespan) ---

@pytest.fixture
async def async_client(controller) -> AsyncGenerator[AsyncClient, None]:
    """Provides a mocked async HTTP client wired to the test controller."""
    from httpx import ASGITransport
    app.state.controller = controller
    app.state.catalog = controller.catalog
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


def make_llm_response(content: str):
    """Shape of a litellm completion response, as far as the agents read it."""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.fixture
def mock_litellm(mocker):
    """
    Critically important fixture: intercepts all litellm.acompletion calls
    so that tests NEVER spend actual API tokens.
    """
    return mocker.patch(
        "litellm.acompletion",
        new_callable=mocker.AsyncMock,
        return_value=make_llm_response("This is a securely mocked response from the LLM."),
    )


@pytest.fixture
def llm_response():
    return make_llm_response
