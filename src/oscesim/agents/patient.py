"""
Patient Agent — Persona Policy and Reply Logic.

This module defines the simulated patient of a case.
The persona is a declarative PersonaPolicy built from the case document;
`reply` renders it into a system prompt, calls the LLM, and enforces the
policy on whatever comes back.
"""

from __future__ import annotations

import logging
import re
from typing import Awaitable, Callable

import litellm
from pydantic import BaseModel, ConfigDict, Field

from oscesim.cases.document import CaseDocument
from oscesim.config import settings
from oscesim.errors import PatientResponseUnavailable
from oscesim.workflow.state import MessageRole, TranscriptTurn

logger = logging.getLogger(__name__)


# ── The Policy ───────────────────────────────────────────────────

PERSONA_RULES: tuple[str, ...] = (
    "Answer only what the doctor asks. Do not volunteer extra history.",
    "Only share facts from YOUR HISTORY. If asked about something not covered there, "
    "say you are not sure.",
    "Never describe examination findings or test results. The doctor must examine you "
    "or order tests to learn them.",
    "Never name, guess or hint at your diagnosis.",
    "Plain speech only: no lists, headings, markdown, stage directions or role labels.",
    "Stay in character as the patient at all times.",
)


class PersonaPolicy(BaseModel):
    """Everything the patient may know and how it must behave."""
    model_config = ConfigDict(frozen=True)

    patient_name: str
    age: int
    gender: str
    language: str = "English"
    chief_complaint: str
    history: dict[str, str] = Field(default_factory=dict)
    withheld_terms: tuple[str, ...] = ()
    tone: str = "empathetic and slightly formal"
    max_chars: int = Field(default=140, gt=0)
    deflection: str = ""
    rules: tuple[str, ...] = PERSONA_RULES

    @classmethod
    def from_case(cls, case: CaseDocument) -> PersonaPolicy:
        """Build the policy from the scripted history and patient profile only."""
        return cls(
            patient_name=case.patient.name,
            age=case.patient.age,
            gender=case.patient.gender,
            language=case.patient.language_preference,
            chief_complaint=case.stem,
            history=dict(case.script.history),
            withheld_terms=tuple(case.correct_diagnoses),
            max_chars=settings.patient_max_chars,
            deflection=settings.patient_fallback_deflection,
        )


Responder = Callable[[PersonaPolicy, list[TranscriptTurn], str], Awaitable[str]]


# ── The Prompt ───────────────────────────────────────────────────

PATIENT_SYSTEM_PROMPT = """\
You are {name}, a {age}-year-old ({gender}) patient seeing a student doctor \
in a clinical examination. Your tone is {tone}. Speak {language}.

═══════════════════════════════════════════════════
  WHY YOU CAME IN
═══════════════════════════════════════════════════

{chief_complaint}

═══════════════════════════════════════════════════
  YOUR HISTORY (what you know about yourself)
═══════════════════════════════════════════════════

{history}

═══════════════════════════════════════════════════
  RULES
═══════════════════════════════════════════════════

{rules}
- Keep every reply under {max_chars} characters.
"""


def render_system_prompt(policy: PersonaPolicy) -> str:
    history = "\n\n".join(f"Q: {q}\nA: {a}" for q, a in policy.history.items())
    return PATIENT_SYSTEM_PROMPT.format(
        name=policy.patient_name,
        age=policy.age,
        gender=policy.gender,
        tone=policy.tone,
        language=policy.language,
        chief_complaint=policy.chief_complaint,
        history=history or "Nothing beyond why you came in.",
        rules="\n".join(f"- {rule}" for rule in policy.rules),
        max_chars=policy.max_chars,
    )


# ── Policy Enforcement ───────────────────────────────────────────

_ROLE_LABEL = re.compile(r"^\s*(patient|assistant|[a-z]+ \(patient\))\s*:\s*", re.IGNORECASE)
_BULLET = re.compile(r"^\s*(?:[-•*]|\d+[.)])\s+", re.MULTILINE)
_MARKUP = re.compile(r"[*_#`>]+")
_SENTENCE_END = re.compile(r"[.!?](?=\s|$)")


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    head = text[:limit]
    ends = [m.end() for m in _SENTENCE_END.finditer(head)]
    if ends:
        return head[: ends[-1]].strip()
    cut = head[: limit - 1].rsplit(" ", 1)[0].rstrip(",;: ")
    return f"{cut}…"


def enforce_policy(policy: PersonaPolicy, text: str) -> str:
    """Strip meta-formatting, deflect withheld terms, bound the length."""
    cleaned = _ROLE_LABEL.sub("", text.strip())
    cleaned = _BULLET.sub("", cleaned)
    cleaned = _MARKUP.sub("", cleaned)
    cleaned = " ".join(cleaned.split())

    lowered = cleaned.lower()
    if any(term.lower() in lowered for term in policy.withheld_terms if len(term) >= 3):
        logger.info("Patient reply mentioned the diagnosis; deflecting.")
        cleaned = policy.deflection or "I'm not sure, doctor."

    return _truncate(cleaned, policy.max_chars)


# ── The Agent Logic ──────────────────────────────────────────────

async def reply(policy: PersonaPolicy, transcript: list[TranscriptTurn], message: str) -> str:
    """
    Produces the patient's next utterance.
    1. Renders the policy into a system prompt.
    2. Replays the transcript so far plus the new student message.
    3. Calls the LLM and enforces the policy on the result.
    """
    messages = [{"role": "system", "content": render_system_prompt(policy)}]
    for turn in transcript:
        role = "assistant" if turn.role == MessageRole.PATIENT else "user"
        messages.append({"role": role, "content": turn.text})
    messages.append({"role": "user", "content": message})

    try:
        response = await litellm.acompletion(
            model=settings.patient_model,
            messages=messages,
            temperature=settings.patient_temperature,
            max_tokens=settings.patient_max_tokens,
            api_key=settings.llm_api_key or None,
        )
        content = response.choices[0].message.content or ""
    except Exception as e:
        logger.error(f"Patient LLM error: {e}")
        raise PatientResponseUnavailable() from e

    utterance = enforce_policy(policy, content)
    if not utterance:
        logger.error("Patient LLM returned an empty reply")
        raise PatientResponseUnavailable()
    return utterance
