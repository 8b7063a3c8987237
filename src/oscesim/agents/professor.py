"""
Professor Agent — Semantic Rubric Matching.

This module defines the invisible examiner. It reads the whole encounter
transcript against the whole rubric and reports, per item, whether the
student demonstrated it in conversation and how confident it is.
It never speaks to the student and never assigns points itself.
"""

from __future__ import annotations

import json
import logging
from typing import Awaitable, Callable

import litellm
from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from oscesim.cases.document import RubricSection
from oscesim.config import settings
from oscesim.errors import ScoringUnavailable
from oscesim.workflow.state import TranscriptTurn

logger = logging.getLogger(__name__)


# ── The Prompt (Co-located for easy editing) ─────────────────────

RUBRIC_MATCH_PROMPT = """\
You are a senior OSCE examiner reviewing a student's consultation with a \
simulated patient. You do NOT interact with anyone; you only judge, from \
the transcript, which rubric criteria the student demonstrated.
{pediatric_rules}
═══════════════════════════════════════════════════
  RUBRIC CRITERIA
═══════════════════════════════════════════════════

{criteria}

═══════════════════════════════════════════════════
  CONVERSATION TRANSCRIPT
═══════════════════════════════════════════════════

{transcript}

═══════════════════════════════════════════════════
  INSTRUCTIONS
═══════════════════════════════════════════════════

Judge ONLY these criteria ids: {pending}

1. Look for SPECIFIC evidence in what the STUDENT said.
2. Implicit understanding counts: a student who asks "How is your appetite?" \
demonstrates an appetite/digestion history item without naming it.
3. Quote the student line you relied on as evidence.
4. Confidence is how sure you are the criterion was demonstrated, from 0 to 1.
5. Set "notApplicable" only when a criterion is genuinely irrelevant to this \
station. It is then removed from the maximum score.

Return ONLY valid JSON in this exact format, no markdown fences:
{{
  "matches": [
    {{
      "itemId": "<criterion id>",
      "demonstrated": <true|false>,
      "notApplicable": <true|false>,
      "confidence": <0.0-1.0>,
      "evidence": "Line <n>: '<student quote>'"
    }}
  ]
}}
"""

PEDIATRIC_RULES = """
═══════════════════════════════════════════════════
  KAUMARABHRITYA (PAEDIATRIC) RULES
═══════════════════════════════════════════════════

- Credit age-appropriate dose calculation.
- No credit for adult doses suggested without modification for a child.
- Credit recognizing that Shodhana (Panchakarma) is contraindicated in \
children under 12.
- Judge counselling of the parent, not only of the patient.
- Credit developmentally appropriate examination technique.
"""


# ── Output Contract ──────────────────────────────────────────────

class SemanticMatch(BaseModel):
    """The examiner's judgement for one rubric item."""
    item_id: str = Field(validation_alias=AliasChoices("item_id", "itemId", "id"))
    demonstrated: bool = False
    not_applicable: bool = Field(
        default=False, validation_alias=AliasChoices("not_applicable", "notApplicable")
    )
    confidence: float = 0.0
    evidence: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _na_verdict(cls, data):
        # Some models answer "N/A" in place of a verdict.
        if isinstance(data, dict) and any(
            str(data.get(key, "")).strip().upper() == "N/A" for key in ("demonstrated", "score")
        ):
            data = {**data, "demonstrated": False, "not_applicable": True}
            data.pop("notApplicable", None)
        return data

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalize_confidence(cls, value):
        # Models sometimes answer in percent.
        value = float(value or 0)
        if value > 1:
            value = value / 100
        return min(1.0, max(0.0, value))


class SemanticMatchReport(BaseModel):
    matches: list[SemanticMatch] = Field(default_factory=list)


# (rubric, transcript, pending_ids, *, child_case=False) -> matches
RubricMatcher = Callable[..., Awaitable[list[SemanticMatch]]]


# ── The Agent Logic ──────────────────────────────────────────────

def format_transcript(transcript: list[TranscriptTurn]) -> str:
    return "\n".join(
        f"Line {n}: {turn.role.value.upper()}: {turn.text}"
        for n, turn in enumerate(transcript, start=1)
    )


def _criteria(rubric: list[RubricSection]) -> str:
    criteria = [
        {
            "id": item.id,
            "criterion": item.text,
            "section": section.name,
            "weight": item.weight,
            "implicitReasoningCues": item.implicit_reasoning_cues,
        }
        for section in rubric
        for item in section.scored_items
    ]
    return json.dumps(criteria, indent=2)


def _strip_fences(content: str) -> str:
    content = content.strip()
    if content.startswith("```"):
        content = content.split("\n", 1)[-1]
        content = content.rsplit("```", 1)[0]
    return content.strip()


async def match_rubric(
    rubric: list[RubricSection],
    transcript: list[TranscriptTurn],
    pending_ids: list[str],
    child_case: bool = False,
) -> list[SemanticMatch]:
    """
    Asks the examiner model which pending rubric items the transcript demonstrates.
    Paediatric stations get the Kaumarabhritya rules in the prompt.
    Raises ScoringUnavailable if the model call fails or returns unusable JSON.
    """
    prompt = RUBRIC_MATCH_PROMPT.format(
        criteria=_criteria(rubric),
        transcript=format_transcript(transcript),
        pending=", ".join(pending_ids),
        pediatric_rules=PEDIATRIC_RULES if child_case else "",
    )

    try:
        response = await litellm.acompletion(
            model=settings.scoring_model,
            messages=[{"role": "user", "content": prompt}],
            temperature=settings.scoring_temperature,
            max_tokens=settings.scoring_max_tokens,
            response_format={"type": "json_object"},
            api_key=settings.llm_api_key or None,
        )
        content = response.choices[0].message.content or ""
        report = SemanticMatchReport.model_validate_json(_strip_fences(content))
    except Exception as e:
        logger.error(f"Semantic scoring error: {e}")
        raise ScoringUnavailable() from e

    logger.info(f"Examiner returned {len(report.matches)} matches for {len(pending_ids)} pending items")
    return report.matches
