"""
Workflow Graph — The Scoring Pipeline.

This module orchestrates the flow:
Deterministic pass → Semantic pass → Aggregate → End

Both passes write into the `credits` channel, whose reducer keeps the first
credit recorded for an item, so an item matched by the action log is never
re-scored from the conversation.
"""

from __future__ import annotations

import logging
import re
from functools import partial
from typing import Sequence

from langgraph.graph import END, StateGraph

from oscesim.agents.professor import RubricMatcher, match_rubric
from oscesim.cases.document import CaseDocument, RubricItem
from oscesim.cases.references import citation_for_topic
from oscesim.config import settings
from oscesim.errors import ScoringUnavailable
from oscesim.workflow.state import (
    ActionRecord,
    CreditSource,
    GradeBand,
    ItemCredit,
    ItemVerdict,
    MessageRole,
    MissedItem,
    ScoreResult,
    ScoringState,
    SectionScore,
    TranscriptTurn,
    percentage_of,
)

logger = logging.getLogger(__name__)

ACTION_LOG_EVIDENCE = "action log"


# ── Deterministic Pass ───────────────────────────────────────────

def _contains(haystack: str, needle: str) -> bool:
    """Case-insensitive substring match that does not split words or ids."""
    pattern = rf"(?<![a-z0-9]){re.escape(needle.lower())}(?![a-z0-9])"
    return re.search(pattern, haystack.lower()) is not None


def action_matches_item(
    item: RubricItem,
    terms: Sequence[str],
    identifiers: Sequence[str] = (),
    min_token_length: int = settings.deterministic_min_token_length,
) -> bool:
    """
    True if an exam/lab identifier names the item id, or a payload text
    matches the item text. Decision texts never match item ids.
    """
    if any(ident.strip() and _contains(ident.strip(), item.id) for ident in identifiers):
        return True
    for raw in terms:
        term = raw.strip()
        if not term:
            continue
        if _contains(term, item.text):
            return True
        if len(term) >= min_token_length and _contains(item.text, term):
            return True
    return False


def _deterministic_node(state: ScoringState) -> dict:
    """Credits every rubric item the action ledger matches."""
    actions: list[ActionRecord] = state["actions"]
    credits: dict[str, ItemCredit] = {}

    for section in state["case"].scored_rubric:
        for item in section.scored_items:
            if any(action_matches_item(item, action.terms(), action.identifiers()) for action in actions):
                credits[item.id] = ItemCredit(
                    item_id=item.id,
                    achieved=1.0,
                    confidence=1.0,
                    evidence=ACTION_LOG_EVIDENCE,
                    source=CreditSource.DETERMINISTIC,
                )

    logger.debug(f"Deterministic pass credited {len(credits)} items")
    return {"credits": credits}


# ── Semantic Pass ────────────────────────────────────────────────

def band_credit(demonstrated: bool, confidence: float) -> float:
    """Map an examiner judgement onto the 0 / 0.5 / 1 credit bands."""
    if not demonstrated or confidence <= settings.semantic_confidence_threshold:
        return 0.0
    if confidence >= settings.semantic_full_credit_confidence:
        return 1.0
    return 0.5


async def _semantic_node(state: ScoringState, matcher: RubricMatcher) -> dict:
    """Asks the examiner about items the action log did not credit."""
    rubric = state["case"].scored_rubric
    transcript: list[TranscriptTurn] = state["transcript"]
    already = state.get("credits") or {}

    pending = [item.id for section in rubric for item in section.scored_items if item.id not in already]
    if not pending:
        return {}
    if not any(turn.role == MessageRole.STUDENT for turn in transcript):
        return {}

    try:
        matches = await matcher(rubric, transcript, pending, child_case=state["case"].is_child_case)
    except ScoringUnavailable as e:
        logger.warning(f"Semantic pass unavailable, using action log only: {e}")
        return {"warnings": [str(e)]}

    credits: dict[str, ItemCredit] = {}
    not_applicable: list[str] = []
    for match in matches:
        if match.item_id not in pending or match.item_id in credits or match.item_id in not_applicable:
            continue
        if match.not_applicable:
            not_applicable.append(match.item_id)
            continue
        achieved = band_credit(match.demonstrated, match.confidence)
        if achieved > 0:
            credits[match.item_id] = ItemCredit(
                item_id=match.item_id,
                achieved=achieved,
                confidence=match.confidence,
                evidence=match.evidence,
                source=CreditSource.SEMANTIC,
            )

    logger.debug(f"Semantic pass credited {len(credits)} of {len(pending)} pending items")
    return {"credits": credits, "not_applicable": not_applicable}


# ── Aggregation ──────────────────────────────────────────────────

def _aggregate_node(state: ScoringState) -> dict:
    """Turns the credit map into section subtotals, totals and a grade."""
    credits = state.get("credits") or {}
    not_applicable = set(state.get("not_applicable") or [])
    warnings = list(state.get("warnings") or [])

    sections: list[SectionScore] = []
    missed: list[MissedItem] = []

    for section in state["case"].scored_rubric:
        verdicts: list[ItemVerdict] = []
        for item in section.scored_items:
            if item.id in not_applicable:
                continue
            credit = credits.get(item.id)
            achieved = credit.achieved if credit else 0.0
            verdicts.append(
                ItemVerdict(
                    item_id=item.id,
                    text=item.text,
                    weight=item.weight,
                    achieved=achieved,
                    points=item.weight * achieved,
                    confidence=credit.confidence if credit else 0.0,
                    evidence=credit.evidence if credit else None,
                    source=credit.source if credit else None,
                )
            )
            if achieved < 1:
                missed.append(
                    MissedItem(
                        item_id=item.id,
                        text=item.text,
                        section=section.name,
                        weight=item.weight,
                        achieved=achieved,
                        confidence=credit.confidence if credit else 0.0,
                        tip=item.tip or f"Review the {section.name} competency",
                        reference=item.reference or citation_for_topic(item.text),
                    )
                )

        # A section never scores above its cap.
        cap = section.cap_excluding(not_applicable)
        subtotal = min(cap, sum(v.points for v in verdicts))
        sections.append(
            SectionScore(name=section.name, score=round(subtotal, 2), max=cap, items=verdicts)
        )

    total_points = round(sum(s.score for s in sections), 2)
    max_points = sum(s.max for s in sections)
    percentage = percentage_of(total_points, max_points)

    result = ScoreResult(
        sections=sections,
        total_points=total_points,
        max_points=max_points,
        percentage=percentage,
        grade=GradeBand.for_percentage(percentage),
        missed_items=missed,
        not_applicable_item_ids=sorted(not_applicable),
        warnings=warnings,
        partial=bool(warnings),
    )
    logger.info(f"Scored {total_points}/{max_points} ({percentage}%) → {result.grade.value}")
    return {"result": result}


# ── The Graph Builder ────────────────────────────────────────────

def build_scoring_graph(matcher: RubricMatcher = match_rubric):
    """
    Constructs the LangGraph scoring workflow.
    The semantic matcher is injected here.
    """
    semantic = partial(_semantic_node, matcher=matcher)

    graph = StateGraph(ScoringState)

    # Add Nodes
    graph.add_node("deterministic", _deterministic_node)
    graph.add_node("semantic", semantic)
    graph.add_node("aggregate", _aggregate_node)

    # Define Edges
    graph.set_entry_point("deterministic")
    graph.add_edge("deterministic", "semantic")
    graph.add_edge("semantic", "aggregate")
    graph.add_edge("aggregate", END)

    return graph.compile()


class ScoringEngine:
    """Pure function of (rubric, actions, transcript) → ScoreResult."""

    def __init__(self, matcher: RubricMatcher = match_rubric):
        self.graph = build_scoring_graph(matcher)

    async def score(
        self,
        case: CaseDocument,
        transcript: list[TranscriptTurn],
        actions: list[ActionRecord],
    ) -> ScoreResult:
        final = await self.graph.ainvoke(
            {
                "case": case,
                "transcript": list(transcript),
                "actions": list(actions),
                "credits": {},
                "not_applicable": [],
                "warnings": [],
            }
        )
        return final["result"]
