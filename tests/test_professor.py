import json

import pytest

from oscesim.agents.professor import SemanticMatch, format_transcript, match_rubric
from oscesim.config import settings
from oscesim.errors import ScoringUnavailable
from oscesim.workflow.state import MessageRole, TranscriptTurn

TRANSCRIPT = [
    TranscriptTurn(role=MessageRole.PATIENT, text="Namaste Doctor."),
    TranscriptTurn(role=MessageRole.STUDENT, text="How is your digestion?"),
]


def test_format_transcript_numbers_lines():
    assert format_transcript(TRANSCRIPT) == (
        "Line 1: PATIENT: Namaste Doctor.\n"
        "Line 2: STUDENT: How is your digestion?"
    )


def test_semantic_match_normalizes_percent_confidence():
    match = SemanticMatch.model_validate({"itemId": "A2", "demonstrated": True, "confidence": 85})

    assert match.item_id == "A2"
    assert match.confidence == pytest.approx(0.85)


@pytest.mark.asyncio
async def test_match_rubric_parses_fenced_json(scenario_case, mock_litellm, llm_response):
    payload = {
        "matches": [
            {"itemId": "A2", "demonstrated": True, "confidence": 0.8, "evidence": "Line 2: 'How is your digestion?'"}
        ]
    }
    mock_litellm.return_value = llm_response(f"```json\n{json.dumps(payload)}\n```")

    matches = await match_rubric(scenario_case.scored_rubric, TRANSCRIPT, ["A2"])

    assert len(matches) == 1
    assert matches[0].item_id == "A2"
    assert matches[0].demonstrated is True
    assert matches[0].confidence == 0.8

    kwargs = mock_litellm.call_args.kwargs
    assert kwargs["model"] == settings.scoring_model
    prompt = kwargs["messages"][0]["content"]
    assert "asks about digestion" in prompt
    assert "Line 2: STUDENT: How is your digestion?" in prompt


@pytest.mark.asyncio
async def test_match_rubric_rejects_unusable_json(scenario_case, mock_litellm, llm_response):
    mock_litellm.return_value = llm_response("The student did well overall.")

    with pytest.raises(ScoringUnavailable):
        await match_rubric(scenario_case.scored_rubric, TRANSCRIPT, ["A2"])


@pytest.mark.asyncio
async def test_match_rubric_wraps_provider_errors(scenario_case, mock_litellm):
    mock_litellm.side_effect = TimeoutError("upstream timeout")

    with pytest.raises(ScoringUnavailable):
        await match_rubric(scenario_case.scored_rubric, TRANSCRIPT, ["A1", "A2"])


def test_semantic_match_reads_not_applicable():
    flagged = SemanticMatch.model_validate({"itemId": "E3", "notApplicable": True, "confidence": 0})
    na_verdict = SemanticMatch.model_validate({"itemId": "E3", "demonstrated": "N/A", "confidence": 0})

    assert flagged.not_applicable is True
    assert na_verdict.not_applicable is True
    assert na_verdict.demonstrated is False


@pytest.mark.asyncio
async def test_match_rubric_adds_paediatric_rules_for_child_cases(scenario_case, mock_litellm, llm_response):
    mock_litellm.return_value = llm_response(json.dumps({"matches": []}))

    await match_rubric(scenario_case.scored_rubric, TRANSCRIPT, ["A2"])
    await match_rubric(scenario_case.scored_rubric, TRANSCRIPT, ["A2"], child_case=True)

    adult, child = (call.kwargs["messages"][0]["content"] for call in mock_litellm.call_args_list)
    assert "KAUMARABHRITYA" not in adult
    assert "KAUMARABHRITYA" in child
    assert "Shodhana" in child
