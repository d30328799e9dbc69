"""Tests for model output parsing and the OpenAI gateway."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from coach_engine.core.llm import OpenAIGateway, parse_coach_response, parse_llm_json_dict
from coach_engine.core.llm_usage import _estimate_cost, log_llm_usage
from coach_engine.core.schemas_support import CoachResponse


def test_parse_plain_json():
    assert parse_llm_json_dict('{"primary": "Hi"}') == {"primary": "Hi"}


def test_parse_fenced_json():
    raw = '```json\n{"moment": "Greeting", "primary": "Hello"}\n```'
    assert parse_llm_json_dict(raw)["moment"] == "Greeting"


def test_parse_json_surrounded_by_prose():
    raw = 'Sure! Here it is: {"primary": "Hello", "nudges": ["a"]} Hope that helps.'
    assert parse_llm_json_dict(raw)["nudges"] == ["a"]


def test_parse_rejects_non_object():
    with pytest.raises(ValueError):
        parse_llm_json_dict("[1, 2, 3]")


def test_parse_coach_response_tolerates_junk_fields():
    raw = json.dumps(
        {
            "moment": "Billing inquiry",
            "primary": "Let me pull up that invoice.",
            "nudges": "Ask for invoice number",
            "proposed_actions": [{"definitionId": "act-1", "input": "bad"}, "junk"],
            "knowledge_cite": "not an object",
            "unexpected": 1,
        }
    )
    parsed = parse_coach_response(raw)

    assert parsed.is_complete
    assert parsed.nudges == ["Ask for invoice number"]
    assert len(parsed.proposed_actions) == 1
    assert parsed.proposed_actions[0].definition_id == "act-1"
    assert parsed.proposed_actions[0].input == {}
    assert parsed.knowledge_cite is None


def test_parse_coach_response_returns_fallback_on_garbage():
    fallback = CoachResponse(moment="Kept", primary=None)
    assert parse_coach_response("not json at all", fallback) is fallback
    assert parse_coach_response("not json at all") == CoachResponse()


def test_incomplete_response_without_moment():
    assert not parse_coach_response('{"primary": "Hello"}').is_complete
    assert not parse_coach_response('{"primary": "  ", "moment": "Greeting"}').is_complete


def test_gateway_availability():
    assert OpenAIGateway(api_key="sk-test").available
    assert not OpenAIGateway(api_key="").available
    assert not OpenAIGateway(api_key="sk-test", provider="anthropic").available


@pytest.mark.asyncio
async def test_gateway_call_uses_json_mode_and_logs_usage():
    completion = MagicMock()
    completion.choices = [MagicMock()]
    completion.choices[0].message.content = ' {"primary": "Hi"} '
    completion.usage.prompt_tokens = 120
    completion.usage.completion_tokens = 30

    gateway = OpenAIGateway(api_key="sk-test")
    mock_client = MagicMock()
    mock_client.chat.completions.create = AsyncMock(return_value=completion)

    with patch.object(gateway, "_get_client", return_value=mock_client), patch(
        "coach_engine.core.llm._schedule_usage_log"
    ) as mock_schedule:
        result = await gateway.call(
            "system",
            "user",
            model="gpt-4o-mini",
            temperature=0.5,
            billing={"org_id": "org-1", "ledger_type": "USAGE_LLM_SUPPORT_ENGINE_TICK"},
        )

    assert result.text == '{"primary": "Hi"}'
    assert result.usage == {"prompt_tokens": 120, "completion_tokens": 30}
    kwargs = mock_client.chat.completions.create.call_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["messages"][0] == {"role": "system", "content": "system"}
    mock_schedule.assert_called_once()


def test_estimate_cost_prefix_match():
    assert _estimate_cost("gpt-4o-mini", 1_000_000, 0) == 0.15
    assert _estimate_cost("gpt-4o-mini-2024-07-18", 0, 1_000_000) == 0.6
    assert _estimate_cost("unknown-model", 1000, 1000) == 0.0


def test_log_llm_usage_never_raises():
    with patch("coach_engine.core.llm_usage.get_supabase") as mock_supabase:
        mock_supabase.return_value.table.return_value.insert.return_value.execute.side_effect = Exception(
            "db down"
        )
        log_llm_usage("USAGE_LLM_SUPPORT_ENGINE_TICK", "gpt-4o-mini", "openai", 10, 5, org_id="org-1")

    row = mock_supabase.return_value.table.return_value.insert.call_args[0][0]
    assert row["org_id"] == "org-1"
    assert row["tokens_input"] == 10
