"""Tests for deterministic fallback suggestions and nudges."""

import pytest

from coach_engine.core.fallback_suggestions import (
    EMPTY_UTTERANCE_SUGGESTION,
    ISSUE_TEMPLATES,
    build_deterministic_fallback,
    build_fallback_nudges,
    build_greeting,
)
from coach_engine.core.schemas_support import SessionStats, Sentiment


def test_empty_utterance_maps_to_open_question():
    assert build_deterministic_fallback("", "BILLING") == "How can I help you today?"
    assert build_deterministic_fallback("   ", None) == EMPTY_UTTERANCE_SUGGESTION


def test_billing_template_verbatim():
    assert build_deterministic_fallback("I was charged twice", "BILLING") == (
        "I'd be happy to help with your billing concern. Could you share your account "
        "or order number so I can pull up the details?"
    )


@pytest.mark.parametrize("issue_type", ["TECHNICAL", "SHIPPING", "CANCELLATION", "ACCOUNT"])
def test_issue_templates(issue_type):
    assert build_deterministic_fallback("something", issue_type) == ISSUE_TEMPLATES[issue_type]


def test_generic_template_echoes_first_four_words():
    text = build_deterministic_fallback("my  widget makes a weird noise", None)
    assert text.startswith("I hear you regarding my widget makes a. ")


def test_fallback_nudges_for_new_conversation():
    nudges = build_fallback_nudges(SessionStats(), stage_idx=0)
    assert nudges == ["Identify the issue type", "Ask for details", "Check knowledge base"]


def test_fallback_nudges_capped_at_three():
    stats = SessionStats(customer_turns=1, sentiment=Sentiment.ANGRY)
    nudges = build_fallback_nudges(stats, stage_idx=2)
    assert nudges == ["Identify the issue type", "Ask for details", "Acknowledge frustration"]


def test_fallback_nudges_late_stage():
    stats = SessionStats(customer_turns=5, issue_type="BILLING")
    assert build_fallback_nudges(stats, stage_idx=3) == ["Confirm resolution", "Check knowledge base"]


def test_greeting_uses_company_name():
    assert build_greeting("Acme") == "Hi, thank you for calling Acme. How can I help you today?"
    assert "our company" in build_greeting("")
