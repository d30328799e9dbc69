"""Tests for playbook stages, stage ratchet and moment labels."""

from coach_engine.core.schemas_support import SessionStats, Sentiment, StageDefinition
from coach_engine.core.support_playbook import (
    DEFAULT_STAGES,
    advance_stage,
    checklist_for,
    compute_moment,
)


def test_default_stages_shape():
    assert [s.name for s in DEFAULT_STAGES] == ["Identification", "Diagnosis", "Resolution", "Closure"]
    assert all(len(s.checklist) == 4 for s in DEFAULT_STAGES)


def test_stage_ratchet_never_regresses():
    idx = 0
    seen = []
    for status in ["resolving", "diagnosing", "resolved"]:
        idx = advance_stage(idx, status, len(DEFAULT_STAGES))
        seen.append(idx)

    assert seen == [2, 2, 3]


def test_stage_ratchet_ignores_unknown_and_missing_status():
    assert advance_stage(1, None, 4) == 1
    assert advance_stage(1, "escalating", 4) == 1
    assert advance_stage(0, "", 4) == 0


def test_stage_ratchet_respects_stage_count():
    # A two-stage playbook cannot jump to index 3
    assert advance_stage(0, "resolved", 2) == 0
    assert advance_stage(0, "diagnosing", 2) == 1


def test_checklist_for_stage():
    items = checklist_for(DEFAULT_STAGES[1])
    assert [i.label for i in items] == DEFAULT_STAGES[1].checklist
    assert not any(i.done for i in items)
    assert checklist_for(None) == []
    assert checklist_for(StageDefinition(name="Empty")) == []


def test_compute_moment_priority():
    stats = SessionStats(issue_type="BILLING", sentiment=Sentiment.ANGRY)
    assert compute_moment("Diagnosis", stats) == "Escalation risk"

    stats.sentiment = Sentiment.FRUSTRATED
    assert compute_moment("Diagnosis", stats) == "Frustrated customer"

    stats.sentiment = Sentiment.NEUTRAL
    assert compute_moment("Diagnosis", stats) == "Billing inquiry"

    stats.issue_type = None
    assert compute_moment("Diagnosis", stats) == "Diagnosing"
    assert compute_moment("Closure", stats) == "Wrapping up"
    assert compute_moment("Onboarding", stats) == "Support"
