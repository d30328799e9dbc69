"""Tests for support session context loading and writes with mocked Supabase."""

from unittest.mock import MagicMock, patch

import pytest

from coach_engine.core.config import get_settings
from coach_engine.db.action_executions import (
    get_action_definition,
    get_action_execution,
    insert_proposed_action,
    update_action_execution,
)
from coach_engine.db.support_context import (
    build_agent_context,
    build_knowledge_documents,
    format_json_array,
    load_session_context,
)
from coach_engine.db.support_suggestions import insert_support_suggestion


def _table(rows):
    """Query builder mock whose chained calls all end in ``rows``."""
    builder = MagicMock()
    for method in ("select", "eq", "limit", "order", "insert", "update"):
        getattr(builder, method).return_value = builder
    builder.execute.return_value = MagicMock(data=rows)
    return builder


SESSION_ROW = {"id": "sess-1", "org_id": "org-1", "agent_id": "agent-1"}

SALES_ROW = {
    "company_name": "Acme Cloud",
    "what_we_sell": "Hosted databases",
    "sales_policies": ["No discounts over 20%", {"rule": "Annual only", "exceptions": ["enterprise"]}],
    "forbidden_claims": [],
}

SUPPORT_ROW = {
    "return_refund_policy": "Refunds are issued within 14 days of a duplicate charge.",
    "troubleshooting_guides": ["Restart the instance", "Check the connection string"],
    "sla_rules": None,
}

PRODUCT_ROWS = [
    {
        "name": "Postgres Pro",
        "faqs": [{"question": "Is there a free tier?", "answer": "Yes, 1 GB."}, "junk"],
        "objections": [{"objection": "Too pricey", "response": "Pay as you go."}],
    }
]

ACTION_ROWS = [
    {
        "id": "act-refund-lookup",
        "name": "Refund lookup",
        "description": "Look up refund eligibility",
        "trigger_phrases": ["refund"],
        "input_schema": {"fields": [{"name": "order_id"}]},
    },
    {"id": "act-bare", "name": None, "trigger_phrases": "not a list", "input_schema": None},
]


@pytest.fixture
def mock_supabase():
    """Mock Supabase client for context loading."""
    with patch("coach_engine.db.support_context.get_supabase") as mock:
        yield mock.return_value


def _wire_tables(mock_supabase, **overrides):
    tables = {
        "support_sessions": _table([SESSION_ROW]),
        "sales_context": _table([SALES_ROW]),
        "support_context": _table([SUPPORT_ROW]),
        "products": _table(PRODUCT_ROWS),
        "agents": _table([{"prompt_delta": "  Offer the loyalty discount.  "}]),
        "action_definitions": _table(ACTION_ROWS),
    }
    tables.update(overrides)
    mock_supabase.table.side_effect = lambda name: tables[name]
    return tables


class TestRowHelpers:
    def test_format_json_array_mixed_items(self):
        value = ["First rule", {"rule": "Annual only", "exceptions": ["enterprise"]}, 3, ""]
        assert format_json_array(value) == 'First rule\n- rule: Annual only, exceptions: ["enterprise"]'

    def test_format_json_array_non_list(self):
        assert format_json_array(None) == ""
        assert format_json_array("plain") == ""
        assert format_json_array([]) == ""

    def test_agent_context_merges_rows(self):
        ctx = build_agent_context(SALES_ROW, SUPPORT_ROW, [])

        assert ctx.company_name == "Acme Cloud"
        assert ctx.policies.startswith("No discounts over 20%")
        assert ctx.troubleshooting_guides == "Restart the instance\n- Check the connection string"
        assert ctx.sla_rules == ""

    def test_agent_context_tolerates_missing_rows(self):
        ctx = build_agent_context(None, None, [])
        assert ctx.company_name == ""
        assert ctx.return_refund_policy == ""

    def test_knowledge_documents_skip_trivial_fields(self):
        ctx = build_agent_context(SALES_ROW, {**SUPPORT_ROW, "support_knowledge_appendix": "tiny"}, [])
        docs = {doc.field: doc.text for doc in build_knowledge_documents(ctx, PRODUCT_ROWS)}

        assert "supportKnowledgeAppendix" not in docs
        assert "forbiddenClaims" not in docs
        assert docs["returnRefundPolicy"].startswith("Refunds are issued")
        assert docs["productFaqs"] == "[Postgres Pro] Q: Is there a free tier? A: Yes, 1 GB."
        assert docs["productObjections"] == '[Postgres Pro] "Too pricey": Pay as you go.'


class TestLoadSessionContext:
    def test_loads_full_context(self, mock_supabase):
        tables = _wire_tables(mock_supabase)

        context = load_session_context("sess-1")

        assert context is not None
        assert context.org_id == "org-1"
        assert context.llm_model == get_settings().LLM_MODEL
        assert context.agent_prompt_delta == "Offer the loyalty discount."
        assert [s.name for s in context.stages] == ["Identification", "Diagnosis", "Resolution", "Closure"]
        assert context.action_ids() == {"act-refund-lookup", "act-bare"}
        assert context.available_actions[1].name == "Action"
        assert context.available_actions[1].trigger_phrases == []
        assert context.agent_context.available_actions == context.available_actions
        tables["action_definitions"].eq.assert_any_call("is_active", True)

    def test_missing_session_returns_none(self, mock_supabase):
        _wire_tables(mock_supabase, support_sessions=_table([]))

        assert load_session_context("missing") is None

    def test_session_without_agent_skips_agent_lookup(self, mock_supabase):
        tables = _wire_tables(mock_supabase, support_sessions=_table([{**SESSION_ROW, "agent_id": None}]))

        context = load_session_context("sess-1")

        assert context.agent_prompt_delta == ""
        tables["agents"].select.assert_not_called()

    def test_database_error_propagates(self, mock_supabase):
        failing = _table([])
        failing.execute.side_effect = Exception("connection refused")
        _wire_tables(mock_supabase, support_sessions=failing)

        with pytest.raises(Exception, match="connection refused"):
            load_session_context("sess-1")


class TestSuggestionWrites:
    def test_insert_support_suggestion(self):
        with patch("coach_engine.db.support_suggestions.get_supabase") as mock:
            table = _table([{"id": "sugg-1"}])
            mock.return_value.table.return_value = table

            result = insert_support_suggestion(
                session_id="sess-1",
                text="Could you share your order number?",
                intent="Billing inquiry",
                meta={"issue_type": "BILLING"},
                ts_ms=1700000000000,
            )

        assert result == {"id": "sugg-1"}
        mock.return_value.table.assert_called_once_with("support_suggestions")
        row = table.insert.call_args[0][0]
        assert row["kind"] == "PRIMARY"
        assert row["rank"] == 0
        assert row["ts_ms"] == 1700000000000
        assert row["meta_json"] == {"issue_type": "BILLING"}

    def test_insert_support_suggestion_without_data_raises(self):
        with patch("coach_engine.db.support_suggestions.get_supabase") as mock:
            mock.return_value.table.return_value = _table([])

            with pytest.raises(ValueError, match="No data returned"):
                insert_support_suggestion("sess-1", "Hello", "Greeting")


class TestProposedActions:
    def test_insert_proposed_action(self):
        with patch("coach_engine.db.action_executions.get_supabase") as mock:
            table = _table([{"id": "exec-1", "status": "PROPOSED"}])
            mock.return_value.table.return_value = table

            result = insert_proposed_action("sess-1", "act-refund-lookup", {"order_id": "AB-1234"})

        assert result["status"] == "PROPOSED"
        mock.return_value.table.assert_called_once_with("action_executions")
        assert table.insert.call_args[0][0] == {
            "session_id": "sess-1",
            "definition_id": "act-refund-lookup",
            "status": "PROPOSED",
            "input_json": {"order_id": "AB-1234"},
        }

    def test_get_action_execution(self):
        with patch("coach_engine.db.action_executions.get_supabase") as mock:
            table = _table([{"id": "exec-1", "status": "PROPOSED"}])
            mock.return_value.table.return_value = table

            result = get_action_execution("exec-1")

        assert result["id"] == "exec-1"
        table.eq.assert_called_once_with("id", "exec-1")

    def test_get_missing_rows_return_none(self):
        with patch("coach_engine.db.action_executions.get_supabase") as mock:
            mock.return_value.table.return_value = _table([])

            assert get_action_execution("missing") is None
            assert get_action_definition("missing") is None

    def test_update_action_execution(self):
        with patch("coach_engine.db.action_executions.get_supabase") as mock:
            table = _table([{"id": "exec-1", "status": "APPROVED"}])
            mock.return_value.table.return_value = table

            result = update_action_execution("exec-1", {"status": "APPROVED", "approved_at": "2026-01-05T10:00:00"})

        assert result["status"] == "APPROVED"
        table.update.assert_called_once_with({"status": "APPROVED", "approved_at": "2026-01-05T10:00:00"})
        table.eq.assert_called_once_with("id", "exec-1")

    def test_update_missing_execution_raises(self):
        with patch("coach_engine.db.action_executions.get_supabase") as mock:
            mock.return_value.table.return_value = _table([])

            with pytest.raises(ValueError, match="not found"):
                update_action_execution("missing", {"status": "REJECTED"})
