"""Tests for approving, rejecting and executing proposed actions."""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from coach_engine.core.action_runner import (
    ActionNotFoundError,
    ActionRunner,
    build_action_request,
    interpolate_template,
)
from tests.fakes.fake_engine import REFUND_ACTION_ID, RecordingSink

SESSION = "sess-1"
EXECUTION_ID = "exec-1"

DEFINITION = {
    "id": REFUND_ACTION_ID,
    "name": "Refund lookup",
    "requires_approval": True,
    "integration_id": "int-1",
    "execution_config": {
        "method": "post",
        "endpoint": "/refunds/lookup",
        "bodyTemplate": {"order": "{{order_id}}", "meta": {"note": "lookup {{order_id}} {{missing}}"}, "v": 2},
    },
}

INTEGRATION = {
    "id": "int-1",
    "config_json": {"baseUrl": "https://shop.example.com/api/", "apiKey": "sk-test", "headers": {"X-Org": "acme"}},
}


def _execution(status="PROPOSED"):
    return {
        "id": EXECUTION_ID,
        "session_id": SESSION,
        "definition_id": REFUND_ACTION_ID,
        "status": status,
        "input_json": {"order_id": "AB-1234"},
    }


@pytest.fixture
def db():
    """Patch the action execution tables as seen by the runner."""
    rows = {"execution": _execution(), "definition": DEFINITION, "integration": INTEGRATION}
    with patch("coach_engine.core.action_runner.get_action_execution") as get_execution, patch(
        "coach_engine.core.action_runner.get_action_definition"
    ) as get_definition, patch("coach_engine.core.action_runner.get_integration") as get_integration, patch(
        "coach_engine.core.action_runner.update_action_execution"
    ) as update, patch("coach_engine.core.action_runner.insert_proposed_action") as insert:
        get_execution.side_effect = lambda _id: rows["execution"]
        get_definition.side_effect = lambda _id: rows["definition"]
        get_integration.side_effect = lambda _id: rows["integration"]
        update.side_effect = lambda _id, updates: {**rows["execution"], **updates}
        insert.return_value = _execution()
        yield MagicMock(rows=rows, update=update, insert=insert)


def _statuses(db):
    return [c.args[1]["status"] for c in db.update.call_args_list]


def _runner(handler, on_result=None):
    sink = RecordingSink()
    runner = ActionRunner(sink=sink, on_result=on_result, transport=httpx.MockTransport(handler))
    return runner, sink


class TestRequestBuilding:
    def test_interpolate_template_nested(self):
        result = interpolate_template(DEFINITION["execution_config"]["bodyTemplate"], {"order_id": "AB-1234"})

        assert result == {"order": "AB-1234", "meta": {"note": "lookup AB-1234 "}, "v": 2}

    def test_build_request_joins_url_and_sets_auth(self):
        request = build_action_request(
            DEFINITION["execution_config"], INTEGRATION["config_json"], {"order_id": "AB-1234"}
        )

        assert request.method == "POST"
        assert request.url == "https://shop.example.com/api/refunds/lookup"
        assert request.headers == {
            "Content-Type": "application/json",
            "X-Org": "acme",
            "Authorization": "Bearer sk-test",
        }
        assert request.body["order"] == "AB-1234"

    def test_get_request_has_no_body(self):
        request = build_action_request(
            {"bodyTemplate": {"order": "{{order_id}}"}}, {"baseUrl": "https://shop.example.com"}, {}
        )

        assert request.method == "GET"
        assert request.url == "https://shop.example.com/"
        assert request.body is None
        assert "Authorization" not in request.headers


class TestApproval:
    @pytest.mark.asyncio
    async def test_approve_runs_action_and_feeds_result(self, db):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"eligible": True})

        on_result = MagicMock()
        runner, sink = _runner(handler, on_result)

        result = await runner.approve(EXECUTION_ID)

        assert result["status"] == "COMPLETED"
        assert result["output_json"] == {"eligible": True}
        assert _statuses(db) == ["APPROVED", "RUNNING", "COMPLETED"]
        assert seen[0].method == "POST"
        assert str(seen[0].url) == "https://shop.example.com/api/refunds/lookup"
        assert json.loads(seen[0].content)["order"] == "AB-1234"
        assert [p["status"] for p in sink.payloads("engine.action_update")] == ["RUNNING", "COMPLETED"]
        assert sink.payloads("engine.action_update")[-1]["output"] == {"eligible": True}
        on_result.assert_called_once_with(SESSION, "Refund lookup", {"eligible": True})

    @pytest.mark.asyncio
    async def test_approve_non_proposed_is_unchanged(self, db):
        db.rows["execution"] = _execution(status="COMPLETED")
        runner, sink = _runner(lambda request: httpx.Response(500))

        result = await runner.approve(EXECUTION_ID)

        assert result["status"] == "COMPLETED"
        db.update.assert_not_called()
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_unknown_execution_raises(self, db):
        db.rows["execution"] = None
        runner, _ = _runner(lambda request: httpx.Response(200))

        with pytest.raises(ActionNotFoundError):
            await runner.approve("missing")
        with pytest.raises(ActionNotFoundError):
            await runner.reject("missing")

    @pytest.mark.asyncio
    async def test_reject_marks_rejected_without_running(self, db):
        on_result = MagicMock()
        runner, sink = _runner(lambda request: pytest.fail("rejected actions must not run"), on_result)

        result = await runner.reject(EXECUTION_ID)

        assert result["status"] == "REJECTED"
        assert _statuses(db) == ["REJECTED"]
        assert sink.payloads("engine.action_update") == [{"execution_id": EXECUTION_ID, "status": "REJECTED"}]
        on_result.assert_not_called()


class TestExecution:
    @pytest.mark.asyncio
    async def test_missing_integration_fails_execution(self, db):
        db.rows["integration"] = None
        on_result = MagicMock()
        runner, sink = _runner(lambda request: httpx.Response(200), on_result)

        result = await runner.execute(EXECUTION_ID)

        assert result["status"] == "FAILED"
        assert result["error_message"] == "Integration not found"
        assert sink.payloads("engine.action_update")[-1]["error"] == "Integration not found"
        on_result.assert_called_once_with(SESSION, "Refund lookup", {"error": "Integration not found"})

    @pytest.mark.asyncio
    async def test_transport_error_fails_execution(self, db):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        runner, _ = _runner(handler)

        result = await runner.execute(EXECUTION_ID)

        assert _statuses(db) == ["RUNNING", "FAILED"]
        assert result["error_message"] == "connection refused"

    @pytest.mark.asyncio
    async def test_non_json_response_kept_as_raw_text(self, db):
        runner, _ = _runner(lambda request: httpx.Response(200, text="ok, queued"))

        result = await runner.execute(EXECUTION_ID)

        assert result["status"] == "COMPLETED"
        assert result["output_json"] == {"raw": "ok, queued"}


class TestProposal:
    @pytest.mark.asyncio
    async def test_proposal_waits_for_approval(self, db):
        runner, sink = _runner(lambda request: pytest.fail("must wait for approval"))

        result = await runner.propose(SESSION, REFUND_ACTION_ID, {"order_id": "AB-1234"})

        assert result["status"] == "PROPOSED"
        db.insert.assert_called_once_with(SESSION, REFUND_ACTION_ID, {"order_id": "AB-1234"})
        assert sink.payloads("engine.action_update") == [
            {"execution_id": EXECUTION_ID, "status": "PROPOSED", "definition_id": REFUND_ACTION_ID}
        ]
        db.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_proposal_runs_when_no_approval_required(self, db):
        db.rows["definition"] = {**DEFINITION, "requires_approval": False}
        on_result = MagicMock()
        runner, _ = _runner(lambda request: httpx.Response(200, json={"status": "in transit"}), on_result)

        result = await runner.propose(SESSION, REFUND_ACTION_ID, {"order_id": "AB-1234"})

        assert result["status"] == "COMPLETED"
        assert _statuses(db) == ["RUNNING", "COMPLETED"]
        on_result.assert_called_once_with(SESSION, "Refund lookup", {"status": "in transit"})
