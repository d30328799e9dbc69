"""
Action runner: carries proposed actions through approval and execution.

Execution lifecycle:
    PROPOSED → APPROVED → RUNNING → COMPLETED | FAILED
    PROPOSED → REJECTED

Definitions with ``requires_approval`` false run as soon as they are proposed.
Execution calls the integration's HTTP API described by the definition's
``execution_config`` ({method, endpoint, bodyTemplate}) against the
integration's ``config_json`` ({baseUrl, apiKey, headers}). Every status
change is pushed to the session as ``engine.action_update``, and the outcome
of a run is handed to ``on_result`` so the coaching engine sees it on its
next tick.
"""

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from coach_engine.core.event_sink import EventSink
from coach_engine.core.logging import get_logger
from coach_engine.db.action_executions import (
    get_action_definition,
    get_action_execution,
    get_integration,
    insert_proposed_action,
    update_action_execution,
)

logger = get_logger(__name__)

EXECUTION_TIMEOUT_SECONDS = 15.0

PROPOSED = "PROPOSED"
APPROVED = "APPROVED"
REJECTED = "REJECTED"
RUNNING = "RUNNING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

# (session_id, action_name, output)
ResultHandler = Callable[[str, str, Any], None]


class ActionNotFoundError(Exception):
    """Raised when an action execution does not exist."""


@dataclass
class ActionRequest:
    method: str
    url: str
    headers: dict[str, str]
    body: dict[str, Any] | None = None


def interpolate_template(template: dict[str, Any], inputs: dict[str, Any]) -> dict[str, Any]:
    """
    Fill ``{{name}}`` placeholders in string values, recursing into nested objects.

    Unknown names become empty strings; non-string values pass through.
    """
    result: dict[str, Any] = {}
    for key, value in template.items():
        if isinstance(value, str):
            result[key] = _PLACEHOLDER.sub(
                lambda match: str(inputs[match.group(1)]) if inputs.get(match.group(1)) is not None else "",
                value,
            )
        elif isinstance(value, dict):
            result[key] = interpolate_template(value, inputs)
        else:
            result[key] = value
    return result


def build_action_request(
    execution_config: dict[str, Any],
    integration_config: dict[str, Any],
    inputs: dict[str, Any],
) -> ActionRequest:
    base_url = (integration_config.get("baseUrl") or "").rstrip("/")
    method = (execution_config.get("method") or "GET").upper()

    body = None
    template = execution_config.get("bodyTemplate")
    if isinstance(template, dict) and method != "GET":
        body = interpolate_template(template, inputs)

    headers = {"Content-Type": "application/json", **(integration_config.get("headers") or {})}
    if integration_config.get("apiKey"):
        headers["Authorization"] = f"Bearer {integration_config['apiKey']}"

    return ActionRequest(
        method=method,
        url=f"{base_url}{execution_config.get('endpoint') or '/'}",
        headers=headers,
        body=body,
    )


def _response_output(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ActionRunner:
    """Approves, rejects and executes action executions for live sessions."""

    def __init__(
        self,
        sink: EventSink,
        on_result: ResultHandler | None = None,
        timeout_seconds: float = EXECUTION_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._sink = sink
        self._on_result = on_result
        self._timeout = timeout_seconds
        self._transport = transport

    async def propose(self, session_id: str, definition_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        """Record a proposed action; run it right away when no approval is required."""
        execution = await asyncio.to_thread(insert_proposed_action, session_id, definition_id, inputs)
        self._emit_update(session_id, execution["id"], PROPOSED, definition_id=definition_id)

        definition = await asyncio.to_thread(get_action_definition, definition_id)
        if definition is not None and definition.get("requires_approval") is False:
            return await self.execute(execution["id"])
        return execution

    async def approve(self, execution_id: str) -> dict[str, Any]:
        execution = await self._load(execution_id)
        if execution["status"] != PROPOSED:
            return execution

        await asyncio.to_thread(
            update_action_execution, execution_id, {"status": APPROVED, "approved_at": _now_iso()}
        )
        self._emit_update(execution["session_id"], execution_id, RUNNING)
        return await self.execute(execution_id)

    async def reject(self, execution_id: str) -> dict[str, Any]:
        execution = await self._load(execution_id)
        if execution["status"] != PROPOSED:
            return execution

        updated = await asyncio.to_thread(update_action_execution, execution_id, {"status": REJECTED})
        self._emit_update(execution["session_id"], execution_id, REJECTED)
        return updated

    async def execute(self, execution_id: str) -> dict[str, Any]:
        """Call the integration for an execution and record the outcome."""
        execution = await self._load(execution_id)
        session_id = execution["session_id"]

        definition = await asyncio.to_thread(get_action_definition, execution["definition_id"])
        if definition is None:
            return await self._fail(execution, "Action", "Action definition not found")
        action_name = definition.get("name") or "Action"

        integration = None
        if definition.get("integration_id"):
            integration = await asyncio.to_thread(get_integration, definition["integration_id"])
        if integration is None:
            return await self._fail(execution, action_name, "Integration not found")

        await asyncio.to_thread(update_action_execution, execution_id, {"status": RUNNING})

        request = build_action_request(
            definition.get("execution_config") or {},
            integration.get("config_json") or {},
            execution.get("input_json") or {},
        )
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(
                    request.method, request.url, headers=request.headers, json=request.body
                )
            output = _response_output(response)
        except httpx.HTTPError as e:
            return await self._fail(execution, action_name, str(e) or type(e).__name__)

        completed = await asyncio.to_thread(
            update_action_execution,
            execution_id,
            {"status": COMPLETED, "output_json": output, "completed_at": _now_iso()},
        )
        logger.info(f"Action {action_name} completed for session {session_id}", extra={"session_id": session_id})
        self._emit_update(session_id, execution_id, COMPLETED, output=output)
        self._feed_result(session_id, action_name, output)
        return completed

    async def _load(self, execution_id: str) -> dict[str, Any]:
        execution = await asyncio.to_thread(get_action_execution, execution_id)
        if execution is None:
            raise ActionNotFoundError(f"Action execution not found: {execution_id}")
        return execution

    async def _fail(self, execution: dict[str, Any], action_name: str, error: str) -> dict[str, Any]:
        execution_id = execution["id"]
        session_id = execution["session_id"]
        logger.error(f"Action execution {execution_id} failed: {error}")

        failed = await asyncio.to_thread(
            update_action_execution,
            execution_id,
            {"status": FAILED, "error_message": error, "completed_at": _now_iso()},
        )
        self._emit_update(session_id, execution_id, FAILED, error=error)
        self._feed_result(session_id, action_name, {"error": error})
        return failed

    def _emit_update(self, session_id: str, execution_id: str, status: str, **fields: Any) -> None:
        try:
            self._sink.emit(
                session_id, "engine.action_update", {"execution_id": execution_id, "status": status, **fields}
            )
        except Exception as e:
            logger.error(f"Event sink failed for engine.action_update ({session_id}): {e}")

    def _feed_result(self, session_id: str, action_name: str, output: Any) -> None:
        if self._on_result is None:
            return
        try:
            self._on_result(session_id, action_name, output)
        except Exception as e:
            logger.error(f"Failed to feed action result to engine ({session_id}): {e}")
