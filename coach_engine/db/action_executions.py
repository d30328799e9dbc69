"""Action execution records: proposal, approval and run results."""

from typing import Any

from coach_engine.core.logging import get_logger
from coach_engine.db.supabase_client import get_supabase

logger = get_logger(__name__)


def insert_proposed_action(
    session_id: str,
    definition_id: str,
    input_json: dict[str, Any],
) -> dict[str, Any]:
    """
    Record an action the engine proposed, in PROPOSED status.

    Args:
        session_id: Support session ID
        definition_id: ID of a known action definition
        input_json: Inputs the model filled in

    Returns:
        Inserted execution row

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        response = (
            supabase.table("action_executions")
            .insert(
                {
                    "session_id": session_id,
                    "definition_id": definition_id,
                    "status": "PROPOSED",
                    "input_json": input_json,
                }
            )
            .execute()
        )

        if not response.data:
            raise ValueError("No data returned from action execution insert")

        logger.info(
            f"Proposed action {definition_id} for session {session_id}",
            extra={"session_id": session_id},
        )
        return response.data[0]

    except Exception as e:
        logger.error(f"Failed to propose action {definition_id} for session {session_id}: {e}")
        raise


def get_action_execution(execution_id: str) -> dict[str, Any] | None:
    """Get an action execution row by ID, or None if not found."""
    supabase = get_supabase()

    try:
        response = supabase.table("action_executions").select("*").eq("id", execution_id).execute()

        if response.data:
            return response.data[0]
        return None

    except Exception as e:
        logger.error(f"Failed to get action execution {execution_id}: {e}")
        raise


def update_action_execution(execution_id: str, updates: dict[str, Any]) -> dict[str, Any]:
    """
    Update an action execution row.

    Args:
        execution_id: Execution UUID
        updates: Columns to set (status, timestamps, output_json, error_message)

    Returns:
        Updated execution row

    Raises:
        ValueError: If the execution does not exist
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        response = supabase.table("action_executions").update(updates).eq("id", execution_id).execute()

        if not response.data:
            raise ValueError(f"Action execution not found: {execution_id}")

        logger.info(f"Action execution {execution_id} set to {updates.get('status', 'updated')}")
        return response.data[0]

    except Exception as e:
        logger.error(f"Failed to update action execution {execution_id}: {e}")
        raise


def get_action_definition(definition_id: str) -> dict[str, Any] | None:
    supabase = get_supabase()

    try:
        response = supabase.table("action_definitions").select("*").eq("id", definition_id).execute()
        return response.data[0] if response.data else None

    except Exception as e:
        logger.error(f"Failed to get action definition {definition_id}: {e}")
        raise


def get_integration(integration_id: str) -> dict[str, Any] | None:
    supabase = get_supabase()

    try:
        response = supabase.table("integrations").select("*").eq("id", integration_id).execute()
        return response.data[0] if response.data else None

    except Exception as e:
        logger.error(f"Failed to get integration {integration_id}: {e}")
        raise
