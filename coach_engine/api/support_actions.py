"""Agent decisions on actions the coaching engine proposed."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from coach_engine.api.deps import get_action_runner
from coach_engine.core.action_runner import ActionNotFoundError, ActionRunner
from coach_engine.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.post("/{execution_id}/approve")
async def approve_action(
    execution_id: str, runner: ActionRunner = Depends(get_action_runner)
) -> dict[str, Any]:
    """
    Approve a proposed action and run it against its integration.

    Returns the execution row after the run; an execution that is no longer
    PROPOSED is returned unchanged.
    """
    try:
        return await runner.approve(execution_id)
    except ActionNotFoundError:
        raise HTTPException(status_code=404, detail="Action execution not found")
    except Exception as e:
        logger.error(f"Failed to approve action {execution_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to approve action")


@router.post("/{execution_id}/reject")
async def reject_action(
    execution_id: str, runner: ActionRunner = Depends(get_action_runner)
) -> dict[str, Any]:
    try:
        return await runner.reject(execution_id)
    except ActionNotFoundError:
        raise HTTPException(status_code=404, detail="Action execution not found")
    except Exception as e:
        logger.error(f"Failed to reject action {execution_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to reject action")
