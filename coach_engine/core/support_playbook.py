"""Support playbook stages and the one-way stage ratchet.

Stages:  Identification → Diagnosis → Resolution → Closure

The model reports a ``resolution_status`` on every tick; each status maps to
a minimum stage index. The engine only ever moves forward to that floor, never
backward. Rules are declarative data; evaluation is pure functions.
"""

from coach_engine.core.schemas_support import ChecklistItem, SessionStats, Sentiment, StageDefinition

# =============================================================================
# Stage definitions
# =============================================================================

DEFAULT_STAGES: list[StageDefinition] = [
    StageDefinition(
        name="Identification",
        goals="Greet, identify customer, understand issue category.",
        checklist=[
            "Greet the customer warmly",
            "Ask how you can help today",
            "Identify the customer (name, account)",
            "Categorize the issue type",
        ],
    ),
    StageDefinition(
        name="Diagnosis",
        goals="Ask clarifying questions, check systems, identify root cause.",
        checklist=[
            "Ask one targeted clarifying question",
            "Check relevant system/account if needed",
            "Identify root cause or category",
            "Confirm understanding with the customer",
        ],
    ),
    StageDefinition(
        name="Resolution",
        goals="Propose solution, execute actions, confirm resolution.",
        checklist=[
            "Propose a specific solution",
            "Execute any needed actions",
            "Confirm the fix/resolution with customer",
            "Offer additional help if applicable",
        ],
    ),
    StageDefinition(
        name="Closure",
        goals="Summarize, confirm satisfaction, offer follow-up.",
        checklist=[
            "Summarize what was resolved",
            "Ask if the customer is satisfied",
            "Offer follow-up resources",
            "Thank the customer and close",
        ],
    ),
]

# resolution_status → minimum stage index
RESOLUTION_STAGE_FLOOR: dict[str, int] = {
    "diagnosing": 1,
    "resolving": 2,
    "resolved": 3,
}

# Moment labels when the model does not supply one
_SENTIMENT_MOMENTS: dict[Sentiment, str] = {
    Sentiment.ANGRY: "Escalation risk",
    Sentiment.FRUSTRATED: "Frustrated customer",
}

_ISSUE_MOMENTS: dict[str, str] = {
    "BILLING": "Billing inquiry",
    "TECHNICAL": "Technical issue",
    "SHIPPING": "Shipping question",
    "CANCELLATION": "Cancellation request",
    "ACCOUNT": "Account issue",
}

_STAGE_MOMENTS: list[tuple[str, str]] = [
    ("identification", "Identifying issue"),
    ("diagnosis", "Diagnosing"),
    ("resolution", "Resolving"),
    ("closure", "Wrapping up"),
]


# =============================================================================
# Evaluation functions (pure)
# =============================================================================


def advance_stage(current_idx: int, resolution_status: str | None, stage_count: int) -> int:
    """Return the new stage index for a reported resolution status.

    Never returns less than ``current_idx`` and never an index past the last
    stage. Unknown or missing statuses leave the stage unchanged.
    """
    floor = RESOLUTION_STAGE_FLOOR.get(resolution_status or "")
    if floor is None or floor <= current_idx:
        return current_idx
    if floor >= stage_count:
        return current_idx
    return floor


def checklist_for(stage: StageDefinition | None) -> list[ChecklistItem]:
    """Fresh, all-undone checklist for a stage."""
    if stage is None:
        return []
    return [ChecklistItem(label=label, done=False) for label in stage.checklist]


def compute_moment(stage_name: str, stats: SessionStats) -> str:
    """Deterministic 2-4 word moment label from sentiment, issue type, then stage."""
    if stats.sentiment in _SENTIMENT_MOMENTS:
        return _SENTIMENT_MOMENTS[stats.sentiment]
    if stats.issue_type in _ISSUE_MOMENTS:
        return _ISSUE_MOMENTS[stats.issue_type]

    stage = stage_name.lower()
    for needle, label in _STAGE_MOMENTS:
        if needle in stage:
            return label
    return "Support"
