"""Pydantic models for the real-time support coaching engine.

Three groups:
  - Session context: loaded once per session, read-only afterwards
  - Conversation state: transcript turns, running stats, checklist items
  - Model I/O: the tolerant parse of the model's JSON and the emitted payload
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Enums
# =============================================================================


class Speaker(str, Enum):
    """Who produced a transcript turn."""

    AGENT = "AGENT"
    CUSTOMER = "CUSTOMER"


class Sentiment(str, Enum):
    """Customer sentiment, last classification wins."""

    POSITIVE = "positive"
    NEUTRAL = "neutral"
    FRUSTRATED = "frustrated"
    ANGRY = "angry"


class TickReason(str, Enum):
    """Why a tick was started."""

    SESSION_START = "session_start"
    CUSTOMER_FINAL = "customer_final"
    CUSTOMER_SILENCE = "customer_silence"
    FALLBACK = "fallback"


class SessionStatus(str, Enum):
    """Engine lifecycle per session."""

    IDLE = "IDLE"
    LOADING_CONTEXT = "LOADING_CONTEXT"
    ACTIVE = "ACTIVE"
    STOPPED = "STOPPED"


# =============================================================================
# Session context
# =============================================================================


class StageDefinition(BaseModel):
    """One phase of the support playbook."""

    name: str
    goals: str = ""
    checklist: list[str] = Field(default_factory=list)


class ActionDefinition(BaseModel):
    """A background action the agent can trigger (refund lookup, order status...)."""

    id: str
    name: str
    description: str = ""
    trigger_phrases: list[str] = Field(default_factory=list)
    input_schema: dict[str, Any] = Field(default_factory=dict)


class KnowledgeDocument(BaseModel):
    """A field-level document of the org's support knowledge, used for lexical retrieval."""

    field: str
    text: str


class KnowledgeSnippet(BaseModel):
    """A scored excerpt returned by retrieval and injected into the prompt."""

    field: str
    text: str
    score: float


class KnowledgeChunk(BaseModel):
    """A stored embedding chunk returned by semantic retrieval."""

    id: str
    field: str
    chunk_text: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class SupportAgentContext(BaseModel):
    """Company profile and support knowledge rendered into the system prompt."""

    company_name: str = ""
    what_we_sell: str = ""
    how_it_works: str = ""
    policies: str = ""
    escalation_rules: str = ""
    forbidden_claims: str = ""
    knowledge_appendix: str = ""
    support_faqs: str = ""
    troubleshooting_guides: str = ""
    return_refund_policy: str = ""
    sla_rules: str = ""
    common_issues: str = ""
    support_knowledge_appendix: str = ""
    available_actions: list[ActionDefinition] = Field(default_factory=list)


class SessionContext(BaseModel):
    """Everything a session needs from the org, loaded once at start."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    org_id: str
    llm_model: str
    agent_prompt_delta: str = ""
    agent_context: SupportAgentContext = Field(default_factory=SupportAgentContext)
    stages: list[StageDefinition] = Field(default_factory=list)
    available_actions: list[ActionDefinition] = Field(default_factory=list)
    knowledge_documents: list[KnowledgeDocument] = Field(default_factory=list)

    def action_ids(self) -> set[str]:
        return {a.id for a in self.available_actions}


# =============================================================================
# Conversation state
# =============================================================================


class TurnLine(BaseModel):
    speaker: str
    text: str
    ts_ms: int


class SessionStats(BaseModel):
    """Running counters, mutated only by turn ingestion."""

    agent_turns: int = 0
    customer_turns: int = 0
    agent_questions: int = 0
    agent_words: int = 0
    customer_words: int = 0
    issue_type: str | None = None
    sentiment: Sentiment = Sentiment.NEUTRAL
    talk_ratio_agent: int = 50


class ChecklistItem(BaseModel):
    label: str
    done: bool = False


# =============================================================================
# Model I/O
# =============================================================================


class ProposedAction(BaseModel):
    """An action the model proposed; only kept if its id is a known action."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    definition_id: str | None = Field(default=None, alias="definitionId")
    name: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""

    @field_validator("input", mode="before")
    @classmethod
    def _coerce_input(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @field_validator("reason", mode="before")
    @classmethod
    def _coerce_reason(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""


class KnowledgeCite(BaseModel):
    model_config = ConfigDict(extra="ignore")

    source: str | None = None
    text: str | None = None


class CoachResponse(BaseModel):
    """Tolerant view of the model's JSON: every key optional, junk coerced away."""

    model_config = ConfigDict(extra="ignore")

    moment: str | None = None
    primary: str | None = None
    follow_up_question: str | None = None
    empathy_note: str | None = None
    nudges: list[str] = Field(default_factory=list)
    proposed_actions: list[ProposedAction] = Field(default_factory=list)
    knowledge_cite: KnowledgeCite | None = None
    issue_type: str | None = None
    resolution_status: str | None = None

    @field_validator(
        "moment",
        "primary",
        "follow_up_question",
        "empathy_note",
        "issue_type",
        "resolution_status",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        if value is None:
            return None
        return value if isinstance(value, str) else str(value)

    @field_validator("nudges", mode="before")
    @classmethod
    def _coerce_nudges(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            return []
        return [str(n) for n in value if n is not None]

    @field_validator("proposed_actions", mode="before")
    @classmethod
    def _coerce_actions(cls, value: Any) -> list[dict]:
        if not isinstance(value, list):
            return []
        return [a for a in value if isinstance(a, dict)]

    @field_validator("knowledge_cite", mode="before")
    @classmethod
    def _coerce_cite(cls, value: Any) -> dict | None:
        return value if isinstance(value, dict) else None

    @property
    def is_complete(self) -> bool:
        """The two keys a usable response must carry."""
        return bool(self.primary and self.primary.strip() and self.moment and self.moment.strip())


class SuggestionPayload(BaseModel):
    """One suggestion emission and everything that travels with it."""

    suggestions: list[str]
    nudges: list[str] = Field(default_factory=list)
    knowledge_cards: list[str] = Field(default_factory=list)
    moment_tag: str
    issue_type: str | None = None
    resolution_status: str = "diagnosing"
    proposed_actions: list[ProposedAction] = Field(default_factory=list)
    empathy_note: str | None = None

    @property
    def primary(self) -> str:
        return self.suggestions[0] if self.suggestions else ""
