"""Support session context loading.

Reads the session row plus the org's sales/support knowledge, products,
agent persona and active action catalog, and assembles the immutable
SessionContext the engine works from.
"""

import json
from typing import Any

from coach_engine.core.config import get_settings
from coach_engine.core.logging import get_logger
from coach_engine.core.schemas_support import (
    ActionDefinition,
    KnowledgeDocument,
    SessionContext,
    SupportAgentContext,
)
from coach_engine.core.support_playbook import DEFAULT_STAGES
from coach_engine.db.supabase_client import get_supabase

logger = get_logger(__name__)

MIN_DOCUMENT_CHARS = 5
MIN_PRODUCT_LINE_CHARS = 10


# =============================================================================
# Row → text helpers (pure)
# =============================================================================


def format_json_array(value: Any) -> str:
    """Render a jsonb array of strings/objects as a bullet-joined string."""
    if not isinstance(value, list) or not value:
        return ""

    lines: list[str] = []
    for item in value:
        if isinstance(item, str):
            line = item
        elif isinstance(item, dict):
            line = ", ".join(
                f"{k}: {v if isinstance(v, str) else json.dumps(v)}" for k, v in item.items()
            )
        else:
            line = ""
        if line:
            lines.append(line)

    return "\n- ".join(lines)


def _product_faqs(products: list[dict[str, Any]]) -> str:
    lines = []
    for product in products:
        faqs = product.get("faqs") if isinstance(product.get("faqs"), list) else []
        for faq in faqs:
            if not isinstance(faq, dict):
                continue
            line = f"[{product.get('name', '')}] Q: {faq.get('question') or ''} A: {faq.get('answer') or ''}"
            if len(line) > MIN_PRODUCT_LINE_CHARS:
                lines.append(line)
    return "\n".join(lines)


def _product_objections(products: list[dict[str, Any]]) -> str:
    lines = []
    for product in products:
        objections = product.get("objections") if isinstance(product.get("objections"), list) else []
        for obj in objections:
            if not isinstance(obj, dict):
                continue
            line = f"[{product.get('name', '')}] \"{obj.get('objection') or ''}\": {obj.get('response') or ''}"
            if len(line) > MIN_PRODUCT_LINE_CHARS:
                lines.append(line)
    return "\n".join(lines)


def build_action_definitions(rows: list[dict[str, Any]]) -> list[ActionDefinition]:
    return [
        ActionDefinition(
            id=str(row["id"]),
            name=row.get("name") or "Action",
            description=row.get("description") or "",
            trigger_phrases=row.get("trigger_phrases") if isinstance(row.get("trigger_phrases"), list) else [],
            input_schema=row.get("input_schema") if isinstance(row.get("input_schema"), dict) else {},
        )
        for row in rows
    ]


def build_agent_context(
    sales_ctx: dict[str, Any] | None,
    support_ctx: dict[str, Any] | None,
    actions: list[ActionDefinition],
) -> SupportAgentContext:
    """Merge the sales and support context rows into one prompt-ready context."""
    sales_ctx = sales_ctx or {}
    support_ctx = support_ctx or {}

    return SupportAgentContext(
        company_name=sales_ctx.get("company_name") or "",
        what_we_sell=sales_ctx.get("what_we_sell") or "",
        how_it_works=sales_ctx.get("how_it_works") or "",
        policies=format_json_array(sales_ctx.get("sales_policies")),
        escalation_rules=format_json_array(sales_ctx.get("escalation_rules")),
        forbidden_claims=format_json_array(sales_ctx.get("forbidden_claims")),
        knowledge_appendix=sales_ctx.get("knowledge_appendix") or "",
        support_faqs=format_json_array(support_ctx.get("support_faqs")),
        troubleshooting_guides=format_json_array(support_ctx.get("troubleshooting_guides")),
        return_refund_policy=support_ctx.get("return_refund_policy") or "",
        sla_rules=format_json_array(support_ctx.get("sla_rules")),
        common_issues=format_json_array(support_ctx.get("common_issues")),
        support_knowledge_appendix=support_ctx.get("support_knowledge_appendix") or "",
        available_actions=actions,
    )


def build_knowledge_documents(
    agent_ctx: SupportAgentContext,
    products: list[dict[str, Any]],
) -> list[KnowledgeDocument]:
    """One lexical document per non-trivial knowledge field.

    Field names match the boost lists in lexical_retrieval.
    """
    candidates = [
        ("supportFaqs", agent_ctx.support_faqs),
        ("troubleshootingGuides", agent_ctx.troubleshooting_guides),
        ("returnRefundPolicy", agent_ctx.return_refund_policy),
        ("slaRules", agent_ctx.sla_rules),
        ("commonIssues", agent_ctx.common_issues),
        ("supportKnowledgeAppendix", agent_ctx.support_knowledge_appendix),
        ("knowledgeAppendix", agent_ctx.knowledge_appendix),
        ("policies", agent_ctx.policies),
        ("escalationRules", agent_ctx.escalation_rules),
        ("forbiddenClaims", agent_ctx.forbidden_claims),
        ("productFaqs", _product_faqs(products)),
        ("productObjections", _product_objections(products)),
    ]

    documents = []
    for field, text in candidates:
        text = text.strip()
        if len(text) > MIN_DOCUMENT_CHARS:
            documents.append(KnowledgeDocument(field=field, text=text))
    return documents


# =============================================================================
# Reads
# =============================================================================


def _first(response: Any) -> dict[str, Any] | None:
    rows = response.data or []
    return rows[0] if rows else None


def load_session_context(session_id: str) -> SessionContext | None:
    """
    Load the full engine context for a support session.

    Args:
        session_id: Support session ID

    Returns:
        SessionContext, or None if the session row does not exist

    Raises:
        Exception: If a database operation fails
    """
    supabase = get_supabase()

    try:
        session = _first(
            supabase.table("support_sessions").select("*").eq("id", session_id).limit(1).execute()
        )
        if not session:
            logger.warning(f"Support session not found: {session_id}")
            return None

        org_id = str(session["org_id"])

        sales_ctx = _first(
            supabase.table("sales_context").select("*").eq("org_id", org_id).limit(1).execute()
        )
        support_ctx = _first(
            supabase.table("support_context").select("*").eq("org_id", org_id).limit(1).execute()
        )
        products = (
            supabase.table("products")
            .select("name, faqs, objections")
            .eq("org_id", org_id)
            .order("name", desc=False)
            .execute()
        ).data or []

        agent = None
        if session.get("agent_id"):
            agent = _first(
                supabase.table("agents")
                .select("prompt_delta")
                .eq("id", str(session["agent_id"]))
                .limit(1)
                .execute()
            )

        action_rows = (
            supabase.table("action_definitions")
            .select("id, name, description, trigger_phrases, input_schema")
            .eq("org_id", org_id)
            .eq("is_active", True)
            .execute()
        ).data or []

        actions = build_action_definitions(action_rows)
        agent_ctx = build_agent_context(sales_ctx, support_ctx, actions)

        context = SessionContext(
            session_id=session_id,
            org_id=org_id,
            llm_model=get_settings().LLM_MODEL,
            agent_prompt_delta=((agent or {}).get("prompt_delta") or "").strip(),
            agent_context=agent_ctx,
            stages=DEFAULT_STAGES,
            available_actions=actions,
            knowledge_documents=build_knowledge_documents(agent_ctx, products),
        )

        logger.info(
            f"Loaded support context for session {session_id}",
            extra={
                "session_id": session_id,
                "extra_data": {
                    "org_id": org_id,
                    "actions": len(actions),
                    "documents": len(context.knowledge_documents),
                },
            },
        )
        return context

    except Exception as e:
        logger.error(f"Failed to load support context for session {session_id}: {e}")
        raise
