"""Prompts for the real-time support copilot tick."""

import json
from typing import Any

from coach_engine.core.schemas_support import (
    ActionDefinition,
    ChecklistItem,
    KnowledgeSnippet,
    SessionContext,
    StageDefinition,
    SupportAgentContext,
    TurnLine,
)

MAX_PROMPT_SNIPPETS = 8
RECENT_TURNS_IN_PROMPT = 15
ACTION_RESULT_CHARS = 300

SUPPORT_COPILOT_SYSTEM_PROMPT = """You are an elite real-time customer support copilot. Your job is to generate the exact next words the support agent should say so the conversation moves toward resolution. You must be empathetic, accurate, and policy-compliant. Never invent facts.

Core principles:
- Empathy first: acknowledge the customer's situation before problem-solving. Reference their specific issue, not generic sympathy.
- Efficiency: minimize hold time. If an action can be run in the background, propose it immediately.
- Accuracy: only state facts from the knowledge base. Never guess product specs, policies, or timelines.
- Policy compliance: always follow company policies. Escalate when required by escalation rules.
- Resolution focus: drive toward concrete resolution, not open-ended conversation.
- Citation: when answering product questions, reference specific KB sources.

Structured inputs you will receive in the user message:
- customer_last_utterance: the verbatim last thing the customer said
- issue_type: BILLING | TECHNICAL | ACCOUNT | SHIPPING | CANCELLATION | GENERAL
- entities: order numbers, account IDs, emails, phone numbers extracted from the utterance
- customer_sentiment: positive | neutral | frustrated | angry
- available_actions: list of background actions the agent can trigger
- action_results: results from previously executed actions

Move sequencing rules:
- acknowledge: reference the customer's specific situation with empathy, then pivot to action.
- diagnose: ask one targeted clarifying question to identify root cause.
- resolve: provide specific answer/solution from KB, or propose an action to check systems.
- confirm: verify the customer is satisfied and ask if there's anything else.

Non-negotiable "Empathy + Action" gate for primary suggestion:
The "primary" must satisfy ALL:
1) It is exactly what the agent should say next (first-person), 1-2 sentences.
2) It acknowledges the customer's situation OR directly answers their question.
3) It contains a concrete next step: specific answer, clarifying question, or action proposal.
4) It never consists of generic empathy alone without immediate follow-through.

Banned generic openers (unless followed by >=25 chars of specifics):
- "I understand your frustration"
- "I'm sorry to hear that"
- "I apologize for the inconvenience"
- "Let me look into that"
- "That's a great question"

Action awareness:
- If the customer mentions an order, account, subscription, or billing issue, check available_actions and propose the relevant one.
- When an action result is available, incorporate it into your response naturally.
- Never say "please hold" or "let me check". Say what you're doing instead ("I'm pulling up your order now") or propose the action.

Output rules:
- Return JSON only, matching this schema:
  {
    "moment": "2-4 word label",
    "primary": "1-2 sentences the agent should say next",
    "follow_up_question": null or "one follow-up question if needed",
    "empathy_note": null or "short empathy phrasing if customer is frustrated/angry",
    "proposed_actions": [
      { "definitionId": "uuid", "name": "action name", "input": { "key": "value" }, "reason": "why this action is needed" }
    ],
    "knowledge_cite": null or { "source": "field name", "text": "relevant KB excerpt" },
    "nudges": ["2-3 chips, <=6 words each, action prompts like 'Ask for order number' or 'Check return policy'"],
    "issue_type": "BILLING | TECHNICAL | ACCOUNT | SHIPPING | CANCELLATION | GENERAL",
    "resolution_status": "diagnosing | resolving | resolved | escalating"
  }

Formatting constraints:
- "primary" must be speakable and concrete. No coaching commentary.
- "primary" must NEVER begin with meta-labels such as "Short answer:" or "Quick context:".
- "nudges" must be short action prompts (e.g., "Ask for order #", "Check refund policy", "Propose replacement").
- "proposed_actions" should only include actions from the available_actions list.
- "empathy_note" should only be present when customer sentiment is frustrated or angry.
- "resolution_status" must reflect the current state of the issue resolution.

Quality bar for "primary":
- It must do one of:
  (a) answer the customer's question with specific information from the KB, OR
  (b) ask one targeted diagnostic question using the customer's words, OR
  (c) propose a concrete resolution (refund, replacement, escalation, workaround), OR
  (d) acknowledge + propose an action to investigate.
- It must not repeat a recently used phrasing."""

STRICT_RETRY_SUFFIX = (
    "Return strictly valid JSON with keys: moment, primary, nudges, proposed_actions, "
    "issue_type, resolution_status."
)

SYSTEM_RULES = """Rules:
- Never invent facts. Only reference what is in the knowledge base.
- If uncertain, propose an action to look up the information.
- Primary must be 1-2 sentences and speakable.
- Nudges must be 2-3 items, <=6 words each.
- Moment must be 2-4 words.
- Return JSON only.
"""


def _action_line(action: ActionDefinition) -> str:
    fields = action.input_schema.get("fields") if isinstance(action.input_schema, dict) else None
    names = [f["name"] for f in fields or [] if isinstance(f, dict) and f.get("name")]
    requires = ", ".join(names) or "none"
    return f'- "{action.name}" requires: {requires}. {action.description}'.rstrip()


def build_support_context_block(ctx: SupportAgentContext) -> str:
    """Render the org's support profile as labelled sections, skipping empty ones."""
    labelled = [
        ("COMPANY", ctx.company_name),
        ("WHAT WE SELL", ctx.what_we_sell),
        ("HOW IT WORKS", ctx.how_it_works),
        ("POLICIES", ctx.policies),
        ("ESCALATION RULES", ctx.escalation_rules),
        ("FORBIDDEN CLAIMS (never say these)", ctx.forbidden_claims),
        ("RETURN & REFUND POLICY", ctx.return_refund_policy),
        ("SLA RULES", ctx.sla_rules),
        ("SUPPORT FAQs", ctx.support_faqs),
        ("TROUBLESHOOTING GUIDES", ctx.troubleshooting_guides),
        ("COMMON ISSUES", ctx.common_issues),
        ("KNOWLEDGE BASE", ctx.knowledge_appendix),
        ("SUPPORT KNOWLEDGE BASE", ctx.support_knowledge_appendix),
    ]
    sections = [f"{label}: {value}" for label, value in labelled if value]

    if ctx.available_actions:
        lines = "\n".join(_action_line(a) for a in ctx.available_actions)
        sections.append(f"AVAILABLE ACTIONS:\n{lines}")

    return "\n\n".join(sections)


def format_action_results(action_results: list[dict[str, Any]]) -> str:
    """One line per action result, output JSON truncated."""
    lines = []
    for result in action_results:
        output = json.dumps(result.get("output"), default=str)[:ACTION_RESULT_CHARS]
        lines.append(f"- {result.get('name', 'action')}: {output}")
    return "\n".join(lines)


def format_recent_turns(turns: list[TurnLine], limit: int = RECENT_TURNS_IN_PROMPT) -> str:
    return "\n".join(f"{t.speaker}: {t.text}" for t in turns[-limit:])


def build_system_prompt(
    context: SessionContext,
    current_stage: StageDefinition,
    checklist: list[ChecklistItem],
    snippets: list[KnowledgeSnippet],
    recent_suggestions: list[str],
    action_results: list[dict[str, Any]],
) -> str:
    """
    Build the tick system prompt.

    Args:
        context: Loaded session context
        current_stage: Stage the session is in
        checklist: Current stage checklist state
        snippets: Retrieved knowledge (first 8 used)
        recent_suggestions: Prior primary suggestions, newest first
        action_results: Results fed back from executed actions

    Returns:
        Complete system prompt
    """
    stage_map = "\n".join(f"{i + 1}. {s.name}: {s.goals}" for i, s in enumerate(context.stages))

    if checklist:
        checklist_block = "\n".join(f"{'[x]' if item.done else '[ ]'} {item.label}" for item in checklist)
    else:
        checklist_block = "No checklist for this stage."

    if snippets:
        knowledge = "\n".join(
            f"{i + 1}. [{s.field}] {s.text}" for i, s in enumerate(snippets[:MAX_PROMPT_SNIPPETS])
        )
    else:
        knowledge = "None"

    recent = "\n".join(f"{i + 1}. {s}" for i, s in enumerate(recent_suggestions)) or "None"
    results = format_action_results(action_results) or "None"

    addon = ""
    if context.agent_prompt_delta:
        addon = f"\nAgent Add-on Instructions: {context.agent_prompt_delta}\n"

    return (
        f"{SUPPORT_COPILOT_SYSTEM_PROMPT}\n\n"
        f"{addon}"
        f"Support Context:\n{build_support_context_block(context.agent_context)}\n\n"
        f"Support Playbook:\n"
        f"Stage map:\n{stage_map}\n"
        f"Current stage: {current_stage.name}\n"
        f"Current stage checklist:\n{checklist_block}\n\n"
        f"Retrieved knowledge for this turn:\n{knowledge}\n\n"
        f"Recent primary suggestions (avoid repeating):\n{recent}\n\n"
        f"Action results:\n{results}\n\n"
        f"{SYSTEM_RULES}"
    )


def build_user_prompt(
    recent_turns: str,
    customer_last_utterance: str,
    issue_type: str | None,
    entities: list[str],
    sentiment: str,
    available_actions: list[ActionDefinition],
    action_results: list[dict[str, Any]],
    reason: str,
) -> str:
    """Build the tick user prompt: conversation window plus structured facts."""
    action_names = ", ".join(a.name for a in available_actions) or "none"
    results_block = ""
    if action_results:
        results_block = f"\naction_results:\n{format_action_results(action_results)}"

    return (
        f"Conversation window (AGENT/CUSTOMER only):\n{recent_turns}\n\n"
        f'customer_last_utterance: "{customer_last_utterance or "None"}"\n'
        f"issue_type: {issue_type or 'GENERAL'}\n"
        f"entities: {', '.join(entities) if entities else 'none'}\n"
        f"customer_sentiment: {sentiment}\n"
        f"available_actions: {action_names}"
        f"{results_block}\n"
        f"Update trigger: {reason}\n"
        f"Return JSON only now."
    )


def build_retry_user_prompt(user_prompt: str) -> str:
    return f"{user_prompt}\n{STRICT_RETRY_SUFFIX}"
