"""Deterministic suggestions used when the language model is unavailable or fails.

Canned but context-aware: keyed off the classified issue type, with a generic
template that echoes the first words of the customer's utterance.
"""

from coach_engine.core.schemas_support import SessionStats, Sentiment

EMPTY_UTTERANCE_SUGGESTION = "How can I help you today?"

ISSUE_TEMPLATES: dict[str, str] = {
    "BILLING": (
        "I'd be happy to help with your billing concern. Could you share your account "
        "or order number so I can pull up the details?"
    ),
    "TECHNICAL": (
        "I understand you're experiencing a technical issue. Can you walk me through "
        "exactly what's happening so I can help troubleshoot?"
    ),
    "SHIPPING": (
        "Let me look into your shipping concern. Do you have an order number I can use "
        "to check the status?"
    ),
    "CANCELLATION": (
        "I'd like to understand your situation better before we proceed. Could you share "
        "what's prompting this so I can see if there's something we can resolve?"
    ),
    "ACCOUNT": (
        "I can help with your account. Can you verify the email address or account ID "
        "associated with it?"
    ),
}

GENERIC_TEMPLATE = (
    "I hear you regarding {echo}. Let me look into this. Could you share any reference "
    "numbers or details that would help me find the right information?"
)

ECHO_WORDS = 4
MAX_FALLBACK_NUDGES = 3


def build_deterministic_fallback(customer_text: str, issue_type: str | None) -> str:
    """Pick the canned suggestion for the current utterance and issue type."""
    if not customer_text.strip():
        return EMPTY_UTTERANCE_SUGGESTION
    if issue_type in ISSUE_TEMPLATES:
        return ISSUE_TEMPLATES[issue_type]
    echo = " ".join(customer_text.split()[:ECHO_WORDS])
    return GENERIC_TEMPLATE.format(echo=echo)


def build_fallback_nudges(stats: SessionStats, stage_idx: int) -> list[str]:
    """Heuristic nudges, capped at three."""
    nudges: list[str] = []
    if not stats.issue_type:
        nudges.append("Identify the issue type")
    if stats.customer_turns < 2:
        nudges.append("Ask for details")
    if stats.sentiment in (Sentiment.FRUSTRATED, Sentiment.ANGRY):
        nudges.append("Acknowledge frustration")
    if stage_idx >= 2:
        nudges.append("Confirm resolution")
    nudges.append("Check knowledge base")
    return nudges[:MAX_FALLBACK_NUDGES]


def build_greeting(company_name: str) -> str:
    return f"Hi, thank you for calling {company_name or 'our company'}. How can I help you today?"
