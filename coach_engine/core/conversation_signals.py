"""Conversation signal heuristics: pure keyword rules over transcript turns.

No model cost, deterministic. Rules are ordered data tables so they can be
tested and swapped independently of the engine:

  - Issue category: first category (in table order) with any keyword hit wins
  - Sentiment: first rule (angry > frustrated > positive) with a hit wins;
    neutral is only the initial value and is never re-asserted
  - Entities: order/account numbers, email, phone via regex

Usage:
    from coach_engine.core.conversation_signals import update_stats

    update_stats(stats, "CUSTOMER", "I was charged twice, this is ridiculous")
    stats.issue_type   # "BILLING"
    stats.sentiment    # Sentiment.FRUSTRATED
"""

from __future__ import annotations

import re

from coach_engine.core.schemas_support import SessionStats, Sentiment, Speaker

# =============================================================================
# Rule tables
# =============================================================================

# Ordered: scanning stops at the first category with a match.
ISSUE_KEYWORDS: list[tuple[str, list[str]]] = [
    (
        "BILLING",
        ["price", "charge", "invoice", "refund", "payment", "bill", "subscription", "plan", "cost", "expensive"],
    ),
    (
        "TECHNICAL",
        ["bug", "error", "broken", "not working", "crash", "slow", "glitch", "issue", "problem", "fix"],
    ),
    (
        "ACCOUNT",
        ["login", "password", "access", "permissions", "sign in", "locked", "account", "profile", "settings"],
    ),
    (
        "SHIPPING",
        ["delivery", "tracking", "shipment", "order status", "shipping", "arrive", "package", "lost"],
    ),
    (
        "CANCELLATION",
        ["cancel", "unsubscribe", "close account", "stop", "end subscription", "terminate"],
    ),
]

ISSUE_TYPES: list[str] = [category for category, _ in ISSUE_KEYWORDS]

# Ordered by priority.
SENTIMENT_RULES: list[tuple[Sentiment, list[str]]] = [
    (Sentiment.ANGRY, ["angry", "unacceptable", "terrible", "awful"]),
    (Sentiment.FRUSTRATED, ["frustrated", "annoyed", "can't believe", "ridiculous"]),
    (Sentiment.POSITIVE, ["thank", "great", "perfect", "appreciate"]),
]

ENTITY_PATTERNS: list[tuple[str, re.Pattern[str], int]] = [
    ("order", re.compile(r"(?:order|#)\s*([A-Z0-9-]{4,})", re.IGNORECASE), 1),
    ("email", re.compile(r"[\w.-]+@[\w.-]+\.\w+"), 0),
    ("phone", re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"), 0),
    ("account", re.compile(r"(?:account|acct)\s*#?\s*([A-Z0-9-]{4,})", re.IGNORECASE), 1),
]


# =============================================================================
# Classification (pure)
# =============================================================================


def count_words(text: str) -> int:
    """Whitespace-delimited token count."""
    return len(text.split())


def classify_issue(text: str) -> str | None:
    """Return the first issue category with a case-insensitive substring hit."""
    lower = text.lower()
    for category, keywords in ISSUE_KEYWORDS:
        if any(kw in lower for kw in keywords):
            return category
    return None


def classify_sentiment(text: str) -> Sentiment | None:
    """Return the highest-priority sentiment with a hit, or None (no change)."""
    lower = text.lower()
    for sentiment, keywords in SENTIMENT_RULES:
        if any(kw in lower for kw in keywords):
            return sentiment
    return None


def talk_ratio(agent_words: int, customer_words: int) -> int:
    """Agent share of words as a rounded percentage; 50 before anyone speaks."""
    total = agent_words + customer_words
    if total == 0:
        return 50
    # Round half up, not half to even
    return int(agent_words * 100 / total + 0.5)


def update_stats(stats: SessionStats, speaker: str, text: str) -> SessionStats:
    """Fold one transcript turn into the running stats (mutates and returns)."""
    words = count_words(text)

    if speaker == Speaker.AGENT.value:
        stats.agent_turns += 1
        stats.agent_words += words
        if "?" in text:
            stats.agent_questions += 1
    else:
        stats.customer_turns += 1
        stats.customer_words += words

        issue = classify_issue(text)
        if issue:
            stats.issue_type = issue

        sentiment = classify_sentiment(text)
        if sentiment:
            stats.sentiment = sentiment

    stats.talk_ratio_agent = talk_ratio(stats.agent_words, stats.customer_words)
    return stats


def extract_entities(text: str) -> list[str]:
    """Lightweight entity extraction from a customer utterance.

    Returns labelled strings such as ``"order: AB-1234"`` in a fixed order.
    """
    entities: list[str] = []
    for label, pattern, group in ENTITY_PATTERNS:
        match = pattern.search(text)
        if match:
            entities.append(f"{label}: {match.group(group)}")
    return entities
