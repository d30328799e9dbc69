"""Lexical knowledge retrieval: token overlap with issue-type field boosting.

Runs synchronously inside an engine tick, with no external round-trip.

Scoring per document:
    score = |query_tokens ∩ doc_tokens| / |doc_tokens|
    score *= 1.5 if the document's field is boosted for the current issue type

Documents scoring above 0.02 are kept, sorted descending, top 6 returned.
"""

import re

from coach_engine.core.schemas_support import KnowledgeDocument, KnowledgeSnippet

STOP_WORDS: frozenset[str] = frozenset(
    [
        "the", "a", "an", "and", "or", "is", "are", "to", "of", "for", "with",
        "on", "in", "at", "this", "that", "it", "we", "you", "they", "our",
        "their", "be", "as", "if", "by", "from", "can", "do", "does", "did",
        "have", "has", "had", "will", "would", "should", "could", "not", "no",
        "yes", "about", "just", "very", "really",
    ]
)

FIELD_BOOSTS_BY_ISSUE: dict[str, list[str]] = {
    "BILLING": ["returnRefundPolicy", "policies", "supportFaqs", "slaRules"],
    "TECHNICAL": ["troubleshootingGuides", "supportFaqs", "knowledgeAppendix", "commonIssues"],
    "ACCOUNT": ["supportFaqs", "troubleshootingGuides", "knowledgeAppendix"],
    "SHIPPING": ["policies", "slaRules", "supportFaqs", "commonIssues"],
    "CANCELLATION": ["returnRefundPolicy", "policies", "escalationRules", "slaRules"],
}

BOOST_FACTOR = 1.5
MIN_SCORE = 0.02
DEFAULT_LIMIT = 6

# Step-by-step guides lose meaning when cut short; claim lists stay terse
DEFAULT_SNIPPET_CHARS = 500
SNIPPET_CHAR_LIMITS: dict[str, int] = {
    "troubleshootingGuides": 800,
    "forbiddenClaims": 300,
}

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def tokenize(text: str) -> list[str]:
    """Lowercase, strip non-alphanumerics, drop short tokens and stop words."""
    cleaned = _NON_ALNUM.sub(" ", text.lower())
    return [w for w in cleaned.split() if len(w) > 2 and w not in STOP_WORDS]


def snippet_limit(field: str) -> int:
    return SNIPPET_CHAR_LIMITS.get(field, DEFAULT_SNIPPET_CHARS)


def retrieve_snippets(
    documents: list[KnowledgeDocument],
    query_text: str,
    issue_type: str | None,
    limit: int = DEFAULT_LIMIT,
) -> list[KnowledgeSnippet]:
    """
    Rank knowledge documents against the conversation window.

    Args:
        documents: The session's knowledge documents
        query_text: Recent transcript text used as the query
        issue_type: Currently classified issue type (drives field boosts)
        limit: Max snippets to return

    Returns:
        Snippets sorted by descending score, text truncated per field
    """
    if not documents:
        return []

    query_set = set(tokenize(query_text))
    if not query_set:
        return []

    boosted = set(FIELD_BOOSTS_BY_ISSUE.get(issue_type or "", []))

    scored: list[KnowledgeSnippet] = []
    for doc in documents:
        doc_tokens = tokenize(doc.text)
        overlap = sum(1 for token in doc_tokens if token in query_set)
        score = overlap / len(doc_tokens) if doc_tokens else 0.0
        if doc.field in boosted:
            score *= BOOST_FACTOR
        scored.append(
            KnowledgeSnippet(field=doc.field, text=doc.text[: snippet_limit(doc.field)], score=score)
        )

    kept = [s for s in scored if s.score > MIN_SCORE]
    kept.sort(key=lambda s: s.score, reverse=True)
    return kept[:limit]
