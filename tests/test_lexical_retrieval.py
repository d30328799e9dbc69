"""Tests for lexical knowledge retrieval."""

from coach_engine.core.lexical_retrieval import retrieve_snippets, snippet_limit, tokenize
from coach_engine.core.schemas_support import KnowledgeDocument


def test_tokenize_drops_short_tokens_stop_words_and_punctuation():
    assert tokenize("The REFUND, for my order-123 is late!") == ["refund", "order", "123", "late"]


def test_score_is_overlap_over_document_length():
    docs = [KnowledgeDocument(field="supportFaqs", text="refund window fourteen days")]
    snippets = retrieve_snippets(docs, "customer wants a refund", issue_type=None)

    assert len(snippets) == 1
    assert snippets[0].score == 0.25


def test_issue_type_boosts_matching_fields():
    docs = [
        KnowledgeDocument(field="returnRefundPolicy", text="refund policy details here"),
        KnowledgeDocument(field="commonIssues", text="refund policy details here"),
    ]
    snippets = retrieve_snippets(docs, "refund policy", issue_type="BILLING")

    assert [s.field for s in snippets] == ["returnRefundPolicy", "commonIssues"]
    assert snippets[0].score == snippets[1].score * 1.5


def test_low_scores_filtered_and_top_six_returned():
    docs = [KnowledgeDocument(field=f"doc{i}", text=f"refund alpha{i} beta{i}") for i in range(8)]
    docs.append(KnowledgeDocument(field="unrelated", text="completely different content"))

    snippets = retrieve_snippets(docs, "refund", issue_type=None)

    assert len(snippets) == 6
    assert all(s.field != "unrelated" for s in snippets)


def test_empty_query_or_corpus():
    docs = [KnowledgeDocument(field="supportFaqs", text="refund window")]
    assert retrieve_snippets(docs, "the a an", issue_type=None) == []
    assert retrieve_snippets([], "refund", issue_type=None) == []


def test_snippet_truncation_is_field_dependent():
    long_text = "refund " * 300
    docs = [
        KnowledgeDocument(field="troubleshootingGuides", text=long_text),
        KnowledgeDocument(field="forbiddenClaims", text=long_text),
        KnowledgeDocument(field="supportFaqs", text=long_text),
    ]
    by_field = {s.field: s for s in retrieve_snippets(docs, "refund", issue_type=None)}

    assert len(by_field["troubleshootingGuides"].text) == 800
    assert len(by_field["forbiddenClaims"].text) == 300
    assert len(by_field["supportFaqs"].text) == snippet_limit("supportFaqs") == 500
