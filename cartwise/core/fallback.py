"""
Deterministic fallback answers built only from source text.

Used when no generated attempt clears the quality gate. Every factual
sentence is copied verbatim from a supplied document and tagged with its
citation; the only other sentence is a disclaimer, which the claim
extractor treats as non-factual. The result therefore always validates
as fully grounded.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

from cartwise.config import (
    CITATION_FORMAT,
    MAX_FALLBACK_DOCUMENTS,
    MAX_FALLBACK_SENTENCES,
    get_logger,
)
from cartwise.core.models import Document
from cartwise.core.verification import (
    document_problem,
    is_meta_sentence,
    split_sentences,
    strip_citations,
)

logger = get_logger(__name__)

NO_SOURCES_MESSAGE = (
    "Please try rephrasing your question or add more details. "
    "Note: I could not find reliable information to answer this."
)

# The disclaimer must stay one sentence.
_SENTENCE_BREAK_RE = re.compile(r"[.!?]+\s+|\n+")


def usable_documents(documents: Sequence[Document]) -> list[Document]:
    """Documents that pass ``document_problem``: text id and snippet, numeric score, metadata."""
    return [d for position, d in enumerate(documents) if document_problem(d, position) is None]


def _excerpt(snippet: str, max_sentences: int) -> list[str]:
    excerpt = []
    for sentence in split_sentences(snippet):
        sentence = strip_citations(sentence)
        if is_meta_sentence(sentence):
            continue
        if not sentence.endswith((".", "!")):
            sentence = f"{sentence}."
        excerpt.append(sentence)
        if len(excerpt) >= max_sentences:
            break
    return excerpt


def create_fallback_response(
    query: str,
    documents: Sequence[Document],
    reason: str = "",
    max_documents: int = MAX_FALLBACK_DOCUMENTS,
    max_sentences: int = MAX_FALLBACK_SENTENCES,
) -> str:
    """
    Build a fully grounded answer from the highest-scoring documents.

    Args:
        query: Original user query, used for logging only.
        documents: Candidate source documents.
        reason: Why the fallback is being used; appended to the disclaimer.
        max_documents: Number of top documents to excerpt.
        max_sentences: Leading sentences taken from each document.

    Returns:
        Excerpts followed by ``[Source: <id>]`` and a closing disclaimer.
    """
    ranked = sorted(
        (d for d in usable_documents(documents) if d.snippet.strip()),
        key=lambda d: d.score,
        reverse=True,
    )

    parts = []
    used = 0
    for doc in ranked:
        excerpt = _excerpt(doc.snippet, max_sentences)
        if not excerpt:
            continue
        citation = CITATION_FORMAT.format(doc_id=doc.id)
        parts.extend(f"{sentence} {citation}" for sentence in excerpt)
        used += 1
        if used >= max_documents:
            break

    logger.info(
        "fallback_response_built",
        extra={"documents_used": used, "query_chars": len(query)},
    )

    if not parts:
        return NO_SOURCES_MESSAGE

    disclaimer = "Note: This answer quotes the source documents directly"
    reason = _SENTENCE_BREAK_RE.sub("; ", reason.strip()).rstrip(".!?")
    if reason:
        disclaimer = f"{disclaimer} because {reason[0].lower()}{reason[1:]}"
    parts.append(f"{disclaimer}.")
    return " ".join(parts)


__all__ = ["create_fallback_response", "usable_documents", "NO_SOURCES_MESSAGE"]
