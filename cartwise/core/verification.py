"""
Claim extraction and claim-to-document matching.

Provides the building blocks for grounding validation:
1. Claim extraction: sentence-level segmentation that skips questions,
   disclaimers and first-person opinions
2. Claim support: normalized substring match first, then content-word
   containment against each document snippet
3. Quality heuristics: relevance, completeness and clarity scores
4. Speculative language detection for hallucination signals

Matching is lexical. Thresholds live in GroundingConfig.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from numbers import Real

import numpy as np

from cartwise.core.models import Claim, ClaimEvidence, ClaimType, Document, DocumentMetadata
from cartwise.utils import content_tokens, normalize_text


CITATION_RE = re.compile(r"\[Source:\s*([^\]]+?)\s*\]")

_LINE_SPLIT_RE = re.compile(r"\n+")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?\]])\s+(?=[\"'(\[]?[A-Z0-9$])")
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")

# Speculative phrasing that signals the model went beyond its sources.
SPECULATIVE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bI think\b",
        r"\bI believe\b",
        r"\bprobably\b",
        r"\bmight be\b",
        r"\bcould be\b",
        r"\bbased on my knowledge\b",
        r"\btypically\b",
        r"\busually\b",
        r"\bgenerally\b",
        r"\boften\b",
        r"\bit seems\b",
        r"\bappears to be\b",
        r"\blooks like\b",
    )
]

_SUBJECTIVE_RE = re.compile(
    r"\b(?:I\s+think|I\s+believe|in\s+my\s+opinion|personally|I\s+feel|I\s+would\s+say)\b",
    re.IGNORECASE,
)
_META_PREFIX_RE = re.compile(r"^(?:note|disclaimer)\s*:|^please\b", re.IGNORECASE)

_CLAIM_TYPE_PATTERNS: list[tuple[ClaimType, re.Pattern[str]]] = [
    (ClaimType.PRICE, re.compile(r"\$\s?\d|\b(?:price[ds]?|costs?|usd|discount|sale)\b", re.I)),
    (
        ClaimType.AVAILABILITY,
        re.compile(r"\b(?:in stock|out of stock|available|availability|ships?|shipping|delivery|backorder)\b", re.I),
    ),
    (
        ClaimType.SPECIFICATION,
        re.compile(
            r"\d+(?:\.\d+)?\s*(?:inch(?:es)?|in\b|feet|ft|cm|mm|kg|lbs?|oz|gb|mb|tb|mah|hours?|hrs?|w|watts?)\b"
            r"|\b(?:model|version|dimensions?|weight|capacity|resolution)\b",
            re.I,
        ),
    ),
    (
        ClaimType.PRODUCT_FEATURE,
        re.compile(r"\b(?:features?|includes?|comes with|supports?|made of|designed|offers?|has|have)\b", re.I),
    ),
]


# ---------------------------------------------------------------------------
# Segmentation
# ---------------------------------------------------------------------------


def strip_citations(text: str) -> str:
    return " ".join(CITATION_RE.sub(" ", text).split())


def extract_citation_ids(text: str) -> list[str]:
    """Unique cited document ids in order of first appearance."""
    return list(dict.fromkeys(CITATION_RE.findall(text)))


def split_sentences(text: str) -> list[str]:
    """
    Split text into sentences.

    Lines are split first, bullet markers dropped, and a citation marker
    standing alone after a sentence is folded back into that sentence.
    """
    sentences: list[str] = []
    for line in _LINE_SPLIT_RE.split(text):
        line = _BULLET_RE.sub("", line).strip()
        if not line:
            continue
        for piece in _SENTENCE_SPLIT_RE.split(line):
            piece = piece.strip()
            if not piece:
                continue
            if sentences and not strip_citations(piece):
                sentences[-1] = f"{sentences[-1]} {piece}"
            else:
                sentences.append(piece)
    return sentences


def is_meta_sentence(sentence: str) -> bool:
    """Questions, disclaimers and opinions carry no checkable fact."""
    stripped = strip_citations(sentence)
    if not stripped or stripped.endswith("?"):
        return True
    if _META_PREFIX_RE.search(stripped):
        return True
    return bool(_SUBJECTIVE_RE.search(stripped))


def classify_claim(text: str) -> ClaimType:
    for claim_type, pattern in _CLAIM_TYPE_PATTERNS:
        if pattern.search(text):
            return claim_type
    return ClaimType.GENERAL_FACT


def extract_claims(text: str, max_claims: int = 10, min_content_words: int = 2) -> list[Claim]:
    """
    Extract candidate factual claims from a response.

    Args:
        text: Model response.
        max_claims: Cap on returned claims.
        min_content_words: Sentences with fewer non-stopword tokens are skipped.

    Returns:
        Claims in response order, deduplicated on normalized text.
    """
    claims: list[Claim] = []
    seen: set[str] = set()
    for sentence in split_sentences(text):
        if is_meta_sentence(sentence):
            continue
        claim_text = strip_citations(sentence)
        if len(content_tokens(claim_text)) < min_content_words:
            continue
        key = normalize_text(claim_text)
        if key in seen:
            continue
        seen.add(key)
        claims.append(Claim(text=claim_text, claim_type=classify_claim(claim_text)))
        if len(claims) >= max_claims:
            break
    return claims


# ---------------------------------------------------------------------------
# Document checks
# ---------------------------------------------------------------------------


def document_problem(doc: Document, position: int = 0) -> str | None:
    """Why ``doc`` cannot be scored, or None when it is well formed."""
    doc_id = getattr(doc, "id", None)
    if not isinstance(doc_id, str) or not doc_id:
        return f"Document at position {position} has no id"
    if not isinstance(getattr(doc, "snippet", None), str):
        return f"Document {doc_id} has a non-text snippet"
    score = getattr(doc, "score", None)
    if not isinstance(score, Real) or isinstance(score, bool):
        return f"Document {doc_id} has a non-numeric score"
    if not isinstance(getattr(doc, "metadata", None), DocumentMetadata):
        return f"Document {doc_id} has no metadata"
    return None


def first_document_problem(documents: Sequence[Document]) -> str | None:
    for position, doc in enumerate(documents):
        problem = document_problem(doc, position)
        if problem is not None:
            return problem
    return None


# ---------------------------------------------------------------------------
# Claim support
# ---------------------------------------------------------------------------


def is_exact_match(claim: str, snippet: str) -> bool:
    claim_norm = normalize_text(claim)
    return bool(claim_norm) and claim_norm in normalize_text(strip_citations(snippet))


def claim_support(claim: str, snippet: str) -> float:
    """
    Support strength of a snippet for a claim, in [0, 1].

    1.0 when the normalized claim occurs verbatim in the snippet, otherwise
    the share of the claim's distinct content words found in the snippet.
    """
    if not normalize_text(claim):
        return 0.0
    if is_exact_match(claim, snippet):
        return 1.0

    claim_words = set(content_tokens(claim))
    if not claim_words:
        return 0.0
    snippet_words = set(content_tokens(snippet))
    return len(claim_words & snippet_words) / len(claim_words)


def support_matrix(claims: Sequence[str], documents: Sequence[Document]) -> np.ndarray:
    """Claim x document support scores, shape (len(claims), len(documents))."""
    matrix = np.zeros((len(claims), len(documents)), dtype=float)
    for i, claim in enumerate(claims):
        for j, doc in enumerate(documents):
            matrix[i, j] = claim_support(claim, doc.snippet)
    return matrix


def best_matches(matrix: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Best score and best document index per claim; index -1 without documents."""
    n_claims, n_docs = matrix.shape
    if n_docs == 0:
        return np.zeros(n_claims), np.full(n_claims, -1)
    return matrix.max(axis=1), matrix.argmax(axis=1)


def claim_evidence(
    claim: str,
    scores: np.ndarray,
    documents: Sequence[Document],
    floor: float,
) -> list[ClaimEvidence]:
    """Documents supporting ``claim`` at or above ``floor``, strongest first."""
    evidence = []
    for j in np.argsort(-scores, kind="stable"):
        score = float(scores[j])
        if score < floor:
            break
        doc = documents[int(j)]
        exact = is_exact_match(claim, doc.snippet)
        evidence.append(
            ClaimEvidence(
                document_id=doc.id,
                snippet=doc.snippet,
                relevance_score=score,
                exact_match=exact,
                overlap_match=not exact,
            )
        )
    return evidence


def validation_reasoning(evidence: Sequence[ClaimEvidence]) -> str:
    if not evidence:
        return "No supporting evidence found in the retrieved documents."
    exact = sum(1 for e in evidence if e.exact_match)
    if exact:
        return f"Found {exact} exact match(es) in the source documents."
    return f"Found {len(evidence)} overlapping reference(s) in the source documents."


# ---------------------------------------------------------------------------
# Hallucination signals
# ---------------------------------------------------------------------------


def find_speculative_phrases(text: str) -> list[str]:
    """Speculative phrases in order of pattern, as written in the text."""
    found = []
    for pattern in SPECULATIVE_PATTERNS:
        found.extend(m.group(0) for m in pattern.finditer(text))
    return found


# ---------------------------------------------------------------------------
# Quality heuristics
# ---------------------------------------------------------------------------


def relevance_score(query: str, response: str) -> float:
    """Share of the query's content words that the response mentions."""
    query_words = set(content_tokens(query))
    if not query_words:
        return 1.0
    response_words = set(content_tokens(response))
    return len(query_words & response_words) / len(query_words)


def _length_score(word_count: int, low: int = 20, high: int = 250) -> float:
    if word_count == 0:
        return 0.0
    if word_count < low:
        return word_count / low
    if word_count > high:
        return max(0.5, high / word_count)
    return 1.0


def completeness_score(
    response: str,
    documents: Sequence[Document],
    supported_ids: set[str],
    top_k: int = 3,
) -> float:
    """
    0.4 x length adequacy + 0.6 x coverage of the top documents.

    A document counts as covered when a validated claim traced to it, or
    the response cites it or mentions its SKU.
    """
    length = _length_score(len(response.split()))
    top = sorted(documents, key=lambda d: d.score, reverse=True)[:top_k]
    if not top:
        return 0.4 * length + 0.6

    cited = set(extract_citation_ids(response))
    lowered = response.lower()
    covered = 0
    for doc in top:
        sku = getattr(doc.metadata, "sku", None)
        if doc.id in supported_ids or doc.id in cited or (sku and sku.lower() in lowered):
            covered += 1
    return 0.4 * length + 0.6 * (covered / len(top))


def clarity_score(response: str) -> float:
    """
    0.6 x sentence-length score + 0.4 x structure score.

    Sentences of 6-30 words read best. Structure rewards terminated
    sentences and penalizes run-ons over 50 words.
    """
    sentences = split_sentences(response)
    if not sentences:
        return 0.0

    lengths = np.array([len(strip_citations(s).split()) for s in sentences], dtype=float)
    avg = float(lengths.mean())
    if 6 <= avg <= 30:
        length_score = 1.0
    elif avg < 6:
        length_score = max(avg / 6, 0.3)
    else:
        length_score = max(30 / avg, 0.3)

    terminated = sum(1 for s in sentences if s.rstrip().endswith((".", "!", "?", "]")))
    structure = terminated / len(sentences)
    if (lengths > 50).any():
        structure *= 0.5
    return 0.6 * length_score + 0.4 * structure


__all__ = [
    "CITATION_RE",
    "SPECULATIVE_PATTERNS",
    "strip_citations",
    "extract_citation_ids",
    "split_sentences",
    "is_meta_sentence",
    "classify_claim",
    "extract_claims",
    "document_problem",
    "first_document_problem",
    "is_exact_match",
    "claim_support",
    "claim_evidence",
    "validation_reasoning",
    "support_matrix",
    "best_matches",
    "find_speculative_phrases",
    "relevance_score",
    "completeness_score",
    "clarity_score",
]
