"""
PII redaction for prompts and session context.

Sensitive spans are replaced with opaque placeholders of the form
``[PII_TOKEN_<index>_<suffix>]`` before anything reaches the language
model. The placeholder map stays with the request so the model's answer
can be restored afterwards.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping
from typing import Any

from cartwise.config import get_logger
from cartwise.core.errors import RedactionError
from cartwise.core.models import RedactionResult, TokenizedContext

logger = get_logger(__name__)


# Ordered by priority: on identical spans the earlier pattern names the match.
PII_PATTERNS: dict[str, re.Pattern[str]] = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "credit_card": re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"),
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "phone": re.compile(r"\(\d{3}\)\s?\d{3}[-.]?\d{4}\b|\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "address": re.compile(
        r"\b\d+\s+(?:[A-Za-z]+\s+){1,4}"
        r"(?:Street|St|Avenue|Ave|Road|Rd|Drive|Dr|Lane|Ln|Boulevard|Blvd)\b",
        re.IGNORECASE,
    ),
    "payment_token": re.compile(r"\b(?:tok_|card_|pm_|pi_|src_)[A-Za-z0-9]{10,}\b"),
}

# Normalized (lowercase, no underscores) keys whose values are always tokenized.
SENSITIVE_FIELDS = frozenset(
    {
        "email",
        "phone",
        "address",
        "creditcard",
        "ssn",
        "firstname",
        "lastname",
        "fullname",
        "paymentmethod",
        "cardnumber",
        "cvv",
        "expirydate",
    }
)

PLACEHOLDER_RE = re.compile(r"\[PII_TOKEN_\d+_[0-9a-f]{8}\]")
_PLACEHOLDER_PREFIX = "[PII_TOKEN_"


def _normalize_key(key: str) -> str:
    return key.replace("_", "").replace("-", "").lower()


def find_pii_spans(text: str) -> list[tuple[int, int, str]]:
    """
    Locate non-overlapping PII spans in text.

    Overlaps resolve to the earliest start, then the longest span.

    Returns:
        Sorted list of (start, end, pii_type).
    """
    candidates = []
    for priority, (pii_type, pattern) in enumerate(PII_PATTERNS.items()):
        for match in pattern.finditer(text):
            candidates.append((match.start(), -match.end(), priority, pii_type))
    candidates.sort()

    spans = []
    cursor = 0
    for start, neg_end, _, pii_type in candidates:
        if start < cursor:
            continue
        spans.append((start, -neg_end, pii_type))
        cursor = -neg_end
    return spans


class PIIRedactor:
    """
    Reversible PII tokenizer.

    Stateless apart from the placeholder counter handed through each call,
    so one instance may be shared across threads.
    """

    def _new_placeholder(self, index: int, taken: str, token_map: Mapping[str, str]) -> str:
        while True:
            placeholder = f"{_PLACEHOLDER_PREFIX}{index}_{uuid.uuid4().hex[:8]}]"
            if placeholder not in taken and placeholder not in token_map:
                return placeholder

    def _redact_text(
        self, text: str, token_map: dict[str, str], taken: str
    ) -> str:
        pieces = []
        cursor = 0
        for start, end, pii_type in find_pii_spans(text):
            placeholder = self._new_placeholder(len(token_map), taken, token_map)
            token_map[placeholder] = text[start:end]
            pieces.append(text[cursor:start])
            pieces.append(placeholder)
            cursor = end
            logger.debug("pii_redacted", extra={"pii_type": pii_type})
        pieces.append(text[cursor:])
        return "".join(pieces)

    def redact_query(self, text: str) -> RedactionResult:
        """
        Replace PII spans in free text with unique placeholders.

        Args:
            text: Raw user query.

        Returns:
            RedactionResult with the sanitized text and placeholder map.

        Raises:
            RedactionError: If text is not a string.
        """
        if not isinstance(text, str):
            raise RedactionError(f"Expected query text as str, got {type(text).__name__}")

        tokens: dict[str, str] = {}
        sanitized = self._redact_text(text, tokens, taken=text)
        return RedactionResult(sanitized_text=sanitized, tokens=tokens)

    def tokenize_user_data(self, structured_context: Mapping[str, Any]) -> TokenizedContext:
        """
        Tokenize sensitive values in a session-context mapping.

        Values under sensitive keys are replaced whole; other strings are
        scanned with the free-text patterns. Nested mappings and lists are
        walked. Non-string scalars pass through.

        Raises:
            RedactionError: If the context is not a mapping.
        """
        if not isinstance(structured_context, Mapping):
            raise RedactionError(
                f"Expected session context mapping, got {type(structured_context).__name__}"
            )

        token_map: dict[str, str] = {}

        def walk(value: Any, sensitive: bool) -> Any:
            if isinstance(value, Mapping):
                return {
                    k: walk(v, sensitive or _normalize_key(str(k)) in SENSITIVE_FIELDS)
                    for k, v in value.items()
                }
            if isinstance(value, (list, tuple)):
                return [walk(v, sensitive) for v in value]
            if isinstance(value, str):
                if sensitive and value:
                    placeholder = self._new_placeholder(len(token_map), value, token_map)
                    token_map[placeholder] = value
                    return placeholder
                return self._redact_text(value, token_map, taken=value)
            return value

        tokenized = walk(structured_context, False)
        return TokenizedContext(tokenized_data=tokenized, token_map=token_map)

    def detokenize(self, text: str, token_map: Mapping[str, str]) -> str:
        """Restore known placeholders in one pass; unknown ones are left as-is."""
        if not token_map or not text:
            return text
        return PLACEHOLDER_RE.sub(lambda m: token_map.get(m.group(0), m.group(0)), text)


def merge_token_maps(*maps: Mapping[str, str]) -> dict[str, str]:
    merged: dict[str, str] = {}
    for token_map in maps:
        merged.update(token_map)
    return merged


class StreamDetokenizer:
    """
    Incremental detokenizer for streamed model output.

    A placeholder split across chunk boundaries is held back until it is
    complete, so the concatenated output equals ``detokenize`` applied to
    the concatenated input.
    """

    def __init__(self, redactor: PIIRedactor, token_map: Mapping[str, str]):
        self._redactor = redactor
        self._token_map = token_map
        self._pending = ""

    def feed(self, chunk: str) -> str:
        buffer = self._pending + chunk
        hold = _partial_placeholder_start(buffer)
        self._pending = buffer[hold:]
        return self._redactor.detokenize(buffer[:hold], self._token_map)

    def flush(self) -> str:
        rest, self._pending = self._pending, ""
        return self._redactor.detokenize(rest, self._token_map)


_PARTIAL_TAIL_RE = re.compile(r"\[(?:P(?:I(?:I(?:_(?:T(?:O(?:K(?:E(?:N(?:_[0-9]*(?:_[0-9a-f]{0,8})?)?)?)?)?)?)?)?)?)?)?$")


def _partial_placeholder_start(buffer: str) -> int:
    """Index where an unfinished placeholder begins, or len(buffer)."""
    match = _PARTIAL_TAIL_RE.search(buffer)
    return match.start() if match else len(buffer)


__all__ = [
    "PII_PATTERNS",
    "SENSITIVE_FIELDS",
    "PLACEHOLDER_RE",
    "PIIRedactor",
    "StreamDetokenizer",
    "find_pii_spans",
    "merge_token_maps",
]
