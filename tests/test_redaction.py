"""Tests for cartwise.core.redaction: PII placeholders and restoration."""

import pytest

from cartwise.core.errors import RedactionError
from cartwise.core.redaction import (
    PLACEHOLDER_RE,
    PIIRedactor,
    StreamDetokenizer,
    find_pii_spans,
)


@pytest.fixture
def redactor():
    return PIIRedactor()


class TestRedactQuery:
    def test_redacts_email(self, redactor):
        result = redactor.redact_query("Email me at jane.doe@example.com please")
        assert "jane.doe@example.com" not in result.sanitized_text
        assert list(result.tokens.values()) == ["jane.doe@example.com"]
        assert result.sanitized_text.startswith("Email me at [PII_TOKEN_0_")
        assert result.sanitized_text.endswith("] please")

    def test_redacts_phone_formats(self, redactor):
        result = redactor.redact_query("Call (555) 123-4567 or 555.987.6543 today")
        assert set(result.tokens.values()) == {"(555) 123-4567", "555.987.6543"}

    def test_redacts_card_and_ssn(self, redactor):
        result = redactor.redact_query("Card 4111 1111 1111 1111, SSN 123-45-6789.")
        assert set(result.tokens.values()) == {"4111 1111 1111 1111", "123-45-6789"}
        assert result.sanitized_text.endswith(".")

    def test_redacts_street_address(self, redactor):
        result = redactor.redact_query("Ship to 42 Elm Street tomorrow")
        assert list(result.tokens.values()) == ["42 Elm Street"]
        assert result.sanitized_text.endswith(" tomorrow")

    def test_redacts_payment_token(self, redactor):
        result = redactor.redact_query("use pm_1234567890abcdef for this")
        assert list(result.tokens.values()) == ["pm_1234567890abcdef"]

    def test_preserves_surrounding_punctuation(self, redactor):
        result = redactor.redact_query("(jane@example.com).")
        assert result.sanitized_text[0] == "("
        assert result.sanitized_text[-2:] == ")."
        assert PLACEHOLDER_RE.fullmatch(result.sanitized_text[1:-2])

    def test_each_occurrence_gets_unique_placeholder(self, redactor):
        result = redactor.redact_query("a@x.com and again a@x.com")
        assert len(result.tokens) == 2
        assert set(result.tokens.values()) == {"a@x.com"}

    def test_no_pii_leaves_text_unchanged(self, redactor):
        text = "wireless headphones under $100"
        result = redactor.redact_query(text)
        assert result.sanitized_text == text
        assert result.tokens == {}
        assert result.has_pii is False

    def test_round_trip(self, redactor):
        text = "I'm jane@example.com, call (555) 123-4567, ship to 42 Elm Street."
        result = redactor.redact_query(text)
        assert redactor.detokenize(result.sanitized_text, result.tokens) == text

    def test_placeholder_does_not_collide_with_existing_text(self, redactor):
        text = "literal [PII_TOKEN_0_deadbeef] and bob@example.com"
        result = redactor.redact_query(text)
        assert "[PII_TOKEN_0_deadbeef]" not in result.tokens
        assert redactor.detokenize(result.sanitized_text, result.tokens) == text

    def test_rejects_non_string(self, redactor):
        with pytest.raises(RedactionError):
            redactor.redact_query(None)


class TestFindPiiSpans:
    def test_overlap_prefers_earliest_longest(self):
        text = "5551234567@example.com"
        assert find_pii_spans(text) == [(0, len(text), "email")]

    def test_spans_are_sorted_and_disjoint(self):
        spans = find_pii_spans("x@y.com then 555-123-4567")
        assert [s[2] for s in spans] == ["email", "phone"]
        assert spans[0][1] <= spans[1][0]


class TestTokenizeUserData:
    def test_tokenizes_sensitive_fields_and_free_text(self, redactor):
        context = {
            "email": "jane@example.com",
            "first_name": "Jane",
            "preferences": {"brand": "Acme", "note": "call 555-123-4567"},
            "current_cart": [{"sku": "SKU-1", "quantity": 2, "price": 19.99}],
        }
        result = redactor.tokenize_user_data(context)
        data = result.tokenized_data

        assert PLACEHOLDER_RE.fullmatch(data["email"])
        assert PLACEHOLDER_RE.fullmatch(data["first_name"])
        assert data["preferences"]["brand"] == "Acme"
        assert "555-123-4567" not in data["preferences"]["note"]
        assert data["current_cart"][0] == {"sku": "SKU-1", "quantity": 2, "price": 19.99}
        assert sorted(result.token_map.values()) == sorted(
            ["jane@example.com", "Jane", "555-123-4567"]
        )

    def test_sensitive_key_matching_ignores_case_and_underscores(self, redactor):
        result = redactor.tokenize_user_data({"billing": {"cardNumber": "4111111111111111"}})
        assert PLACEHOLDER_RE.fullmatch(result.tokenized_data["billing"]["cardNumber"])
        assert list(result.token_map.values()) == ["4111111111111111"]

    def test_does_not_mutate_input(self, redactor):
        context = {"email": "jane@example.com"}
        redactor.tokenize_user_data(context)
        assert context == {"email": "jane@example.com"}

    def test_rejects_non_mapping(self, redactor):
        with pytest.raises(RedactionError):
            redactor.tokenize_user_data(["jane@example.com"])


class TestDetokenize:
    def test_unknown_placeholder_untouched(self, redactor):
        text = "see [PII_TOKEN_9_deadbeef]"
        assert redactor.detokenize(text, {"[PII_TOKEN_0_abcdef12]": "x"}) == text
        assert redactor.detokenize(text, {}) == text

    def test_idempotent(self, redactor):
        result = redactor.redact_query("mail jane@example.com or bob@example.com")
        once = redactor.detokenize(result.sanitized_text, result.tokens)
        assert redactor.detokenize(once, result.tokens) == once

    def test_text_without_placeholders_unchanged(self, redactor):
        assert redactor.detokenize("plain text", {"[PII_TOKEN_0_abcdef12]": "x"}) == "plain text"


class TestStreamDetokenizer:
    def test_restores_placeholder_split_across_chunks(self, redactor):
        redacted = redactor.redact_query("Reach me at jane@example.com")
        placeholder = next(iter(redacted.tokens))
        text = f"Sure, I will email {placeholder} soon."
        chunks = [text[:22], text[22:30], text[30:]]

        detokenizer = StreamDetokenizer(redactor, redacted.tokens)
        outputs = [detokenizer.feed(c) for c in chunks]
        outputs.append(detokenizer.flush())

        assert "".join(outputs) == "Sure, I will email jane@example.com soon."
        assert all("[PI" not in out for out in outputs)

    def test_flush_releases_unfinished_text(self, redactor):
        detokenizer = StreamDetokenizer(redactor, {"[PII_TOKEN_0_abcdef12]": "x"})
        assert detokenizer.feed("price [PII") == "price "
        assert detokenizer.flush() == "[PII"

    def test_plain_brackets_pass_through(self, redactor):
        detokenizer = StreamDetokenizer(redactor, {})
        assert detokenizer.feed("see [Source: doc-1] ok") == "see [Source: doc-1] ok"
        assert detokenizer.flush() == ""
