"""Tests for cartwise.services.streaming: chunk forwarding and deferred validation."""

import threading
from concurrent.futures import CancelledError
from unittest.mock import MagicMock

import pytest

from cartwise.core.errors import ProviderConnectionError, UnknownTemplateError
from cartwise.core.models import (
    Document,
    DocumentMetadata,
    GenerationConfig,
    GenerationRequest,
    InvocationCost,
    ModelInvocationResult,
    ModelStream,
    TokenUsage,
)
from cartwise.core.redaction import PLACEHOLDER_RE
from cartwise.core.rendering import estimate_tokens
from cartwise.services.generation import ResponseGenerator
from cartwise.services.streaming import QUALITY_GATE_WARNING

ANSWER = "The X100 headphones offer 30 hours of battery life."


def _request(**overrides):
    defaults = {
        "query": "X100 headphones battery life",
        "session_id": "s-1",
        "merchant_id": "m-1",
        "template_type": "general_query",
        "documents": [
            Document(
                id="doc-1",
                snippet=ANSWER + " They include active noise cancellation.",
                score=0.9,
                metadata=DocumentMetadata(sku="X100"),
            )
        ],
        "timeout": 5.0,
    }
    defaults.update(overrides)
    return GenerationRequest(**defaults)


def _stream(chunks, result=None):
    return ModelStream(chunks=iter(chunks), model_id="model-small", result=result)


def _result(text=ANSWER):
    return ModelInvocationResult(
        response_text=text,
        model_id="model-small",
        token_usage=TokenUsage(100, 12),
        cost=InvocationCost(0.001, 0.0005),
    )


def _generator(invoker):
    return ResponseGenerator(invoker=invoker, config=GenerationConfig(max_retries=0))


class TestStreaming:
    def test_chunks_match_non_streaming_response(self):
        invoker = MagicMock()
        invoker.invoke.return_value = _result()
        invoker.invoke_stream.side_effect = lambda prompt, **kwargs: _stream(
            ["The X100 ", "headphones offer ", "30 hours of battery life."], _result()
        )

        with _generator(invoker) as generator:
            handle = generator.generate_streaming_response(_request())
            streamed = "".join(handle)
            result = handle.result(timeout=5)
            blocking = generator.generate_response(_request())

        assert streamed == blocking.response == ANSWER
        assert result.response == streamed
        assert result.warnings == []
        assert result.metadata.retry_count == 0
        assert result.metadata.model_used == "model-small"
        assert result.metadata.token_usage.total_tokens == 112
        assert result.metadata.cost.llm_cost == pytest.approx(0.0015)
        assert result.quality_assessment.grounding_validation.is_grounded is True

    def test_placeholder_split_across_chunks_is_restored(self):
        invoker = MagicMock()

        def stream_with_placeholder(prompt, **kwargs):
            placeholder = PLACEHOLDER_RE.search(prompt).group(0)
            text = f"Sent to {placeholder} now."
            return _stream([text[:12], text[12:20], text[20:]])

        invoker.invoke_stream.side_effect = stream_with_placeholder

        with _generator(invoker) as generator:
            handle = generator.generate_streaming_response(
                _request(query="send specs to jane@example.com")
            )
            chunks = list(handle)
            result = handle.result(timeout=5)

        assert "".join(chunks) == "Sent to jane@example.com now."
        assert all("[PII" not in chunk for chunk in chunks)
        assert result.response == "Sent to jane@example.com now."

    def test_usage_estimated_without_provider_totals(self):
        invoker = MagicMock()
        invoker.invoke_stream.side_effect = lambda prompt, **kwargs: _stream([ANSWER])

        with _generator(invoker) as generator:
            handle = generator.generate_streaming_response(_request())
            list(handle)
            result = handle.result(timeout=5)

        assert result.metadata.token_usage.output_tokens == estimate_tokens(ANSWER)
        assert result.metadata.cost.llm_cost == 0.0

    def test_provider_error_mid_stream_becomes_warning(self):
        invoker = MagicMock()

        def failing_chunks():
            yield "Partial answer "
            raise ProviderConnectionError("connection reset")

        invoker.invoke_stream.side_effect = lambda prompt, **kwargs: ModelStream(
            chunks=failing_chunks(), model_id="model-small"
        )

        with _generator(invoker) as generator:
            handle = generator.generate_streaming_response(_request())
            streamed = "".join(handle)
            result = handle.result(timeout=5)

        assert streamed == "Partial answer "
        assert result.warnings[0] == "Stream interrupted: connection reset"
        assert QUALITY_GATE_WARNING in result.warnings

    def test_cancel_abandons_result(self):
        invoker = MagicMock()
        release = threading.Event()

        def slow_chunks():
            yield "first "
            release.wait(timeout=5)
            yield "second"

        invoker.invoke_stream.side_effect = lambda prompt, **kwargs: ModelStream(
            chunks=slow_chunks(), model_id="model-small"
        )

        with _generator(invoker) as generator:
            handle = generator.generate_streaming_response(_request())
            chunks = iter(handle)
            first = next(chunks)
            handle.cancel()
            release.set()
            rest = list(chunks)

            assert first == "first "
            assert rest == []
            assert handle.cancelled is True
            with pytest.raises(CancelledError):
                handle.result(timeout=5)

    def test_malformed_document_becomes_warning(self):
        invoker = MagicMock()
        invoker.invoke_stream.side_effect = lambda prompt, **kwargs: _stream([ANSWER], _result())
        documents = [
            *_request().documents,
            Document(id="doc-2", snippet="Ships in two days.", score=None, metadata=None),
        ]

        with _generator(invoker) as generator:
            handle = generator.generate_streaming_response(_request(documents=documents))
            streamed = "".join(handle)
            result = handle.result(timeout=5)

        assert streamed == ANSWER
        assert result.warnings == ["Validation failed: Document doc-2 has a non-numeric score"]
        assert result.quality_assessment.grounding_validation.is_grounded is True

    def test_render_errors_raise_before_streaming(self):
        invoker = MagicMock()
        with _generator(invoker) as generator:
            with pytest.raises(UnknownTemplateError):
                generator.generate_streaming_response(_request(template_type="nope"))
        invoker.invoke_stream.assert_not_called()
