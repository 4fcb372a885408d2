"""Tests for cartwise.metrics helpers."""

from prometheus_client import REGISTRY

from cartwise.metrics import (
    metrics_response,
    record_attempt,
    record_cost,
    record_outcome,
    record_provider_error,
)


def _value(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestCounters:
    def test_outcome_increments(self):
        before = _value("cartwise_generation_outcomes_total", outcome="accepted", template="faq_response")
        record_outcome("accepted", "faq_response")
        after = _value("cartwise_generation_outcomes_total", outcome="accepted", template="faq_response")
        assert after == before + 1

    def test_attempt_increments(self):
        before = _value("cartwise_generation_attempts_total", result="error")
        record_attempt("error")
        assert _value("cartwise_generation_attempts_total", result="error") == before + 1

    def test_provider_error_labelled_by_type(self):
        before = _value("cartwise_provider_errors_total", error_type="TimeoutError")
        record_provider_error(TimeoutError("slow"))
        assert _value("cartwise_provider_errors_total", error_type="TimeoutError") == before + 1

    def test_negative_cost_is_clamped(self):
        before = _value("cartwise_generation_cost_usd_total", kind="llm")
        record_cost(0.01, -5.0)
        assert _value("cartwise_generation_cost_usd_total", kind="llm") == before


class TestExposition:
    def test_metrics_response(self):
        record_attempt("accept")
        body, content_type = metrics_response()
        assert b"cartwise_generation_attempts_total" in body
        assert content_type.startswith("text/plain")
