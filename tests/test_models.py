"""Tests for cartwise.core.models and cartwise.core.errors."""

import pytest

from cartwise.core.errors import (
    CartwiseError,
    ProviderInvocationError,
    ProviderTimeoutError,
    UnknownTemplateError,
)
from cartwise.core.models import (
    CartItem,
    Document,
    GenerationConfig,
    GenerationCost,
    GenerationCostEstimate,
    GenerationRequest,
    InvocationCost,
    ModelSize,
    SessionContext,
    SessionState,
    TokenUsage,
)


class TestModelSize:
    def test_ordering(self):
        assert ModelSize.SMALL.rank < ModelSize.MEDIUM.rank < ModelSize.LARGE.rank

    def test_smaller_floors_at_small(self):
        assert ModelSize.LARGE.smaller() is ModelSize.MEDIUM
        assert ModelSize.MEDIUM.smaller() is ModelSize.SMALL
        assert ModelSize.SMALL.smaller() is ModelSize.SMALL

    def test_larger_caps_at_large(self):
        assert ModelSize.SMALL.larger() is ModelSize.MEDIUM
        assert ModelSize.LARGE.larger() is ModelSize.LARGE

    def test_from_string(self):
        assert ModelSize("medium") is ModelSize.MEDIUM


class TestUsageAndCost:
    def test_token_usage_total_and_sum(self):
        total = TokenUsage(10, 5) + TokenUsage(3, 2)
        assert (total.input_tokens, total.output_tokens) == (13, 7)
        assert total.total_tokens == 20

    def test_invocation_cost_total(self):
        assert InvocationCost(0.25, 0.5).total_cost == pytest.approx(0.75)

    def test_generation_cost_total(self):
        assert GenerationCost(prompt_cost=0.01, llm_cost=0.02).total_cost == pytest.approx(0.03)

    def test_cost_estimate_total(self):
        estimate = GenerationCostEstimate(
            prompt_cost=0.02, estimated_llm_cost=0.02, token_count=50, model_size=ModelSize.SMALL
        )
        assert estimate.total_estimated_cost == pytest.approx(0.04)


class TestGenerationConfig:
    def test_defaults(self):
        config = GenerationConfig()
        assert config.max_retries == 2
        assert config.min_quality_score == 0.7

    def test_rejects_negative_retries(self):
        with pytest.raises(ValueError):
            GenerationConfig(max_retries=-1)


class TestRequest:
    def test_prompt_context_shares_inputs(self):
        docs = [Document(id="d1", snippet="text", score=0.5)]
        state = SessionState(session_id="s-1", user_id="u-1", merchant_id="m-1")
        request = GenerationRequest(
            query="q", session_id="s-1", merchant_id="m-1", documents=docs, session_state=state
        )
        context = request.prompt_context()
        assert context.documents is docs
        assert context.session_state is state
        assert request.template_type == "general_query"

    def test_session_context_to_dict(self):
        context = SessionContext(current_cart=[CartItem(sku="X100", quantity=1, price=9.5)])
        data = context.to_dict()
        assert data["current_cart"] == [{"sku": "X100", "quantity": 1, "price": 9.5, "name": None}]
        assert data["preferences"] == {}


class TestErrors:
    def test_unknown_template_is_key_error(self):
        error = UnknownTemplateError("gift_wrap", ["faq_response", "general_query"])
        assert isinstance(error, KeyError)
        assert isinstance(error, CartwiseError)
        assert str(error) == (
            "Template type 'gift_wrap' not found (registered: faq_response, general_query)"
        )

    def test_provider_timeout_hierarchy(self):
        error = ProviderTimeoutError("slow")
        assert isinstance(error, ProviderInvocationError)
        assert isinstance(error, TimeoutError)
