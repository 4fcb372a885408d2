"""Tests for cartwise.core.rendering: templates, prompt text, budget selection."""

import math
import threading

import pytest

from cartwise.core.errors import UnknownTemplateError
from cartwise.core.models import (
    CartItem,
    Document,
    DocumentMetadata,
    ModelSize,
    Prediction,
    PromptContext,
    PromptCostConfig,
    PromptTemplate,
    SessionContext,
    SessionState,
)
from cartwise.core.prompts import STRICT_GROUNDING_CONSTRAINTS, top_features
from cartwise.core.rendering import (
    PromptRenderer,
    TemplateRegistry,
    estimate_tokens,
    select_model_size,
)

GENEROUS = {"target_cost_per_prompt": 1000.0}


def _doc(doc_id="doc-1", snippet="The X100 headphones offer 30 hours of battery life.", score=0.9):
    return Document(id=doc_id, snippet=snippet, score=score, metadata=DocumentMetadata(sku="X100"))


def _prediction():
    return Prediction(
        sku="X100",
        demand_score=0.8123,
        purchase_probability=0.45,
        explanation="Popular with commuters",
        feature_importance={"price": 0.1, "rating": -0.5, "brand": 0.3, "color": 0.05},
        confidence=0.9,
    )


def _session(**context_overrides):
    context = SessionContext(
        preferences={"brand": "Acme"},
        purchase_history=["SKU-9"],
        current_cart=[CartItem(sku="X100", quantity=2, price=59.99, name="Headphones X")],
    )
    for key, value in context_overrides.items():
        setattr(context, key, value)
    return SessionState(session_id="s-1", user_id="u-1", merchant_id="m-1", context=context)


def _context(**overrides):
    defaults = {"documents": [_doc()], "predictions": [], "session_state": None}
    defaults.update(overrides)
    return PromptContext(**defaults)


def _custom_template(template_type="size_guide", system="Answer sizing questions."):
    return PromptTemplate(
        template_type=template_type,
        system=system,
        instructions=("Read the size chart",),
        constraints=("Cite sources",),
        preferred_model_size=ModelSize.SMALL,
    )


class TestPromptText:
    def test_renders_all_sections(self):
        renderer = PromptRenderer()
        rendered = renderer.render_template(
            "product_recommendation",
            "wireless headphones",
            _context(predictions=[_prediction()], session_state=_session()),
            cost_overrides=GENEROUS,
        )
        prompt = rendered.rendered_prompt

        assert prompt.startswith("SYSTEM: You are an expert e-commerce assistant")
        assert "Document 1 (ID: doc-1):" in prompt
        assert "Title: X100" in prompt
        assert "Relevance Score: 0.900" in prompt
        assert "Demand Score: 0.812" in prompt
        assert "  - Headphones X: Qty 2 x $59.99" in prompt
        assert "Purchase History: SKU-9" in prompt
        assert "USER QUERY: wireless headphones" in prompt
        assert prompt.endswith("\nRESPONSE:")

    def test_top_three_features_by_magnitude(self):
        renderer = PromptRenderer()
        prompt = renderer.render_template(
            "product_recommendation",
            "headphones",
            _context(predictions=[_prediction()]),
            cost_overrides=GENEROUS,
        ).rendered_prompt

        assert "Top Features:\n  - rating: -0.500\n  - brand: 0.300\n  - price: 0.100" in prompt
        assert "  - color" not in prompt

    def test_top_features_helper(self):
        assert top_features({"a": 0.1, "b": -0.9}, limit=1) == [("b", -0.9)]

    def test_missing_sku_renders_na(self):
        renderer = PromptRenderer()
        doc = Document(id="doc-2", snippet="Free returns within 30 days.", score=0.5)
        prompt = renderer.render_template(
            "faq_response", "returns", _context(documents=[doc])
        ).rendered_prompt
        assert "Title: N/A" in prompt

    def test_malformed_document_renders(self):
        renderer = PromptRenderer()
        doc = Document(id="doc-3", snippet="Ships in two days.", score=None, metadata=None)
        prompt = renderer.render_template(
            "faq_response", "shipping", _context(documents=[doc])
        ).rendered_prompt
        assert "Title: N/A" in prompt
        assert "Relevance Score: N/A" in prompt

    def test_token_count_is_deterministic(self):
        renderer = PromptRenderer()
        rendered = renderer.render_template("general_query", "battery life?", _context())
        assert rendered.token_count == math.ceil(len(rendered.rendered_prompt) / 4)
        again = renderer.render_template("general_query", "battery life?", _context())
        assert again.token_count == rendered.token_count

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2


class TestPiiInPrompt:
    def test_query_pii_never_reaches_prompt(self):
        renderer = PromptRenderer()
        rendered = renderer.render_template(
            "general_query", "email jane@example.com about the X100", _context()
        )
        assert "jane@example.com" not in rendered.rendered_prompt
        assert "jane@example.com" in rendered.pii_tokens.values()

    def test_session_context_is_tokenized(self):
        renderer = PromptRenderer()
        session = _session(preferences={"contact": "call 555-123-4567"})
        rendered = renderer.render_template(
            "general_query", "any deals?", _context(session_state=session)
        )
        assert "555-123-4567" not in rendered.rendered_prompt
        assert "555-123-4567" in rendered.pii_tokens.values()


class TestTemplateLookup:
    def test_unknown_template_raises(self):
        renderer = PromptRenderer()
        with pytest.raises(UnknownTemplateError) as exc_info:
            renderer.render_template("nope", "hi", _context())
        assert isinstance(exc_info.value, KeyError)
        assert "nope" in str(exc_info.value)

    def test_default_templates_registered(self):
        renderer = PromptRenderer()
        assert set(renderer.template_types()) == {
            "product_recommendation",
            "general_query",
            "checkout_assistance",
            "faq_response",
        }


class TestBudgetSelection:
    def test_keeps_preferred_size_within_budget(self):
        renderer = PromptRenderer()
        rendered = renderer.render_template(
            "product_recommendation", "headphones", _context(), cost_overrides=GENEROUS
        )
        assert rendered.model_size is ModelSize.MEDIUM
        assert rendered.fallback_used is False

    def test_downgrades_to_small_and_condenses(self):
        renderer = PromptRenderer(cost_config=PromptCostConfig(target_cost_per_prompt=1e-9))
        rendered = renderer.render_template("product_recommendation", "headphones", _context())
        assert rendered.model_size is ModelSize.SMALL
        assert rendered.fallback_used is True
        assert rendered.rendered_prompt.startswith("SYSTEM: You are an e-commerce assistant.")

    def test_small_preferred_over_budget_reports_fallback(self):
        renderer = PromptRenderer(cost_config=PromptCostConfig(target_cost_per_prompt=1e-9))
        rendered = renderer.render_template("faq_response", "returns?", _context())
        assert rendered.model_size is ModelSize.SMALL
        assert rendered.fallback_used is True

    def test_greedy_stops_at_first_fitting_size(self):
        renderer = PromptRenderer()
        baseline = renderer.render_template(
            "checkout_assistance",
            "confirm my order",
            _context(),
            cost_overrides={"preferred_model_size": "large", "target_cost_per_prompt": 1000.0},
        )
        assert baseline.model_size is ModelSize.LARGE

        target = baseline.token_count * 0.0003
        rendered = renderer.render_template(
            "checkout_assistance",
            "confirm my order",
            _context(),
            cost_overrides={"preferred_model_size": "large", "target_cost_per_prompt": target},
        )
        assert rendered.model_size is ModelSize.MEDIUM
        assert rendered.fallback_used is True

    def test_fallback_disabled_keeps_full_template(self):
        renderer = PromptRenderer(
            cost_config=PromptCostConfig(target_cost_per_prompt=1e-9, enable_fallback=False)
        )
        rendered = renderer.render_template("product_recommendation", "headphones", _context())
        assert rendered.model_size is ModelSize.SMALL
        assert rendered.fallback_used is False
        assert rendered.rendered_prompt.startswith("SYSTEM: You are an expert e-commerce assistant")

    def test_unknown_override_raises(self):
        renderer = PromptRenderer()
        with pytest.raises(ValueError, match="Unknown cost override"):
            renderer.render_template("general_query", "hi", _context(), cost_overrides={"budget": 1})

    def test_estimate_cost_matches_render(self):
        renderer = PromptRenderer()
        rendered = renderer.render_template("general_query", "battery?", _context())
        estimate = renderer.estimate_cost("general_query", "battery?", _context())
        assert estimate.token_count == rendered.token_count
        assert estimate.cost_estimate == pytest.approx(rendered.cost_estimate)
        assert estimate.model_size is rendered.model_size

    def test_select_model_size_floor_is_small(self):
        config = PromptCostConfig(target_cost_per_prompt=0.0)
        assert select_model_size(1000, ModelSize.LARGE, config) is ModelSize.SMALL

    def test_select_model_size_zero_tokens_keeps_preferred(self):
        config = PromptCostConfig(target_cost_per_prompt=0.0)
        assert select_model_size(0, ModelSize.LARGE, config) is ModelSize.LARGE


class TestPromptCostConfig:
    @pytest.mark.parametrize("tokens", [0, 1, 250, 4000])
    def test_cost_monotonic_in_size(self, tokens):
        config = PromptCostConfig()
        small = config.cost_for(tokens, ModelSize.SMALL)
        medium = config.cost_for(tokens, ModelSize.MEDIUM)
        large = config.cost_for(tokens, ModelSize.LARGE)
        assert small <= medium <= large

    def test_rejects_decreasing_costs(self):
        with pytest.raises(ValueError, match="non-decreasing"):
            PromptCostConfig(token_cost_per_model={"small": 0.01, "medium": 0.001, "large": 0.1})

    def test_rejects_negative_costs(self):
        with pytest.raises(ValueError, match="non-negative"):
            PromptCostConfig(token_cost_per_model={"small": -0.1, "medium": 0.0, "large": 0.1})

    def test_string_keys_are_coerced(self):
        config = PromptCostConfig(
            preferred_model_size="small",
            token_cost_per_model={"small": 0.1, "medium": 0.2, "large": 0.3},
        )
        assert config.preferred_model_size is ModelSize.SMALL
        assert config.cost_for(10, ModelSize.LARGE) == pytest.approx(3.0)


class TestTightenedRender:
    def test_appends_strict_constraints_and_condenses(self):
        renderer = PromptRenderer()
        rendered = renderer.render_template(
            "product_recommendation",
            "headphones",
            _context(),
            cost_overrides=GENEROUS,
            tightened=True,
        )
        assert rendered.tightened is True
        assert rendered.rendered_prompt.startswith("SYSTEM: You are an e-commerce assistant.")
        for constraint in STRICT_GROUNDING_CONSTRAINTS:
            assert constraint in rendered.rendered_prompt

    def test_template_without_condensed_keeps_system(self):
        renderer = PromptRenderer()
        rendered = renderer.render_template(
            "checkout_assistance", "pay now", _context(), cost_overrides=GENEROUS, tightened=True
        )
        assert rendered.rendered_prompt.startswith("SYSTEM: You are a checkout assistant")
        assert STRICT_GROUNDING_CONSTRAINTS[0] in rendered.rendered_prompt


class TestTemplateRegistry:
    def test_add_custom_template(self):
        renderer = PromptRenderer()
        renderer.add_template(_custom_template())
        rendered = renderer.render_template("size_guide", "what size?", _context())
        assert rendered.rendered_prompt.startswith("SYSTEM: Answer sizing questions.")
        assert rendered.template_used == "size_guide"

    def test_replace_template(self):
        registry = TemplateRegistry()
        registry.add(_custom_template(system="Old text."))
        registry.add(_custom_template(system="New text."))
        assert registry.get("size_guide").system == "New text."

    def test_rejects_template_without_system(self):
        registry = TemplateRegistry()
        with pytest.raises(ValueError):
            registry.add(_custom_template(system=""))

    def test_registries_are_independent(self):
        first = TemplateRegistry()
        second = TemplateRegistry()
        first.add(_custom_template())
        assert "size_guide" in first
        assert "size_guide" not in second

    def test_string_model_size_coerced(self):
        registry = TemplateRegistry(templates=[])
        registry.add(
            PromptTemplate(
                template_type="bulk",
                system="Bulk orders.",
                instructions=(),
                constraints=(),
                preferred_model_size="large",
            )
        )
        assert registry.get("bulk").preferred_model_size is ModelSize.LARGE
        assert len(registry) == 1

    def test_readers_see_whole_templates_during_replacement(self):
        registry = TemplateRegistry(templates=[_custom_template(system="A.")])
        seen = set()
        stop = threading.Event()

        def read():
            while not stop.is_set():
                seen.add(registry.get("size_guide").system)

        readers = [threading.Thread(target=read) for _ in range(4)]
        for thread in readers:
            thread.start()
        for i in range(200):
            registry.add(_custom_template(system="A." if i % 2 else "B."))
        stop.set()
        for thread in readers:
            thread.join()

        assert seen <= {"A.", "B."}
