"""
Prompt rendering with cost-aware model-size selection.

Each PromptRenderer owns its own TemplateRegistry, so several renderers
with different template sets (e.g. one per merchant) can live in one
process. Rendering is pure apart from debug logging.
"""

from __future__ import annotations

import dataclasses
import math
import threading
from collections.abc import Iterable, Mapping
from typing import Any

from cartwise.config import CHARS_PER_TOKEN, get_logger
from cartwise.core.errors import UnknownTemplateError
from cartwise.core.models import (
    ModelSize,
    PromptContext,
    PromptCostConfig,
    PromptCostEstimate,
    PromptTemplate,
    RenderedPrompt,
)
from cartwise.core.prompts import DEFAULT_TEMPLATES, STRICT_GROUNDING_CONSTRAINTS, build_prompt
from cartwise.core.redaction import PIIRedactor, merge_token_maps

logger = get_logger(__name__)


def _key(template_type: Any) -> str:
    return str(getattr(template_type, "value", template_type))


def estimate_tokens(text: str) -> int:
    """Deterministic token estimate: ceil(characters / CHARS_PER_TOKEN)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def select_model_size(
    token_count: int,
    preferred: ModelSize,
    config: PromptCostConfig,
) -> ModelSize:
    """
    Greedy downgrade from the preferred size until the cost fits.

    Stops at SMALL even if SMALL is still over budget; the ceiling is
    advisory at this layer.
    """
    size = preferred
    while (
        config.cost_for(token_count, size) > config.target_cost_per_prompt
        and size is not ModelSize.SMALL
    ):
        size = size.smaller()
    return size


# ---------------------------------------------------------------------------
# Template registry
# ---------------------------------------------------------------------------


class TemplateRegistry:
    """
    Thread-safe template map.

    Writers copy the map under a lock and swap the reference, so a reader
    always sees a complete old or new map without locking.
    """

    def __init__(self, templates: Iterable[PromptTemplate] = DEFAULT_TEMPLATES):
        self._lock = threading.Lock()
        self._templates: dict[str, PromptTemplate] = {}
        for template in templates:
            self.add(template)

    def add(self, template: PromptTemplate) -> None:
        """Register or replace a template atomically."""
        if not template.template_type or not template.system:
            raise ValueError("Template needs a template_type and a system preamble")
        if not isinstance(template.preferred_model_size, ModelSize):
            template = dataclasses.replace(
                template, preferred_model_size=ModelSize(template.preferred_model_size)
            )
        with self._lock:
            updated = dict(self._templates)
            updated[_key(template.template_type)] = template
            self._templates = updated
        logger.debug("template_registered", extra={"template": _key(template.template_type)})

    def get(self, template_type: Any) -> PromptTemplate:
        templates = self._templates
        key = _key(template_type)
        if key not in templates:
            raise UnknownTemplateError(key, list(templates))
        return templates[key]

    def template_types(self) -> list[str]:
        return list(self._templates)

    def __contains__(self, template_type: object) -> bool:
        return _key(template_type) in self._templates

    def __len__(self) -> int:
        return len(self._templates)


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------

_COST_FIELDS = frozenset(f.name for f in dataclasses.fields(PromptCostConfig))


class PromptRenderer:
    """
    Builds prompts and picks the cheapest model size that fits the budget.

    Args:
        registry: Template registry. Defaults to one seeded with the
            built-in templates.
        cost_config: Budget defaults; per-call overrides are layered on top.
        redactor: PII redactor. Defaults to a fresh PIIRedactor.
    """

    def __init__(
        self,
        registry: TemplateRegistry | None = None,
        cost_config: PromptCostConfig | None = None,
        redactor: PIIRedactor | None = None,
    ):
        self.registry = registry or TemplateRegistry()
        self.cost_config = cost_config or PromptCostConfig()
        self.redactor = redactor or PIIRedactor()

    # -- registry passthroughs ------------------------------------------------

    def add_template(self, template: PromptTemplate) -> None:
        self.registry.add(template)

    def get_template(self, template_type: Any) -> PromptTemplate:
        return self.registry.get(template_type)

    def template_types(self) -> list[str]:
        return self.registry.template_types()

    # -- rendering ------------------------------------------------------------

    def _effective_config(self, overrides: Mapping[str, Any] | None) -> PromptCostConfig:
        if not overrides:
            return self.cost_config
        unknown = set(overrides) - _COST_FIELDS
        if unknown:
            raise ValueError(f"Unknown cost override(s): {sorted(unknown)}")
        return dataclasses.replace(self.cost_config, **overrides)

    def render_template(
        self,
        template_type: Any,
        user_query: str,
        context: PromptContext,
        cost_overrides: Mapping[str, Any] | None = None,
        tightened: bool = False,
    ) -> RenderedPrompt:
        """
        Render a prompt and select its model size.

        Args:
            template_type: Registered template key.
            user_query: Raw user query; PII is redacted before interpolation.
            context: Documents, predictions and session state.
            cost_overrides: PromptCostConfig fields to override for this call.
            tightened: Retry mode. Uses the condensed variant when one exists
                and appends strict grounding constraints.

        Returns:
            RenderedPrompt with the PII map needed to restore the answer.

        Raises:
            UnknownTemplateError: If template_type is not registered.
            RedactionError: If the query or session context is malformed.
            ValueError: If cost_overrides names an unknown field.
        """
        template = self.registry.get(template_type)
        config = self._effective_config(cost_overrides)
        preferred = config.preferred_model_size or template.preferred_model_size

        redacted = self.redactor.redact_query(user_query)
        session_context = None
        token_map = redacted.tokens
        state = context.session_state
        if state is not None and state.context is not None:
            tokenized = self.redactor.tokenize_user_data(state.context.to_dict())
            session_context = tokenized.tokenized_data
            token_map = merge_token_maps(redacted.tokens, tokenized.token_map)

        def render(active: PromptTemplate) -> tuple[str, int, ModelSize]:
            text = build_prompt(
                active,
                redacted.sanitized_text,
                context.documents,
                context.predictions,
                session_context,
                extra_constraints=STRICT_GROUNDING_CONSTRAINTS if tightened else (),
            )
            tokens = estimate_tokens(text)
            return text, tokens, select_model_size(tokens, preferred, config)

        active = template.condensed if tightened and template.condensed else template
        text, token_count, size = render(active)

        over_budget = size.rank < preferred.rank or token_count > config.max_tokens
        condensed_for_budget = False
        if config.enable_fallback and over_budget and active is template and template.condensed:
            text, token_count, size = render(template.condensed)
            condensed_for_budget = True

        cost = config.cost_for(token_count, size)
        fallback_used = config.enable_fallback and (
            size.rank < preferred.rank
            or condensed_for_budget
            or cost > config.target_cost_per_prompt
        )

        logger.debug(
            "prompt_rendered",
            extra={
                "template": template.template_type,
                "tokens": token_count,
                "model_size": size.value,
                "cost_estimate": round(cost, 6),
                "fallback_used": fallback_used,
                "tightened": tightened,
            },
        )

        return RenderedPrompt(
            rendered_prompt=text,
            token_count=token_count,
            cost_estimate=cost,
            model_size=size,
            pii_tokens=token_map,
            template_used=template.template_type,
            fallback_used=fallback_used,
            tightened=tightened,
        )

    def estimate_cost(
        self,
        template_type: Any,
        user_query: str,
        context: PromptContext,
        cost_overrides: Mapping[str, Any] | None = None,
    ) -> PromptCostEstimate:
        """Pre-flight budget check; same selection as render_template, numbers only."""
        rendered = self.render_template(template_type, user_query, context, cost_overrides)
        return PromptCostEstimate(
            token_count=rendered.token_count,
            cost_estimate=rendered.cost_estimate,
            model_size=rendered.model_size,
            fallback_used=rendered.fallback_used,
        )


__all__ = [
    "TemplateRegistry",
    "PromptRenderer",
    "estimate_tokens",
    "select_model_size",
]
