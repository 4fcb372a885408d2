"""
Built-in prompt templates and prompt assembly.

Prompt design notes:
1. Every template asks for [Source: <id>] citations so answers can be
   checked claim by claim against the retrieved documents.
2. Condensed variants trade detail for fewer tokens and are used when the
   full prompt would blow the cost budget, and on tightened retries.
3. Tightened retries append STRICT_GROUNDING_CONSTRAINTS, which push the
   model toward short, quote-like sentences.
"""

from __future__ import annotations

from collections.abc import Mapping
from numbers import Real
from typing import Any

from cartwise.core.models import (
    Document,
    ModelSize,
    Prediction,
    PromptTemplate,
    TemplateType,
)


# ---------------------------------------------------------------------------
# Default templates
# ---------------------------------------------------------------------------

_PRODUCT_RECOMMENDATION_CONDENSED = PromptTemplate(
    template_type=TemplateType.PRODUCT_RECOMMENDATION.value,
    system=(
        "You are an e-commerce assistant. Recommend products based on the provided information.\n"
        "Keep responses concise and cite sources."
    ),
    instructions=(
        "Recommend relevant products",
        "Keep response brief",
        "Cite sources",
    ),
    constraints=(
        "Maximum 2 recommendations",
        "Under 100 words",
        "Include sources",
    ),
    preferred_model_size=ModelSize.SMALL,
)

_GENERAL_QUERY_CONDENSED = PromptTemplate(
    template_type=TemplateType.GENERAL_QUERY.value,
    system="Answer the user's question using the provided information. Be concise.",
    instructions=(
        "Answer user question",
        "Use provided information",
        "Be concise",
    ),
    constraints=(
        "Under 80 words",
        "Cite sources",
    ),
    preferred_model_size=ModelSize.SMALL,
)

DEFAULT_TEMPLATES: tuple[PromptTemplate, ...] = (
    PromptTemplate(
        template_type=TemplateType.PRODUCT_RECOMMENDATION.value,
        system=(
            "You are an expert e-commerce assistant helping customers find products.\n"
            "Your responses must be grounded in the provided product documents and predictions.\n"
            "Always cite sources using [Source: Document ID] format.\n"
            "Limit recommendations to 3 products maximum.\n"
            "Include confidence scores and explanations from the prediction data."
        ),
        instructions=(
            "Analyze the user query for product intent",
            "Review retrieved documents for relevant products",
            "Consider prediction scores and feature importance",
            "Provide personalized recommendations with explanations",
            "Include source citations for all factual claims",
        ),
        constraints=(
            "Maximum 3 product recommendations",
            "All claims must be grounded in provided documents",
            "Include confidence scores from predictions",
            "Maintain conversational tone",
            "Respect user preferences from session context",
        ),
        preferred_model_size=ModelSize.MEDIUM,
        condensed=_PRODUCT_RECOMMENDATION_CONDENSED,
    ),
    PromptTemplate(
        template_type=TemplateType.GENERAL_QUERY.value,
        system=(
            "You are a helpful e-commerce assistant. Answer user questions based on the provided context.\n"
            "If information is not available in the documents, clearly state this limitation.\n"
            "Always cite your sources using [Source: Document ID] format."
        ),
        instructions=(
            "Understand the user query intent",
            "Search provided documents for relevant information",
            "Provide accurate, grounded responses",
            "Cite all sources appropriately",
        ),
        constraints=(
            "Only use information from provided documents",
            "Clearly indicate when information is unavailable",
            "Maintain helpful and professional tone",
            "Include source citations",
        ),
        preferred_model_size=ModelSize.MEDIUM,
        condensed=_GENERAL_QUERY_CONDENSED,
    ),
    PromptTemplate(
        template_type=TemplateType.CHECKOUT_ASSISTANCE.value,
        system=(
            "You are a checkout assistant helping users complete their purchases.\n"
            "Guide users through the checkout process while ensuring they understand all details.\n"
            "Always confirm product details, quantities, and pricing before proceeding.\n"
            "Maintain security by not exposing sensitive payment information."
        ),
        instructions=(
            "Review cart contents and user intent",
            "Confirm product details and pricing",
            "Guide through checkout process",
            "Ensure user consent for transactions",
        ),
        constraints=(
            "Confirm all transaction details",
            "Protect sensitive payment information",
            "Require explicit user consent",
            "Provide clear error messages if issues occur",
        ),
        preferred_model_size=ModelSize.MEDIUM,
    ),
    PromptTemplate(
        template_type=TemplateType.FAQ_RESPONSE.value,
        system=(
            "Answer the user's question based on the FAQ documents provided.\n"
            "Keep responses concise and direct. Cite the relevant FAQ source."
        ),
        instructions=(
            "Find relevant FAQ information",
            "Provide concise, direct answer",
            "Cite FAQ source",
        ),
        constraints=(
            "Keep response under 150 words",
            "Use simple, clear language",
            "Include source citation",
        ),
        preferred_model_size=ModelSize.SMALL,
    ),
)

STRICT_GROUNDING_CONSTRAINTS = (
    "Only state facts that appear word for word in the documents above",
    "Follow every factual sentence with its [Source: Document ID]",
    "Do not speculate or use words like probably, typically or usually",
    "Omit anything the documents do not cover",
)


# ---------------------------------------------------------------------------
# Section formatting
# ---------------------------------------------------------------------------


def _format_score(score: object) -> str:
    if isinstance(score, Real) and not isinstance(score, bool):
        return f"{score:.3f}"
    return "N/A"


def format_documents(documents: list[Document]) -> list[str]:
    """Document section; a missing score or metadata renders as N/A."""
    lines = ["", "RELEVANT DOCUMENTS:"]
    for index, doc in enumerate(documents, start=1):
        lines.append(f"Document {index} (ID: {doc.id}):")
        lines.append(f"Title: {getattr(doc.metadata, 'sku', None) or 'N/A'}")
        lines.append(f"Content: {doc.snippet}")
        lines.append(f"Relevance Score: {_format_score(doc.score)}")
        lines.append("---")
    return lines


def top_features(feature_importance: Mapping[str, float], limit: int = 3) -> list[tuple[str, float]]:
    """Features ranked by absolute importance, ties kept in insertion order."""
    ranked = sorted(feature_importance.items(), key=lambda kv: abs(kv[1]), reverse=True)
    return ranked[:limit]


def format_predictions(predictions: list[Prediction]) -> list[str]:
    lines = ["", "PREDICTION DATA:"]
    for index, pred in enumerate(predictions, start=1):
        lines.append(f"Prediction {index}:")
        lines.append(f"SKU: {pred.sku}")
        lines.append(f"Demand Score: {pred.demand_score:.3f}")
        lines.append(f"Purchase Probability: {pred.purchase_probability:.3f}")
        lines.append(f"Explanation: {pred.explanation}")
        lines.append(f"Confidence: {pred.confidence:.3f}")
        features = top_features(pred.feature_importance)
        if features:
            lines.append("Top Features:")
            lines.extend(f"  - {name}: {value:.3f}" for name, value in features)
        lines.append("---")
    return lines


def format_session_context(context: Mapping[str, Any]) -> list[str]:
    """
    Render a (tokenized) session context.

    Returns an empty list when there is nothing worth showing.
    """
    lines: list[str] = []

    cart = context.get("current_cart") or []
    if cart:
        lines.append("Current Cart:")
        for item in cart:
            label = item.get("name") or item.get("sku")
            lines.append(f"  - {label}: Qty {item.get('quantity')} x ${item.get('price')}")

    preferences = context.get("preferences") or {}
    if preferences:
        lines.append("User Preferences:")
        lines.extend(f"  - {key}: {value}" for key, value in preferences.items())

    history = context.get("purchase_history") or []
    if history:
        lines.append(f"Purchase History: {', '.join(str(sku) for sku in history)}")

    if not lines:
        return []
    return ["", "USER CONTEXT:", *lines]


def build_prompt(
    template: PromptTemplate,
    sanitized_query: str,
    documents: list[Document],
    predictions: list[Prediction],
    session_context: Mapping[str, Any] | None = None,
    extra_constraints: tuple[str, ...] = (),
) -> str:
    """
    Assemble the full prompt text.

    Args:
        template: Template supplying system text, instructions and constraints.
        sanitized_query: User query with PII already replaced.
        documents: Retrieved documents, in rank order.
        predictions: Product-signal predictions.
        session_context: Tokenized session context, if any.
        extra_constraints: Appended after the template's own constraints.

    Returns:
        Prompt string ending with a RESPONSE: cue.
    """
    sections = [f"SYSTEM: {template.system}"]

    if documents:
        sections.extend(format_documents(documents))
    if predictions:
        sections.extend(format_predictions(predictions))
    if session_context:
        sections.extend(format_session_context(session_context))

    sections.append("\nINSTRUCTIONS:")
    sections.extend(f"{i}. {text}" for i, text in enumerate(template.instructions, start=1))

    sections.append("\nCONSTRAINTS:")
    constraints = (*template.constraints, *extra_constraints)
    sections.extend(f"{i}. {text}" for i, text in enumerate(constraints, start=1))

    sections.append(f"\nUSER QUERY: {sanitized_query}")
    sections.append("\nRESPONSE:")
    return "\n".join(sections)


__all__ = [
    "DEFAULT_TEMPLATES",
    "STRICT_GROUNDING_CONSTRAINTS",
    "build_prompt",
    "format_documents",
    "format_predictions",
    "format_session_context",
    "top_features",
]
