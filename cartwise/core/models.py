"""
Core domain models for the Cartwise answer-generation core.

All dataclasses are consolidated here so every layer shares one set of
type definitions. Models are organized by pipeline stage.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Iterator

from cartwise.config import (
    FALLBACK_THRESHOLD,
    HALLUCINATION_BAND,
    MAX_CLAIMS_PER_RESPONSE,
    MAX_GENERATION_RETRIES,
    MIN_CLAIM_RELEVANCE,
    MIN_EVIDENCE_SUPPORT,
    MIN_GROUNDING_SCORE,
    MIN_QUALITY_SCORE,
    PROMPT_MAX_TOKENS,
    TARGET_COST_PER_PROMPT,
    TOKEN_COST_PER_MODEL,
)


# ============================================================================
# ENUMS
# ============================================================================


class ModelSize(str, Enum):
    """Cost/capability tier of the language model."""

    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"

    @property
    def rank(self) -> int:
        return _SIZE_ORDER.index(self)

    def smaller(self) -> ModelSize:
        """One tier down, floored at SMALL."""
        return _SIZE_ORDER[max(self.rank - 1, 0)]

    def larger(self) -> ModelSize:
        return _SIZE_ORDER[min(self.rank + 1, len(_SIZE_ORDER) - 1)]


_SIZE_ORDER = (ModelSize.SMALL, ModelSize.MEDIUM, ModelSize.LARGE)


class TemplateType(str, Enum):
    """Built-in template types. The registry also accepts custom string keys."""

    PRODUCT_RECOMMENDATION = "product_recommendation"
    GENERAL_QUERY = "general_query"
    CHECKOUT_ASSISTANCE = "checkout_assistance"
    FAQ_RESPONSE = "faq_response"


class ClaimType(str, Enum):
    PRODUCT_FEATURE = "product_feature"
    PRICE = "price"
    AVAILABILITY = "availability"
    SPECIFICATION = "specification"
    GENERAL_FACT = "general_fact"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ============================================================================
# EXTERNAL INPUTS (retrieval, prediction, session store)
# ============================================================================


@dataclass
class DocumentMetadata:
    sku: str | None = None
    merchant_id: str | None = None
    document_type: str | None = None
    title: str | None = None
    source_uri: str | None = None


@dataclass
class Document:
    """A retrieved reference document, read-only to this core."""

    id: str
    snippet: str
    score: float
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)


@dataclass
class Prediction:
    """Product-signal scores from the prediction subsystem."""

    sku: str
    demand_score: float
    purchase_probability: float
    explanation: str = ""
    feature_importance: dict[str, float] = field(default_factory=dict)
    confidence: float = 0.0
    provenance: dict[str, Any] = field(default_factory=dict)


@dataclass
class CartItem:
    sku: str
    quantity: int
    price: float
    name: str | None = None


@dataclass
class SessionContext:
    preferences: dict[str, Any] = field(default_factory=dict)
    purchase_history: list[str] = field(default_factory=list)
    current_cart: list[CartItem] = field(default_factory=list)
    demographics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SessionState:
    session_id: str
    user_id: str
    merchant_id: str
    conversation_history: list[dict[str, Any]] = field(default_factory=list)
    context: SessionContext | None = None


@dataclass
class PromptContext:
    documents: list[Document] = field(default_factory=list)
    predictions: list[Prediction] = field(default_factory=list)
    session_state: SessionState | None = None


@dataclass
class GenerationRequest:
    """One inbound answer-generation request."""

    query: str
    session_id: str
    merchant_id: str
    template_type: str = TemplateType.GENERAL_QUERY.value
    documents: list[Document] = field(default_factory=list)
    predictions: list[Prediction] = field(default_factory=list)
    session_state: SessionState | None = None
    user_id: str | None = None
    timeout: float | None = None  # seconds per provider call

    def prompt_context(self) -> PromptContext:
        return PromptContext(
            documents=self.documents,
            predictions=self.predictions,
            session_state=self.session_state,
        )


# ============================================================================
# PII REDACTION
# ============================================================================


@dataclass
class RedactionResult:
    """Sanitized text plus the placeholder -> original value map."""

    sanitized_text: str
    tokens: dict[str, str] = field(default_factory=dict)

    @property
    def has_pii(self) -> bool:
        return bool(self.tokens)


@dataclass
class TokenizedContext:
    tokenized_data: dict[str, Any]
    token_map: dict[str, str] = field(default_factory=dict)


# ============================================================================
# PROMPT RENDERING
# ============================================================================


@dataclass(frozen=True)
class PromptTemplate:
    """
    An immutable prompt template.

    ``condensed`` is an optional shorter variant swapped in when the full
    template would exceed the cost budget, and on tightened retries.
    """

    template_type: str
    system: str
    instructions: tuple[str, ...]
    constraints: tuple[str, ...]
    preferred_model_size: ModelSize = ModelSize.MEDIUM
    condensed: PromptTemplate | None = None


@dataclass(frozen=True)
class PromptCostConfig:
    """Budget settings for model-size selection."""

    max_tokens: int = PROMPT_MAX_TOKENS
    target_cost_per_prompt: float = TARGET_COST_PER_PROMPT
    preferred_model_size: ModelSize | None = None  # None = template's preference
    enable_fallback: bool = True
    token_cost_per_model: dict[ModelSize, float] = field(
        default_factory=lambda: {ModelSize(k): v for k, v in TOKEN_COST_PER_MODEL.items()}
    )

    def __post_init__(self) -> None:
        if self.preferred_model_size is not None:
            object.__setattr__(self, "preferred_model_size", ModelSize(self.preferred_model_size))
        object.__setattr__(
            self,
            "token_cost_per_model",
            {ModelSize(k): float(v) for k, v in self.token_cost_per_model.items()},
        )
        costs = [self.token_cost_per_model[size] for size in _SIZE_ORDER]
        if any(c < 0 for c in costs):
            raise ValueError("Per-token costs must be non-negative")
        if costs != sorted(costs):
            raise ValueError(
                "Per-token costs must be non-decreasing from small to large: "
                f"{dict(zip([s.value for s in _SIZE_ORDER], costs))}"
            )

    def cost_for(self, token_count: int, size: ModelSize) -> float:
        return token_count * self.token_cost_per_model[size]


@dataclass
class RenderedPrompt:
    rendered_prompt: str
    token_count: int
    cost_estimate: float
    model_size: ModelSize
    pii_tokens: dict[str, str]
    template_used: str
    fallback_used: bool
    tightened: bool = False


@dataclass
class PromptCostEstimate:
    token_count: int
    cost_estimate: float
    model_size: ModelSize
    fallback_used: bool


# ============================================================================
# MODEL INVOCATION
# ============================================================================


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
        )


@dataclass
class InvocationCost:
    input_cost: float = 0.0
    output_cost: float = 0.0

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost


@dataclass
class ModelInvocationResult:
    response_text: str
    model_id: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    cost: InvocationCost = field(default_factory=InvocationCost)
    finish_reason: str = "stop"


@dataclass
class ModelStream:
    """
    Chunk iterator from a streaming invocation.

    The adapter fills ``result`` once the provider reports final usage,
    which happens only after ``chunks`` is exhausted.
    """

    chunks: Iterator[str]
    model_id: str
    result: ModelInvocationResult | None = None


# ============================================================================
# GROUNDING & QUALITY
# ============================================================================


@dataclass(frozen=True)
class GroundingConfig:
    """
    Thresholds for grounding validation.

    ``dimension_weights`` switches ``overall`` from a plain mean of the five
    quality dimensions to a weighted mean.
    """

    min_grounding_score: float = MIN_GROUNDING_SCORE
    min_claim_relevance: float = MIN_CLAIM_RELEVANCE
    min_evidence_support: float = MIN_EVIDENCE_SUPPORT
    max_claims_per_response: int = MAX_CLAIMS_PER_RESPONSE
    enable_hallucination_detection: bool = True
    fallback_threshold: float = FALLBACK_THRESHOLD
    hallucination_band: float = HALLUCINATION_BAND
    dimension_weights: dict[str, float] | None = None

    def __post_init__(self) -> None:
        if self.fallback_threshold > self.min_grounding_score:
            raise ValueError("fallback_threshold must not exceed min_grounding_score")
        if self.min_evidence_support > self.min_claim_relevance:
            raise ValueError("min_evidence_support must not exceed min_claim_relevance")
        if self.dimension_weights is not None:
            unknown = set(self.dimension_weights) - set(QUALITY_DIMENSIONS)
            if unknown:
                raise ValueError(f"Unknown quality dimension(s): {sorted(unknown)}")
            if sum(self.dimension_weights.values()) <= 0:
                raise ValueError("dimension_weights must sum to a positive value")


QUALITY_DIMENSIONS = (
    "factual_accuracy",
    "relevance",
    "completeness",
    "clarity",
    "groundedness",
)


@dataclass
class ClaimEvidence:
    """One document backing a claim; ``exact_match`` is a verbatim hit, otherwise word overlap."""

    document_id: str
    snippet: str
    relevance_score: float
    exact_match: bool = False
    overlap_match: bool = False


@dataclass
class Claim:
    text: str
    claim_type: ClaimType = ClaimType.GENERAL_FACT
    is_validated: bool = False
    validation_score: float = 0.0
    document_id: str | None = None
    supporting_evidence: list[ClaimEvidence] = field(default_factory=list)


@dataclass
class ValidationDetail:
    claim: str
    status: str  # validated, unvalidated
    evidence: list[ClaimEvidence]
    reasoning: str


@dataclass
class Citation:
    document_id: str
    document_title: str
    snippet: str
    relevance_score: float
    citation_text: str
    grounding_pass: bool = True
    source_uri: str | None = None


@dataclass
class GroundingValidation:
    is_grounded: bool
    grounding_score: float
    source_citations: list[Citation]
    factual_claims: list[Claim]
    validated_claims: int
    total_claims: int
    grounding_accuracy: float
    confidence: float
    validation_details: list[ValidationDetail] = field(default_factory=list)


@dataclass
class QualityDimensions:
    factual_accuracy: float
    relevance: float
    completeness: float
    clarity: float
    groundedness: float

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class HallucinationReport:
    detected: bool
    confidence: float
    indicators: list[str] = field(default_factory=list)


@dataclass
class QualityScore:
    overall: float
    dimensions: QualityDimensions
    hallucination: HallucinationReport
    recommendations: list[str] = field(default_factory=list)


@dataclass
class GroundingQualityAssessment:
    response: str
    grounding_validation: GroundingValidation
    quality_score: QualityScore
    citations: list[Citation]
    fallback_recommended: bool
    improvement_suggestions: list[str] = field(default_factory=list)


# ============================================================================
# ORCHESTRATION
# ============================================================================


@dataclass(frozen=True)
class GenerationConfig:
    max_retries: int = MAX_GENERATION_RETRIES
    min_quality_score: float = MIN_QUALITY_SCORE
    provider_timeout: float | None = None  # falls back to LLM_TIMEOUT

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")


@dataclass
class GenerationCost:
    prompt_cost: float = 0.0
    llm_cost: float = 0.0

    @property
    def total_cost(self) -> float:
        return self.prompt_cost + self.llm_cost


@dataclass
class GenerationTiming:
    """Per-stage durations in milliseconds."""

    prompt_generation: float = 0.0
    llm_invocation: float = 0.0
    grounding_validation: float = 0.0
    total_time: float = 0.0


@dataclass
class GenerationMetadata:
    template_used: str
    model_used: str
    token_usage: TokenUsage
    cost: GenerationCost
    timing: GenerationTiming
    retry_count: int
    fallback_used: bool = False


@dataclass
class GenerationResult:
    response: str
    quality_assessment: GroundingQualityAssessment
    metadata: GenerationMetadata
    citations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class GenerationCostEstimate:
    prompt_cost: float
    estimated_llm_cost: float
    token_count: int
    model_size: ModelSize

    @property
    def total_estimated_cost(self) -> float:
        return self.prompt_cost + self.estimated_llm_cost


@dataclass
class HealthReport:
    status: HealthStatus
    components: dict[str, HealthStatus] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)


__all__ = [
    "ModelSize",
    "TemplateType",
    "ClaimType",
    "HealthStatus",
    "DocumentMetadata",
    "Document",
    "Prediction",
    "CartItem",
    "SessionContext",
    "SessionState",
    "PromptContext",
    "GenerationRequest",
    "RedactionResult",
    "TokenizedContext",
    "PromptTemplate",
    "PromptCostConfig",
    "RenderedPrompt",
    "PromptCostEstimate",
    "TokenUsage",
    "InvocationCost",
    "ModelInvocationResult",
    "ModelStream",
    "GroundingConfig",
    "QUALITY_DIMENSIONS",
    "ClaimEvidence",
    "Claim",
    "ValidationDetail",
    "Citation",
    "GroundingValidation",
    "QualityDimensions",
    "HallucinationReport",
    "QualityScore",
    "GroundingQualityAssessment",
    "GenerationConfig",
    "GenerationCost",
    "GenerationTiming",
    "GenerationMetadata",
    "GenerationResult",
    "GenerationCostEstimate",
    "HealthReport",
]
