"""
Cartwise core domain layer.

Pure domain logic with no external service dependencies.
Contains models, errors, PII redaction, prompt rendering, claim
verification and the fallback synthesizer.
"""

# Models (all dataclasses)
from cartwise.core.models import (
    # Enums
    ClaimType,
    HealthStatus,
    ModelSize,
    TemplateType,
    # Inputs
    CartItem,
    Document,
    DocumentMetadata,
    GenerationRequest,
    Prediction,
    PromptContext,
    SessionContext,
    SessionState,
    # Redaction
    RedactionResult,
    TokenizedContext,
    # Rendering
    PromptCostConfig,
    PromptCostEstimate,
    PromptTemplate,
    RenderedPrompt,
    # Invocation
    InvocationCost,
    ModelInvocationResult,
    ModelStream,
    TokenUsage,
    # Grounding
    Citation,
    GroundingConfig,
    Claim,
    GroundingQualityAssessment,
    GroundingValidation,
    HallucinationReport,
    QualityDimensions,
    QualityScore,
    # Orchestration
    GenerationConfig,
    GenerationCost,
    GenerationCostEstimate,
    GenerationMetadata,
    GenerationResult,
    GenerationTiming,
    HealthReport,
)

# Errors
from cartwise.core.errors import (
    CartwiseError,
    ProviderConnectionError,
    ProviderInvocationError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    RedactionError,
    UnknownTemplateError,
    ValidatorError,
)

# Redaction
from cartwise.core.redaction import (
    PIIRedactor,
    StreamDetokenizer,
    merge_token_maps,
)

# Rendering
from cartwise.core.prompts import DEFAULT_TEMPLATES, build_prompt
from cartwise.core.rendering import (
    PromptRenderer,
    TemplateRegistry,
    estimate_tokens,
    select_model_size,
)

# Verification
from cartwise.core.verification import (
    extract_claims,
    find_speculative_phrases,
    split_sentences,
)

# Fallback
from cartwise.core.fallback import create_fallback_response

__all__ = [
    # Enums
    "ClaimType",
    "HealthStatus",
    "ModelSize",
    "TemplateType",
    # Inputs
    "CartItem",
    "Document",
    "DocumentMetadata",
    "GenerationRequest",
    "Prediction",
    "PromptContext",
    "SessionContext",
    "SessionState",
    # Redaction
    "RedactionResult",
    "TokenizedContext",
    "PIIRedactor",
    "StreamDetokenizer",
    "merge_token_maps",
    # Rendering
    "PromptCostConfig",
    "PromptCostEstimate",
    "PromptTemplate",
    "RenderedPrompt",
    "DEFAULT_TEMPLATES",
    "build_prompt",
    "PromptRenderer",
    "TemplateRegistry",
    "estimate_tokens",
    "select_model_size",
    # Invocation
    "InvocationCost",
    "ModelInvocationResult",
    "ModelStream",
    "TokenUsage",
    # Grounding
    "Citation",
    "GroundingConfig",
    "Claim",
    "GroundingQualityAssessment",
    "GroundingValidation",
    "HallucinationReport",
    "QualityDimensions",
    "QualityScore",
    "extract_claims",
    "find_speculative_phrases",
    "split_sentences",
    "create_fallback_response",
    # Orchestration
    "GenerationConfig",
    "GenerationCost",
    "GenerationCostEstimate",
    "GenerationMetadata",
    "GenerationResult",
    "GenerationTiming",
    "HealthReport",
    # Errors
    "CartwiseError",
    "UnknownTemplateError",
    "RedactionError",
    "ProviderInvocationError",
    "ProviderTimeoutError",
    "ProviderRateLimitError",
    "ProviderConnectionError",
    "ValidatorError",
]
