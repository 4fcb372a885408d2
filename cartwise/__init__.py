"""
Cartwise: grounded answer generation for conversational shopping assistants.

Turns a user query, retrieved documents, product-signal predictions and
session state into a budget-bounded, source-grounded answer, with PII
kept away from the language model.

Architecture:
    cartwise.core       - Pure domain logic (models, redaction, prompts, verification)
    cartwise.adapters   - Language-model provider wrappers
    cartwise.services   - Orchestration (grounding validation, generation, streaming)
    cartwise.config     - Configuration settings and logging
"""

__version__ = "0.1.0"

# Expose key public API for convenience imports
from cartwise.core import (
    # Models
    Document,
    DocumentMetadata,
    GenerationConfig,
    GenerationRequest,
    GenerationResult,
    GroundingConfig,
    ModelSize,
    Prediction,
    PromptCostConfig,
    PromptTemplate,
    SessionContext,
    SessionState,
    TemplateType,
    # Components
    PIIRedactor,
    PromptRenderer,
    TemplateRegistry,
    # Errors
    RedactionError,
    UnknownTemplateError,
)

from cartwise.services import (
    GroundingValidator,
    ResponseGenerator,
    StreamingGeneration,
)

__all__ = [
    # Version
    "__version__",
    # Models
    "Document",
    "DocumentMetadata",
    "GenerationConfig",
    "GenerationRequest",
    "GenerationResult",
    "GroundingConfig",
    "ModelSize",
    "Prediction",
    "PromptCostConfig",
    "PromptTemplate",
    "SessionContext",
    "SessionState",
    "TemplateType",
    # Components
    "PIIRedactor",
    "PromptRenderer",
    "TemplateRegistry",
    "GroundingValidator",
    "ResponseGenerator",
    "StreamingGeneration",
    # Errors
    "RedactionError",
    "UnknownTemplateError",
]
