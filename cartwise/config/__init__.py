"""
Cartwise configuration module.

Central configuration for the answer-generation core.
Loads settings from environment variables with sensible defaults.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


# ---------------------------------------------------------------------------
# Tokenization
# ---------------------------------------------------------------------------

# Characters per token estimate for prompt length calculations.
CHARS_PER_TOKEN = 4


# ---------------------------------------------------------------------------
# External API Keys
# ---------------------------------------------------------------------------

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")


# ---------------------------------------------------------------------------
# LLM Settings
# ---------------------------------------------------------------------------

PROVIDER_ANTHROPIC = "anthropic"
PROVIDER_OPENAI = "openai"

LLM_PROVIDER = os.getenv("LLM_PROVIDER", PROVIDER_ANTHROPIC)

# Model catalog per size tier
ANTHROPIC_MODELS = {
    "small": "claude-3-5-haiku-20241022",
    "medium": "claude-sonnet-4-20250514",
    "large": "claude-opus-4-20250514",
}
OPENAI_MODELS = {
    "small": "gpt-4o-mini",
    "medium": "gpt-4o",
    "large": "gpt-4.1",
}

# USD per token, (input, output)
ANTHROPIC_TOKEN_PRICES = {
    "small": (0.0000008, 0.000004),
    "medium": (0.000003, 0.000015),
    "large": (0.000015, 0.000075),
}
OPENAI_TOKEN_PRICES = {
    "small": (0.00000015, 0.0000006),
    "medium": (0.0000025, 0.00001),
    "large": (0.000002, 0.000008),
}

# Generation settings
LLM_TEMPERATURE = 0.1  # Low for grounded answers
LLM_MAX_TOKENS = _env_int("LLM_MAX_TOKENS", 1000)
LLM_TIMEOUT = _env_float("LLM_TIMEOUT", 30.0)  # Seconds per provider call
LLM_MAX_RETRIES = 2  # SDK-level retries for transient failures


# ---------------------------------------------------------------------------
# Prompt Cost Settings
# ---------------------------------------------------------------------------

PROMPT_MAX_TOKENS = _env_int("PROMPT_MAX_TOKENS", 4000)
TARGET_COST_PER_PROMPT = _env_float("TARGET_COST_PER_PROMPT", 0.01)

# Estimator cost per prompt token by model size
TOKEN_COST_PER_MODEL = {
    "small": 0.0001,
    "medium": 0.0003,
    "large": 0.001,
}


# ---------------------------------------------------------------------------
# Grounding & Quality Thresholds
# ---------------------------------------------------------------------------

MIN_GROUNDING_SCORE = _env_float("MIN_GROUNDING_SCORE", 0.85)
MIN_CLAIM_RELEVANCE = _env_float("MIN_CLAIM_RELEVANCE", 0.7)
MIN_EVIDENCE_SUPPORT = _env_float("MIN_EVIDENCE_SUPPORT", 0.6)  # Weakest match still listed as evidence
MAX_CLAIMS_PER_RESPONSE = 10
FALLBACK_THRESHOLD = _env_float("FALLBACK_THRESHOLD", 0.6)
HALLUCINATION_BAND = 0.5  # overall quality below this, when ungrounded = hallucination

MAX_FALLBACK_DOCUMENTS = 2
MAX_FALLBACK_SENTENCES = 2


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

MAX_GENERATION_RETRIES = _env_int("MAX_GENERATION_RETRIES", 2)
MIN_QUALITY_SCORE = _env_float("MIN_QUALITY_SCORE", 0.7)

FALLBACK_TEMPLATE = "fallback"
FALLBACK_MODEL = "none"

CITATION_FORMAT = "[Source: {doc_id}]"


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

from cartwise.config.logging import (  # noqa: E402
    LOG_FORMAT,
    LOG_LEVEL,
    configure_logging,
    get_logger,
    request_logger,
)


# ---------------------------------------------------------------------------
# All exports
# ---------------------------------------------------------------------------

__all__ = [
    # Tokenization
    "CHARS_PER_TOKEN",
    # API keys
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    # LLM
    "PROVIDER_ANTHROPIC",
    "PROVIDER_OPENAI",
    "LLM_PROVIDER",
    "ANTHROPIC_MODELS",
    "OPENAI_MODELS",
    "ANTHROPIC_TOKEN_PRICES",
    "OPENAI_TOKEN_PRICES",
    "LLM_TEMPERATURE",
    "LLM_MAX_TOKENS",
    "LLM_TIMEOUT",
    "LLM_MAX_RETRIES",
    # Prompt cost
    "PROMPT_MAX_TOKENS",
    "TARGET_COST_PER_PROMPT",
    "TOKEN_COST_PER_MODEL",
    # Grounding
    "MIN_GROUNDING_SCORE",
    "MIN_CLAIM_RELEVANCE",
    "MIN_EVIDENCE_SUPPORT",
    "MAX_CLAIMS_PER_RESPONSE",
    "FALLBACK_THRESHOLD",
    "HALLUCINATION_BAND",
    "MAX_FALLBACK_DOCUMENTS",
    "MAX_FALLBACK_SENTENCES",
    # Orchestrator
    "MAX_GENERATION_RETRIES",
    "MIN_QUALITY_SCORE",
    "FALLBACK_TEMPLATE",
    "FALLBACK_MODEL",
    "CITATION_FORMAT",
    # Logging
    "get_logger",
    "configure_logging",
    "request_logger",
    "LOG_LEVEL",
    "LOG_FORMAT",
]
