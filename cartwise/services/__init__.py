"""
Cartwise services layer.

Orchestration logic that coordinates between core domain logic and
adapters: grounding validation, response generation and streaming.
"""

from cartwise.services.grounding import GroundingValidator
from cartwise.services.streaming import StreamingGeneration
from cartwise.services.generation import (
    AttemptOutcome,
    ResponseGenerator,
    passes_quality_gate,
)

__all__ = [
    "GroundingValidator",
    "StreamingGeneration",
    "ResponseGenerator",
    "AttemptOutcome",
    "passes_quality_gate",
]
