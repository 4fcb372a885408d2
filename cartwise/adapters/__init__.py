"""
Cartwise adapters layer.

External service wrappers that implement the interfaces expected by the
service layer. Currently the language-model invokers.
"""

from cartwise.adapters.llm import (
    AnthropicInvoker,
    ModelInvoker,
    ModelInvokerBase,
    OpenAIInvoker,
    get_model_invoker,
)

__all__ = [
    "ModelInvoker",
    "ModelInvokerBase",
    "AnthropicInvoker",
    "OpenAIInvoker",
    "get_model_invoker",
]
