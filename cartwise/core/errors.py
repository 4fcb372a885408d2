"""
Error taxonomy for the generation pipeline.

Only ``UnknownTemplateError`` and ``RedactionError`` reach callers of the
orchestrator. Provider and validator failures are absorbed by the retry
loop and end in the deterministic fallback answer.
"""


class CartwiseError(Exception):
    """Base class for all cartwise errors."""


class UnknownTemplateError(CartwiseError, KeyError):
    """Requested template type is not registered."""

    def __init__(self, template_type: str, available: list[str] | None = None):
        self.template_type = template_type
        self.available = sorted(available or [])
        super().__init__(template_type)

    def __str__(self) -> str:
        known = ", ".join(self.available) or "none"
        return f"Template type '{self.template_type}' not found (registered: {known})"


class RedactionError(CartwiseError, ValueError):
    """Malformed input handed to the PII redactor."""


class ProviderInvocationError(CartwiseError, RuntimeError):
    """Any failure from the language-model provider."""


class ProviderTimeoutError(ProviderInvocationError, TimeoutError):
    """Provider call exceeded its timeout."""


class ProviderRateLimitError(ProviderInvocationError):
    """Provider rejected the call with a rate limit."""


class ProviderConnectionError(ProviderInvocationError, ConnectionError):
    """Provider could not be reached."""


class ValidatorError(CartwiseError, ValueError):
    """Grounding/quality scoring failed, e.g. on a malformed document set."""


__all__ = [
    "CartwiseError",
    "UnknownTemplateError",
    "RedactionError",
    "ProviderInvocationError",
    "ProviderTimeoutError",
    "ProviderRateLimitError",
    "ProviderConnectionError",
    "ValidatorError",
]
