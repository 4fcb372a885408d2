"""
Language-model invoker adapters.

Provides a unified invocation interface over LLM providers (Anthropic
Claude, OpenAI GPT), with a model per size tier and per-call token
usage and cost.

Includes exponential backoff with jitter for rate limit handling:
- Initial delay: 1 second
- Max delay: 60 seconds
- Jitter: 0-25% random variation
- Max retries: 3 additional attempts for rate limits
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from functools import wraps
from typing import Any, Callable, Iterator, NoReturn, Protocol, TypeVar

from cartwise.config import (
    ANTHROPIC_API_KEY,
    ANTHROPIC_MODELS,
    ANTHROPIC_TOKEN_PRICES,
    LLM_MAX_RETRIES,
    LLM_MAX_TOKENS,
    LLM_PROVIDER,
    LLM_TEMPERATURE,
    LLM_TIMEOUT,
    OPENAI_API_KEY,
    OPENAI_MODELS,
    OPENAI_TOKEN_PRICES,
    PROVIDER_ANTHROPIC,
    PROVIDER_OPENAI,
    get_logger,
)
from cartwise.core.errors import (
    ProviderConnectionError,
    ProviderInvocationError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)
from cartwise.core.models import (
    InvocationCost,
    ModelInvocationResult,
    ModelSize,
    ModelStream,
    TokenUsage,
)
from cartwise.utils import require_import

logger = get_logger(__name__)

T = TypeVar("T")

# Exponential backoff settings for rate limits
RATE_LIMIT_INITIAL_DELAY = 1.0  # seconds
RATE_LIMIT_MAX_DELAY = 60.0  # seconds
RATE_LIMIT_MAX_RETRIES = 3  # additional retries for rate limits
RATE_LIMIT_JITTER = 0.25  # 25% random jitter

HEALTH_CHECK_PROMPT = "Reply with the single word: ok"


def _calculate_backoff_delay(attempt: int, jitter: float = RATE_LIMIT_JITTER) -> float:
    """Calculate exponential backoff delay with jitter.

    Args:
        attempt: Current retry attempt (0-indexed).
        jitter: Maximum jitter factor (0.25 = up to 25% variation).

    Returns:
        Delay in seconds.
    """
    delay = min(RATE_LIMIT_INITIAL_DELAY * (2**attempt), RATE_LIMIT_MAX_DELAY)
    return delay + delay * jitter * random.random()


def with_rate_limit_retry(func: Callable[..., T]) -> Callable[..., T]:
    """Retry a provider call on ProviderRateLimitError with exponential backoff."""

    @wraps(func)
    def wrapper(self, *args, **kwargs) -> T:
        for attempt in range(RATE_LIMIT_MAX_RETRIES + 1):
            try:
                return func(self, *args, **kwargs)
            except ProviderRateLimitError as e:
                if attempt >= RATE_LIMIT_MAX_RETRIES:
                    logger.error(
                        "Rate limit persists after %d attempts: %s",
                        RATE_LIMIT_MAX_RETRIES + 1,
                        e,
                    )
                    raise
                delay = _calculate_backoff_delay(attempt)
                logger.warning(
                    "Rate limited (attempt %d/%d), backing off %.1fs: %s",
                    attempt + 1,
                    RATE_LIMIT_MAX_RETRIES + 1,
                    delay,
                    e,
                )
                time.sleep(delay)
        raise AssertionError("unreachable")

    return wrapper


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ModelInvoker(Protocol):
    """
    Protocol for language-model invokers.

    Implementations report token usage and cost per call and honour a
    per-call timeout. Failures surface as ProviderInvocationError.
    """

    def invoke(
        self,
        prompt: str,
        *,
        session_id: str,
        merchant_id: str,
        user_id: str | None = None,
        model_size: ModelSize = ModelSize.MEDIUM,
        timeout: float | None = None,
    ) -> ModelInvocationResult:
        ...

    def invoke_stream(
        self,
        prompt: str,
        *,
        session_id: str,
        merchant_id: str,
        user_id: str | None = None,
        model_size: ModelSize = ModelSize.MEDIUM,
        timeout: float | None = None,
    ) -> ModelStream:
        ...

    def health_check(self) -> bool:
        ...

    def describe(self) -> dict[str, Any]:
        ...


# ---------------------------------------------------------------------------
# Base class with shared logic
# ---------------------------------------------------------------------------


class ModelInvokerBase(ABC):
    """Base class with shared model catalog, pricing and error handling."""

    client: Any
    models: dict[str, str]
    prices: dict[str, tuple[float, float]]
    temperature: float
    max_tokens: int
    _sdk: Any
    _name: str
    _api_errors: tuple[type[Exception], ...]

    def _init_common(
        self,
        models: dict[str, str],
        prices: dict[str, tuple[float, float]],
        temperature: float,
        max_tokens: int,
        sdk: Any,
        name: str,
    ) -> None:
        self.models = dict(models)
        self.prices = dict(prices)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._sdk = sdk
        self._name = name
        self._api_errors = (sdk.APIError,)

    def describe(self) -> dict[str, Any]:
        """Provider name and size -> model id, for health reports."""
        return {"provider": self._name, "models": dict(self.models)}

    def model_for(self, size: ModelSize) -> str:
        return self.models[ModelSize(size).value]

    def cost_for(self, size: ModelSize, usage: TokenUsage) -> InvocationCost:
        input_price, output_price = self.prices[ModelSize(size).value]
        return InvocationCost(
            input_cost=usage.input_tokens * input_price,
            output_cost=usage.output_tokens * output_price,
        )

    def _client_for(self, timeout: float | None) -> Any:
        if timeout is None:
            return self.client
        return self.client.with_options(timeout=timeout)

    def _translate_error(self, exc: Exception) -> NoReturn:
        """Translate SDK-specific API errors to ProviderInvocationError subclasses."""
        if isinstance(exc, self._sdk.APITimeoutError):
            raise ProviderTimeoutError(f"{self._name} API request timed out: {exc}") from exc
        if isinstance(exc, self._sdk.RateLimitError):
            raise ProviderRateLimitError(f"{self._name} API rate limited: {exc}") from exc
        if isinstance(exc, self._sdk.APIConnectionError):
            raise ProviderConnectionError(f"Failed to connect to {self._name} API: {exc}") from exc
        raise ProviderInvocationError(f"{self._name} API error: {exc}") from exc

    def _log_call(self, kind: str, model: str, session_id: str, merchant_id: str, usage: TokenUsage) -> None:
        logger.info(
            "llm_%s",
            kind,
            extra={
                "provider": self._name,
                "model": model,
                "session_id": session_id,
                "merchant_id": merchant_id,
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
            },
        )

    @abstractmethod
    def invoke(
        self,
        prompt: str,
        *,
        session_id: str,
        merchant_id: str,
        user_id: str | None = None,
        model_size: ModelSize = ModelSize.MEDIUM,
        timeout: float | None = None,
    ) -> ModelInvocationResult:
        ...

    @abstractmethod
    def invoke_stream(
        self,
        prompt: str,
        *,
        session_id: str,
        merchant_id: str,
        user_id: str | None = None,
        model_size: ModelSize = ModelSize.MEDIUM,
        timeout: float | None = None,
    ) -> ModelStream:
        ...

    def health_check(self) -> bool:
        """Liveness check: a tiny invocation on the small model."""
        try:
            self.invoke(
                HEALTH_CHECK_PROMPT,
                session_id="health-check",
                merchant_id="health-check",
                model_size=ModelSize.SMALL,
                timeout=10.0,
            )
        except ProviderInvocationError as e:
            logger.warning("%s health check failed: %s", self._name, e)
            return False
        return True


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class AnthropicInvoker(ModelInvokerBase):
    """Anthropic Claude invoker with one model per size tier."""

    def __init__(
        self,
        api_key: str | None = None,
        models: dict[str, str] | None = None,
        prices: dict[str, tuple[float, float]] | None = None,
        temperature: float = LLM_TEMPERATURE,
        max_tokens: int = LLM_MAX_TOKENS,
        timeout: float = LLM_TIMEOUT,
        max_retries: int = LLM_MAX_RETRIES,
    ):
        """
        Initialize Anthropic invoker.

        Args:
            api_key: Anthropic API key. Defaults to ANTHROPIC_API_KEY from config.
            models: Size -> model id. Defaults to ANTHROPIC_MODELS.
            prices: Size -> (input, output) USD per token. Defaults to ANTHROPIC_TOKEN_PRICES.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate.
            timeout: Default request timeout in seconds.
            max_retries: SDK-level retry attempts.

        Raises:
            ImportError: If anthropic package is not installed.
        """
        anthropic = require_import("anthropic")

        self.client = anthropic.Anthropic(
            api_key=api_key or ANTHROPIC_API_KEY,
            timeout=timeout,
            max_retries=max_retries,
        )
        self._init_common(
            models=models or ANTHROPIC_MODELS,
            prices=prices or ANTHROPIC_TOKEN_PRICES,
            temperature=temperature,
            max_tokens=max_tokens,
            sdk=anthropic,
            name="Anthropic",
        )

    def _request(self, model: str, prompt: str, user_id: str | None) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if user_id:
            request["metadata"] = {"user_id": user_id}
        return request

    @with_rate_limit_retry
    def invoke(
        self,
        prompt: str,
        *,
        session_id: str,
        merchant_id: str,
        user_id: str | None = None,
        model_size: ModelSize = ModelSize.MEDIUM,
        timeout: float | None = None,
    ) -> ModelInvocationResult:
        """
        Invoke Claude once.

        Raises:
            ProviderTimeoutError: If the request times out.
            ProviderRateLimitError: If rate limited after backoff retries.
            ProviderConnectionError: If the API cannot be reached.
            ProviderInvocationError: For any other API error.
        """
        model = self.model_for(model_size)
        try:
            response = self._client_for(timeout).messages.create(
                **self._request(model, prompt, user_id)
            )
        except self._api_errors as exc:
            self._translate_error(exc)

        text = "".join(block.text for block in response.content if hasattr(block, "text"))
        usage = TokenUsage(response.usage.input_tokens, response.usage.output_tokens)
        self._log_call("invoke", model, session_id, merchant_id, usage)
        return ModelInvocationResult(
            response_text=text,
            model_id=model,
            token_usage=usage,
            cost=self.cost_for(model_size, usage),
            finish_reason=response.stop_reason or "stop",
        )

    def invoke_stream(
        self,
        prompt: str,
        *,
        session_id: str,
        merchant_id: str,
        user_id: str | None = None,
        model_size: ModelSize = ModelSize.MEDIUM,
        timeout: float | None = None,
    ) -> ModelStream:
        """
        Stream Claude output. ``result`` is set after the last chunk.

        Provider errors are raised from the chunk iterator as
        ProviderInvocationError subclasses.
        """
        model = self.model_for(model_size)
        client = self._client_for(timeout)
        stream = ModelStream(chunks=iter(()), model_id=model)

        def chunks() -> Iterator[str]:
            pieces = []
            try:
                with client.messages.stream(**self._request(model, prompt, user_id)) as s:
                    for text in s.text_stream:
                        pieces.append(text)
                        yield text
                    final = s.get_final_message()
            except self._api_errors as exc:
                self._translate_error(exc)

            usage = TokenUsage(final.usage.input_tokens, final.usage.output_tokens)
            self._log_call("stream", model, session_id, merchant_id, usage)
            stream.result = ModelInvocationResult(
                response_text="".join(pieces),
                model_id=model,
                token_usage=usage,
                cost=self.cost_for(model_size, usage),
                finish_reason=final.stop_reason or "stop",
            )

        stream.chunks = chunks()
        return stream


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


class OpenAIInvoker(ModelInvokerBase):
    """OpenAI GPT invoker with one model per size tier."""

    def __init__(
        self,
        api_key: str | None = None,
        models: dict[str, str] | None = None,
        prices: dict[str, tuple[float, float]] | None = None,
        temperature: float = LLM_TEMPERATURE,
        max_tokens: int = LLM_MAX_TOKENS,
        timeout: float = LLM_TIMEOUT,
        max_retries: int = LLM_MAX_RETRIES,
    ):
        """
        Initialize OpenAI invoker.

        Args:
            api_key: OpenAI API key. Defaults to OPENAI_API_KEY from config.
            models: Size -> model id. Defaults to OPENAI_MODELS.
            prices: Size -> (input, output) USD per token. Defaults to OPENAI_TOKEN_PRICES.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate.
            timeout: Default request timeout in seconds.
            max_retries: SDK-level retry attempts.

        Raises:
            ImportError: If openai package is not installed.
        """
        openai = require_import("openai")

        self.client = openai.OpenAI(
            api_key=api_key or OPENAI_API_KEY,
            timeout=timeout,
            max_retries=max_retries,
        )
        self._init_common(
            models=models or OPENAI_MODELS,
            prices=prices or OPENAI_TOKEN_PRICES,
            temperature=temperature,
            max_tokens=max_tokens,
            sdk=openai,
            name="OpenAI",
        )

    def _request(self, model: str, prompt: str, user_id: str | None) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if user_id:
            request["user"] = user_id
        return request

    @with_rate_limit_retry
    def invoke(
        self,
        prompt: str,
        *,
        session_id: str,
        merchant_id: str,
        user_id: str | None = None,
        model_size: ModelSize = ModelSize.MEDIUM,
        timeout: float | None = None,
    ) -> ModelInvocationResult:
        """
        Invoke GPT once.

        Raises:
            ProviderTimeoutError: If the request times out.
            ProviderRateLimitError: If rate limited after backoff retries.
            ProviderConnectionError: If the API cannot be reached.
            ProviderInvocationError: For any other API error.
        """
        model = self.model_for(model_size)
        try:
            response = self._client_for(timeout).chat.completions.create(
                **self._request(model, prompt, user_id)
            )
        except self._api_errors as exc:
            self._translate_error(exc)

        choice = response.choices[0]
        usage = (
            TokenUsage(response.usage.prompt_tokens, response.usage.completion_tokens)
            if response.usage
            else TokenUsage()
        )
        self._log_call("invoke", model, session_id, merchant_id, usage)
        return ModelInvocationResult(
            response_text=choice.message.content or "",
            model_id=model,
            token_usage=usage,
            cost=self.cost_for(model_size, usage),
            finish_reason=choice.finish_reason or "stop",
        )

    def invoke_stream(
        self,
        prompt: str,
        *,
        session_id: str,
        merchant_id: str,
        user_id: str | None = None,
        model_size: ModelSize = ModelSize.MEDIUM,
        timeout: float | None = None,
    ) -> ModelStream:
        """Stream GPT output. ``result`` is set after the last chunk."""
        model = self.model_for(model_size)
        client = self._client_for(timeout)
        stream = ModelStream(chunks=iter(()), model_id=model)

        def chunks() -> Iterator[str]:
            pieces = []
            usage = TokenUsage()
            finish_reason = "stop"
            try:
                response = client.chat.completions.create(
                    **self._request(model, prompt, user_id),
                    stream=True,
                    stream_options={"include_usage": True},
                )
                for chunk in response:
                    if chunk.usage:
                        usage = TokenUsage(chunk.usage.prompt_tokens, chunk.usage.completion_tokens)
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
                    if choice.delta.content:
                        pieces.append(choice.delta.content)
                        yield choice.delta.content
            except self._api_errors as exc:
                self._translate_error(exc)

            self._log_call("stream", model, session_id, merchant_id, usage)
            stream.result = ModelInvocationResult(
                response_text="".join(pieces),
                model_id=model,
                token_usage=usage,
                cost=self.cost_for(model_size, usage),
                finish_reason=finish_reason,
            )

        stream.chunks = chunks()
        return stream


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_model_invoker(provider: str | None = None) -> ModelInvoker:
    """
    Get the configured model invoker.

    Args:
        provider: PROVIDER_ANTHROPIC or PROVIDER_OPENAI. Defaults to LLM_PROVIDER.

    Returns:
        Configured invoker instance.

    Raises:
        ValueError: If provider is not recognized.
    """
    provider = provider.lower().strip() if provider else LLM_PROVIDER

    if provider == PROVIDER_ANTHROPIC:
        return AnthropicInvoker()
    elif provider == PROVIDER_OPENAI:
        return OpenAIInvoker()
    else:
        raise ValueError(
            f"Unknown LLM provider: {provider}. "
            f"Use '{PROVIDER_ANTHROPIC}' or '{PROVIDER_OPENAI}'."
        )


__all__ = [
    "ModelInvoker",
    "ModelInvokerBase",
    "AnthropicInvoker",
    "OpenAIInvoker",
    "get_model_invoker",
    "with_rate_limit_retry",
    "RATE_LIMIT_MAX_RETRIES",
]
