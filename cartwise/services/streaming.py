"""
Streaming generation with deferred validation.

Two tasks cooperate per stream. A producer thread reads provider chunks,
restores PII, appends them to the accumulation buffer and hands them to
the caller through a queue. Once the provider stream closes, the same
thread validates the full text and completes a one-shot future with the
GenerationResult. The caller iterates chunks and later reads the result.
"""

from __future__ import annotations

import queue
import threading
import time
from concurrent.futures import CancelledError, Future
from typing import Iterator

from cartwise.adapters.llm import ModelInvoker
from cartwise.config import get_logger, request_logger
from cartwise.core.errors import ValidatorError
from cartwise.core.fallback import usable_documents
from cartwise.core.models import (
    GenerationCost,
    GenerationMetadata,
    GenerationRequest,
    GenerationResult,
    GenerationTiming,
    ModelInvocationResult,
    RenderedPrompt,
    TokenUsage,
)
from cartwise.core.redaction import PIIRedactor, StreamDetokenizer
from cartwise.core.rendering import estimate_tokens
from cartwise.metrics import record_cost, record_outcome, record_provider_error, stage_observer
from cartwise.utils import StageTimer

logger = get_logger(__name__)

_END = object()

QUALITY_GATE_WARNING = "Streamed response did not pass the quality gate"


class StreamingGeneration:
    """
    Handle for one in-flight streaming generation.

    Iterate it for detokenized text chunks; call ``result()`` for the
    deferred GenerationResult and ``cancel()`` to stop forwarding and
    abandon validation.
    """

    def __init__(
        self,
        request: GenerationRequest,
        rendered: RenderedPrompt,
        invoker: ModelInvoker,
        validator,
        redactor: PIIRedactor,
        timeout: float,
        min_quality_score: float,
        timer: StageTimer | None = None,
    ):
        self.request = request
        self.rendered = rendered
        self.model_id = ""
        self._invoker = invoker
        self._validator = validator
        self._redactor = redactor
        self._timeout = timeout
        self._min_quality_score = min_quality_score
        self._timer = timer or StageTimer()
        self._log = request_logger(logger, request.session_id, request.merchant_id)

        self._chunks: queue.Queue = queue.Queue()
        self._cancelled = threading.Event()
        self._stalled = threading.Event()
        self._future: Future[GenerationResult] = Future()
        self._buffer: list[str] = []  # written only by the producer thread
        self._thread = threading.Thread(
            target=self._produce, name="cartwise-stream", daemon=True
        )

    # -- caller side ----------------------------------------------------------

    def start(self) -> None:
        self._thread.start()

    def __iter__(self) -> Iterator[str]:
        while not self._cancelled.is_set():
            try:
                item = self._chunks.get(timeout=self._timeout)
            except queue.Empty:
                self._stalled.set()
                self._log.warning("stream_stalled", extra={"timeout": self._timeout})
                return
            if item is _END or self._cancelled.is_set():
                return
            yield item

    def result(self, timeout: float | None = None) -> GenerationResult:
        """
        Block until the deferred result is ready.

        Raises:
            concurrent.futures.CancelledError: If the stream was cancelled.
            concurrent.futures.TimeoutError: If not ready within ``timeout``.
        """
        return self._future.result(timeout=timeout)

    def cancel(self) -> None:
        """Stop forwarding chunks and abandon the deferred validation."""
        self._cancelled.set()
        self._future.cancel()
        self._log.info("stream_cancelled")

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def done(self) -> bool:
        return self._future.done()

    # -- producer side --------------------------------------------------------

    def _forward(self, text: str) -> None:
        if not text:
            return
        self._buffer.append(text)
        if not self._cancelled.is_set() and not self._stalled.is_set():
            self._chunks.put(text)

    def _produce(self) -> None:
        warnings: list[str] = []
        stream_result: ModelInvocationResult | None = None
        detokenizer = StreamDetokenizer(self._redactor, self.rendered.pii_tokens)

        try:
            with self._timer.stage("llm_invocation", self._log, stage_observer("llm_invocation")):
                stream = self._invoker.invoke_stream(
                    self.rendered.rendered_prompt,
                    session_id=self.request.session_id,
                    merchant_id=self.request.merchant_id,
                    user_id=self.request.user_id,
                    model_size=self.rendered.model_size,
                    timeout=self._timeout,
                )
                self.model_id = stream.model_id
                for chunk in stream.chunks:
                    if self._cancelled.is_set():
                        break
                    self._forward(detokenizer.feed(chunk))
                self._forward(detokenizer.flush())
                stream_result = stream.result
        except Exception as e:
            record_provider_error(e)
            warnings.append(f"Stream interrupted: {e}")
            self._log.warning("stream_interrupted", extra={"error": str(e)})
        finally:
            self._chunks.put(_END)

        if self._cancelled.is_set() or not self._future.set_running_or_notify_cancel():
            return

        try:
            result = self._build_result(warnings, stream_result)
        except Exception as e:
            self._future.set_exception(e)
            return
        if self._cancelled.is_set():
            self._future.set_exception(CancelledError())
        else:
            self._future.set_result(result)

    def _build_result(
        self,
        warnings: list[str],
        stream_result: ModelInvocationResult | None,
    ) -> GenerationResult:
        text = "".join(self._buffer)
        if self._stalled.is_set():
            warnings.append(f"Stream stalled for more than {self._timeout:.1f}s")

        with self._timer.stage(
            "grounding_validation", self._log, stage_observer("grounding_validation")
        ):
            try:
                assessment = self._validator.validate_response_grounding(
                    text, self.request.documents, self.request.query
                )
            except ValidatorError as e:
                warnings.append(f"Validation failed: {e}")
                assessment = self._validator.validate_response_grounding(
                    text, usable_documents(self.request.documents), self.request.query
                )

        if not (
            assessment.quality_score.overall >= self._min_quality_score
            and assessment.grounding_validation.is_grounded
        ):
            warnings.append(QUALITY_GATE_WARNING)

        if stream_result is not None:
            token_usage = stream_result.token_usage
            llm_cost = stream_result.cost.total_cost
        else:
            token_usage = TokenUsage(self.rendered.token_count, estimate_tokens(text))
            llm_cost = 0.0

        cost = GenerationCost(prompt_cost=self.rendered.cost_estimate, llm_cost=llm_cost)
        record_outcome("streamed", self.rendered.template_used)
        record_cost(cost.prompt_cost, cost.llm_cost)

        timing = GenerationTiming(
            prompt_generation=self._timer.get("prompt_generation"),
            llm_invocation=self._timer.get("llm_invocation"),
            grounding_validation=self._timer.get("grounding_validation"),
        )
        timing.total_time = timing.prompt_generation + timing.llm_invocation + timing.grounding_validation

        return GenerationResult(
            response=text,
            quality_assessment=assessment,
            metadata=GenerationMetadata(
                template_used=self.rendered.template_used,
                model_used=self.model_id,
                token_usage=token_usage,
                cost=cost,
                timing=timing,
                retry_count=0,
            ),
            citations=[c.citation_text for c in assessment.citations],
            warnings=warnings,
        )


__all__ = ["StreamingGeneration", "QUALITY_GATE_WARNING"]
