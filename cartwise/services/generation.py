"""
Response generation service.

Orchestrates prompt rendering, provider invocation and grounding
validation as a bounded retry loop. Each attempt ends in one of three
outcomes: ACCEPT returns the model's answer, RETRY re-renders a tightened
prompt one model size smaller, FALLBACK returns a source-only answer.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from enum import Enum

from cartwise.adapters.llm import ModelInvoker, get_model_invoker
from cartwise.config import (
    FALLBACK_MODEL,
    FALLBACK_TEMPLATE,
    LLM_TIMEOUT,
    get_logger,
    request_logger,
)
from cartwise.core.errors import ProviderInvocationError, ProviderTimeoutError, ValidatorError
from cartwise.core.fallback import usable_documents
from cartwise.core.models import (
    GenerationConfig,
    GenerationCost,
    GenerationCostEstimate,
    GenerationMetadata,
    GenerationRequest,
    GenerationResult,
    GenerationTiming,
    GroundingQualityAssessment,
    HealthReport,
    HealthStatus,
    ModelInvocationResult,
    ModelSize,
    PromptContext,
    RenderedPrompt,
    TokenUsage,
)
from cartwise.core.rendering import PromptRenderer
from cartwise.core.verification import first_document_problem
from cartwise.metrics import (
    record_attempt,
    record_cost,
    record_outcome,
    record_provider_error,
    stage_observer,
)
from cartwise.services.grounding import GroundingValidator
from cartwise.services.streaming import StreamingGeneration
from cartwise.utils import StageTimer

logger = get_logger(__name__)

FALLBACK_WARNING = "Response quality below threshold after maximum retries"

PROMPT_STAGE = "prompt_generation"
INVOKE_STAGE = "llm_invocation"
VALIDATE_STAGE = "grounding_validation"


class AttemptOutcome(Enum):
    ACCEPT = "accept"
    RETRY = "retry"
    FALLBACK = "fallback"


@dataclass
class AttemptRecord:
    """Everything one pass through render -> invoke -> validate produced."""

    attempt: int
    rendered: RenderedPrompt
    timer: StageTimer
    invocation: ModelInvocationResult | None = None
    response: str = ""
    assessment: GroundingQualityAssessment | None = None
    error: str | None = None
    unrecoverable: bool = False  # retrying cannot change the outcome
    warnings: list[str] = field(default_factory=list)


def passes_quality_gate(assessment: GroundingQualityAssessment, min_quality_score: float) -> bool:
    return (
        assessment.quality_score.overall >= min_quality_score
        and assessment.grounding_validation.is_grounded
    )


class ResponseGenerator:
    """
    Generate grounded answers with retry and deterministic fallback.

    Holds no per-request state, so one instance can serve concurrent
    requests from many threads. Each provider call runs on its own thread,
    so a request's timeout never includes time spent behind other requests.

    Args:
        renderer: Prompt renderer (owns the template registry).
        invoker: Language-model invoker. Defaults to get_model_invoker(provider).
        validator: Grounding validator.
        config: Retry and quality-gate settings.
        provider: LLM provider name if invoker not provided.
    """

    def __init__(
        self,
        renderer: PromptRenderer | None = None,
        invoker: ModelInvoker | None = None,
        validator: GroundingValidator | None = None,
        config: GenerationConfig | None = None,
        provider: str | None = None,
    ):
        self.renderer = renderer or PromptRenderer()
        self.invoker = invoker or get_model_invoker(provider)
        self.validator = validator or GroundingValidator()
        self.config = config or GenerationConfig()
        self._calls: set[threading.Thread] = set()
        self._calls_lock = threading.Lock()

    # -- lifecycle ------------------------------------------------------------

    def close(self, timeout: float | None = None) -> None:
        """Wait for provider calls still running after their request timed out."""
        with self._calls_lock:
            pending = list(self._calls)
        for worker in pending:
            worker.join(timeout)

    def __enter__(self) -> ResponseGenerator:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- stages ---------------------------------------------------------------

    def _timeout(self, request: GenerationRequest) -> float:
        return request.timeout or self.config.provider_timeout or LLM_TIMEOUT

    def _render(
        self,
        request: GenerationRequest,
        context: PromptContext,
        timer: StageTimer,
        model_size: ModelSize | None = None,
        tightened: bool = False,
    ) -> RenderedPrompt:
        overrides = {"preferred_model_size": model_size} if model_size else None
        with timer.stage(PROMPT_STAGE, logger, stage_observer(PROMPT_STAGE)):
            return self.renderer.render_template(
                request.template_type,
                request.query,
                context,
                cost_overrides=overrides,
                tightened=tightened,
            )

    def _invoke(
        self, rendered: RenderedPrompt, request: GenerationRequest, timeout: float
    ) -> ModelInvocationResult:
        """
        Run the provider call on a dedicated thread, bounded by ``timeout``.

        The clock starts when the call starts. A call that outlives its
        timeout is abandoned; ``close()`` waits for such calls.

        Raises:
            ProviderInvocationError: On timeout or any provider failure.
        """
        future: Future[ModelInvocationResult] = Future()

        def call() -> None:
            try:
                future.set_running_or_notify_cancel()
                future.set_result(
                    self.invoker.invoke(
                        rendered.rendered_prompt,
                        session_id=request.session_id,
                        merchant_id=request.merchant_id,
                        user_id=request.user_id,
                        model_size=rendered.model_size,
                        timeout=timeout,
                    )
                )
            except Exception as e:
                future.set_exception(e)
            finally:
                with self._calls_lock:
                    self._calls.discard(worker)

        worker = threading.Thread(target=call, name="cartwise-invoke", daemon=True)
        with self._calls_lock:
            self._calls.add(worker)
        worker.start()
        try:
            return future.result(timeout=timeout)
        except ProviderInvocationError:
            raise
        except FuturesTimeout as e:
            raise ProviderTimeoutError(f"Provider call exceeded {timeout:.1f}s timeout") from e
        except Exception as e:
            raise ProviderInvocationError(f"{type(e).__name__}: {e}") from e

    def _run_attempt(
        self,
        request: GenerationRequest,
        context: PromptContext,
        attempt: int,
        model_size: ModelSize | None,
        document_problem: str | None = None,
    ) -> AttemptRecord:
        """
        One RENDER -> INVOKE -> DETOKENIZE -> VALIDATE pass.

        A malformed document set fails the attempt after rendering, without
        calling the provider, since the answer could not be validated.
        """
        timer = StageTimer()
        rendered = self._render(request, context, timer, model_size, tightened=attempt > 0)
        record = AttemptRecord(attempt=attempt, rendered=rendered, timer=timer)

        if document_problem is not None:
            record.error = document_problem
            record.unrecoverable = True
            return record

        try:
            with timer.stage(INVOKE_STAGE, logger, stage_observer(INVOKE_STAGE)):
                record.invocation = self._invoke(rendered, request, self._timeout(request))
        except ProviderInvocationError as e:
            record_provider_error(e)
            record.error = str(e)
            return record

        record.response = self.renderer.redactor.detokenize(
            record.invocation.response_text, rendered.pii_tokens
        )

        try:
            with timer.stage(VALIDATE_STAGE, logger, stage_observer(VALIDATE_STAGE)):
                record.assessment = self.validator.validate_response_grounding(
                    record.response, request.documents, request.query
                )
        except ValidatorError as e:
            record.error = str(e)
        return record

    def _decide(self, record: AttemptRecord) -> AttemptOutcome:
        if record.assessment is not None and passes_quality_gate(
            record.assessment, self.config.min_quality_score
        ):
            return AttemptOutcome.ACCEPT
        if record.attempt < self.config.max_retries and not record.unrecoverable:
            return AttemptOutcome.RETRY
        return AttemptOutcome.FALLBACK

    # -- results --------------------------------------------------------------

    def _accepted(
        self,
        request: GenerationRequest,
        record: AttemptRecord,
        warnings: list[str],
        started: float,
    ) -> GenerationResult:
        invocation = record.invocation
        assessment = record.assessment
        cost = GenerationCost(
            prompt_cost=record.rendered.cost_estimate,
            llm_cost=invocation.cost.total_cost,
        )
        record_outcome("accepted", record.rendered.template_used)
        record_cost(cost.prompt_cost, cost.llm_cost)
        return GenerationResult(
            response=record.response,
            quality_assessment=assessment,
            metadata=GenerationMetadata(
                template_used=record.rendered.template_used,
                model_used=invocation.model_id,
                token_usage=invocation.token_usage,
                cost=cost,
                timing=GenerationTiming(
                    prompt_generation=record.timer.get(PROMPT_STAGE),
                    llm_invocation=record.timer.get(INVOKE_STAGE),
                    grounding_validation=record.timer.get(VALIDATE_STAGE),
                    total_time=(time.perf_counter() - started) * 1000,
                ),
                retry_count=record.attempt,
            ),
            citations=[c.citation_text for c in assessment.citations],
            warnings=warnings,
        )

    def _fallback(
        self,
        request: GenerationRequest,
        warnings: list[str],
        spent_cost: GenerationCost,
        spent_tokens: TokenUsage,
        started: float,
    ) -> GenerationResult:
        timer = StageTimer()
        documents = usable_documents(request.documents)
        with timer.stage(VALIDATE_STAGE, logger, stage_observer(VALIDATE_STAGE)):
            response = self.validator.create_fallback_response(
                request.query, documents, FALLBACK_WARNING
            )
            assessment = self.validator.validate_response_grounding(
                response, documents, request.query
            )

        record_outcome("fallback", FALLBACK_TEMPLATE)
        record_cost(spent_cost.prompt_cost, spent_cost.llm_cost)
        return GenerationResult(
            response=response,
            quality_assessment=assessment,
            metadata=GenerationMetadata(
                template_used=FALLBACK_TEMPLATE,
                model_used=FALLBACK_MODEL,
                token_usage=spent_tokens,
                cost=spent_cost,
                timing=GenerationTiming(
                    grounding_validation=timer.get(VALIDATE_STAGE),
                    total_time=(time.perf_counter() - started) * 1000,
                ),
                retry_count=self.config.max_retries + 1,
                fallback_used=True,
            ),
            citations=[c.citation_text for c in assessment.citations],
            warnings=[*warnings, FALLBACK_WARNING],
        )

    # -- public API -----------------------------------------------------------

    def generate_response(self, request: GenerationRequest) -> GenerationResult:
        """
        Generate a grounded answer for one request.

        Runs at most ``max_retries + 1`` attempts. Provider and validator
        failures count as failed attempts; when every attempt fails the
        gate, a source-only fallback answer is returned. A malformed
        document set fails the first attempt and falls back straight away,
        answering from the well-formed documents only.

        Args:
            request: Query, documents, predictions and session state.

        Returns:
            GenerationResult; never the product of a failed quality gate
            unless it is the fallback answer.

        Raises:
            UnknownTemplateError: If the template type is not registered.
            RedactionError: If the query or session context is malformed.
        """
        log = request_logger(logger, request.session_id, request.merchant_id)
        started = time.perf_counter()
        context = request.prompt_context()
        warnings: list[str] = []
        spent_cost = GenerationCost()
        spent_tokens = TokenUsage()
        next_size: ModelSize | None = None
        document_problem = first_document_problem(request.documents)

        for attempt in range(self.config.max_retries + 1):
            record = self._run_attempt(request, context, attempt, next_size, document_problem)
            next_size = record.rendered.model_size.smaller()

            spent_cost.prompt_cost += record.rendered.cost_estimate
            if record.invocation is not None:
                spent_cost.llm_cost += record.invocation.cost.total_cost
                spent_tokens = spent_tokens + record.invocation.token_usage

            if record.error is not None:
                warnings.append(f"Retry {attempt + 1}: Error occurred - {record.error}")
                log.warning("attempt_failed", extra={"attempt": attempt, "error": record.error})

            outcome = self._decide(record)
            if outcome is AttemptOutcome.ACCEPT:
                record_attempt("accept")
                log.info(
                    "response_accepted",
                    extra={
                        "attempt": attempt,
                        "overall": round(record.assessment.quality_score.overall, 3),
                        "model": record.invocation.model_id,
                    },
                )
                return self._accepted(request, record, warnings, started)

            record_attempt("error" if record.error is not None else "below_threshold")
            if outcome is AttemptOutcome.RETRY and record.assessment is not None:
                overall = record.assessment.quality_score.overall
                warnings.append(f"Retry {attempt + 1}: Quality score {overall:.3f} below threshold")
                log.info("retrying_below_threshold", extra={"attempt": attempt, "overall": round(overall, 3)})
            if outcome is AttemptOutcome.FALLBACK:
                break

        log.warning("falling_back", extra={"attempts": record.attempt + 1})
        return self._fallback(request, warnings, spent_cost, spent_tokens, started)

    def generate_streaming_response(self, request: GenerationRequest) -> StreamingGeneration:
        """
        Start a streaming generation.

        Rendering happens up front, so template and redaction errors raise
        here. Chunks are forwarded as they arrive; the validated result is
        available from ``StreamingGeneration.result()`` after the stream ends.
        No retries happen once streaming has begun.

        Raises:
            UnknownTemplateError: If the template type is not registered.
            RedactionError: If the query or session context is malformed.
        """
        timer = StageTimer()
        rendered = self._render(request, request.prompt_context(), timer)
        handle = StreamingGeneration(
            request=request,
            rendered=rendered,
            invoker=self.invoker,
            validator=self.validator,
            redactor=self.renderer.redactor,
            timeout=self._timeout(request),
            min_quality_score=self.config.min_quality_score,
            timer=timer,
        )
        handle.start()
        return handle

    def estimate_generation_cost(self, request: GenerationRequest) -> GenerationCostEstimate:
        """
        Pre-flight cost estimate without contacting the provider.

        The provider cost is approximated by the prompt cost.
        """
        estimate = self.renderer.estimate_cost(
            request.template_type, request.query, request.prompt_context()
        )
        return GenerationCostEstimate(
            prompt_cost=estimate.cost_estimate,
            estimated_llm_cost=estimate.cost_estimate,
            token_count=estimate.token_count,
            model_size=estimate.model_size,
        )

    def health_check(self) -> HealthReport:
        """
        Aggregate component health.

        Any unhealthy component yields DEGRADED; an exception while checking
        yields UNHEALTHY. ``details`` carries the invoker's provider and
        model catalog.
        """

        def status(ok: bool) -> HealthStatus:
            return HealthStatus.HEALTHY if ok else HealthStatus.UNHEALTHY

        components: dict[str, HealthStatus] = {}
        details: dict[str, object] = {}
        try:
            components["prompt_renderer"] = status(len(self.renderer.template_types()) > 0)
            components["model_invoker"] = status(self.invoker.health_check())
            components["grounding_validator"] = status(self.validator.health_check())
            details["model_invoker"] = self.invoker.describe()
        except Exception as e:
            logger.exception("Health check failed")
            return HealthReport(
                status=HealthStatus.UNHEALTHY,
                components=components,
                details={"error": f"{type(e).__name__}: {e}"},
            )

        if all(s is HealthStatus.HEALTHY for s in components.values()):
            overall = HealthStatus.HEALTHY
        else:
            overall = HealthStatus.DEGRADED
        return HealthReport(status=overall, components=components, details=details)


__all__ = [
    "ResponseGenerator",
    "AttemptOutcome",
    "AttemptRecord",
    "passes_quality_gate",
    "FALLBACK_WARNING",
]
