"""
Prometheus metrics for the generation pipeline.

Metrics are registered on the default registry; the enclosing service
decides how to expose them (e.g. ``prometheus_client.start_http_server``).
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


GENERATION_OUTCOMES = Counter(
    "cartwise_generation_outcomes_total",
    "Finished generation requests by outcome",
    ["outcome", "template"],  # accepted, fallback, streamed
)

GENERATION_ATTEMPTS = Counter(
    "cartwise_generation_attempts_total",
    "Generation attempts by result",
    ["result"],  # accept, below_threshold, error
)

PROVIDER_ERRORS = Counter(
    "cartwise_provider_errors_total",
    "Language-model provider failures",
    ["error_type"],
)

STAGE_DURATION = Histogram(
    "cartwise_stage_duration_seconds",
    "Pipeline stage latency in seconds",
    ["stage"],  # prompt_generation, llm_invocation, grounding_validation
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
)

GENERATION_COST = Counter(
    "cartwise_generation_cost_usd_total",
    "Estimated spend in USD",
    ["kind"],  # prompt, llm
)

GROUNDING_SCORE = Histogram(
    "cartwise_grounding_score",
    "Grounding score of validated responses",
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.85, 0.9, 0.95, 1.0),
)


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def record_outcome(outcome: str, template: str) -> None:
    GENERATION_OUTCOMES.labels(outcome=outcome, template=template).inc()


def record_attempt(result: str) -> None:
    GENERATION_ATTEMPTS.labels(result=result).inc()


def record_provider_error(error: Exception) -> None:
    PROVIDER_ERRORS.labels(error_type=type(error).__name__).inc()


def stage_observer(stage: str):
    """Return a callback that records a duration in seconds for ``stage``."""
    histogram = STAGE_DURATION.labels(stage=stage)
    return histogram.observe


def record_cost(prompt_cost: float, llm_cost: float) -> None:
    GENERATION_COST.labels(kind="prompt").inc(max(prompt_cost, 0.0))
    GENERATION_COST.labels(kind="llm").inc(max(llm_cost, 0.0))


def observe_grounding(score: float) -> None:
    GROUNDING_SCORE.observe(score)


def metrics_response() -> tuple[bytes, str]:
    """
    Return (body, content_type) for a /metrics endpoint.

    This package has no HTTP surface of its own; the host service serves
    this from its route, e.g. ``Response(content=body, media_type=content_type)``.
    """
    return generate_latest(), CONTENT_TYPE_LATEST


__all__ = [
    "record_outcome",
    "record_attempt",
    "record_provider_error",
    "stage_observer",
    "record_cost",
    "observe_grounding",
    "metrics_response",
]
