"""
Grounding and quality validation service.

Scores a model response against the documents it was given:
claim-level grounding, five quality dimensions, hallucination signals,
and a hint whether the caller should fall back to a source-only answer.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from cartwise.config import CITATION_FORMAT, get_logger
from cartwise.core.errors import ValidatorError
from cartwise.core.fallback import create_fallback_response
from cartwise.core.models import (
    Citation,
    Claim,
    Document,
    DocumentMetadata,
    GroundingConfig,
    GroundingQualityAssessment,
    GroundingValidation,
    HallucinationReport,
    QualityDimensions,
    QualityScore,
    QUALITY_DIMENSIONS,
    ValidationDetail,
)
from cartwise.core.verification import (
    best_matches,
    claim_evidence,
    clarity_score,
    completeness_score,
    extract_claims,
    find_speculative_phrases,
    first_document_problem,
    relevance_score,
    support_matrix,
    validation_reasoning,
)
from cartwise.metrics import observe_grounding

logger = get_logger(__name__)

CITATION_SNIPPET_CHARS = 200

_HEALTH_DOCUMENT = Document(
    id="health-check",
    snippet="The demo speaker ships with a braided charging cable.",
    score=1.0,
    metadata=DocumentMetadata(sku="DEMO-1"),
)
_HEALTH_RESPONSE = "The demo speaker ships with a braided charging cable. [Source: health-check]"


def _clip(value: float) -> float:
    return float(min(max(value, 0.0), 1.0))


def _check_documents(documents: Sequence[Document]) -> None:
    problem = first_document_problem(documents)
    if problem is not None:
        raise ValidatorError(problem)


class GroundingValidator:
    """
    Validates that responses are grounded in their source documents.

    Args:
        config: Thresholds and dimension weights. Defaults to GroundingConfig().
    """

    def __init__(self, config: GroundingConfig | None = None):
        self.config = config or GroundingConfig()

    # -- grounding ------------------------------------------------------------

    def _ground_claims(
        self, claims: list[Claim], documents: Sequence[Document]
    ) -> tuple[list[Citation], np.ndarray]:
        matrix = support_matrix([c.text for c in claims], documents)
        best, best_idx = best_matches(matrix)

        citations: dict[str, Citation] = {}
        for row, (claim, score, idx) in enumerate(zip(claims, best, best_idx)):
            claim.validation_score = float(score)
            claim.supporting_evidence = claim_evidence(
                claim.text, matrix[row], documents, self.config.min_evidence_support
            )
            if idx < 0 or score < self.config.min_claim_relevance:
                continue
            doc = documents[int(idx)]
            claim.is_validated = True
            claim.document_id = doc.id
            existing = citations.get(doc.id)
            if existing is None or existing.relevance_score < score:
                citations[doc.id] = Citation(
                    document_id=doc.id,
                    document_title=doc.metadata.title or doc.metadata.sku or doc.id,
                    snippet=doc.snippet[:CITATION_SNIPPET_CHARS],
                    relevance_score=_clip(score),
                    citation_text=CITATION_FORMAT.format(doc_id=doc.id),
                    grounding_pass=True,
                    source_uri=doc.metadata.source_uri,
                )
        return list(citations.values()), best

    @staticmethod
    def _validation_details(claims: list[Claim]) -> list[ValidationDetail]:
        return [
            ValidationDetail(
                claim=claim.text,
                status="validated" if claim.is_validated else "unvalidated",
                evidence=claim.supporting_evidence,
                reasoning=validation_reasoning(claim.supporting_evidence),
            )
            for claim in claims
        ]

    def _grounding_validation(
        self, claims: list[Claim], citations: list[Citation], best: np.ndarray
    ) -> GroundingValidation:
        total = len(claims)
        validated = sum(1 for c in claims if c.is_validated)
        if total == 0:
            score, confidence = 1.0, 1.0
        else:
            score = validated / total
            confidence = _clip(0.6 * float(best.mean()) + 0.4 * score)

        return GroundingValidation(
            is_grounded=score >= self.config.min_grounding_score,
            grounding_score=score,
            source_citations=citations,
            factual_claims=claims,
            validated_claims=validated,
            total_claims=total,
            grounding_accuracy=score * 100,
            confidence=confidence,
            validation_details=self._validation_details(claims),
        )

    # -- quality --------------------------------------------------------------

    def _overall(self, dimensions: QualityDimensions) -> float:
        values = dimensions.as_dict()
        weights = self.config.dimension_weights
        if not weights:
            return _clip(sum(values.values()) / len(values))
        total_weight = sum(weights.values())
        return _clip(sum(values[name] * weights.get(name, 0.0) for name in QUALITY_DIMENSIONS) / total_weight)

    def _hallucination(
        self,
        response: str,
        grounding: GroundingValidation,
        overall: float,
    ) -> HallucinationReport:
        if not self.config.enable_hallucination_detection:
            return HallucinationReport(detected=False, confidence=0.0, indicators=[])

        unsupported = [c.text for c in grounding.factual_claims if not c.is_validated]
        speculative = find_speculative_phrases(response)
        detected = not grounding.is_grounded and overall < self.config.hallucination_band
        confidence = _clip((1.0 - grounding.grounding_score) * 0.7 + 0.15 * len(speculative))
        return HallucinationReport(
            detected=detected,
            confidence=confidence,
            indicators=unsupported + speculative,
        )

    @staticmethod
    def _recommendations(dimensions: QualityDimensions, hallucination: HallucinationReport) -> list[str]:
        recommendations = []
        if dimensions.factual_accuracy < 0.8:
            recommendations.append("Improve factual accuracy by better grounding claims in source documents")
        if dimensions.relevance < 0.7:
            recommendations.append("Ensure response directly addresses the user query")
        if dimensions.completeness < 0.6:
            recommendations.append("Provide more comprehensive information from available sources")
        if dimensions.clarity < 0.7:
            recommendations.append("Improve response clarity and structure")
        if hallucination.detected:
            recommendations.append(
                "Remove speculative language and ensure all claims are supported by evidence"
            )
        return recommendations

    def _improvement_suggestions(
        self, grounding: GroundingValidation, hallucination: HallucinationReport
    ) -> list[str]:
        suggestions = []
        if not grounding.is_grounded:
            suggestions.append(
                f"Grounding score ({grounding.grounding_score * 100:.1f}%) is below target "
                f"({self.config.min_grounding_score * 100:.0f}%)"
            )
        if hallucination.detected:
            suggestions.append("Potential hallucination detected - review response for unsupported claims")
        if grounding.total_claims and not grounding.source_citations:
            suggestions.append("Add source citations to support factual claims")
        return suggestions

    # -- public API -----------------------------------------------------------

    def validate_response_grounding(
        self,
        response_text: str,
        documents: Sequence[Document],
        original_query: str,
    ) -> GroundingQualityAssessment:
        """
        Validate a response against its source documents.

        Args:
            response_text: Detokenized model output.
            documents: Documents the prompt was built from.
            original_query: The user's query, for relevance scoring.

        Returns:
            GroundingQualityAssessment with claim-level grounding, quality
            dimensions, hallucination report and fallback hint.

        Raises:
            ValidatorError: If the response is not text or a document is malformed.
        """
        if not isinstance(response_text, str):
            raise ValidatorError(f"Expected response text as str, got {type(response_text).__name__}")
        _check_documents(documents)

        claims = extract_claims(response_text, self.config.max_claims_per_response)
        citations, best = self._ground_claims(claims, documents)
        grounding = self._grounding_validation(claims, citations, best)

        supported_ids = {c.document_id for c in claims if c.document_id}
        dimensions = QualityDimensions(
            factual_accuracy=_clip(float(best.mean())) if claims else 1.0,
            relevance=_clip(relevance_score(original_query, response_text)),
            completeness=_clip(completeness_score(response_text, documents, supported_ids)),
            clarity=_clip(clarity_score(response_text)),
            groundedness=grounding.grounding_score,
        )
        overall = self._overall(dimensions)
        hallucination = self._hallucination(response_text, grounding, overall)

        quality = QualityScore(
            overall=overall,
            dimensions=dimensions,
            hallucination=hallucination,
            recommendations=self._recommendations(dimensions, hallucination),
        )

        observe_grounding(grounding.grounding_score)
        logger.info(
            "grounding_validated",
            extra={
                "claims": grounding.total_claims,
                "validated": grounding.validated_claims,
                "grounding_score": round(grounding.grounding_score, 3),
                "overall": round(overall, 3),
                "hallucination": hallucination.detected,
            },
        )

        return GroundingQualityAssessment(
            response=response_text,
            grounding_validation=grounding,
            quality_score=quality,
            citations=citations,
            fallback_recommended=grounding.grounding_score < self.config.fallback_threshold,
            improvement_suggestions=self._improvement_suggestions(grounding, hallucination),
        )

    def create_fallback_response(
        self,
        query: str,
        documents: Sequence[Document],
        reason: str = "",
    ) -> str:
        """Source-only answer from the top documents. Never calls a provider."""
        return create_fallback_response(query, documents, reason)

    def health_check(self) -> bool:
        """Liveness check: a verbatim, cited sentence must validate as grounded."""
        assessment = self.validate_response_grounding(
            _HEALTH_RESPONSE, [_HEALTH_DOCUMENT], "demo speaker cable"
        )
        return assessment.grounding_validation.is_grounded


__all__ = ["GroundingValidator"]
