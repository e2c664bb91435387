"""
Provider Matching

Additive scoring of candidate providers against a risk assessment.
Ranking, not filtering: every candidate comes back, ordered, so a caller
always has someone to route to even when nobody satisfies the urgency window.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import math

import structlog

from careflow.models.provider import ProviderCandidate, ProviderProfile
from careflow.models.risk import RiskAssessment, RiskCategory, UrgencyTier

logger = structlog.get_logger(__name__)


# None means no time limit: any open slot qualifies, however far out.
# A provider with no slot at all never earns the availability weight.
URGENCY_WINDOWS: dict[UrgencyTier, timedelta | None] = {
    UrgencyTier.IMMEDIATE: timedelta(hours=2),
    UrgencyTier.WITHIN_24H: timedelta(hours=24),
    UrgencyTier.WITHIN_WEEK: timedelta(hours=168),
    UrgencyTier.ROUTINE: None,
}


@dataclass(frozen=True)
class MatchWeights:
    specialization: float = 0.4
    availability: float = 0.3
    risk_experience: float = 0.2
    satisfaction: float = 0.1
    high_rating_threshold: float = 4.5


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ProviderMatcher:
    """
    Pure provider ranker.

    Identical (assessment, candidates, as_of) input always yields the same
    order: score descending, then estimated wait ascending (no slot sorts
    last), then provider id.
    """

    def __init__(
        self,
        weights: MatchWeights | None = None,
        windows: dict[UrgencyTier, timedelta | None] | None = None,
    ):
        self.weights = weights or MatchWeights()
        self.windows = {**URGENCY_WINDOWS, **(windows or {})}

    def rank(
        self,
        assessment: RiskAssessment,
        candidates: list[ProviderProfile],
        as_of: datetime | None = None,
    ) -> list[ProviderCandidate]:
        """
        Rank candidates for an assessment.

        Args:
            assessment: The risk assessment driving urgency and specialization
            candidates: Providers to rank
            as_of: Reference time for the urgency window; defaults to the
                assessment's computed_at so the call stays referentially transparent

        Returns:
            Every candidate, ordered best first
        """
        reference = _as_utc(as_of or assessment.computed_at)
        window = self.windows.get(assessment.recommendation.urgency)

        ranked = [self._score(assessment, provider, reference, window) for provider in candidates]
        ranked.sort(key=self._sort_key)

        logger.debug(
            "Ranked providers",
            assessment_id=assessment.id,
            urgency=assessment.recommendation.urgency.value,
            candidates=len(ranked),
            top_provider=ranked[0].provider_id if ranked else None,
        )
        return ranked

    def _score(
        self,
        assessment: RiskAssessment,
        provider: ProviderProfile,
        reference: datetime,
        window: timedelta | None,
    ) -> ProviderCandidate:
        w = self.weights
        score = 0.0
        reasons: list[str] = []

        conditions = {c.strip().lower() for c in assessment.conditions}
        specializations = {s.strip().lower() for s in provider.specializations}
        overlap = sorted(conditions & specializations)
        if overlap:
            score += w.specialization
            reasons.append(f"specialization:{','.join(overlap)}")

        if provider.next_available_at is not None:
            slot = _as_utc(provider.next_available_at)
            if window is None or slot <= reference + window:
                score += w.availability
                reasons.append(f"available_within:{assessment.recommendation.urgency.value}")

        if assessment.category == RiskCategory.LOW or assessment.category in provider.risk_experience:
            score += w.risk_experience
            reasons.append(f"risk_experience:{assessment.category.value}")

        if provider.satisfaction_rating is not None and provider.satisfaction_rating >= w.high_rating_threshold:
            score += w.satisfaction
            reasons.append("high_satisfaction")

        return ProviderCandidate(
            provider_id=provider.provider_id,
            match_score=round(min(1.0, score), 6),
            reasons=reasons,
            estimated_wait_minutes=self._wait_minutes(provider, reference),
        )

    @staticmethod
    def _wait_minutes(provider: ProviderProfile, reference: datetime) -> int | None:
        if provider.estimated_wait_minutes is not None:
            return provider.estimated_wait_minutes
        if provider.next_available_at is None:
            return None
        delta = _as_utc(provider.next_available_at) - reference
        return max(0, int(delta.total_seconds() // 60))

    @staticmethod
    def _sort_key(candidate: ProviderCandidate) -> tuple:
        wait = candidate.estimated_wait_minutes
        return (
            -candidate.match_score,
            math.inf if wait is None else wait,
            candidate.provider_id,
        )
