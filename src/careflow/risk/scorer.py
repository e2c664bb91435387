"""
Risk Scorer

Deterministic intake risk assessment:
- Crisis keyword detection (always runs first, fails open toward caution)
- Weighted factor scoring against a fixed table
- Score clamping and categorization
- Recommendation derivation
- Clinician re-assessment that supersedes, never edits
"""

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
import uuid

import structlog

from careflow.exceptions import MalformedIntakeData
from careflow.models.risk import (
    FactorSource,
    PatientProfile,
    ProviderType,
    Recommendation,
    RiskAssessment,
    RiskCategory,
    RiskFactor,
    RiskFactorType,
    RiskOverride,
    UrgencyTier,
    UrgentFlag,
    UrgentFlagType,
)
from careflow.risk.vocabulary import (
    AFFIRMATIVE_ANSWERS,
    AGE_KEYS,
    CHRONIC_CONDITION_KEYS,
    CONDITION_KEYS,
    CRISIS_SCREEN_KEYS,
    CRISIS_TERMS,
    MEDICATION_KEYS,
    MISSED_APPOINTMENT_KEYS,
    MODERATE_TERMS,
    MOOD_KEYS,
    NEGATIVE_ANSWERS,
    SEVERE_TERMS,
    is_severity_key,
)
from careflow.risk.weights import FACTOR_DESCRIPTIONS, FACTOR_MONITORING, RiskWeights

logger = structlog.get_logger(__name__)

MIN_SCORE = 0.0
MAX_SCORE = 10.0
MAX_ANSWER_DEPTH = 16


def categorize(
    score: float,
    high_threshold: float = 8.0,
    medium_threshold: float = 4.0,
) -> RiskCategory:
    """Map a score to its risk category. Non-decreasing in score."""
    if score >= high_threshold:
        return RiskCategory.HIGH
    if score >= medium_threshold:
        return RiskCategory.MEDIUM
    return RiskCategory.LOW


def clamp_score(total: float) -> float:
    """Clamp a raw weight sum into [0, 10]."""
    return round(min(MAX_SCORE, max(MIN_SCORE, total)), 4)


def _walk_answers(value: Any, key: str | None = None, depth: int = 0) -> Iterator[tuple[str | None, Any]]:
    """Yield (key, leaf) pairs from a nested answer structure."""
    if depth > MAX_ANSWER_DEPTH:
        raise ValueError("intake answers nested too deeply")

    if isinstance(value, Mapping):
        for child_key, child in value.items():
            yield from _walk_answers(child, str(child_key), depth + 1)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for child in value:
            yield from _walk_answers(child, key, depth + 1)
    else:
        yield key, value


def _normalize_names(values: Iterable[Any]) -> list[str]:
    names = []
    for value in values:
        if not isinstance(value, str):
            continue
        name = value.strip().lower()
        if name:
            names.append(name)
    return list(dict.fromkeys(names))


def _answer_names(answers: Mapping, keys: Iterable[str]) -> list[str]:
    collected: list[Any] = []
    for key in keys:
        value = answers.get(key)
        if isinstance(value, str):
            collected.extend(value.split(","))
        elif isinstance(value, (list, tuple)):
            collected.extend(value)
    return collected


@dataclass
class CrisisScreen:
    """Outcome of the crisis keyword pass."""
    matched_terms: list[str] = field(default_factory=list)
    incomplete: bool = False
    detail: str | None = None

    @property
    def hit(self) -> bool:
        return bool(self.matched_terms)

    def add(self, term: str):
        if term not in self.matched_terms:
            self.matched_terms.append(term)


# =============================================================================
# Risk Scorer
# =============================================================================

class RiskScorer:
    """
    Pure, stateless risk scorer.

    Usage:
        scorer = RiskScorer()
        assessment = scorer.assess(profile, {"mood_rating": 2, "self_harm_thoughts": "currently"})
        assessment.category  # RiskCategory.HIGH

    Safe to share across threads and coroutines; nothing is mutated after
    construction.
    """

    def __init__(
        self,
        weights: RiskWeights | None = None,
        crisis_terms: Iterable[str] | None = None,
        extra_crisis_terms: Iterable[str] = (),
        high_threshold: float = 8.0,
        medium_threshold: float = 4.0,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ):
        if medium_threshold > high_threshold:
            raise ValueError("medium_threshold must not exceed high_threshold")

        self.weights = weights or RiskWeights()
        base_terms = CRISIS_TERMS if crisis_terms is None else tuple(crisis_terms)
        self.crisis_terms: tuple[str, ...] = tuple(
            dict.fromkeys(t.strip().lower() for t in (*base_terms, *extra_crisis_terms) if t.strip())
        )
        self.high_threshold = high_threshold
        self.medium_threshold = medium_threshold
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "RiskScorer":
        """Build from a RiskSettings instance."""
        return cls(
            extra_crisis_terms=settings.extra_crisis_terms,
            high_threshold=settings.high_threshold,
            medium_threshold=settings.medium_threshold,
            **kwargs,
        )

    def categorize(self, score: float) -> RiskCategory:
        return categorize(score, self.high_threshold, self.medium_threshold)

    # -------------------------------------------------------------------------
    # Assessment
    # -------------------------------------------------------------------------

    def assess(
        self,
        profile: PatientProfile | None,
        answers: Any,
        *,
        flow_id: str | None = None,
        computed_at: datetime | None = None,
    ) -> RiskAssessment:
        """
        Score a completed intake.

        Args:
            profile: Clinical context known about the patient
            answers: Validated answer-set from the intake collector
            flow_id: Flow the assessment belongs to
            computed_at: Timestamp to stamp; defaults to the injected clock

        Returns:
            A new immutable RiskAssessment
        """
        profile = profile or PatientProfile()
        factors: list[RiskFactor] = []
        flags: list[UrgentFlag] = []

        # Crisis detection runs before anything else and cannot be skipped
        screen = self.screen_crisis(answers)
        if screen.hit:
            flags.append(UrgentFlag(type=UrgentFlagType.URGENT_KEYWORDS, matched_terms=screen.matched_terms))
            factors.append(self._factor(
                RiskFactorType.URGENT_KEYWORDS,
                description=f"Crisis indicators: {', '.join(screen.matched_terms)}",
            ))
            logger.warning(
                "Crisis indicators detected",
                flow_id=flow_id,
                term_count=len(screen.matched_terms),
            )
        if screen.incomplete:
            factors.append(self._factor(RiskFactorType.CRISIS_SCREEN_INCOMPLETE))
            logger.warning(
                "Crisis screen incomplete, scoring as risk factor",
                flow_id=flow_id,
                detail=screen.detail,
            )

        # Crisis factors above are kept whatever happens below
        answer_map = answers if isinstance(answers, Mapping) else {}
        try:
            factors.append(self._severity_factor(answers, flow_id))
        except Exception as e:
            logger.warning(
                "Severity scoring failed, defaulting to mild",
                flow_id=flow_id,
                error_code=MalformedIntakeData.code,
                error=str(e),
            )
            factors.append(self._factor(RiskFactorType.MILD_SYMPTOMS))
        try:
            factors.extend(self._profile_factors(profile, answer_map, flow_id))
        except Exception as e:
            logger.warning(
                "Profile scoring failed, skipping profile factors",
                flow_id=flow_id,
                error_code=MalformedIntakeData.code,
                error=str(e),
            )

        assessment = self._build(
            factors,
            flags,
            conditions=self._conditions(profile, answer_map),
            flow_id=flow_id,
            computed_at=computed_at,
        )

        logger.info(
            "Risk assessed",
            flow_id=flow_id,
            assessment_id=assessment.id,
            score=assessment.score,
            category=assessment.category.value,
            urgent=assessment.is_urgent,
        )
        return assessment

    def reassess(
        self,
        prior: RiskAssessment,
        override: RiskOverride | None = None,
        *,
        computed_at: datetime | None = None,
    ) -> RiskAssessment:
        """
        Produce a clinician re-assessment superseding ``prior``.

        The prior assessment is left untouched; the new one links back
        through supersedes_assessment_id.
        """
        override = override or RiskOverride()
        factors = list(prior.risk_factors)
        present = {f.factor for f in factors}
        flags = [] if override.resolve_urgent_flags else list(prior.urgent_flags)

        for factor_type in override.additional_factors:
            if factor_type == RiskFactorType.CLINICIAN_JUDGMENT or factor_type in present:
                continue
            factors.append(self._factor(
                factor_type,
                description=f"Clinician observed: {factor_type.value.replace('_', ' ')}",
                source=FactorSource.CLINICIAN_REVIEW,
            ))
            present.add(factor_type)
            if factor_type == RiskFactorType.URGENT_KEYWORDS and not flags:
                flags.append(UrgentFlag(
                    type=UrgentFlagType.URGENT_KEYWORDS,
                    matched_terms=["clinician_review"],
                ))

        if override.clinician_adjustment:
            factors.append(RiskFactor(
                factor=RiskFactorType.CLINICIAN_JUDGMENT,
                weight=override.clinician_adjustment,
                description=override.notes or FACTOR_DESCRIPTIONS[RiskFactorType.CLINICIAN_JUDGMENT],
                source=FactorSource.CLINICIAN_REVIEW,
            ))

        assessment = self._build(
            factors,
            flags,
            conditions=list(prior.conditions),
            flow_id=prior.source_flow_id,
            computed_at=computed_at,
            supersedes=prior.id,
            notes=override.notes,
        )

        logger.info(
            "Risk re-assessed",
            flow_id=prior.source_flow_id,
            assessment_id=assessment.id,
            supersedes=prior.id,
            score=assessment.score,
            category=assessment.category.value,
            reviewed_by=override.reviewed_by,
        )
        return assessment

    def recommend(
        self,
        score: float,
        urgent_flags: list[UrgentFlag],
        factors: list[RiskFactor],
    ) -> Recommendation:
        """Derive urgency tier, provider type and monitoring from a score."""
        monitoring = list(dict.fromkeys(
            item for item in (FACTOR_MONITORING.get(f.factor) for f in factors) if item
        ))
        screen_incomplete = any(f.factor == RiskFactorType.CRISIS_SCREEN_INCOMPLETE for f in factors)

        if urgent_flags:
            return Recommendation(
                urgency=UrgencyTier.IMMEDIATE,
                provider_type=ProviderType.CRISIS_SPECIALIST,
                follow_up_required=True,
                monitoring=monitoring,
            )
        if score >= self.high_threshold:
            return Recommendation(
                urgency=UrgencyTier.WITHIN_24H,
                provider_type=ProviderType.SPECIALIST_PREFERRED,
                follow_up_required=True,
                monitoring=monitoring,
            )
        if score >= self.medium_threshold:
            return Recommendation(
                urgency=UrgencyTier.WITHIN_WEEK,
                provider_type=ProviderType.GENERAL,
                follow_up_required=screen_incomplete,
                monitoring=monitoring,
            )
        return Recommendation(
            urgency=UrgencyTier.ROUTINE,
            provider_type=ProviderType.GENERAL,
            follow_up_required=screen_incomplete,
            monitoring=monitoring,
        )

    # -------------------------------------------------------------------------
    # Crisis Screening
    # -------------------------------------------------------------------------

    def screen_crisis(self, answers: Any) -> CrisisScreen:
        """
        Scan every text answer for crisis terms and check screening questions.

        Never raises. Anything that prevents a full scan marks the screen
        incomplete so the caller scores it as risk.
        """
        screen = CrisisScreen()

        if answers is None:
            screen.incomplete = True
            screen.detail = "no intake answers provided"
            return screen

        try:
            if isinstance(answers, Mapping):
                leaves = list(_walk_answers(answers))
            elif isinstance(answers, str):
                leaves = [(None, answers)]
                screen.incomplete = True
                screen.detail = "intake answers arrived as raw text"
            else:
                raise TypeError(f"unsupported answer container {type(answers).__name__}")

            for key, value in leaves:
                self._screen_leaf(key, value, screen)
        except Exception as e:
            screen.incomplete = True
            screen.detail = str(e)

        return screen

    def _screen_leaf(self, key: str | None, value: Any, screen: CrisisScreen):
        norm_key = key.strip().lower() if isinstance(key, str) else None

        if norm_key in CRISIS_SCREEN_KEYS:
            verdict = self._screen_answer(value)
            if verdict == "affirmative":
                shown = "yes" if value is True else str(value).strip().lower()
                screen.add(f"{norm_key}: {shown}")
            elif verdict == "unknown":
                screen.incomplete = True
                screen.detail = f"unrecognized answer to {norm_key}"

        if isinstance(value, str):
            text = value.lower()
            for term in self.crisis_terms:
                if term in text:
                    screen.add(term)

    @staticmethod
    def _screen_answer(value: Any) -> str:
        if isinstance(value, bool):
            return "affirmative" if value else "negative"
        if isinstance(value, (int, float)):
            return "affirmative" if value > 0 else "negative"
        if isinstance(value, str):
            text = value.strip().lower()
            first_word = text.split()[0].strip(".,!") if text else ""
            if text in AFFIRMATIVE_ANSWERS or first_word == "yes":
                return "affirmative"
            if text in NEGATIVE_ANSWERS or first_word in ("no", "never"):
                return "negative"
        return "unknown"

    # -------------------------------------------------------------------------
    # Factor Scoring
    # -------------------------------------------------------------------------

    def _severity_factor(self, answers: Any, flow_id: str | None) -> RiskFactor:
        if not isinstance(answers, Mapping):
            # Raw text has no scale answers, only wording
            return self._factor(self._text_severity(answers, flow_id))

        reports: list[float] = []
        for key, value in answers.items():
            if not isinstance(key, str) or not is_severity_key(key.lower()):
                continue
            try:
                reports.append(self._parse_scale(key, value))
            except MalformedIntakeData as e:
                logger.warning(
                    "Ignoring malformed severity answer",
                    flow_id=flow_id,
                    key=e.key,
                    error=e.message,
                )

        if reports:
            average = sum(reports) / len(reports)
            if average >= self.weights.severe_severity_threshold:
                level = RiskFactorType.SEVERE_SYMPTOMS
            elif average >= self.weights.moderate_severity_threshold:
                level = RiskFactorType.MODERATE_SYMPTOMS
            else:
                level = RiskFactorType.MILD_SYMPTOMS
            return self._factor(
                level,
                description=f"{FACTOR_DESCRIPTIONS[level]} (average self-report {average:.1f}/10)",
            )

        return self._factor(self._text_severity(answers, flow_id))

    def _text_severity(self, answers: Any, flow_id: str | None) -> RiskFactorType:
        try:
            texts = [v.lower() for _, v in _walk_answers(answers) if isinstance(v, str)]
        except ValueError as e:
            logger.warning("Severity text scan failed, defaulting to mild", flow_id=flow_id, error=str(e))
            return RiskFactorType.MILD_SYMPTOMS

        if any(term in text for text in texts for term in SEVERE_TERMS):
            return RiskFactorType.SEVERE_SYMPTOMS
        if any(term in text for text in texts for term in MODERATE_TERMS):
            return RiskFactorType.MODERATE_SYMPTOMS
        return RiskFactorType.MILD_SYMPTOMS

    def _profile_factors(
        self,
        profile: PatientProfile,
        answers: Mapping,
        flow_id: str | None,
    ) -> list[RiskFactor]:
        w = self.weights
        factors: list[RiskFactor] = []

        medications = _normalize_names([*profile.medications, *_answer_names(answers, MEDICATION_KEYS)])
        if len(medications) >= w.medication_count_threshold:
            factors.append(self._factor(RiskFactorType.HIGH_MEDICATION_COUNT, count=len(medications)))

        chronic = _normalize_names([*profile.chronic_conditions, *_answer_names(answers, CHRONIC_CONDITION_KEYS)])
        if len(chronic) >= w.chronic_condition_threshold:
            factors.append(self._factor(RiskFactorType.MULTIPLE_CHRONIC_CONDITIONS, count=len(chronic)))

        missed = profile.missed_appointments
        for key in MISSED_APPOINTMENT_KEYS:
            if key in answers:
                missed = max(missed, self._safe_count(key, answers[key], flow_id))
        if missed >= w.missed_appointment_threshold:
            factors.append(self._factor(RiskFactorType.MISSED_APPOINTMENTS, count=missed))

        moods = []
        for key in MOOD_KEYS:
            if key not in answers:
                continue
            try:
                moods.append(self._parse_scale(key, answers[key]))
            except MalformedIntakeData as e:
                logger.warning("Ignoring malformed mood answer", flow_id=flow_id, key=e.key, error=e.message)
        if moods:
            mood = sum(moods) / len(moods)
            if mood <= w.low_mood_threshold:
                factors.append(self._factor(RiskFactorType.LOW_MOOD, value=f"{mood:g}/10"))

        age = profile.age
        if age is None:
            for key in AGE_KEYS:
                if key in answers:
                    age = self._safe_count(key, answers[key], flow_id)
        if age is not None and age >= w.advanced_age_threshold:
            factors.append(self._factor(RiskFactorType.ADVANCED_AGE, value=age))

        return factors

    @staticmethod
    def _conditions(profile: PatientProfile, answers: Mapping) -> list[str]:
        return _normalize_names([
            *profile.conditions,
            *profile.chronic_conditions,
            *_answer_names(answers, CONDITION_KEYS),
            *_answer_names(answers, CHRONIC_CONDITION_KEYS),
        ])

    @staticmethod
    def _parse_scale(key: str, value: Any) -> float:
        """Parse a 0-10 self-report such as 7, "7" or "7/10"."""
        if isinstance(value, bool) or value is None:
            raise MalformedIntakeData(key, value, "expected a number between 0 and 10")
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            text = value.strip().split("/")[0].strip()
            try:
                number = float(text)
            except ValueError:
                raise MalformedIntakeData(key, value, "expected a number between 0 and 10")
        else:
            raise MalformedIntakeData(key, value, f"unsupported type {type(value).__name__}")

        if not 0 <= number <= 10:
            raise MalformedIntakeData(key, value, "outside the 0-10 scale")
        return number

    @staticmethod
    def _safe_count(key: str, value: Any, flow_id: str | None) -> int:
        if isinstance(value, bool):
            value = None
        try:
            count = int(str(value).strip()) if isinstance(value, str) else int(value)
        except (TypeError, ValueError, OverflowError):
            logger.warning("Ignoring malformed count answer", flow_id=flow_id, key=key)
            return 0
        return max(count, 0)

    # -------------------------------------------------------------------------
    # Assembly
    # -------------------------------------------------------------------------

    def _factor(
        self,
        factor_type: RiskFactorType,
        *,
        description: str | None = None,
        source: FactorSource = FactorSource.INTAKE_FORM,
        **values,
    ) -> RiskFactor:
        return RiskFactor(
            factor=factor_type,
            weight=self.weights.weight(factor_type),
            description=description or FACTOR_DESCRIPTIONS[factor_type].format(**values),
            source=source,
        )

    def _build(
        self,
        factors: list[RiskFactor],
        flags: list[UrgentFlag],
        *,
        conditions: list[str],
        flow_id: str | None,
        computed_at: datetime | None,
        supersedes: str | None = None,
        notes: str | None = None,
    ) -> RiskAssessment:
        score = clamp_score(sum(f.weight for f in factors))
        return RiskAssessment(
            id=self._id_factory(),
            score=score,
            category=self.categorize(score),
            risk_factors=factors,
            urgent_flags=flags,
            recommendation=self.recommend(score, flags, factors),
            conditions=conditions,
            source_flow_id=flow_id,
            computed_at=computed_at or self._clock(),
            supersedes_assessment_id=supersedes,
            notes=notes,
        )
