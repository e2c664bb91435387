"""
Risk Factor Weight Table

Maps every RiskFactorType to its score contribution, plus the count
thresholds that make a profile factor applicable. The table is validated
to be exhaustive so a new factor type cannot bypass scoring.
"""

from pydantic import BaseModel, Field, model_validator

from careflow.models.risk import RiskFactorType


DEFAULT_FACTOR_WEIGHTS: dict[RiskFactorType, float] = {
    RiskFactorType.SEVERE_SYMPTOMS: 3.0,
    RiskFactorType.MODERATE_SYMPTOMS: 2.0,
    RiskFactorType.MILD_SYMPTOMS: 0.5,
    RiskFactorType.URGENT_KEYWORDS: 8.0,
    RiskFactorType.HIGH_MEDICATION_COUNT: 1.5,
    RiskFactorType.MULTIPLE_CHRONIC_CONDITIONS: 1.5,
    RiskFactorType.MISSED_APPOINTMENTS: 1.0,
    RiskFactorType.LOW_MOOD: 1.5,
    RiskFactorType.ADVANCED_AGE: 1.0,
    RiskFactorType.CRISIS_SCREEN_INCOMPLETE: 4.0,
    # Clinician-supplied; the override carries the actual weight
    RiskFactorType.CLINICIAN_JUDGMENT: 0.0,
}

FACTOR_DESCRIPTIONS: dict[RiskFactorType, str] = {
    RiskFactorType.SEVERE_SYMPTOMS: "Severe symptom severity reported",
    RiskFactorType.MODERATE_SYMPTOMS: "Moderate symptom severity reported",
    RiskFactorType.MILD_SYMPTOMS: "Mild symptom severity reported",
    RiskFactorType.URGENT_KEYWORDS: "Crisis indicators present in intake responses",
    RiskFactorType.HIGH_MEDICATION_COUNT: "Taking {count} medications",
    RiskFactorType.MULTIPLE_CHRONIC_CONDITIONS: "{count} chronic conditions",
    RiskFactorType.MISSED_APPOINTMENTS: "{count} missed appointments",
    RiskFactorType.LOW_MOOD: "Low mood rating ({value})",
    RiskFactorType.ADVANCED_AGE: "Age {value}",
    RiskFactorType.CRISIS_SCREEN_INCOMPLETE: "Crisis screening could not be completed",
    RiskFactorType.CLINICIAN_JUDGMENT: "Clinician adjustment",
}

# Follow-up monitoring item implied by each factor
FACTOR_MONITORING: dict[RiskFactorType, str | None] = {
    RiskFactorType.SEVERE_SYMPTOMS: "symptom_tracking",
    RiskFactorType.MODERATE_SYMPTOMS: "symptom_tracking",
    RiskFactorType.MILD_SYMPTOMS: None,
    RiskFactorType.URGENT_KEYWORDS: "crisis_safety_plan",
    RiskFactorType.HIGH_MEDICATION_COUNT: "medication_review",
    RiskFactorType.MULTIPLE_CHRONIC_CONDITIONS: "chronic_condition_management",
    RiskFactorType.MISSED_APPOINTMENTS: "adherence_outreach",
    RiskFactorType.LOW_MOOD: "mood_tracking",
    RiskFactorType.ADVANCED_AGE: "geriatric_considerations",
    RiskFactorType.CRISIS_SCREEN_INCOMPLETE: "manual_crisis_screen",
    RiskFactorType.CLINICIAN_JUDGMENT: None,
}


class RiskWeights(BaseModel):
    """Weight table and applicability thresholds."""
    weights: dict[RiskFactorType, float] = Field(
        default_factory=lambda: dict(DEFAULT_FACTOR_WEIGHTS)
    )

    medication_count_threshold: int = 4
    chronic_condition_threshold: int = 2
    missed_appointment_threshold: int = 2
    low_mood_threshold: float = 3.0
    advanced_age_threshold: int = 65

    # Average numeric severity (1-10) cut-offs
    severe_severity_threshold: float = 7.0
    moderate_severity_threshold: float = 4.0

    @model_validator(mode="after")
    def _check_exhaustive(self) -> "RiskWeights":
        missing = [f.value for f in RiskFactorType if f not in self.weights]
        if missing:
            raise ValueError(f"Weight table missing factors: {', '.join(missing)}")
        return self

    def weight(self, factor: RiskFactorType) -> float:
        return self.weights[factor]

    @classmethod
    def with_overrides(cls, overrides: dict[RiskFactorType, float], **thresholds) -> "RiskWeights":
        """Start from the defaults and replace selected weights."""
        return cls(weights={**DEFAULT_FACTOR_WEIGHTS, **overrides}, **thresholds)
