"""
Risk Assessment Models

Immutable, versioned snapshots of a patient's clinical risk:
- Weighted risk factors with their source
- Urgent (crisis) flags
- Care recommendation derived from score and flags
"""

from datetime import datetime, timezone
from enum import Enum
import uuid

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enumerations
# =============================================================================

class RiskCategory(str, Enum):
    """Coarse urgency bucket derived from the numeric score."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RiskFactorType(str, Enum):
    """Every factor the scorer knows about. The weight table must cover all of them."""
    SEVERE_SYMPTOMS = "severe_symptoms"
    MODERATE_SYMPTOMS = "moderate_symptoms"
    MILD_SYMPTOMS = "mild_symptoms"
    URGENT_KEYWORDS = "urgent_keywords"
    HIGH_MEDICATION_COUNT = "high_medication_count"
    MULTIPLE_CHRONIC_CONDITIONS = "multiple_chronic_conditions"
    MISSED_APPOINTMENTS = "missed_appointments"
    LOW_MOOD = "low_mood"
    ADVANCED_AGE = "advanced_age"
    CRISIS_SCREEN_INCOMPLETE = "crisis_screen_incomplete"
    CLINICIAN_JUDGMENT = "clinician_judgment"


class FactorSource(str, Enum):
    """Where a risk factor came from."""
    INTAKE_FORM = "intake_form"
    CLINICIAN_REVIEW = "clinician_review"


class UrgentFlagType(str, Enum):
    """Crisis indicators that override normal routing."""
    URGENT_KEYWORDS = "urgent_keywords"


class UrgencyTier(str, Enum):
    """How soon the patient must be seen."""
    IMMEDIATE = "immediate"
    WITHIN_24H = "within_24h"
    WITHIN_WEEK = "within_week"
    ROUTINE = "routine"


class ProviderType(str, Enum):
    """Preferred kind of provider."""
    CRISIS_SPECIALIST = "crisis_specialist"
    SPECIALIST_PREFERRED = "specialist_preferred"
    GENERAL = "general"


# =============================================================================
# Inputs
# =============================================================================

class PatientProfile(BaseModel):
    """Clinical context the intake collector knows about the patient."""
    patient_id: str | None = None
    age: int | None = Field(default=None, ge=0, le=130)
    conditions: list[str] = Field(default_factory=list)
    chronic_conditions: list[str] = Field(default_factory=list)
    medications: list[str] = Field(default_factory=list)
    missed_appointments: int = Field(default=0, ge=0)


class RiskOverride(BaseModel):
    """Clinician input for a re-assessment."""
    additional_factors: list[RiskFactorType] = Field(default_factory=list)
    clinician_adjustment: float = Field(default=0.0, ge=-10.0, le=10.0)
    resolve_urgent_flags: bool = False
    notes: str | None = None
    reviewed_by: str | None = None


# =============================================================================
# Assessment
# =============================================================================

class RiskFactor(BaseModel):
    """A single weighted contribution to the risk score."""
    model_config = ConfigDict(frozen=True)

    factor: RiskFactorType
    weight: float
    description: str
    source: FactorSource = FactorSource.INTAKE_FORM


class UrgentFlag(BaseModel):
    """A crisis-indicator hit."""
    model_config = ConfigDict(frozen=True)

    type: UrgentFlagType
    matched_terms: list[str] = Field(default_factory=list)


class Recommendation(BaseModel):
    """Care recommendation derived from the assessment."""
    model_config = ConfigDict(frozen=True)

    urgency: UrgencyTier
    provider_type: ProviderType
    follow_up_required: bool = False
    monitoring: list[str] = Field(default_factory=list)


class RiskAssessment(BaseModel):
    """
    Immutable risk snapshot.

    A clinician re-assessment never edits an existing record; it produces a
    new one whose supersedes_assessment_id points at its predecessor.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    score: float = Field(ge=0.0, le=10.0)
    category: RiskCategory
    risk_factors: list[RiskFactor] = Field(default_factory=list)
    urgent_flags: list[UrgentFlag] = Field(default_factory=list)
    recommendation: Recommendation

    # Stated conditions, used for provider specialization matching
    conditions: list[str] = Field(default_factory=list)

    # Lineage
    source_flow_id: str | None = None
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    supersedes_assessment_id: str | None = None
    notes: str | None = None

    @property
    def is_urgent(self) -> bool:
        return bool(self.urgent_flags)

    @property
    def matched_terms(self) -> list[str]:
        terms: list[str] = []
        for flag in self.urgent_flags:
            terms.extend(flag.matched_terms)
        return terms
