"""
Careflow Domain Models

Pydantic models for flows, risk assessments, providers, transitions and events.
"""

from careflow.models.risk import (
    RiskCategory,
    RiskFactorType,
    FactorSource,
    UrgentFlagType,
    UrgencyTier,
    ProviderType,
    PatientProfile,
    RiskOverride,
    RiskFactor,
    UrgentFlag,
    Recommendation,
    RiskAssessment,
)
from careflow.models.provider import ProviderProfile, ProviderCandidate
from careflow.models.flow import Flow, FlowStatus, TERMINAL_STATUSES, REFERENCE_FIELDS
from careflow.models.transitions import TransitionRecord
from careflow.models.events import (
    EventType,
    FlowEvent,
    IntakeStarted,
    IntakeSubmitted,
    RiskReviewed,
    ProviderAssigned,
    ConsultationScheduled,
    ConsultationCompleted,
    OrderCreated,
    OrderFulfilled,
    FlowClosed,
    Abandoned,
    OutboundEvent,
    UrgentCaseRaised,
    ProviderAssignmentRecommended,
    FlowCompleted,
    parse_flow_event,
)

__all__ = [
    # Risk
    "RiskCategory",
    "RiskFactorType",
    "FactorSource",
    "UrgentFlagType",
    "UrgencyTier",
    "ProviderType",
    "PatientProfile",
    "RiskOverride",
    "RiskFactor",
    "UrgentFlag",
    "Recommendation",
    "RiskAssessment",
    # Providers
    "ProviderProfile",
    "ProviderCandidate",
    # Flow
    "Flow",
    "FlowStatus",
    "TERMINAL_STATUSES",
    "REFERENCE_FIELDS",
    "TransitionRecord",
    # Events
    "EventType",
    "FlowEvent",
    "IntakeStarted",
    "IntakeSubmitted",
    "RiskReviewed",
    "ProviderAssigned",
    "ConsultationScheduled",
    "ConsultationCompleted",
    "OrderCreated",
    "OrderFulfilled",
    "FlowClosed",
    "Abandoned",
    "OutboundEvent",
    "UrgentCaseRaised",
    "ProviderAssignmentRecommended",
    "FlowCompleted",
    "parse_flow_event",
]
