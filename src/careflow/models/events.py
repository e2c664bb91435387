"""
Flow Events

Inbound events drive the state machine; outbound events are published to
the notification/dashboard consumers.

Both sides are discriminated unions keyed on ``type`` so that an unknown
event shape fails validation instead of slipping past the transition table.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from careflow.models.provider import ProviderCandidate
from careflow.models.risk import PatientProfile, RiskAssessment, RiskOverride


class EventType(str, Enum):
    """Event types known to the transition table."""
    INTAKE_STARTED = "intake_started"
    INTAKE_SUBMITTED = "intake_submitted"
    RISK_REVIEWED = "risk_reviewed"
    PROVIDER_ASSIGNED = "provider_assigned"
    CONSULTATION_SCHEDULED = "consultation_scheduled"
    CONSULTATION_COMPLETED = "consultation_completed"
    ORDER_CREATED = "order_created"
    ORDER_FULFILLED = "order_fulfilled"
    FLOW_CLOSED = "flow_closed"
    ABANDONED = "abandoned"

    # Internal steps chained by the machine itself
    RISK_SCORED = "risk_scored"
    URGENT_FLAG_RAISED = "urgent_flag_raised"


# =============================================================================
# Inbound Events
# =============================================================================

class _InboundEvent(BaseModel):
    triggered_by: str = "system"

    @property
    def event_type(self) -> EventType:
        return EventType(self.type)


class IntakeStarted(_InboundEvent):
    type: Literal["intake_started"] = "intake_started"


class IntakeSubmitted(_InboundEvent):
    type: Literal["intake_submitted"] = "intake_submitted"
    # Untyped: malformed answer blobs are screened by the scorer
    answers: Any = Field(default_factory=dict)
    profile: PatientProfile = Field(default_factory=PatientProfile)
    form_submission_ref: str | None = None


class RiskReviewed(_InboundEvent):
    type: Literal["risk_reviewed"] = "risk_reviewed"
    override: RiskOverride | None = None


class ProviderAssigned(_InboundEvent):
    type: Literal["provider_assigned"] = "provider_assigned"
    # Set by a clinician to force an assignment without scoring
    provider_id: str | None = None


class ConsultationScheduled(_InboundEvent):
    type: Literal["consultation_scheduled"] = "consultation_scheduled"
    consultation_ref: str
    scheduled_for: datetime | None = None


class ConsultationCompleted(_InboundEvent):
    type: Literal["consultation_completed"] = "consultation_completed"
    notes: str | None = None


class OrderCreated(_InboundEvent):
    type: Literal["order_created"] = "order_created"
    order_ref: str
    invoice_ref: str | None = None


class OrderFulfilled(_InboundEvent):
    type: Literal["order_fulfilled"] = "order_fulfilled"
    subscription_ref: str | None = None


class FlowClosed(_InboundEvent):
    type: Literal["flow_closed"] = "flow_closed"


class Abandoned(_InboundEvent):
    type: Literal["abandoned"] = "abandoned"
    reason: str


FlowEvent = Annotated[
    Union[
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
    ],
    Field(discriminator="type"),
]

flow_event_adapter = TypeAdapter(FlowEvent)


def parse_flow_event(data: dict) -> FlowEvent:
    """Validate a raw event payload into its typed variant."""
    return flow_event_adapter.validate_python(data)


# =============================================================================
# Outbound Events
# =============================================================================

class _OutboundEvent(BaseModel):
    flow_id: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class UrgentCaseRaised(_OutboundEvent):
    type: Literal["urgent_case_raised"] = "urgent_case_raised"
    assessment: RiskAssessment


class ProviderAssignmentRecommended(_OutboundEvent):
    type: Literal["provider_assignment_recommended"] = "provider_assignment_recommended"
    assessment_id: str | None = None
    candidates: list[ProviderCandidate] = Field(default_factory=list)


class FlowCompleted(_OutboundEvent):
    type: Literal["flow_completed"] = "flow_completed"


OutboundEvent = Annotated[
    Union[UrgentCaseRaised, ProviderAssignmentRecommended, FlowCompleted],
    Field(discriminator="type"),
]
