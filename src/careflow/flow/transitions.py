"""
Flow Transition Table

Fixed map of (current status, event type) -> next status. Any pair not in
the table is illegal.
"""

from careflow.models.events import EventType
from careflow.models.flow import FlowStatus, TERMINAL_STATUSES


_S = FlowStatus
_E = EventType

TRANSITIONS: dict[tuple[FlowStatus, EventType], FlowStatus] = {
    # Intake
    (_S.CATEGORY_SELECTED, _E.INTAKE_STARTED): _S.INTAKE_IN_PROGRESS,
    (_S.CATEGORY_SELECTED, _E.INTAKE_SUBMITTED): _S.INTAKE_COMPLETED,
    (_S.INTAKE_IN_PROGRESS, _E.INTAKE_SUBMITTED): _S.INTAKE_COMPLETED,

    # Risk evaluation (internal steps chained by the machine)
    (_S.INTAKE_COMPLETED, _E.RISK_SCORED): _S.RISK_EVALUATED,
    (_S.RISK_EVALUATED, _E.URGENT_FLAG_RAISED): _S.URGENT_ESCALATED,

    # Clinician review
    (_S.RISK_EVALUATED, _E.RISK_REVIEWED): _S.RISK_EVALUATED,
    (_S.URGENT_ESCALATED, _E.RISK_REVIEWED): _S.RISK_EVALUATED,
    (_S.CONSULTATION_SCHEDULED, _E.RISK_REVIEWED): _S.CONSULTATION_SCHEDULED,
    (_S.CONSULTATION_COMPLETED, _E.RISK_REVIEWED): _S.CONSULTATION_COMPLETED,

    # Routing
    (_S.RISK_EVALUATED, _E.PROVIDER_ASSIGNED): _S.PROVIDER_ASSIGNED,
    (_S.URGENT_ESCALATED, _E.PROVIDER_ASSIGNED): _S.PROVIDER_ASSIGNED,

    # Consultation
    (_S.PROVIDER_ASSIGNED, _E.CONSULTATION_SCHEDULED): _S.CONSULTATION_SCHEDULED,
    (_S.CONSULTATION_SCHEDULED, _E.CONSULTATION_COMPLETED): _S.CONSULTATION_COMPLETED,

    # Fulfillment
    (_S.CONSULTATION_COMPLETED, _E.ORDER_CREATED): _S.CONSULTATION_COMPLETED,
    (_S.CONSULTATION_COMPLETED, _E.ORDER_FULFILLED): _S.FULFILLED,
    (_S.FULFILLED, _E.FLOW_CLOSED): _S.COMPLETED,
}

# Abandonment is reachable from every non-terminal status
TRANSITIONS.update({
    (status, _E.ABANDONED): _S.ABANDONED
    for status in FlowStatus
    if status not in TERMINAL_STATUSES
})

INTERNAL_EVENTS = frozenset({_E.RISK_SCORED, _E.URGENT_FLAG_RAISED})


def next_status(status: FlowStatus, event_type: EventType) -> FlowStatus | None:
    """Target status for an event, or None if the pair is illegal."""
    return TRANSITIONS.get((status, event_type))


def allowed_events(status: FlowStatus) -> list[EventType]:
    """Caller-facing events accepted in a status."""
    return [
        event_type
        for (from_status, event_type) in TRANSITIONS
        if from_status == status and event_type not in INTERNAL_EVENTS
    ]
