"""
Careflow Flow Orchestration

Table-driven state machine over patient journeys.
"""

from careflow.flow.machine import FlowStateMachine, TransitionResult, EventListener
from careflow.flow.transitions import TRANSITIONS, next_status, allowed_events

__all__ = [
    "FlowStateMachine",
    "TransitionResult",
    "EventListener",
    "TRANSITIONS",
    "next_status",
    "allowed_events",
]
