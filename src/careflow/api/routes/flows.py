"""
Flow Routes

Endpoints for starting patient journeys and driving them with events.
"""

from typing import Any

from fastapi import APIRouter, Body, Request, status
from pydantic import BaseModel, Field

from careflow.flow.machine import FlowStateMachine, TransitionResult

router = APIRouter(prefix="/flows", tags=["Flows"])


# =============================================================================
# Request/Response Models
# =============================================================================

class StartFlowRequest(BaseModel):
    """Request to start a flow after category selection."""
    patient_id: str = Field(..., min_length=1)
    category_id: str = Field(..., min_length=1)
    metadata: dict = Field(default_factory=dict)
    triggered_by: str = "patient"


class TransitionResponse(BaseModel):
    """Committed transition."""
    flow: dict
    records: list[dict]
    events: list[dict]
    candidates: list[dict] = Field(default_factory=list)


def _machine(request: Request) -> FlowStateMachine:
    return request.app.state.machine


def _to_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        flow=result.flow.model_dump(mode="json"),
        records=[r.model_dump(mode="json") for r in result.records],
        events=[e.model_dump(mode="json") for e in result.events],
        candidates=[c.model_dump(mode="json") for c in result.candidates],
    )


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def start_flow(body: StartFlowRequest, request: Request):
    """Start a flow. 409 if the patient already has one open in this category."""
    flow = await _machine(request).start_flow(
        body.patient_id,
        body.category_id,
        metadata=body.metadata,
        triggered_by=body.triggered_by,
    )
    return flow.model_dump(mode="json")


@router.get("/{flow_id}")
async def get_flow(flow_id: str, request: Request):
    flow = await _machine(request).get_flow(flow_id)
    return flow.model_dump(mode="json")


@router.post("/{flow_id}/events", response_model=TransitionResponse)
async def apply_event(
    flow_id: str,
    request: Request,
    event: dict[str, Any] = Body(..., description="Event payload with a 'type' discriminator"),
):
    """
    Apply an inbound event.

    The body is validated against the event union; an unknown ``type``
    is rejected with 422 before the flow is loaded.
    """
    result = await _machine(request).apply_event(flow_id, event)
    return _to_response(result)


@router.get("/{flow_id}/risk-history")
async def get_risk_history(flow_id: str, request: Request):
    """Assessments oldest first, superseded ones included."""
    history = await _machine(request).get_risk_history(flow_id)
    return {
        "flow_id": flow_id,
        "assessments": [a.model_dump(mode="json") for a in history],
    }


@router.get("/{flow_id}/transitions")
async def get_transitions(flow_id: str, request: Request):
    records = await _machine(request).get_transitions(flow_id)
    return {
        "flow_id": flow_id,
        "transitions": [r.model_dump(mode="json") for r in records],
    }


@router.post("/{flow_id}/recover")
async def recover_flow(flow_id: str, request: Request):
    """Roll a flow forward to its transition log after an interrupted commit."""
    flow = await _machine(request).recover(flow_id)
    return flow.model_dump(mode="json")
