"""Append-only transition records."""
from datetime import datetime, timezone
import uuid

from pydantic import BaseModel, ConfigDict, Field

from careflow.models.flow import FlowStatus


class TransitionRecord(BaseModel):
    """
    One logged status change.

    flow_version is the flow version the change was committed as; the
    creation record has from_status None and flow_version 1.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    flow_id: str
    from_status: FlowStatus | None
    to_status: FlowStatus
    reason: str
    triggered_by: str = "system"
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    flow_version: int = Field(ge=1)

    # Opaque event data, e.g. the assessment id attached at this step
    payload: dict = Field(default_factory=dict)
