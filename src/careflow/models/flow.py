"""
Flow Model

One patient's journey instance through the intake-to-consultation pipeline.
Status is mutated only by the FlowStateMachine.
"""

from datetime import datetime, timezone
from enum import Enum
import uuid

from pydantic import BaseModel, Field

from careflow.models.risk import RiskAssessment


class FlowStatus(str, Enum):
    """Journey stages."""
    CATEGORY_SELECTED = "category_selected"
    INTAKE_IN_PROGRESS = "intake_in_progress"
    INTAKE_COMPLETED = "intake_completed"
    RISK_EVALUATED = "risk_evaluated"
    URGENT_ESCALATED = "urgent_escalated"
    PROVIDER_ASSIGNED = "provider_assigned"
    CONSULTATION_SCHEDULED = "consultation_scheduled"
    CONSULTATION_COMPLETED = "consultation_completed"
    FULFILLED = "fulfilled"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({FlowStatus.COMPLETED, FlowStatus.ABANDONED})

# Back-references populated as the journey progresses; each set at most once
REFERENCE_FIELDS = (
    "form_submission_ref",
    "order_ref",
    "consultation_ref",
    "invoice_ref",
    "subscription_ref",
    "assigned_provider_id",
)


class Flow(BaseModel):
    """A patient journey."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: str
    category_id: str

    status: FlowStatus = FlowStatus.CATEGORY_SELECTED

    # Write-once back-references
    form_submission_ref: str | None = None
    order_ref: str | None = None
    consultation_ref: str | None = None
    invoice_ref: str | None = None
    subscription_ref: str | None = None
    assigned_provider_id: str | None = None

    # Current assessment (history lives in the repository)
    risk_assessment: RiskAssessment | None = None

    # Timing
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    # Optimistic concurrency
    version: int = Field(default=1, ge=1)

    abandon_reason: str | None = None
    metadata: dict = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    @property
    def risk_assessment_id(self) -> str | None:
        return self.risk_assessment.id if self.risk_assessment else None
