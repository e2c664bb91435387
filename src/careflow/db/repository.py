"""Flow Repository - persistence boundary for flows, assessments and the transition log"""
from abc import ABC, abstractmethod

import structlog

from careflow.exceptions import ConcurrentModification, FlowNotFound
from careflow.models.flow import Flow
from careflow.models.risk import RiskAssessment
from careflow.models.transitions import TransitionRecord

logger = structlog.get_logger(__name__)


class FlowRepository(ABC):
    """
    Abstract storage for the orchestration core.

    Implementations raise PersistenceError for infrastructure failures,
    ConcurrentModification for stale versions and ActiveFlowExists when a
    second active flow is created for the same patient and category.
    The transition log and assessment history are append-only.

    Stores that write a whole transition in one transaction set ``atomic``;
    otherwise callers must reconcile the log before the next write.
    """

    atomic: bool = False

    @abstractmethod
    async def create_flow(self, flow: Flow, record: TransitionRecord) -> Flow:
        """Store a new flow together with its creation record."""
        pass

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Flow | None:
        """Get flow by ID."""
        pass

    @abstractmethod
    async def find_active_flow(self, patient_id: str, category_id: str) -> Flow | None:
        """Get the non-terminal flow for a patient and category, if any."""
        pass

    @abstractmethod
    async def get_transitions(self, flow_id: str) -> list[TransitionRecord]:
        """Transition log for a flow, oldest first."""
        pass

    @abstractmethod
    async def get_assessments(self, flow_id: str) -> list[RiskAssessment]:
        """Every assessment recorded for a flow, oldest first."""
        pass

    @abstractmethod
    async def get_assessment(self, assessment_id: str) -> RiskAssessment | None:
        """Get a single assessment by ID."""
        pass

    @abstractmethod
    async def append_transition(self, record: TransitionRecord) -> None:
        """Append one record to the transition log."""
        pass

    @abstractmethod
    async def save_assessment(self, assessment: RiskAssessment) -> None:
        """Append an assessment to the history."""
        pass

    @abstractmethod
    async def update_flow(self, flow: Flow, expected_version: int) -> None:
        """Replace the stored flow if its version still equals expected_version."""
        pass

    async def commit_transition(
        self,
        flow: Flow,
        records: list[TransitionRecord],
        expected_version: int,
        assessment: RiskAssessment | None = None,
    ) -> None:
        """
        Persist one logical transition.

        Stores that can write all of it atomically override this. The
        default writes assessment, then log records, then the flow, so a
        missing log record always means the transition did not happen.
        """
        current = await self.get_flow(flow.id)
        if current is None:
            raise FlowNotFound(flow.id)
        if current.version != expected_version:
            raise ConcurrentModification(flow.id, expected_version, current.version)

        if assessment is not None:
            await self.save_assessment(assessment)
        for record in records:
            await self.append_transition(record)
        await self.update_flow(flow, expected_version)

    async def exists(self, flow_id: str) -> bool:
        """Check if flow exists."""
        return await self.get_flow(flow_id) is not None
