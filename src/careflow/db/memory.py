"""
In-Memory Flow Repository

Process-local storage for development and tests. Reads hand out copies,
so callers never share mutable state with the store.
"""

import asyncio

import structlog

from careflow.db.repository import FlowRepository
from careflow.exceptions import ActiveFlowExists, ConcurrentModification, FlowNotFound
from careflow.models.flow import Flow
from careflow.models.risk import RiskAssessment
from careflow.models.transitions import TransitionRecord

logger = structlog.get_logger(__name__)


class InMemoryFlowRepository(FlowRepository):
    """
    Dict-backed repository.

    Args:
        atomic: When True (default) commit_transition writes everything
            under one lock. When False the base-class write ordering is
            used, which mimics a store without multi-record transactions.
    """

    def __init__(self, atomic: bool = True):
        self.atomic = atomic
        self._flows: dict[str, Flow] = {}
        self._transitions: dict[str, list[TransitionRecord]] = {}
        self._assessments: dict[str, RiskAssessment] = {}
        self._assessments_by_flow: dict[str, list[str]] = {}
        self._lock = asyncio.Lock()

    async def create_flow(self, flow: Flow, record: TransitionRecord) -> Flow:
        async with self._lock:
            active = self._find_active(flow.patient_id, flow.category_id)
            if active is not None:
                raise ActiveFlowExists(flow.patient_id, flow.category_id, active.id)
            self._flows[flow.id] = flow.model_copy(deep=True)
            self._transitions.setdefault(flow.id, []).append(record)
        return flow.model_copy(deep=True)

    async def get_flow(self, flow_id: str) -> Flow | None:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def find_active_flow(self, patient_id: str, category_id: str) -> Flow | None:
        flow = self._find_active(patient_id, category_id)
        return flow.model_copy(deep=True) if flow else None

    async def get_transitions(self, flow_id: str) -> list[TransitionRecord]:
        return list(self._transitions.get(flow_id, []))

    async def get_assessments(self, flow_id: str) -> list[RiskAssessment]:
        ids = self._assessments_by_flow.get(flow_id, [])
        return [self._assessments[assessment_id] for assessment_id in ids]

    async def get_assessment(self, assessment_id: str) -> RiskAssessment | None:
        return self._assessments.get(assessment_id)

    async def append_transition(self, record: TransitionRecord) -> None:
        self._transitions.setdefault(record.flow_id, []).append(record)

    async def save_assessment(self, assessment: RiskAssessment) -> None:
        if assessment.id in self._assessments:
            return
        self._assessments[assessment.id] = assessment
        if assessment.source_flow_id:
            self._assessments_by_flow.setdefault(assessment.source_flow_id, []).append(assessment.id)

    async def update_flow(self, flow: Flow, expected_version: int) -> None:
        current = self._flows.get(flow.id)
        if current is None:
            raise FlowNotFound(flow.id)
        if current.version != expected_version:
            raise ConcurrentModification(flow.id, expected_version, current.version)
        self._flows[flow.id] = flow.model_copy(deep=True)

    async def commit_transition(
        self,
        flow: Flow,
        records: list[TransitionRecord],
        expected_version: int,
        assessment: RiskAssessment | None = None,
    ) -> None:
        if not self.atomic:
            await super().commit_transition(flow, records, expected_version, assessment)
            return

        async with self._lock:
            current = self._flows.get(flow.id)
            if current is None:
                raise FlowNotFound(flow.id)
            if current.version != expected_version:
                raise ConcurrentModification(flow.id, expected_version, current.version)

            if assessment is not None:
                await self.save_assessment(assessment)
            self._transitions.setdefault(flow.id, []).extend(records)
            self._flows[flow.id] = flow.model_copy(deep=True)

    def _find_active(self, patient_id: str, category_id: str) -> Flow | None:
        for flow in self._flows.values():
            if flow.patient_id == patient_id and flow.category_id == category_id and flow.is_active:
                return flow
        return None
