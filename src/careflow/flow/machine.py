"""
Flow State Machine

Owns the status of every patient journey.

Features:
- Table-driven transitions (see careflow.flow.transitions)
- Risk scoring chained onto intake submission
- Urgent short-circuit to urgent_escalated
- Ranked provider recommendation and assignment
- Optimistic versioning with one atomic commit per event
- Append-only transition log with roll-forward recovery
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
import uuid

import structlog

from careflow.db.repository import FlowRepository
from careflow.exceptions import (
    ActiveFlowExists,
    CareflowError,
    ConcurrentModification,
    FlowNotFound,
    InvalidTransition,
    NoEligibleProvider,
)
from careflow.flow.transitions import next_status
from careflow.models.events import (
    Abandoned,
    ConsultationCompleted,
    ConsultationScheduled,
    EventType,
    FlowClosed,
    FlowCompleted,
    FlowEvent,
    IntakeStarted,
    IntakeSubmitted,
    OrderCreated,
    OrderFulfilled,
    OutboundEvent,
    ProviderAssigned,
    ProviderAssignmentRecommended,
    RiskReviewed,
    UrgentCaseRaised,
    parse_flow_event,
)
from careflow.models.flow import Flow, FlowStatus, REFERENCE_FIELDS
from careflow.models.provider import ProviderCandidate
from careflow.models.risk import RiskAssessment, RiskCategory
from careflow.models.transitions import TransitionRecord
from careflow.risk.scorer import RiskScorer
from careflow.routing.directory import ProviderDirectory
from careflow.routing.matcher import MatchWeights, ProviderMatcher

logger = structlog.get_logger(__name__)


EventListener = Callable[[OutboundEvent], None]

CONSULTATION_STAGES = frozenset({
    FlowStatus.CONSULTATION_SCHEDULED,
    FlowStatus.CONSULTATION_COMPLETED,
})


# =============================================================================
# Results
# =============================================================================

@dataclass
class TransitionResult:
    """Outcome of a committed event."""
    flow: Flow
    records: list[TransitionRecord] = field(default_factory=list)
    events: list[OutboundEvent] = field(default_factory=list)
    assessment: RiskAssessment | None = None
    candidates: list[ProviderCandidate] = field(default_factory=list)

    @property
    def urgent(self) -> bool:
        return any(isinstance(e, UrgentCaseRaised) for e in self.events)


@dataclass
class _Step:
    from_status: FlowStatus
    to_status: FlowStatus
    reason: str
    payload: dict = field(default_factory=dict)


@dataclass
class _Plan:
    """Working copy of a flow while an event is being applied."""
    flow: Flow
    origin: FlowStatus
    event_type: EventType
    triggered_by: str
    now: datetime
    steps: list[_Step] = field(default_factory=list)
    events: list[OutboundEvent] = field(default_factory=list)
    assessment: RiskAssessment | None = None
    candidates: list[ProviderCandidate] = field(default_factory=list)

    def step(self, to_status: FlowStatus, reason: str, payload: dict | None = None) -> _Step:
        step = _Step(self.flow.status, to_status, reason, payload or {})
        self.steps.append(step)
        self.flow.status = to_status
        return step

    def set_ref(self, name: str, value: str | None):
        if value is None:
            return
        current = getattr(self.flow, name)
        if current is not None and current != value:
            raise InvalidTransition(
                self.flow.id,
                self.origin,
                self.event_type,
                detail=f"{name} is already set",
            )
        setattr(self.flow, name, value)


# =============================================================================
# State Machine
# =============================================================================

class FlowStateMachine:
    """
    Applies events to flows.

    Usage:
        machine = FlowStateMachine(InMemoryFlowRepository(), directory=directory)
        flow = await machine.start_flow("patient-1", "anxiety")
        result = await machine.apply_event(flow.id, IntakeSubmitted(answers={...}))
        result.flow.status  # FlowStatus.RISK_EVALUATED or URGENT_ESCALATED

    Nothing is written unless the whole event succeeds, and the returned
    flow is only built after the repository commit returns.
    """

    def __init__(
        self,
        repository: FlowRepository,
        directory: ProviderDirectory | None = None,
        scorer: RiskScorer | None = None,
        matcher: ProviderMatcher | None = None,
        *,
        routing_categories: tuple[RiskCategory, ...] | list[RiskCategory] = (
            RiskCategory.MEDIUM,
            RiskCategory.HIGH,
        ),
        max_candidates: int = 10,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
        listeners: list[EventListener] | None = None,
    ):
        self.repository = repository
        self.directory = directory
        self.scorer = scorer or RiskScorer(clock=clock, id_factory=id_factory)
        self.matcher = matcher or ProviderMatcher()
        self.routing_categories = frozenset(routing_categories)
        self.max_candidates = max_candidates
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._listeners: list[EventListener] = list(listeners or [])

        self._handlers: dict[EventType, Callable[[_Plan, Any, FlowStatus], Awaitable[None]]] = {
            EventType.INTAKE_STARTED: self._on_intake_started,
            EventType.INTAKE_SUBMITTED: self._on_intake_submitted,
            EventType.RISK_REVIEWED: self._on_risk_reviewed,
            EventType.PROVIDER_ASSIGNED: self._on_provider_assigned,
            EventType.CONSULTATION_SCHEDULED: self._on_consultation_scheduled,
            EventType.CONSULTATION_COMPLETED: self._on_consultation_completed,
            EventType.ORDER_CREATED: self._on_order_created,
            EventType.ORDER_FULFILLED: self._on_order_fulfilled,
            EventType.FLOW_CLOSED: self._on_flow_closed,
            EventType.ABANDONED: self._on_abandoned,
        }

    @classmethod
    def from_settings(
        cls,
        settings,
        repository: FlowRepository,
        directory: ProviderDirectory | None = None,
        **kwargs,
    ) -> "FlowStateMachine":
        """Build a machine from the aggregated Settings."""
        clock = kwargs.get("clock")
        id_factory = kwargs.get("id_factory")
        scorer = RiskScorer.from_settings(settings.risk, clock=clock, id_factory=id_factory)
        matcher = ProviderMatcher(
            MatchWeights(high_rating_threshold=settings.routing.high_rating_threshold)
        )
        return cls(
            repository,
            directory,
            scorer,
            matcher,
            routing_categories=settings.routing.routing_categories,
            max_candidates=settings.routing.max_candidates,
            **kwargs,
        )

    def add_listener(self, listener: EventListener):
        """Register a callback for outbound events."""
        self._listeners.append(listener)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_flow(self, flow_id: str) -> Flow:
        flow = await self.repository.get_flow(flow_id)
        if flow is None:
            raise FlowNotFound(flow_id)
        return flow

    async def get_risk_history(self, flow_id: str) -> list[RiskAssessment]:
        """Every assessment for the flow, oldest first, superseded ones included."""
        await self.get_flow(flow_id)
        return await self.repository.get_assessments(flow_id)

    async def get_transitions(self, flow_id: str) -> list[TransitionRecord]:
        await self.get_flow(flow_id)
        return await self.repository.get_transitions(flow_id)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def start_flow(
        self,
        patient_id: str,
        category_id: str,
        metadata: dict | None = None,
        triggered_by: str = "patient",
    ) -> Flow:
        """
        Create a flow once the patient has picked a care category.

        Raises:
            ActiveFlowExists: The patient already has a live flow in this category
        """
        existing = await self.repository.find_active_flow(patient_id, category_id)
        if existing is not None:
            raise ActiveFlowExists(patient_id, category_id, existing.id)

        now = self._clock()
        flow = Flow(
            id=self._id_factory(),
            patient_id=patient_id,
            category_id=category_id,
            status=FlowStatus.CATEGORY_SELECTED,
            started_at=now,
            last_activity_at=now,
            version=1,
            metadata=metadata or {},
        )
        record = TransitionRecord(
            id=self._id_factory(),
            flow_id=flow.id,
            from_status=None,
            to_status=FlowStatus.CATEGORY_SELECTED,
            reason="flow_started",
            triggered_by=triggered_by,
            occurred_at=now,
            flow_version=1,
            payload={"category_id": category_id},
        )
        created = await self.repository.create_flow(flow, record)

        logger.info(
            "Flow started",
            flow_id=created.id,
            patient_id=patient_id,
            category_id=category_id,
        )
        return created

    async def apply_event(self, flow_id: str, event: FlowEvent | dict) -> TransitionResult:
        """
        Apply one inbound event.

        Args:
            flow_id: Target flow
            event: Typed event, or a raw dict carrying a ``type`` key

        Returns:
            TransitionResult with the committed flow, its new records and
            the outbound events that were published

        Raises:
            FlowNotFound, InvalidTransition, NoEligibleProvider,
            ConcurrentModification, PersistenceError
        """
        if isinstance(event, dict):
            event = parse_flow_event(event)

        current = await self.get_flow(flow_id)
        if not self.repository.atomic:
            current = await self._settle(current)
        event_type = event.event_type

        if current.status.is_terminal:
            raise InvalidTransition(
                flow_id, current.status, event_type, detail="flow is closed"
            )
        target = next_status(current.status, event_type)
        if target is None:
            logger.warning(
                "Rejected transition",
                flow_id=flow_id,
                status=current.status.value,
                event_type=event_type.value,
            )
            raise InvalidTransition(flow_id, current.status, event_type)

        plan = _Plan(
            flow=current.model_copy(deep=True),
            origin=current.status,
            event_type=event_type,
            triggered_by=event.triggered_by,
            now=self._clock(),
        )
        await self._handlers[event_type](plan, event, target)

        flow = plan.flow
        flow.version = current.version + 1
        flow.last_activity_at = plan.now
        records = [
            TransitionRecord(
                id=self._id_factory(),
                flow_id=flow.id,
                from_status=s.from_status,
                to_status=s.to_status,
                reason=s.reason,
                triggered_by=plan.triggered_by,
                occurred_at=plan.now,
                flow_version=flow.version,
                payload=s.payload,
            )
            for s in plan.steps
        ]

        try:
            await self.repository.commit_transition(
                flow, records, expected_version=current.version, assessment=plan.assessment
            )
        except CareflowError as e:
            logger.warning(
                "Transition not committed",
                flow_id=flow_id,
                event_type=event_type.value,
                error_code=e.code,
                error=str(e),
            )
            raise

        logger.info(
            "Flow transitioned",
            flow_id=flow.id,
            event_type=event_type.value,
            from_status=current.status.value,
            to_status=flow.status.value,
            version=flow.version,
            steps=len(records),
        )

        self._publish(plan.events)
        return TransitionResult(
            flow=flow,
            records=records,
            events=plan.events,
            assessment=plan.assessment,
            candidates=plan.candidates,
        )

    async def recover(self, flow_id: str) -> Flow:
        """
        Reconcile a flow with its transition log.

        A commit against a store without multi-record transactions can
        leave the log one version ahead of the flow. When the trailing
        records continue from the flow's current status they are replayed
        onto it; anything else is left alone and logged.
        """
        flow = await self.get_flow(flow_id)
        records = await self.repository.get_transitions(flow_id)
        pending = [r for r in records if r.flow_version == flow.version + 1]
        if not pending:
            logger.debug("Nothing to recover", flow_id=flow_id, version=flow.version)
            return flow

        expected_from = flow.status
        for record in pending:
            if record.from_status != expected_from:
                logger.warning(
                    "Transition log does not continue from flow status",
                    flow_id=flow_id,
                    status=flow.status.value,
                    record_id=record.id,
                )
                return flow
            expected_from = record.to_status

        rolled = flow.model_copy(deep=True)
        for record in pending:
            payload = record.payload
            assessment_id = payload.get("assessment_id")
            if assessment_id and assessment_id != rolled.risk_assessment_id:
                assessment = await self.repository.get_assessment(assessment_id)
                if assessment is not None:
                    rolled.risk_assessment = assessment
            for name in REFERENCE_FIELDS:
                if payload.get(name) and getattr(rolled, name) is None:
                    setattr(rolled, name, payload[name])
            if record.to_status == FlowStatus.ABANDONED:
                rolled.abandon_reason = payload.get("reason")
            if record.to_status.is_terminal:
                rolled.completed_at = record.occurred_at
            rolled.status = record.to_status
            rolled.last_activity_at = record.occurred_at

        rolled.version = flow.version + 1
        await self.repository.update_flow(rolled, expected_version=flow.version)

        logger.info(
            "Flow recovered from transition log",
            flow_id=flow_id,
            from_status=flow.status.value,
            to_status=rolled.status.value,
            version=rolled.version,
            replayed=len(pending),
        )
        return rolled

    async def _settle(self, flow: Flow) -> Flow:
        """Roll a flow forward over log records left by an interrupted commit."""
        records = await self.repository.get_transitions(flow.id)
        if not any(r.flow_version > flow.version for r in records):
            return flow

        logger.warning(
            "Transition log ahead of flow, recovering before apply",
            flow_id=flow.id,
            version=flow.version,
        )
        recovered = await self.recover(flow.id)
        if recovered.version == flow.version:
            raise ConcurrentModification(flow.id, flow.version, flow.version + 1)
        return recovered

    # -------------------------------------------------------------------------
    # Event Handlers
    # -------------------------------------------------------------------------

    async def _on_intake_started(self, plan: _Plan, event: IntakeStarted, target: FlowStatus):
        plan.step(target, "intake_started")

    async def _on_intake_submitted(self, plan: _Plan, event: IntakeSubmitted, target: FlowStatus):
        plan.set_ref("form_submission_ref", event.form_submission_ref)
        plan.step(target, "intake_submitted", {"form_submission_ref": event.form_submission_ref})

        assessment = self.scorer.assess(
            event.profile,
            event.answers,
            flow_id=plan.flow.id,
            computed_at=plan.now,
        )
        plan.flow.risk_assessment = assessment
        plan.assessment = assessment

        scored = next_status(plan.flow.status, EventType.RISK_SCORED)
        plan.step(scored, "risk_scored", self._assessment_payload(assessment))
        await self._after_evaluation(plan)

    async def _on_risk_reviewed(self, plan: _Plan, event: RiskReviewed, target: FlowStatus):
        prior = plan.flow.risk_assessment
        if prior is None:
            raise InvalidTransition(
                plan.flow.id, plan.origin, plan.event_type, detail="flow has no risk assessment"
            )

        if event.override is not None:
            assessment = self.scorer.reassess(prior, event.override, computed_at=plan.now)
            plan.flow.risk_assessment = assessment
            plan.assessment = assessment
            reason = "risk_reassessed"
        else:
            assessment = prior
            reason = "risk_confirmed"

        payload = self._assessment_payload(assessment)
        if assessment is not prior:
            payload["supersedes_assessment_id"] = prior.id

        if target in CONSULTATION_STAGES:
            # Already with a provider: keep the status but still alert
            if assessment is not prior and assessment.is_urgent:
                reason = "urgent_during_consultation"
                plan.events.append(self._urgent_event(plan, assessment))
            plan.step(target, reason, payload)
            return

        plan.step(target, reason, payload)
        await self._after_evaluation(plan)

    async def _on_provider_assigned(self, plan: _Plan, event: ProviderAssigned, target: FlowStatus):
        if event.provider_id:
            plan.set_ref("assigned_provider_id", event.provider_id)
            plan.step(target, "manual_override", {"assigned_provider_id": event.provider_id})
            return

        assessment = plan.flow.risk_assessment
        if assessment is None:
            raise InvalidTransition(
                plan.flow.id, plan.origin, plan.event_type, detail="flow has no risk assessment"
            )
        candidates = await self._rank(plan, assessment)
        if not candidates:
            raise NoEligibleProvider(plan.flow.id, plan.flow.category_id)

        top = candidates[0]
        plan.candidates = candidates
        plan.set_ref("assigned_provider_id", top.provider_id)
        plan.step(target, "matched", {
            "assigned_provider_id": top.provider_id,
            "match_score": top.match_score,
            "reasons": list(top.reasons),
            "candidates": [c.model_dump() for c in candidates],
        })

    async def _on_consultation_scheduled(self, plan: _Plan, event: ConsultationScheduled, target: FlowStatus):
        plan.set_ref("consultation_ref", event.consultation_ref)
        plan.step(target, "consultation_scheduled", {
            "consultation_ref": event.consultation_ref,
            "scheduled_for": event.scheduled_for.isoformat() if event.scheduled_for else None,
        })

    async def _on_consultation_completed(self, plan: _Plan, event: ConsultationCompleted, target: FlowStatus):
        plan.step(target, "consultation_completed")

    async def _on_order_created(self, plan: _Plan, event: OrderCreated, target: FlowStatus):
        plan.set_ref("order_ref", event.order_ref)
        plan.set_ref("invoice_ref", event.invoice_ref)
        plan.step(target, "order_created", {
            "order_ref": event.order_ref,
            "invoice_ref": event.invoice_ref,
        })

    async def _on_order_fulfilled(self, plan: _Plan, event: OrderFulfilled, target: FlowStatus):
        plan.set_ref("subscription_ref", event.subscription_ref)
        plan.step(target, "order_fulfilled", {"subscription_ref": event.subscription_ref})

    async def _on_flow_closed(self, plan: _Plan, event: FlowClosed, target: FlowStatus):
        plan.flow.completed_at = plan.now
        plan.step(target, "flow_closed")
        plan.events.append(FlowCompleted(flow_id=plan.flow.id, occurred_at=plan.now))

    async def _on_abandoned(self, plan: _Plan, event: Abandoned, target: FlowStatus):
        plan.flow.completed_at = plan.now
        plan.flow.abandon_reason = event.reason
        plan.step(target, "abandoned", {"reason": event.reason})

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _after_evaluation(self, plan: _Plan):
        """Urgent short-circuit and routing, run whenever a flow lands in risk_evaluated."""
        assessment = plan.flow.risk_assessment
        last = plan.steps[-1]

        if assessment.is_urgent:
            escalated = next_status(plan.flow.status, EventType.URGENT_FLAG_RAISED)
            last = plan.step(escalated, "urgent_flag_raised", {
                "assessment_id": assessment.id,
                "matched_terms": assessment.matched_terms,
            })
            plan.events.append(self._urgent_event(plan, assessment))
            logger.warning(
                "Urgent case escalated",
                flow_id=plan.flow.id,
                assessment_id=assessment.id,
            )

        if not (assessment.is_urgent or assessment.category in self.routing_categories):
            return

        candidates = await self._rank(plan, assessment)
        if not candidates:
            logger.info(
                "No routing candidates",
                flow_id=plan.flow.id,
                category_id=plan.flow.category_id,
            )
            return

        plan.candidates = candidates
        last.payload["candidates"] = [c.model_dump() for c in candidates]
        plan.events.append(ProviderAssignmentRecommended(
            flow_id=plan.flow.id,
            assessment_id=assessment.id,
            candidates=candidates,
            occurred_at=plan.now,
        ))

    async def _rank(self, plan: _Plan, assessment: RiskAssessment) -> list[ProviderCandidate]:
        if self.directory is None:
            return []
        providers = await self.directory.list_candidates(plan.flow.category_id, assessment)
        ranked = self.matcher.rank(assessment, providers, as_of=plan.now)
        return ranked[:self.max_candidates]

    @staticmethod
    def _assessment_payload(assessment: RiskAssessment) -> dict:
        return {
            "assessment_id": assessment.id,
            "score": assessment.score,
            "category": assessment.category.value,
            "urgency": assessment.recommendation.urgency.value,
        }

    @staticmethod
    def _urgent_event(plan: _Plan, assessment: RiskAssessment) -> UrgentCaseRaised:
        return UrgentCaseRaised(
            flow_id=plan.flow.id,
            assessment=assessment,
            occurred_at=plan.now,
        )

    def _publish(self, events: list[OutboundEvent]):
        for event in events:
            for listener in self._listeners:
                try:
                    listener(event)
                except Exception as e:
                    logger.error(
                        "Event listener failed",
                        flow_id=event.flow_id,
                        event_type=event.type,
                        error=str(e),
                    )
