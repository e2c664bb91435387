"""
Tests for the Flow State Machine

End-to-end journeys over the in-memory repository plus the failure
paths: illegal events, stale versions, interrupted commits.
"""

import asyncio

import pytest

from careflow.db.memory import InMemoryFlowRepository
from careflow.exceptions import (
    ActiveFlowExists,
    ConcurrentModification,
    FlowNotFound,
    InvalidTransition,
    NoEligibleProvider,
    PersistenceError,
)
from careflow.flow.machine import FlowStateMachine
from careflow.models.events import (
    Abandoned,
    ConsultationCompleted,
    ConsultationScheduled,
    FlowClosed,
    FlowCompleted,
    IntakeStarted,
    IntakeSubmitted,
    OrderCreated,
    OrderFulfilled,
    ProviderAssigned,
    ProviderAssignmentRecommended,
    RiskReviewed,
    UrgentCaseRaised,
)
from careflow.models.flow import FlowStatus
from careflow.models.risk import PatientProfile, RiskCategory, RiskFactorType, RiskOverride, UrgencyTier
from careflow.routing.directory import InMemoryProviderDirectory

from conftest import (
    LOW_RISK_ANSWERS,
    MEDIUM_RISK_ANSWERS,
    NOW,
    URGENT_ANSWERS,
    fixed_clock,
    sequential_ids,
)


async def submit(machine, flow_id, answers, **kwargs):
    return await machine.apply_event(flow_id, IntakeSubmitted(answers=answers, **kwargs))


async def assigned_flow(machine, answers=LOW_RISK_ANSWERS):
    flow = await machine.start_flow("patient-1", "sleep")
    await submit(machine, flow.id, answers)
    await machine.apply_event(flow.id, ProviderAssigned())
    return flow.id


# =============================================================================
# Flow Creation
# =============================================================================

class TestStartFlow:

    @pytest.mark.asyncio
    async def test_creates_flow_with_creation_record(self, machine):
        flow = await machine.start_flow("patient-1", "anxiety", metadata={"channel": "web"})

        assert flow.status == FlowStatus.CATEGORY_SELECTED
        assert flow.version == 1
        assert flow.started_at == NOW
        assert flow.metadata == {"channel": "web"}

        records = await machine.get_transitions(flow.id)
        assert len(records) == 1
        assert records[0].from_status is None
        assert records[0].to_status == FlowStatus.CATEGORY_SELECTED
        assert records[0].flow_version == 1

    @pytest.mark.asyncio
    async def test_one_active_flow_per_category(self, machine):
        first = await machine.start_flow("patient-1", "anxiety")

        with pytest.raises(ActiveFlowExists) as exc_info:
            await machine.start_flow("patient-1", "anxiety")

        assert exc_info.value.flow_id == first.id
        # A different category is fine
        await machine.start_flow("patient-1", "sleep")

    @pytest.mark.asyncio
    async def test_new_flow_allowed_after_abandonment(self, machine):
        first = await machine.start_flow("patient-1", "anxiety")
        await machine.apply_event(first.id, Abandoned(reason="patient_left"))

        second = await machine.start_flow("patient-1", "anxiety")

        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_unknown_flow(self, machine):
        with pytest.raises(FlowNotFound):
            await machine.get_flow("missing")
        with pytest.raises(FlowNotFound):
            await machine.apply_event("missing", IntakeStarted())


# =============================================================================
# Journeys
# =============================================================================

class TestLowRiskJourney:
    """Routine intake through to completion."""

    @pytest.mark.asyncio
    async def test_full_journey(self, machine):
        flow = await machine.start_flow("patient-1", "sleep")

        result = await machine.apply_event(flow.id, IntakeStarted(triggered_by="patient-1"))
        assert result.flow.status == FlowStatus.INTAKE_IN_PROGRESS

        result = await submit(machine, flow.id, LOW_RISK_ANSWERS, form_submission_ref="form-1")
        assert result.flow.status == FlowStatus.RISK_EVALUATED
        assert result.flow.risk_assessment.category == RiskCategory.LOW
        assert result.flow.form_submission_ref == "form-1"
        # Low risk is not routed automatically
        assert result.events == []

        result = await machine.apply_event(flow.id, ProviderAssigned())
        assert result.flow.status == FlowStatus.PROVIDER_ASSIGNED
        assert result.flow.assigned_provider_id == "prov-general"
        assert result.records[0].reason == "matched"

        await machine.apply_event(flow.id, ConsultationScheduled(consultation_ref="consult-1", scheduled_for=NOW))
        await machine.apply_event(flow.id, ConsultationCompleted(notes="Sleep hygiene plan"))
        await machine.apply_event(flow.id, OrderCreated(order_ref="order-1", invoice_ref="inv-1"))
        result = await machine.apply_event(flow.id, OrderFulfilled(subscription_ref="sub-1"))
        assert result.flow.status == FlowStatus.FULFILLED

        result = await machine.apply_event(flow.id, FlowClosed())
        assert result.flow.status == FlowStatus.COMPLETED
        assert result.flow.completed_at == NOW
        assert [type(e) for e in result.events] == [FlowCompleted]

        stored = await machine.get_flow(flow.id)
        assert stored.consultation_ref == "consult-1"
        assert stored.order_ref == "order-1"
        assert stored.invoice_ref == "inv-1"
        assert stored.subscription_ref == "sub-1"
        assert stored.version == 9

    @pytest.mark.asyncio
    async def test_version_and_log_grow_together(self, machine):
        flow = await machine.start_flow("patient-1", "sleep")
        await submit(machine, flow.id, LOW_RISK_ANSWERS)

        stored = await machine.get_flow(flow.id)
        records = await machine.get_transitions(flow.id)

        assert stored.version == 2
        assert [r.to_status for r in records] == [
            FlowStatus.CATEGORY_SELECTED,
            FlowStatus.INTAKE_COMPLETED,
            FlowStatus.RISK_EVALUATED,
        ]
        assert [r.flow_version for r in records] == [1, 2, 2]
        assert records[2].payload["assessment_id"] == stored.risk_assessment_id

    @pytest.mark.asyncio
    async def test_raw_dict_event(self, machine):
        flow = await machine.start_flow("patient-1", "sleep")

        result = await machine.apply_event(flow.id, {"type": "intake_started", "triggered_by": "patient-1"})

        assert result.flow.status == FlowStatus.INTAKE_IN_PROGRESS
        assert result.records[0].triggered_by == "patient-1"


class TestUrgentJourney:
    """Crisis indicators short-circuit to urgent_escalated."""

    @pytest.mark.asyncio
    async def test_crisis_answer_escalates(self, machine):
        flow = await machine.start_flow("patient-2", "depression")

        result = await submit(
            machine, flow.id, URGENT_ANSWERS, profile=PatientProfile(conditions=["depression"])
        )

        assert result.flow.status == FlowStatus.URGENT_ESCALATED
        assert result.urgent
        assert [type(e) for e in result.events] == [UrgentCaseRaised, ProviderAssignmentRecommended]
        assert [r.to_status for r in result.records] == [
            FlowStatus.INTAKE_COMPLETED,
            FlowStatus.RISK_EVALUATED,
            FlowStatus.URGENT_ESCALATED,
        ]

        urgent = result.events[0]
        assert urgent.flow_id == flow.id
        assert urgent.assessment.recommendation.urgency == UrgencyTier.IMMEDIATE

        recommended = result.events[1]
        assert recommended.candidates[0].provider_id == "prov-crisis"
        assert recommended.candidates[0].match_score == pytest.approx(1.0)
        assert result.records[-1].payload["candidates"][0]["provider_id"] == "prov-crisis"

    @pytest.mark.asyncio
    async def test_unparseable_count_still_escalates(self, machine):
        flow = await machine.start_flow("patient-2", "depression")

        result = await submit(machine, flow.id, {**URGENT_ANSWERS, "missed_appointments": float("inf")})

        assert result.flow.status == FlowStatus.URGENT_ESCALATED
        assert isinstance(result.events[0], UrgentCaseRaised)

    @pytest.mark.asyncio
    async def test_assignment_from_urgent_escalated(self, machine):
        flow = await machine.start_flow("patient-2", "depression")
        await submit(machine, flow.id, URGENT_ANSWERS, profile=PatientProfile(conditions=["depression"]))

        result = await machine.apply_event(flow.id, ProviderAssigned())

        assert result.flow.status == FlowStatus.PROVIDER_ASSIGNED
        assert result.flow.assigned_provider_id == "prov-crisis"

    @pytest.mark.asyncio
    async def test_review_without_resolution_re_escalates(self, machine):
        flow = await machine.start_flow("patient-2", "depression")
        await submit(machine, flow.id, URGENT_ANSWERS)

        result = await machine.apply_event(flow.id, RiskReviewed())

        assert result.flow.status == FlowStatus.URGENT_ESCALATED
        assert [r.to_status for r in result.records] == [
            FlowStatus.RISK_EVALUATED,
            FlowStatus.URGENT_ESCALATED,
        ]

    @pytest.mark.asyncio
    async def test_review_resolving_flags_de_escalates(self, machine):
        flow = await machine.start_flow("patient-2", "depression")
        await submit(machine, flow.id, URGENT_ANSWERS)

        result = await machine.apply_event(
            flow.id,
            RiskReviewed(override=RiskOverride(resolve_urgent_flags=True, reviewed_by="dr-a")),
        )

        assert result.flow.status == FlowStatus.RISK_EVALUATED
        assert not result.urgent
        assert result.flow.risk_assessment.supersedes_assessment_id is not None

    @pytest.mark.asyncio
    async def test_urgent_during_consultation_keeps_status(self, machine):
        flow_id = await assigned_flow(machine)
        await machine.apply_event(flow_id, ConsultationScheduled(consultation_ref="consult-1"))

        result = await machine.apply_event(
            flow_id,
            RiskReviewed(override=RiskOverride(additional_factors=[RiskFactorType.URGENT_KEYWORDS])),
        )

        assert result.flow.status == FlowStatus.CONSULTATION_SCHEDULED
        assert [type(e) for e in result.events] == [UrgentCaseRaised]
        assert result.records[0].reason == "urgent_during_consultation"


class TestReassessment:
    """Clinician review supersedes and keeps history."""

    @pytest.mark.asyncio
    async def test_medium_risk_is_routed_then_upgraded(self, machine):
        flow = await machine.start_flow("patient-3", "anxiety")

        result = await submit(machine, flow.id, MEDIUM_RISK_ANSWERS)
        first = result.flow.risk_assessment
        assert first.category == RiskCategory.MEDIUM
        assert [type(e) for e in result.events] == [ProviderAssignmentRecommended]

        result = await machine.apply_event(
            flow.id,
            RiskReviewed(override=RiskOverride(clinician_adjustment=2.0, notes="Escalating", reviewed_by="dr-a")),
        )
        second = result.flow.risk_assessment

        assert result.flow.status == FlowStatus.RISK_EVALUATED
        assert second.category == RiskCategory.HIGH
        assert second.supersedes_assessment_id == first.id
        assert result.records[0].reason == "risk_reassessed"

        history = await machine.get_risk_history(flow.id)
        assert [a.id for a in history] == [first.id, second.id]
        assert history[0].score == 6.0

    @pytest.mark.asyncio
    async def test_confirmation_keeps_assessment(self, machine):
        flow = await machine.start_flow("patient-3", "anxiety")
        submitted = await submit(machine, flow.id, MEDIUM_RISK_ANSWERS)

        result = await machine.apply_event(flow.id, RiskReviewed())

        assert result.flow.risk_assessment_id == submitted.flow.risk_assessment_id
        assert result.records[0].reason == "risk_confirmed"
        assert len(await machine.get_risk_history(flow.id)) == 1


# =============================================================================
# Provider Assignment
# =============================================================================

class TestProviderAssignment:

    @pytest.mark.asyncio
    async def test_manual_override(self, machine):
        flow = await machine.start_flow("patient-1", "sleep")
        await submit(machine, flow.id, LOW_RISK_ANSWERS)

        result = await machine.apply_event(flow.id, ProviderAssigned(provider_id="prov-chosen", triggered_by="dr-a"))

        assert result.flow.assigned_provider_id == "prov-chosen"
        assert result.records[0].reason == "manual_override"
        assert result.candidates == []

    @pytest.mark.asyncio
    async def test_no_candidates(self, repository):
        machine = FlowStateMachine(repository, InMemoryProviderDirectory(), clock=fixed_clock)
        flow = await machine.start_flow("patient-1", "sleep")
        await submit(machine, flow.id, LOW_RISK_ANSWERS)

        with pytest.raises(NoEligibleProvider):
            await machine.apply_event(flow.id, ProviderAssigned())

        stored = await machine.get_flow(flow.id)
        assert stored.status == FlowStatus.RISK_EVALUATED
        assert stored.version == 2

    @pytest.mark.asyncio
    async def test_routing_respects_max_candidates(self, repository, directory):
        machine = FlowStateMachine(repository, directory, clock=fixed_clock, max_candidates=1)
        flow = await machine.start_flow("patient-3", "anxiety")

        result = await submit(machine, flow.id, MEDIUM_RISK_ANSWERS)

        assert len(result.candidates) == 1
        assert len(result.events[0].candidates) == 1

    @pytest.mark.asyncio
    async def test_routing_categories(self, repository, directory):
        machine = FlowStateMachine(
            repository, directory, clock=fixed_clock, routing_categories=[RiskCategory.LOW]
        )
        flow = await machine.start_flow("patient-1", "sleep")

        result = await submit(machine, flow.id, LOW_RISK_ANSWERS)

        assert [type(e) for e in result.events] == [ProviderAssignmentRecommended]


# =============================================================================
# Rejections
# =============================================================================

class TestRejections:
    """Rejected events leave no trace."""

    @pytest.mark.asyncio
    async def test_illegal_event_does_not_mutate(self, machine):
        flow = await machine.start_flow("patient-1", "sleep")

        with pytest.raises(InvalidTransition) as exc_info:
            await machine.apply_event(flow.id, ConsultationScheduled(consultation_ref="consult-1"))

        assert exc_info.value.from_status == FlowStatus.CATEGORY_SELECTED
        assert exc_info.value.event_type == "consultation_scheduled"
        stored = await machine.get_flow(flow.id)
        assert stored == flow
        assert len(await machine.get_transitions(flow.id)) == 1

    @pytest.mark.asyncio
    async def test_terminal_flow_rejects_events(self, machine):
        flow = await machine.start_flow("patient-1", "sleep")
        result = await machine.apply_event(flow.id, Abandoned(reason="no_show"))
        assert result.flow.abandon_reason == "no_show"
        assert result.flow.completed_at == NOW

        with pytest.raises(InvalidTransition):
            await machine.apply_event(flow.id, Abandoned(reason="again"))

    @pytest.mark.asyncio
    async def test_write_once_reference(self, machine):
        flow_id = await assigned_flow(machine)
        await machine.apply_event(flow_id, ConsultationScheduled(consultation_ref="consult-1"))
        await machine.apply_event(flow_id, ConsultationCompleted())
        await machine.apply_event(flow_id, OrderCreated(order_ref="order-1"))

        # Repeating the same reference is accepted
        await machine.apply_event(flow_id, OrderCreated(order_ref="order-1", invoice_ref="inv-1"))

        with pytest.raises(InvalidTransition):
            await machine.apply_event(flow_id, OrderCreated(order_ref="order-2"))

        stored = await machine.get_flow(flow_id)
        assert stored.order_ref == "order-1"
        assert stored.invoice_ref == "inv-1"


# =============================================================================
# Concurrency
# =============================================================================

class YieldingRepository(InMemoryFlowRepository):
    """Hands control back to the loop after every read."""

    async def get_flow(self, flow_id):
        flow = await super().get_flow(flow_id)
        await asyncio.sleep(0)
        return flow


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_exactly_one_concurrent_writer_wins(self, directory):
        machine = FlowStateMachine(YieldingRepository(), directory, clock=fixed_clock)
        flow = await machine.start_flow("patient-1", "sleep")

        outcomes = await asyncio.gather(
            machine.apply_event(flow.id, Abandoned(reason="first")),
            machine.apply_event(flow.id, Abandoned(reason="second")),
            return_exceptions=True,
        )

        errors = [o for o in outcomes if isinstance(o, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], ConcurrentModification)
        assert errors[0].retryable

        stored = await machine.get_flow(flow.id)
        assert stored.version == 2
        assert len(await machine.get_transitions(flow.id)) == 2


# =============================================================================
# Recovery
# =============================================================================

class LosingRepository(InMemoryFlowRepository):
    """Non-atomic store whose next flow update fails."""

    def __init__(self):
        super().__init__(atomic=False)
        self.fail_next_update = False

    async def update_flow(self, flow, expected_version):
        if self.fail_next_update:
            self.fail_next_update = False
            raise PersistenceError("connection reset", flow_id=flow.id)
        await super().update_flow(flow, expected_version)


class TestRecovery:

    @pytest.mark.asyncio
    async def test_rolls_forward_after_lost_update(self, directory):
        repository = LosingRepository()
        machine = FlowStateMachine(repository, directory, clock=fixed_clock, id_factory=sequential_ids())
        flow = await machine.start_flow("patient-1", "sleep")

        repository.fail_next_update = True
        with pytest.raises(PersistenceError):
            await submit(machine, flow.id, LOW_RISK_ANSWERS, form_submission_ref="form-1")

        stale = await machine.get_flow(flow.id)
        assert stale.status == FlowStatus.CATEGORY_SELECTED
        assert len(await machine.get_transitions(flow.id)) == 3

        recovered = await machine.recover(flow.id)

        assert recovered.status == FlowStatus.RISK_EVALUATED
        assert recovered.version == 2
        assert recovered.form_submission_ref == "form-1"
        history = await machine.get_risk_history(flow.id)
        assert recovered.risk_assessment_id == history[0].id

        # The recovered flow accepts the next event
        result = await machine.apply_event(flow.id, ProviderAssigned())
        assert result.flow.version == 3

    @pytest.mark.asyncio
    async def test_retry_after_lost_update_is_not_logged_twice(self, directory):
        repository = LosingRepository()
        machine = FlowStateMachine(repository, directory, clock=fixed_clock, id_factory=sequential_ids())
        flow = await machine.start_flow("patient-1", "sleep")

        repository.fail_next_update = True
        with pytest.raises(PersistenceError):
            await submit(machine, flow.id, LOW_RISK_ANSWERS)

        # The first attempt reached the log, so the retry is already applied
        with pytest.raises(InvalidTransition) as exc_info:
            await submit(machine, flow.id, LOW_RISK_ANSWERS)

        assert exc_info.value.from_status == FlowStatus.RISK_EVALUATED
        records = await machine.get_transitions(flow.id)
        assert [(r.from_status, r.to_status) for r in records if r.flow_version == 2] == [
            (FlowStatus.CATEGORY_SELECTED, FlowStatus.INTAKE_COMPLETED),
            (FlowStatus.INTAKE_COMPLETED, FlowStatus.RISK_EVALUATED),
        ]
        assert len(await machine.get_risk_history(flow.id)) == 1
        stored = await machine.get_flow(flow.id)
        assert stored.status == FlowStatus.RISK_EVALUATED
        assert stored.version == 2

    @pytest.mark.asyncio
    async def test_next_event_recovers_first(self, directory):
        repository = LosingRepository()
        machine = FlowStateMachine(repository, directory, clock=fixed_clock, id_factory=sequential_ids())
        flow = await machine.start_flow("patient-1", "sleep")

        repository.fail_next_update = True
        with pytest.raises(PersistenceError):
            await submit(machine, flow.id, LOW_RISK_ANSWERS)

        result = await machine.apply_event(flow.id, ProviderAssigned())

        assert result.records[0].from_status == FlowStatus.RISK_EVALUATED
        assert result.flow.status == FlowStatus.PROVIDER_ASSIGNED
        assert result.flow.version == 3

    @pytest.mark.asyncio
    async def test_nothing_to_recover(self, machine):
        flow = await machine.start_flow("patient-1", "sleep")
        await submit(machine, flow.id, LOW_RISK_ANSWERS)

        recovered = await machine.recover(flow.id)

        assert recovered.version == 2
        assert recovered.status == FlowStatus.RISK_EVALUATED


# =============================================================================
# Listeners
# =============================================================================

class TestListeners:

    @pytest.mark.asyncio
    async def test_listener_receives_events(self, machine):
        received = []
        machine.add_listener(received.append)
        flow = await machine.start_flow("patient-2", "depression")

        await submit(machine, flow.id, URGENT_ANSWERS)

        assert isinstance(received[0], UrgentCaseRaised)

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_undo_commit(self, repository, directory):
        received = []

        def broken(event):
            raise RuntimeError("dashboard offline")

        machine = FlowStateMachine(
            repository, directory, clock=fixed_clock, listeners=[broken, received.append]
        )
        flow = await machine.start_flow("patient-2", "depression")

        result = await submit(machine, flow.id, URGENT_ANSWERS)

        assert result.flow.status == FlowStatus.URGENT_ESCALATED
        assert len(received) == 2
        stored = await machine.get_flow(flow.id)
        assert stored.status == FlowStatus.URGENT_ESCALATED
