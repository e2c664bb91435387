"""Shared fixtures for careflow tests."""

from datetime import datetime, timedelta, timezone
import itertools

import pytest

from careflow.db.memory import InMemoryFlowRepository
from careflow.flow.machine import FlowStateMachine
from careflow.models.provider import ProviderProfile
from careflow.models.risk import ProviderType, RiskCategory
from careflow.risk.scorer import RiskScorer
from careflow.routing.directory import InMemoryProviderDirectory


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

# Intake answer-sets used across the suites
LOW_RISK_ANSWERS = {"symptom_severity": 2, "mood_rating": 7, "primary_concern": "insomnia"}
URGENT_ANSWERS = {"mood_rating": 2, "self_harm_thoughts": "currently"}
MEDIUM_RISK_ANSWERS = {
    "symptom_severity": 8,
    "mood_rating": 3,
    "medications": ["sertraline", "lisinopril", "metformin", "atorvastatin"],
}


def fixed_clock():
    return NOW


def sequential_ids(prefix: str = "id"):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter):04d}"


def sample_providers() -> list[ProviderProfile]:
    return [
        ProviderProfile(
            provider_id="prov-crisis",
            display_name="Crisis Team",
            provider_type=ProviderType.CRISIS_SPECIALIST,
            specializations=["Anxiety", "Depression"],
            next_available_at=NOW + timedelta(hours=1),
            risk_experience=[RiskCategory.MEDIUM, RiskCategory.HIGH],
            satisfaction_rating=4.8,
        ),
        ProviderProfile(
            provider_id="prov-general",
            display_name="General Practice",
            specializations=["insomnia"],
            next_available_at=NOW + timedelta(days=3),
            risk_experience=[RiskCategory.LOW],
            satisfaction_rating=4.2,
        ),
        ProviderProfile(
            provider_id="prov-busy",
            display_name="Fully Booked",
            specializations=["anxiety"],
            next_available_at=None,
            risk_experience=[RiskCategory.HIGH],
            satisfaction_rating=4.9,
        ),
    ]


@pytest.fixture
def repository():
    return InMemoryFlowRepository()


@pytest.fixture
def directory():
    return InMemoryProviderDirectory(sample_providers())


@pytest.fixture
def scorer():
    return RiskScorer(clock=fixed_clock, id_factory=sequential_ids("ra"))


@pytest.fixture
def machine(repository, directory):
    return FlowStateMachine(
        repository,
        directory,
        clock=fixed_clock,
        id_factory=sequential_ids(),
    )
