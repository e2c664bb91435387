"""Tests for settings and logging setup."""

import pytest

from careflow.config import RiskSettings, RoutingSettings, Settings, get_settings
from careflow.db import InMemoryFlowRepository, create_repository
from careflow.flow.machine import FlowStateMachine
from careflow.models.risk import RiskCategory
from careflow.observability.logging import REDACTED, intake_redaction_processor


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults():
    settings = Settings()

    assert settings.app.repository_backend == "memory"
    assert settings.risk.high_threshold == 8.0
    assert settings.risk.medium_threshold == 4.0
    assert settings.routing.routing_categories == [RiskCategory.MEDIUM, RiskCategory.HIGH]
    assert settings.routing.max_candidates == 10


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("CAREFLOW_RISK_HIGH_THRESHOLD", "9")
    monkeypatch.setenv("CAREFLOW_RISK_EXTRA_CRISIS_TERMS", '["hopeless"]')
    monkeypatch.setenv("CAREFLOW_ROUTING_ROUTING_CATEGORIES", '["high"]')

    assert RiskSettings().high_threshold == 9.0
    assert RiskSettings().extra_crisis_terms == ["hopeless"]
    assert RoutingSettings().routing_categories == [RiskCategory.HIGH]


def test_get_settings_is_cached():
    assert get_settings() is get_settings()


@pytest.mark.asyncio
async def test_machine_from_settings(monkeypatch):
    monkeypatch.setenv("CAREFLOW_RISK_EXTRA_CRISIS_TERMS", '["hopeless"]')
    monkeypatch.setenv("CAREFLOW_ROUTING_MAX_CANDIDATES", "3")
    settings = get_settings()

    repository = await create_repository(settings)
    machine = FlowStateMachine.from_settings(settings, repository)

    assert isinstance(repository, InMemoryFlowRepository)
    assert "hopeless" in machine.scorer.crisis_terms
    assert machine.max_candidates == 3
    assert machine.routing_categories == {RiskCategory.MEDIUM, RiskCategory.HIGH}


def test_redaction_processor():
    event = {
        "event": "Risk assessed",
        "flow_id": "flow-1",
        "answers": {"self_harm_thoughts": "currently"},
        "context": {"notes": "private", "score": 4.0},
    }

    redacted = intake_redaction_processor(None, "info", event)

    assert redacted["event"] == "Risk assessed"
    assert redacted["flow_id"] == "flow-1"
    assert redacted["answers"] == REDACTED
    assert redacted["context"] == {"notes": REDACTED, "score": 4.0}
