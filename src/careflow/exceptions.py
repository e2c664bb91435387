"""
Careflow Errors

Error taxonomy for the orchestration core:
- InvalidTransition: caller error, event illegal from the current status
- ConcurrentModification: retryable, the flow version moved underneath the caller
- PersistenceError: infrastructure failure, retried by the caller with backoff
- MalformedIntakeData: unparseable answers, logged by the scorer and never raised
  out of a transition
"""

from typing import Any


class CareflowError(Exception):
    """Base error for the orchestration core."""

    code = "careflow_error"
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **{k: v for k, v in self.context.items() if v is not None},
        }


class FlowNotFound(CareflowError):
    """No flow exists with the given id."""

    code = "flow_not_found"

    def __init__(self, flow_id: str):
        super().__init__(f"Flow {flow_id} not found", flow_id=flow_id)
        self.flow_id = flow_id


class ActiveFlowExists(CareflowError):
    """The patient already has an active flow for this category."""

    code = "active_flow_exists"

    def __init__(self, patient_id: str, category_id: str, flow_id: str | None = None):
        super().__init__(
            f"Patient {patient_id} already has an active flow for category {category_id}",
            patient_id=patient_id,
            category_id=category_id,
            flow_id=flow_id,
        )
        self.flow_id = flow_id


class InvalidTransition(CareflowError):
    """Event is not legal from the flow's current status."""

    code = "invalid_transition"

    def __init__(
        self,
        flow_id: str,
        from_status: str,
        event_type: str,
        detail: str | None = None,
    ):
        from_status = getattr(from_status, "value", from_status)
        event_type = getattr(event_type, "value", event_type)
        message = f"Event '{event_type}' is not allowed from status '{from_status}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(
            message,
            flow_id=flow_id,
            from_status=from_status,
            event_type=event_type,
        )
        self.flow_id = flow_id
        self.from_status = from_status
        self.event_type = event_type


class ConcurrentModification(CareflowError):
    """Stored flow version no longer matches the version read by the caller."""

    code = "concurrent_modification"
    retryable = True

    def __init__(self, flow_id: str, expected_version: int, actual_version: int | None = None):
        super().__init__(
            f"Flow {flow_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            flow_id=flow_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )
        self.flow_id = flow_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class PersistenceError(CareflowError):
    """The persistence store failed to read or write."""

    code = "persistence_error"
    retryable = True


class NoEligibleProvider(CareflowError):
    """Provider assignment requested but the directory returned no candidates."""

    code = "no_eligible_provider"

    def __init__(self, flow_id: str, category_id: str):
        super().__init__(
            f"No provider candidates available for flow {flow_id}",
            flow_id=flow_id,
            category_id=category_id,
        )


class MalformedIntakeData(CareflowError):
    """An intake answer could not be interpreted."""

    code = "malformed_intake_data"

    def __init__(self, key: str | None, value: Any, detail: str):
        super().__init__(f"Malformed intake answer {key!r}: {detail}", key=key)
        self.key = key
        self.value = value
