"""
Error taxonomy for the triage engine.

Every failure the core can report is one of these. None of them is fatal:
the ingestion path drops invalid samples, and command failures are returned
to the caller wrapped in a Result.
"""

from collections.abc import Iterable


class TriageError(Exception):
    """Base class for all expected failures in the engine."""


class ValidationError(TriageError):
    """Malformed or out-of-order input. Recovered by dropping the sample."""

    def __init__(self, message: str, patient_id: str | None = None) -> None:
        super().__init__(message)
        self.patient_id = patient_id


class NotFoundError(TriageError):
    """An operation referenced an unknown alert, resource or patient."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} {entity_id!r} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidStateError(TriageError):
    """The operation is illegal for the current lifecycle state."""


class ConflictError(TriageError):
    """Another caller holds the resource."""


class NoResourceAvailableError(TriageError):
    """Soft failure: no unit of the needed type is free. The alert stays open."""

    def __init__(self, alert_id: str, missing_types: Iterable[str]) -> None:
        self.alert_id = alert_id
        self.missing_types = tuple(missing_types)
        super().__init__(
            f"no available resource of type {', '.join(self.missing_types)} for alert {alert_id}"
        )
