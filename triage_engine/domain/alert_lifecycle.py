"""
Alert state machine as pure transition functions.

Each function takes the current Alert and returns the replacement Alert plus
the lifecycle event to publish (None when the transition is a no-op or a
silent refresh). Illegal transitions raise InvalidStateError.

    ACTIVE ──dispatch──▶ RESPONDING
      │                      │
      └──────resolve─────────┴──▶ RESOLVED
"""

from datetime import datetime
from uuid import uuid4

from triage_engine.domain.errors import InvalidStateError
from triage_engine.domain.models import (
    Alert,
    AlertEvent,
    AlertKind,
    AlertStatus,
    Reading,
    Severity,
)


def new_alert_id() -> str:
    return f"alrt-{uuid4().hex[:12]}"


def open_alert(
    patient_id: str,
    kind: AlertKind,
    severity: Severity,
    at: datetime,
    reading: Reading | None,
) -> tuple[Alert, AlertEvent]:
    alert = Alert(
        id=new_alert_id(),
        patient_id=patient_id,
        kind=kind,
        severity=severity,
        opened_at=at,
        last_triggered_at=at,
        triggering_reading=reading,
    )
    return alert, AlertEvent(type="opened", alert=alert)


def refresh_alert(
    alert: Alert, severity: Severity, at: datetime, reading: Reading | None
) -> tuple[Alert, AlertEvent | None]:
    """Re-trigger an open alert. Only a severity increase is a lifecycle event."""
    if not alert.is_open:
        raise InvalidStateError(f"alert {alert.id} is resolved and cannot be re-triggered")

    escalated = severity.rank > alert.severity.rank
    updated = alert.model_copy(
        update={
            "severity": severity if escalated else alert.severity,
            "last_triggered_at": at,
            "triggering_reading": reading if reading is not None else alert.triggering_reading,
            "version": alert.version + 1,
        }
    )
    return updated, AlertEvent(type="escalated", alert=updated) if escalated else None


def dispatch_alert(
    alert: Alert, responder_id: str, at: datetime
) -> tuple[Alert, AlertEvent | None]:
    if alert.status == AlertStatus.RESOLVED:
        raise InvalidStateError(f"alert {alert.id} is already resolved")

    if alert.status == AlertStatus.RESPONDING:
        if alert.responder == responder_id:
            return alert, None
        raise InvalidStateError(
            f"alert {alert.id} is already being handled by {alert.responder}"
        )

    updated = alert.model_copy(
        update={
            "status": AlertStatus.RESPONDING,
            "responder": responder_id,
            "dispatched_at": at,
            "version": alert.version + 1,
        }
    )
    return updated, AlertEvent(type="dispatched", alert=updated)


def resolve_alert(alert: Alert, at: datetime) -> tuple[Alert, AlertEvent]:
    if alert.status == AlertStatus.RESOLVED:
        raise InvalidStateError(f"alert {alert.id} is already resolved")

    updated = alert.model_copy(
        update={
            "status": AlertStatus.RESOLVED,
            "closed_at": at,
            "version": alert.version + 1,
        }
    )
    return updated, AlertEvent(type="resolved", alert=updated)
