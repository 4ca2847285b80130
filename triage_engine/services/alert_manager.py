"""
Per-patient alert manager.

Turns classifier output and connection transitions into lifecycle-tracked
alerts for one patient. Invariants held here:

- at most one open alert per kind (re-triggering refreshes the open one)
- alerts open only when a kind's confirmed tier worsens, when the kind is
  part of the reading that worsened the status, or on a discrete event
- vitals alerts resolve automatically only after the patient has been
  NORMAL for the clear-debounce window; falls and offline alerts do not
  clear from vitals
"""

import threading
from collections import OrderedDict
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from triage_engine.config import AlertConfig
from triage_engine.domain import alert_lifecycle
from triage_engine.domain.errors import NotFoundError
from triage_engine.domain.models import (
    Alert,
    AlertEvent,
    AlertKind,
    Classification,
    ConnectionStatus,
    ConnectionTransition,
    HealthStatus,
    Reading,
    Severity,
)

logger = structlog.get_logger(__name__)

EventPublisher = Callable[[AlertEvent], None]

# Kinds that sustained NORMAL vitals do not clear
DISCRETE_KINDS = frozenset({AlertKind.FALL_DETECTED, AlertKind.DEVICE_OFFLINE})

STATUS_SEVERITY = {
    HealthStatus.CRITICAL: Severity.CRITICAL,
    HealthStatus.WARNING: Severity.MEDIUM,
}
DEVICE_OFFLINE_SEVERITY = Severity.HIGH


def severity_for(tier: HealthStatus) -> Severity:
    return STATUS_SEVERITY.get(tier, Severity.LOW)


def _capped(tier: HealthStatus, status: HealthStatus) -> HealthStatus:
    """A finding never counts for more than the debounced status allows."""
    return tier if tier.rank <= status.rank else status


class AlertManager:
    """Owns the alerts of a single patient."""

    def __init__(
        self,
        patient_id: str,
        publish: EventPublisher,
        config: AlertConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        on_evict: Callable[[str], None] | None = None,
    ) -> None:
        self.patient_id = patient_id
        self.config = config or AlertConfig()
        self.logger = logger.bind(component="alert_manager", patient_id=patient_id)
        self._publish = publish
        self._clock = clock or (lambda: datetime.now(UTC))
        self._on_evict = on_evict
        self._lock = threading.RLock()

        self._open: dict[str, Alert] = {}
        self._open_by_kind: dict[AlertKind, str] = {}
        self._resolved: OrderedDict[str, Alert] = OrderedDict()
        self._last_tiers: dict[AlertKind, HealthStatus] = {}
        self._last_status = HealthStatus.UNKNOWN
        self._normal_since: datetime | None = None

    # ------------------------------------------------------------------ queries

    @property
    def last_status(self) -> HealthStatus:
        return self._last_status

    def open_alerts(self) -> list[Alert]:
        with self._lock:
            return sorted(self._open.values(), key=lambda a: a.opened_at)

    def open_alert_for(self, kind: AlertKind) -> Alert | None:
        alert_id = self._open_by_kind.get(kind)
        return self._open.get(alert_id) if alert_id else None

    def get(self, alert_id: str) -> Alert | None:
        return self._open.get(alert_id) or self._resolved.get(alert_id)

    def _require(self, alert_id: str) -> Alert:
        alert = self.get(alert_id)
        if alert is None:
            raise NotFoundError("alert", alert_id)
        return alert

    # --------------------------------------------------------------- internals

    def _store(self, alert: Alert, event: AlertEvent | None) -> Alert:
        if alert.is_open:
            self._open[alert.id] = alert
            self._open_by_kind[alert.kind] = alert.id
        else:
            self._open.pop(alert.id, None)
            if self._open_by_kind.get(alert.kind) == alert.id:
                del self._open_by_kind[alert.kind]
            self._resolved[alert.id] = alert
            while len(self._resolved) > self.config.resolved_retention:
                evicted_id, _ = self._resolved.popitem(last=False)
                if self._on_evict is not None:
                    self._on_evict(evicted_id)

        if event is not None:
            self._publish(event)
        return alert

    def _raise(
        self, kind: AlertKind, severity: Severity, at: datetime, reading: Reading | None
    ) -> AlertEvent | None:
        """Open an alert of this kind, or refresh the one already open."""
        existing = self.open_alert_for(kind)
        if existing is None:
            alert, event = alert_lifecycle.open_alert(self.patient_id, kind, severity, at, reading)
            self._store(alert, event)
            return event

        alert, maybe_event = alert_lifecycle.refresh_alert(existing, severity, at, reading)
        self._store(alert, maybe_event)
        if maybe_event is None:
            self.logger.debug("alert_refreshed", alert_id=alert.id, kind=kind.value)
        return maybe_event

    def _resolve_kinds(self, kinds: list[AlertKind], at: datetime) -> list[AlertEvent]:
        events = []
        for kind in kinds:
            alert = self.open_alert_for(kind)
            if alert is None:
                continue
            resolved, event = alert_lifecycle.resolve_alert(alert, at)
            self._store(resolved, event)
            events.append(event)
        return events

    # ----------------------------------------------------------------- inputs

    def on_classification(
        self, classification: Classification, reading: Reading
    ) -> list[AlertEvent]:
        """Apply one classifier result. Returns the lifecycle events it produced."""
        with self._lock:
            status = classification.status
            abnormal = status in STATUS_SEVERITY
            status_worsened = abnormal and status.rank > self._last_status.rank
            events: list[AlertEvent] = []

            # A kind triggers once its own finding is confirmed, or when it is
            # part of the reading that made the status worse
            triggered: dict[AlertKind, HealthStatus] = {}
            if abnormal:
                for finding in classification.confirmed_findings:
                    triggered[finding.kind] = _capped(finding.tier, status)
                if status_worsened:
                    for finding in classification.findings:
                        triggered.setdefault(finding.kind, _capped(finding.tier, status))

                for finding in classification.findings:
                    kind = finding.kind
                    tier = triggered.get(kind)
                    previous = self._last_tiers.get(kind, HealthStatus.NORMAL)
                    if self.open_alert_for(kind) is not None:
                        # Unconfirmed spikes refresh without escalating
                        severity = severity_for(tier or HealthStatus.WARNING)
                    elif tier is not None and tier.rank > previous.rank:
                        severity = severity_for(tier)
                    else:
                        continue
                    event = self._raise(kind, severity, reading.timestamp, reading)
                    if event is not None:
                        events.append(event)

            self._last_tiers = triggered

            if classification.raw_status == HealthStatus.NORMAL:
                if self._normal_since is None:
                    self._normal_since = reading.timestamp
                normal_for = reading.timestamp - self._normal_since
                if normal_for >= timedelta(seconds=self.config.clear_debounce_seconds):
                    vitals = [k for k in self._open_by_kind if k not in DISCRETE_KINDS]
                    cleared = self._resolve_kinds(vitals, reading.timestamp)
                    if cleared:
                        self.logger.info(
                            "vitals_alerts_cleared",
                            count=len(cleared),
                            normal_seconds=normal_for.total_seconds(),
                        )
                    events.extend(cleared)
            else:
                self._normal_since = None

            self._last_status = status
            return events

    def on_connection_change(
        self, transition: ConnectionTransition, last_reading: Reading | None = None
    ) -> list[AlertEvent]:
        """DISCONNECTED raises DEVICE_OFFLINE; reconnecting resolves it."""
        with self._lock:
            if transition.current == ConnectionStatus.DISCONNECTED:
                event = self._raise(
                    AlertKind.DEVICE_OFFLINE, DEVICE_OFFLINE_SEVERITY, transition.at, last_reading
                )
                return [event] if event else []

            if transition.current == ConnectionStatus.CONNECTED:
                return self._resolve_kinds([AlertKind.DEVICE_OFFLINE], transition.at)

            return []

    # ---------------------------------------------------------------- commands

    def dispatch(self, alert_id: str, responder_id: str, at: datetime | None = None) -> Alert:
        """ACTIVE -> RESPONDING. Idempotent for the same responder."""
        with self._lock:
            alert = self._require(alert_id)
            at = at or self._clock()
            updated, event = alert_lifecycle.dispatch_alert(alert, responder_id, at)
            return self._store(updated, event)

    def resolve(self, alert_id: str, at: datetime | None = None) -> Alert:
        """Manual close regardless of current vitals."""
        with self._lock:
            alert = self._require(alert_id)
            updated, event = alert_lifecycle.resolve_alert(alert, at or self._clock())
            self.logger.info("alert_closed_manually", alert_id=alert_id, kind=alert.kind.value)
            return self._store(updated, event)
