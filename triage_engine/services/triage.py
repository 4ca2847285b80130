"""
Facility-wide triage aggregator.

Keeps the live set of open alerts across every monitored patient, fed only
by the alert event feed, and ranks them for responder attention:

    1. severity, CRITICAL > HIGH > MEDIUM > LOW
    2. age, older alerts first so nothing starves
    3. insertion order, for a deterministic tie-break

The ranking is recomputed on lifecycle events only. Resource recommendations
are read-only; binding a unit to an alert is a separate, explicit assign().
"""

import threading
from collections import OrderedDict
from collections.abc import Callable

import structlog

from triage_engine.domain.errors import NoResourceAvailableError, NotFoundError
from triage_engine.domain.models import (
    Alert,
    AlertEvent,
    AlertKind,
    PatientSnapshot,
    ResourceRecommendation,
    ResourceType,
    ResourceUnit,
    Severity,
    TriageEntry,
)
from triage_engine.services.resource_ledger import ResourceLedger

logger = structlog.get_logger(__name__)

PatientLookup = Callable[[str], PatientSnapshot | None]
AlertLookup = Callable[[str], Alert | None]

# Resolved alert ids remembered so late replays cannot reopen them
RETIRED_ALERT_MEMORY = 1000

CARDIORESPIRATORY_KINDS = frozenset(
    {AlertKind.HEART_RATE_HIGH, AlertKind.HEART_RATE_LOW, AlertKind.OXYGEN_LOW}
)


def required_resource_types(alert: Alert) -> tuple[ResourceType, ...]:
    """Resource types an alert calls for."""
    if alert.kind == AlertKind.FALL_DETECTED:
        return (ResourceType.AMBULANCE,)
    if alert.kind == AlertKind.DEVICE_OFFLINE:
        return (ResourceType.STAFF,)
    if alert.kind in CARDIORESPIRATORY_KINDS and alert.severity == Severity.CRITICAL:
        return (ResourceType.BED, ResourceType.VENTILATOR)
    return (ResourceType.BED,)


def priority_key(alert: Alert, sequence: int) -> tuple[int, float, int]:
    return (-alert.severity.rank, alert.opened_at.timestamp(), sequence)


class TriageAggregator:
    """Ranked view over every open alert in the facility."""

    def __init__(
        self,
        ledger: ResourceLedger,
        patient_lookup: PatientLookup | None = None,
        alert_lookup: AlertLookup | None = None,
    ) -> None:
        self.ledger = ledger
        self.logger = logger.bind(component="triage_aggregator")
        self._patient_lookup = patient_lookup
        self._alert_lookup = alert_lookup
        self._lock = threading.Lock()
        self._alerts: dict[str, Alert] = {}
        self._sequence: dict[str, int] = {}
        self._next_sequence = 0
        self._order: list[str] = []
        self._retired: OrderedDict[str, int] = OrderedDict()

    # ------------------------------------------------------------------ feed

    def on_event(self, event: AlertEvent) -> None:
        """Apply one lifecycle event and re-rank. Replays of an older version are ignored."""
        alert = event.alert
        with self._lock:
            known = self._alerts.get(alert.id)
            if known is not None and known.version >= alert.version:
                return
            retired = self._retired.get(alert.id)
            if retired is not None and retired >= alert.version:
                return

            if alert.is_open:
                if alert.id not in self._sequence:
                    self._sequence[alert.id] = self._next_sequence
                    self._next_sequence += 1
                self._alerts[alert.id] = alert
            else:
                self._alerts.pop(alert.id, None)
                self._sequence.pop(alert.id, None)
                self._retired[alert.id] = alert.version
                self._retired.move_to_end(alert.id)
                while len(self._retired) > RETIRED_ALERT_MEMORY:
                    self._retired.popitem(last=False)

            self._rerank()

        self.logger.debug("triage_reranked", event_type=event.type, open_alerts=len(self._order))

    def _rerank(self) -> None:
        self._order = sorted(
            self._alerts,
            key=lambda alert_id: priority_key(self._alerts[alert_id], self._sequence[alert_id]),
        )

    # --------------------------------------------------------------- queries

    def _current(self, alert_id: str) -> Alert | None:
        alert = self._alert_lookup(alert_id) if self._alert_lookup else None
        return alert if alert is not None else self._alerts.get(alert_id)

    def _snapshot(self, patient_id: str) -> PatientSnapshot | None:
        return self._patient_lookup(patient_id) if self._patient_lookup else None

    def ranked(self, facility_id: str | None = None) -> list[TriageEntry]:
        """Open alerts in priority order, each with a fresh patient snapshot."""
        with self._lock:
            order = list(self._order)

        entries: list[TriageEntry] = []
        for alert_id in order:
            alert = self._current(alert_id)
            if alert is None or not alert.is_open:
                continue
            patient = self._snapshot(alert.patient_id)
            if facility_id is not None and (
                patient is None or patient.profile.facility_id != facility_id
            ):
                continue
            entries.append(TriageEntry(rank=len(entries) + 1, alert=alert, patient=patient))
        return entries

    def open_alerts(self, facility_id: str | None = None) -> list[Alert]:
        return [entry.alert for entry in self.ranked(facility_id)]

    def get_open_alert(self, alert_id: str) -> Alert:
        with self._lock:
            known = alert_id in self._alerts
        alert = self._current(alert_id) if known else None
        if alert is None or not alert.is_open:
            raise NotFoundError("open alert", alert_id)
        return alert

    # -------------------------------------------------------------- resources

    def recommend_resource(self, alert_id: str) -> ResourceRecommendation:
        """
        Suggest the first available unit of each type the alert needs.

        Raises:
            NotFoundError: the alert is not open
            NoResourceAvailableError: a needed type has no available unit
        """
        alert = self.get_open_alert(alert_id)
        required = required_resource_types(alert)

        units: list[ResourceUnit] = []
        missing: list[str] = []
        for resource_type in required:
            unit = self.ledger.first_available(resource_type)
            if unit is None:
                missing.append(resource_type.value)
            else:
                units.append(unit)

        if missing:
            self.logger.warning(
                "no_resource_available", alert_id=alert_id, missing_types=missing
            )
            raise NoResourceAvailableError(alert_id, missing)

        return ResourceRecommendation(
            alert_id=alert_id, required_types=required, units=tuple(units)
        )

    def assign(self, alert_id: str, resource_id: str) -> ResourceUnit:
        """Bind a unit to an open alert (AVAILABLE -> RESERVED)."""
        self.get_open_alert(alert_id)
        unit = self.ledger.reserve(resource_id, alert_id)
        self.logger.info("resource_assigned", alert_id=alert_id, resource_id=resource_id)
        return unit
