"""
Triage engine: the single entry point for telemetry, queries and commands.

Key patterns:
- One PatientPipeline per patient (normalize -> classify -> alerts), each
  with its own lock so readings for one patient are processed in arrival order
  while different patients proceed independently
- Facility-wide state (triage ranking, resource ledger) is reached only
  through the alert event feed or the ledger's own choke point
- Commands return Result values; none of the expected failures escape
- Liveness sweeps run as a task owned by an async context manager, so leaving
  the session leaves no timer behind
"""

import asyncio
import contextlib
import threading
from collections import deque
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Protocol, TypeVar

import structlog

from triage_engine.config import AppConfig, get_config
from triage_engine.domain.errors import (
    NoResourceAvailableError,
    NotFoundError,
    TriageError,
    ValidationError,
)
from triage_engine.domain.models import (
    Alert,
    AlertEvent,
    AlertStatus,
    Classification,
    ConnectionState,
    ConnectionStatus,
    ConnectionTransition,
    FacilitySummary,
    HealthStatus,
    PatientProfile,
    PatientSnapshot,
    Reading,
    ResourceAvailability,
    ResourceRecommendation,
    ResourceType,
    ResourceUnit,
    TriageEntry,
)
from triage_engine.domain.result import Result
from triage_engine.services.alert_manager import AlertManager
from triage_engine.services.classifier import classify
from triage_engine.services.connection_monitor import ConnectionMonitor
from triage_engine.services.event_feed import AlertEventBus, AlertEventHandler
from triage_engine.services.normalizer import normalize_reading
from triage_engine.services.resource_ledger import ResourceLedger
from triage_engine.services.triage import TriageAggregator

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class TelemetrySource(Protocol):
    """
    Protocol for anything that delivers raw samples for one patient.

    The stream ends when the device goes away; the engine then closes the
    patient's stream.
    """

    patient_id: str

    def stream(self) -> AsyncIterator[Mapping[str, Any]]: ...


class PatientPipeline:
    """Normalize -> classify -> alert for one patient."""

    def __init__(
        self,
        profile: PatientProfile,
        config: AppConfig,
        monitor: ConnectionMonitor,
        publish: Callable[[AlertEvent], None],
        clock: Clock,
        on_evict: Callable[[str], None] | None = None,
    ) -> None:
        self.profile = profile
        self.config = config
        self.monitor = monitor
        self.history: deque[Reading] = deque(maxlen=config.classifier.window_size)
        self.alerts = AlertManager(
            profile.patient_id, publish, config.alerts, clock, on_evict=on_evict
        )
        self.logger = logger.bind(component="patient_pipeline", patient_id=profile.patient_id)
        self._lock = threading.Lock()
        self._classification: Classification | None = None

    @property
    def patient_id(self) -> str:
        return self.profile.patient_id

    @property
    def latest_reading(self) -> Reading | None:
        return self.history[-1] if self.history else None

    @property
    def status(self) -> HealthStatus:
        if self._classification is None:
            return HealthStatus.UNKNOWN
        return self._classification.status

    def ingest(self, raw: Mapping[str, Any] | Reading, received_at: datetime) -> Reading:
        """Process one sample. Raises ValidationError when it must be dropped."""
        with self._lock:
            latest = self.latest_reading
            reading = normalize_reading(raw, latest.timestamp if latest else None)
            if reading.patient_id != self.patient_id:
                raise ValidationError(
                    f"reading for {reading.patient_id} routed to {self.patient_id}",
                    patient_id=reading.patient_id,
                )

            classification = classify(reading, list(self.history), self.config.classifier)
            self.history.append(reading)
            self._classification = classification

            if reading.suspect:
                self.logger.warning("reading_clamped", timestamp=reading.timestamp.isoformat())

            self.alerts.on_classification(classification, reading)

            transition = self.monitor.record_reading(self.patient_id, received_at)
            if transition is not None:
                self.alerts.on_connection_change(transition, reading)

            return reading

    def apply_connection(self, transition: ConnectionTransition) -> None:
        with self._lock:
            # A reading may have landed between the sweep and this call
            current = self.monitor.get_state(self.patient_id)
            if current is not None and current.status != transition.current:
                return
            self.alerts.on_connection_change(transition, self.latest_reading)

    def snapshot(self) -> PatientSnapshot:
        return PatientSnapshot(
            profile=self.profile,
            status=self.status,
            latest_reading=self.latest_reading,
            connection=self.monitor.get_state(self.patient_id),
            open_alert_count=len(self.alerts.open_alerts()),
        )


class TriageEngine:
    """
    Facility triage engine.

    Ingestion:  submit_reading, ingest
    Queries:    get_patient_status, get_open_alerts, get_triage_queue,
                get_resource_availability, get_facility_summary
    Commands:   dispatch, resolve, recommend_resource, assign,
                reserve, commit, release, set_maintenance, close_stream
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        ledger: ResourceLedger | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or get_config()
        self.clock = clock or utc_now
        self.logger = logger.bind(component="triage_engine")

        self.bus = AlertEventBus(history_size=self.config.alerts.event_history_size)
        self.monitor = ConnectionMonitor(self.config.connection)
        self.ledger = ledger or ResourceLedger()
        self.triage = TriageAggregator(
            self.ledger, patient_lookup=self._snapshot_or_none, alert_lookup=self._find_alert
        )

        self._pipelines: dict[str, PatientPipeline] = {}
        self._alert_owner: dict[str, str] = {}
        self._registry_lock = threading.Lock()
        self._is_running = False

        self.bus.subscribe(self._index_alert)
        self.bus.subscribe(self.triage.on_event)

    # ------------------------------------------------------------- internals

    def _index_alert(self, event: AlertEvent) -> None:
        self._alert_owner[event.alert.id] = event.alert.patient_id

    def _forget_alert(self, alert_id: str) -> None:
        self._alert_owner.pop(alert_id, None)

    def _new_pipeline(self, profile: PatientProfile) -> PatientPipeline:
        return PatientPipeline(
            profile,
            self.config,
            self.monitor,
            self.bus.publish,
            self.clock,
            on_evict=self._forget_alert,
        )

    def _attempt(self, operation: str, action: Callable[[], T]) -> Result[T, TriageError]:
        try:
            return Result.ok(action())
        except NoResourceAvailableError as e:
            self.logger.warning("operation_degraded", operation=operation, error=str(e))
            return Result.err(e)
        except TriageError as e:
            self.logger.info(
                "operation_rejected", operation=operation, error=str(e), error_type=type(e).__name__
            )
            return Result.err(e)

    def _pipeline(self, patient_id: str) -> PatientPipeline:
        pipeline = self._pipelines.get(patient_id)
        if pipeline is None:
            raise NotFoundError("patient", patient_id)
        return pipeline

    def _pipeline_for_alert(self, alert_id: str) -> PatientPipeline:
        patient_id = self._alert_owner.get(alert_id)
        if patient_id is None or patient_id not in self._pipelines:
            raise NotFoundError("alert", alert_id)
        return self._pipelines[patient_id]

    def _find_alert(self, alert_id: str) -> Alert | None:
        patient_id = self._alert_owner.get(alert_id)
        pipeline = self._pipelines.get(patient_id) if patient_id else None
        return pipeline.alerts.get(alert_id) if pipeline else None

    def _snapshot_or_none(self, patient_id: str) -> PatientSnapshot | None:
        pipeline = self._pipelines.get(patient_id)
        return pipeline.snapshot() if pipeline else None

    # -------------------------------------------------------------- patients

    def register_patient(
        self,
        patient_id: str,
        name: str | None = None,
        facility_id: str | None = None,
        room: str | None = None,
        assigned_doctor: str | None = None,
    ) -> PatientProfile:
        """Add a patient (or update the profile of a known one)."""
        profile = PatientProfile(
            patient_id=patient_id,
            name=name,
            facility_id=facility_id or self.config.triage.facility_id,
            room=room,
            assigned_doctor=assigned_doctor,
        )
        with self._registry_lock:
            existing = self._pipelines.get(patient_id)
            if existing is not None:
                existing.profile = profile
            else:
                self._pipelines[patient_id] = self._new_pipeline(profile)
        self.logger.info(
            "patient_registered", patient_id=patient_id, facility_id=profile.facility_id
        )
        return profile

    def _pipeline_for_reading(self, raw: Mapping[str, Any] | Reading) -> PatientPipeline:
        if isinstance(raw, Reading):
            patient_id: Any = raw.patient_id
        else:
            patient_id = raw.get("patient_id", raw.get("patientId"))
        if patient_id is None or str(patient_id).strip() == "":
            raise ValidationError("missing mandatory field(s): patient_id")

        patient_id = str(patient_id).strip()
        if patient_id not in self._pipelines:
            with self._registry_lock:
                if patient_id not in self._pipelines:
                    self._pipelines[patient_id] = self._new_pipeline(
                        PatientProfile(
                            patient_id=patient_id, facility_id=self.config.triage.facility_id
                        )
                    )
        return self._pipelines[patient_id]

    # ------------------------------------------------------------- ingestion

    def submit_reading(
        self, raw: Mapping[str, Any] | Reading, received_at: datetime | None = None
    ) -> Result[Reading, ValidationError]:
        """Accept one sample. Invalid or out-of-order samples are dropped and logged."""
        try:
            pipeline = self._pipeline_for_reading(raw)
            reading = pipeline.ingest(raw, received_at or self.clock())
        except ValidationError as e:
            self.logger.warning("reading_dropped", patient_id=e.patient_id, reason=str(e))
            return Result.err(e)
        return Result.ok(reading)

    async def ingest(self, source: TelemetrySource) -> int:
        """
        Consume a telemetry stream until it ends or the task is cancelled.

        Either way the patient's stream is closed, which drives it to
        DISCONNECTED and raises DEVICE_OFFLINE.
        """
        accepted = 0
        self.logger.info("telemetry_stream_opened", patient_id=source.patient_id)
        try:
            async for raw in source.stream():
                if self.submit_reading(raw).is_ok():
                    accepted += 1
        finally:
            self.close_stream(source.patient_id)
            self.logger.info(
                "telemetry_stream_closed", patient_id=source.patient_id, accepted=accepted
            )
        return accepted

    def close_stream(
        self, patient_id: str, at: datetime | None = None
    ) -> Result[ConnectionState, TriageError]:
        """The transport closed this patient's stream: DISCONNECTED, stop sweeping it."""

        def close() -> ConnectionState:
            pipeline = self._pipeline(patient_id)
            transition = self.monitor.close(patient_id, at or self.clock())
            if transition is not None:
                pipeline.apply_connection(transition)
            state = self.monitor.get_state(patient_id)
            if state is None:
                raise NotFoundError("connection", patient_id)
            return state

        return self._attempt("close_stream", close)

    # -------------------------------------------------------------- liveness

    def sweep(self, now: datetime | None = None) -> list[ConnectionTransition]:
        """One liveness pass over every open stream."""
        transitions = self.monitor.sweep(now or self.clock())
        for transition in transitions:
            pipeline = self._pipelines.get(transition.patient_id)
            if pipeline is not None:
                pipeline.apply_connection(transition)
        return transitions

    async def run_liveness_sweeps(self) -> None:
        """Sweep every ``sweep_interval_seconds`` until the session ends."""
        interval = self.config.connection.sweep_interval_seconds
        self.logger.info("liveness_sweeps_started", interval_seconds=interval)

        while self._is_running:
            try:
                self.sweep()
            except Exception as e:
                self.logger.exception("liveness_sweep_failed", error=str(e))
            await asyncio.sleep(interval)

    @asynccontextmanager
    async def monitoring_session(self) -> AsyncIterator["TriageEngine"]:
        """Run liveness sweeps for the lifetime of the context."""
        self._is_running = True
        task = asyncio.create_task(self.run_liveness_sweeps(), name="liveness-sweeps")
        self.logger.info("monitoring_session_started")
        try:
            yield self
        finally:
            self._is_running = False
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self.logger.info("monitoring_session_ended")

    # --------------------------------------------------------------- queries

    def subscribe(self, handler: AlertEventHandler) -> Callable[[], None]:
        """Subscribe to the alert event feed. Returns an unsubscribe callable."""
        return self.bus.subscribe(handler)

    def get_patient_status(self, patient_id: str) -> Result[PatientSnapshot, TriageError]:
        return self._attempt("get_patient_status", lambda: self._pipeline(patient_id).snapshot())

    def list_patients(self, facility_id: str | None = None) -> list[PatientSnapshot]:
        snapshots = [pipeline.snapshot() for pipeline in list(self._pipelines.values())]
        if facility_id is None:
            return snapshots
        return [s for s in snapshots if s.profile.facility_id == facility_id]

    def get_open_alerts(self, facility_id: str | None = None) -> list[Alert]:
        """Open alerts in triage order."""
        return self.triage.open_alerts(facility_id)

    def get_triage_queue(self, facility_id: str | None = None) -> list[TriageEntry]:
        return self.triage.ranked(facility_id)

    def get_alert(self, alert_id: str) -> Result[Alert, TriageError]:
        def find() -> Alert:
            alert = self._find_alert(alert_id)
            if alert is None:
                raise NotFoundError("alert", alert_id)
            return alert

        return self._attempt("get_alert", find)

    def get_resource_availability(self) -> list[ResourceAvailability]:
        return self.ledger.availability()

    def get_facility_summary(self, facility_id: str | None = None) -> FacilitySummary:
        patients = self.list_patients(facility_id)
        alerts = self.get_open_alerts(facility_id)
        return FacilitySummary(
            facility_id=facility_id,
            total_patients=len(patients),
            active_emergencies=sum(1 for a in alerts if a.status == AlertStatus.ACTIVE),
            responding_emergencies=sum(1 for a in alerts if a.status == AlertStatus.RESPONDING),
            critical_patients=sum(1 for p in patients if p.status == HealthStatus.CRITICAL),
            disconnected_devices=sum(
                1
                for p in patients
                if p.connection is not None and p.connection.status == ConnectionStatus.DISCONNECTED
            ),
            resources=self.get_resource_availability(),
        )

    # -------------------------------------------------------------- commands

    def dispatch(self, alert_id: str, responder_id: str) -> Result[Alert, TriageError]:
        return self._attempt(
            "dispatch",
            lambda: self._pipeline_for_alert(alert_id).alerts.dispatch(
                alert_id, responder_id, self.clock()
            ),
        )

    def resolve(self, alert_id: str) -> Result[Alert, TriageError]:
        return self._attempt(
            "resolve",
            lambda: self._pipeline_for_alert(alert_id).alerts.resolve(alert_id, self.clock()),
        )

    def recommend_resource(self, alert_id: str) -> Result[ResourceRecommendation, TriageError]:
        return self._attempt("recommend_resource", lambda: self.triage.recommend_resource(alert_id))

    def assign(self, alert_id: str, resource_id: str) -> Result[ResourceUnit, TriageError]:
        return self._attempt("assign", lambda: self.triage.assign(alert_id, resource_id))

    def add_resource(
        self, resource_id: str, resource_type: ResourceType, location: str | None = None
    ) -> Result[ResourceUnit, TriageError]:
        unit = ResourceUnit(id=resource_id, type=resource_type, location=location)
        return self._attempt("add_resource", lambda: self.ledger.add_unit(unit))

    def reserve(self, resource_id: str, alert_id: str) -> Result[ResourceUnit, TriageError]:
        def hold() -> ResourceUnit:
            # Units are only held for alerts that are still open
            self.triage.get_open_alert(alert_id)
            return self.ledger.reserve(resource_id, alert_id)

        return self._attempt("reserve", hold)

    def commit(
        self, resource_id: str, alert_id: str | None = None
    ) -> Result[ResourceUnit, TriageError]:
        return self._attempt("commit", lambda: self.ledger.commit(resource_id, alert_id))

    def release(
        self, resource_id: str, alert_id: str | None = None
    ) -> Result[ResourceUnit, TriageError]:
        return self._attempt("release", lambda: self.ledger.release(resource_id, alert_id))

    def set_maintenance(self, resource_id: str) -> Result[ResourceUnit, TriageError]:
        return self._attempt("set_maintenance", lambda: self.ledger.set_maintenance(resource_id))

    async def stop(self) -> None:
        """Close every open stream and stop sweeping."""
        self._is_running = False
        for patient_id in sorted(self.monitor.watched_patients):
            self.close_stream(patient_id)
        self.logger.info("triage_engine_stopped")
