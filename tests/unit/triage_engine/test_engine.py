"""
Tests for the TriageEngine facade.

Covers the full path from raw sample to ranked alert, liveness timing with a
fake clock, Result-wrapped commands, and the async ingestion helpers.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from conftest import BASE_TIME, FakeClock

from triage_engine.adapters.simulator import SimulatedWearable, SimulatorConfig
from triage_engine.config import AlertConfig, AppConfig, ConnectionConfig
from triage_engine.domain.errors import (
    ConflictError,
    NoResourceAvailableError,
    NotFoundError,
    ValidationError,
)
from triage_engine.domain.models import (
    AlertEvent,
    AlertKind,
    AlertStatus,
    ConnectionStatus,
    HealthStatus,
    ResourceStatus,
    ResourceType,
    Severity,
)
from triage_engine.domain.result import Result
from triage_engine.services.engine import TriageEngine
from triage_engine.services.triage import TriageAggregator


def sample(patient_id: str, when: datetime, **vitals: Any) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "patientId": patient_id,
        "timestamp": when.isoformat(),
        "heartRate": 78,
        "temperature": 36.7,
        "oxygenSaturation": 98,
    }
    raw.update(vitals)
    return raw


@pytest.fixture
def engine(clock: FakeClock) -> TriageEngine:
    return TriageEngine(AppConfig(), clock=clock)


def send(engine: TriageEngine, clock: FakeClock, patient_id: str, **vitals: Any) -> None:
    result = engine.submit_reading(sample(patient_id, clock.now, **vitals))
    assert result.is_ok(), result


class TestResult:
    def test_ok(self) -> None:
        result: Result[str, Exception] = Result.ok("done")
        assert result.is_ok()
        assert result.unwrap() == "done"
        assert result.unwrap_or("default") == "done"

    def test_err(self) -> None:
        error = NotFoundError("alert", "alrt-1")
        result: Result[str, NotFoundError] = Result.err(error)

        assert result.is_err()
        assert result.unwrap_err() is error
        assert result.unwrap_or("default") == "default"
        with pytest.raises(NotFoundError):
            result.unwrap()

    def test_needs_exactly_one_side(self) -> None:
        with pytest.raises(ValueError):
            Result()
        with pytest.raises(ValueError):
            Result(value=1, error=ValueError("both"))


class TestIngestion:
    def test_valid_sample_is_accepted(self, engine: TriageEngine, clock: FakeClock) -> None:
        result = engine.submit_reading(sample("p-1", clock.now))

        assert result.is_ok()
        status = engine.get_patient_status("p-1").unwrap()
        assert status.status == HealthStatus.NORMAL
        assert status.connection is not None
        assert status.connection.status == ConnectionStatus.CONNECTED

    def test_invalid_sample_is_dropped(self, engine: TriageEngine, clock: FakeClock) -> None:
        raw = sample("p-1", clock.now)
        del raw["heartRate"]

        result = engine.submit_reading(raw)

        assert result.is_err()
        assert isinstance(result.unwrap_err(), ValidationError)
        assert engine.get_patient_status("p-1").unwrap().latest_reading is None

    def test_sample_without_patient_is_dropped(self, engine: TriageEngine) -> None:
        result = engine.submit_reading({"heartRate": 80})

        assert result.is_err()
        assert engine.list_patients() == []

    def test_out_of_order_sample_is_dropped(
        self, engine: TriageEngine, clock: FakeClock
    ) -> None:
        send(engine, clock, "p-1")
        stale = engine.submit_reading(sample("p-1", clock.now - timedelta(seconds=1)))

        assert stale.is_err()
        assert "out-of-order" in str(stale.unwrap_err())

    def test_unknown_patient_is_registered_on_first_reading(
        self, engine: TriageEngine, clock: FakeClock
    ) -> None:
        send(engine, clock, "p-new")

        profile = engine.get_patient_status("p-new").unwrap().profile
        assert profile.facility_id == "main"

    def test_status_is_unknown_before_first_reading(self, engine: TriageEngine) -> None:
        engine.register_patient("p-1", name="Rajesh Kumar", room="ICU-201")

        snapshot = engine.get_patient_status("p-1").unwrap()
        assert snapshot.status == HealthStatus.UNKNOWN
        assert snapshot.profile.name == "Rajesh Kumar"

    def test_unknown_patient_status(self, engine: TriageEngine) -> None:
        assert isinstance(engine.get_patient_status("p-404").unwrap_err(), NotFoundError)


class TestAlertsThroughEngine:
    def test_sustained_tachycardia_reaches_triage_queue(
        self, engine: TriageEngine, clock: FakeClock
    ) -> None:
        engine.register_patient("p-1", name="Rajesh Kumar")
        send(engine, clock, "p-1", heartRate=112)
        clock.advance(2)
        send(engine, clock, "p-1", heartRate=115)

        queue = engine.get_triage_queue()

        assert len(queue) == 1
        assert queue[0].alert.kind == AlertKind.HEART_RATE_HIGH
        assert queue[0].alert.severity == Severity.MEDIUM
        assert queue[0].patient is not None
        assert queue[0].patient.profile.name == "Rajesh Kumar"
        assert queue[0].patient.status == HealthStatus.WARNING

    def test_queue_orders_patients_by_severity_then_age(
        self, engine: TriageEngine, clock: FakeClock
    ) -> None:
        send(engine, clock, "p-a", heartRate=110)
        clock.advance(1)
        send(engine, clock, "p-a", heartRate=110)
        clock.advance(1)
        send(engine, clock, "p-b", oxygenSaturation=70)
        clock.advance(1)
        send(engine, clock, "p-c", fallDetected=True)

        patients = [e.alert.patient_id for e in engine.get_triage_queue()]

        assert patients == ["p-b", "p-c", "p-a"]

    def test_subscribers_see_lifecycle_events(
        self, engine: TriageEngine, clock: FakeClock
    ) -> None:
        received: list[AlertEvent] = []
        unsubscribe = engine.subscribe(received.append)

        send(engine, clock, "p-1", fallDetected=True)
        alert_id = received[0].alert.id
        engine.dispatch(alert_id, "nurse-1")
        unsubscribe()
        engine.resolve(alert_id)

        assert [e.type for e in received] == ["opened", "dispatched"]
        assert [e.type for e in engine.bus.recent()] == ["opened", "dispatched", "resolved"]

    def test_replaying_the_feed_rebuilds_the_same_ranking(
        self, engine: TriageEngine, clock: FakeClock
    ) -> None:
        send(engine, clock, "p-a", fallDetected=True)
        clock.advance(1)
        send(engine, clock, "p-b", oxygenSaturation=70)
        for event in list(engine.bus.recent()):
            engine.triage.on_event(event)

        replica = TriageAggregator(engine.ledger)
        for event in engine.bus.recent():
            replica.on_event(event)
            replica.on_event(event)

        assert [a.id for a in replica.open_alerts()] == [
            a.id for a in engine.get_open_alerts()
        ]

    def test_dispatch_and_resolve_commands(self, engine: TriageEngine, clock: FakeClock) -> None:
        send(engine, clock, "p-1", fallDetected=True)
        alert_id = engine.get_open_alerts()[0].id

        dispatched = engine.dispatch(alert_id, "nurse-1").unwrap()
        assert dispatched.status == AlertStatus.RESPONDING
        assert engine.get_triage_queue()[0].alert.status == AlertStatus.RESPONDING

        resolved = engine.resolve(alert_id).unwrap()
        assert resolved.status == AlertStatus.RESOLVED
        assert engine.get_open_alerts() == []
        assert engine.get_alert(alert_id).unwrap().status == AlertStatus.RESOLVED

    def test_commands_on_unknown_alert_return_errors(self, engine: TriageEngine) -> None:
        assert isinstance(engine.dispatch("alrt-missing", "n-1").unwrap_err(), NotFoundError)
        assert isinstance(engine.resolve("alrt-missing").unwrap_err(), NotFoundError)
        assert isinstance(engine.get_alert("alrt-missing").unwrap_err(), NotFoundError)

    def test_alert_index_is_bounded_by_resolved_retention(self, clock: FakeClock) -> None:
        engine = TriageEngine(AppConfig(alerts=AlertConfig(resolved_retention=3)), clock=clock)
        alert_ids = []
        for _ in range(6):
            send(engine, clock, "p-1", fallDetected=True)
            alert_ids.append(engine.get_open_alerts()[0].id)
            engine.resolve(alert_ids[-1]).unwrap()
            clock.advance(1)
            send(engine, clock, "p-1")
            clock.advance(1)

        assert len(set(alert_ids)) == 6
        assert len(engine._alert_owner) == 3
        assert isinstance(engine.get_alert(alert_ids[0]).unwrap_err(), NotFoundError)
        assert engine.get_alert(alert_ids[-1]).unwrap().status == AlertStatus.RESOLVED


class TestResources:
    def test_recommend_and_assign(self, engine: TriageEngine, clock: FakeClock) -> None:
        engine.add_resource("amb-1", ResourceType.AMBULANCE)
        send(engine, clock, "p-1", fallDetected=True)
        alert_id = engine.get_open_alerts()[0].id

        recommendation = engine.recommend_resource(alert_id).unwrap()
        assert [u.id for u in recommendation.units] == ["amb-1"]

        assert engine.assign(alert_id, "amb-1").unwrap().status == ResourceStatus.RESERVED
        assert engine.commit("amb-1", alert_id).unwrap().status == ResourceStatus.OCCUPIED
        assert engine.release("amb-1", alert_id).unwrap().status == ResourceStatus.AVAILABLE

    def test_no_resource_keeps_alert_open(self, engine: TriageEngine, clock: FakeClock) -> None:
        send(engine, clock, "p-1", fallDetected=True)
        alert_id = engine.get_open_alerts()[0].id

        result = engine.recommend_resource(alert_id)

        assert isinstance(result.unwrap_err(), NoResourceAvailableError)
        assert [a.id for a in engine.get_open_alerts()] == [alert_id]

    def test_second_reservation_conflicts(self, engine: TriageEngine, clock: FakeClock) -> None:
        engine.add_resource("bed-1", ResourceType.BED, "ICU")
        send(engine, clock, "p-1", fallDetected=True)
        send(engine, clock, "p-2", fallDetected=True)
        first, second = (a.id for a in engine.get_open_alerts())

        assert engine.reserve("bed-1", first).is_ok()
        assert isinstance(engine.reserve("bed-1", second).unwrap_err(), ConflictError)

    def test_reserve_requires_an_open_alert(self, engine: TriageEngine, clock: FakeClock) -> None:
        engine.add_resource("bed-1", ResourceType.BED, "ICU")
        send(engine, clock, "p-1", fallDetected=True)
        alert_id = engine.get_open_alerts()[0].id
        engine.resolve(alert_id).unwrap()

        assert isinstance(engine.reserve("bed-1", "alrt-missing").unwrap_err(), NotFoundError)
        assert isinstance(engine.reserve("bed-1", alert_id).unwrap_err(), NotFoundError)
        availability = {a.type: a for a in engine.get_resource_availability()}
        assert availability[ResourceType.BED].available == 1

    def test_maintenance(self, engine: TriageEngine) -> None:
        engine.add_resource("vent-1", ResourceType.VENTILATOR)

        assert engine.set_maintenance("vent-1").unwrap().status == ResourceStatus.MAINTENANCE
        availability = {a.type: a for a in engine.get_resource_availability()}
        assert availability[ResourceType.VENTILATOR].available == 0


class TestLiveness:
    def test_device_offline_opens_exactly_at_timeout(
        self, engine: TriageEngine, clock: FakeClock
    ) -> None:
        send(engine, clock, "p-1")

        clock.advance(59.999)
        engine.sweep()
        assert engine.get_open_alerts() == []
        snapshot = engine.get_patient_status("p-1").unwrap()
        assert snapshot.connection is not None
        assert snapshot.connection.status == ConnectionStatus.DEGRADED

        clock.advance(0.001)
        engine.sweep()
        alerts = engine.get_open_alerts()
        assert [(a.kind, a.severity) for a in alerts] == [
            (AlertKind.DEVICE_OFFLINE, Severity.HIGH)
        ]
        assert alerts[0].opened_at == BASE_TIME + timedelta(seconds=60)

    def test_next_reading_resolves_device_offline(
        self, engine: TriageEngine, clock: FakeClock
    ) -> None:
        send(engine, clock, "p-1")
        clock.advance(60)
        engine.sweep()
        offline_id = engine.get_open_alerts()[0].id

        clock.advance(5)
        send(engine, clock, "p-1")

        assert engine.get_open_alerts() == []
        assert engine.get_alert(offline_id).unwrap().status == AlertStatus.RESOLVED

    def test_close_stream_disconnects_and_stops_sweeping(
        self, engine: TriageEngine, clock: FakeClock
    ) -> None:
        send(engine, clock, "p-1")

        state = engine.close_stream("p-1").unwrap()

        assert state.status == ConnectionStatus.DISCONNECTED
        assert [a.kind for a in engine.get_open_alerts()] == [AlertKind.DEVICE_OFFLINE]
        clock.advance(600)
        assert engine.sweep() == []

    def test_close_unknown_stream(self, engine: TriageEngine) -> None:
        assert isinstance(engine.close_stream("p-404").unwrap_err(), NotFoundError)

    def test_facility_summary(self, engine: TriageEngine, clock: FakeClock) -> None:
        engine.add_resource("bed-1", ResourceType.BED)
        send(engine, clock, "p-1", fallDetected=True)
        send(engine, clock, "p-2")
        clock.advance(60)
        send(engine, clock, "p-1", fallDetected=False)
        engine.sweep()

        summary = engine.get_facility_summary()

        assert summary.total_patients == 2
        assert summary.active_emergencies == 2
        assert summary.responding_emergencies == 0
        assert summary.disconnected_devices == 1
        bed = next(r for r in summary.resources if r.type == ResourceType.BED)
        assert bed.available == 1


class TestAsync:
    async def test_ingest_consumes_stream_then_closes_it(
        self, engine: TriageEngine, clock: FakeClock
    ) -> None:
        source = SimulatedWearable(
            "p-sim",
            "tachycardia",
            SimulatorConfig(interval_seconds=2.0, max_samples=6, realtime=False),
            seed=7,
            start_at=BASE_TIME,
        )

        accepted = await engine.ingest(source)

        assert accepted == 6
        kinds = {a.kind for a in engine.get_open_alerts()}
        assert AlertKind.HEART_RATE_HIGH in kinds
        assert AlertKind.DEVICE_OFFLINE in kinds
        snapshot = engine.get_patient_status("p-sim").unwrap()
        assert snapshot.connection is not None
        assert snapshot.connection.status == ConnectionStatus.DISCONNECTED

    async def test_cancelled_ingest_still_closes_stream(
        self, engine: TriageEngine
    ) -> None:
        source = SimulatedWearable(
            "p-drop",
            "dropout",
            SimulatorConfig(dropout_after=2, realtime=False),
            start_at=BASE_TIME,
        )

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(engine.ingest(source), timeout=0.2)

        assert not engine.monitor.is_watched("p-drop")
        assert [a.kind for a in engine.get_open_alerts()] == [AlertKind.DEVICE_OFFLINE]

    async def test_monitoring_session_sweeps_and_cleans_up(self) -> None:
        config = AppConfig(
            connection=ConnectionConfig(
                grace_period_seconds=0.05,
                timeout_period_seconds=0.1,
                sweep_interval_seconds=0.01,
            ),
            alerts=AlertConfig(),
        )
        engine = TriageEngine(config)

        async with engine.monitoring_session():
            engine.submit_reading(sample("p-1", datetime.now(UTC)))
            await asyncio.sleep(0.3)
            kinds = [a.kind for a in engine.get_open_alerts()]

        assert kinds == [AlertKind.DEVICE_OFFLINE]
        tasks = [t for t in asyncio.all_tasks() if t.get_name() == "liveness-sweeps"]
        assert tasks == []

    async def test_stop_closes_every_open_stream(
        self, engine: TriageEngine, clock: FakeClock
    ) -> None:
        send(engine, clock, "p-1")
        send(engine, clock, "p-2")

        await engine.stop()

        assert engine.monitor.watched_patients == frozenset()
        assert len(engine.get_open_alerts()) == 2
