"""Tests for stream liveness tracking."""

from datetime import datetime, timedelta

import pytest
from conftest import BASE_TIME

from triage_engine.config import ConnectionConfig
from triage_engine.domain.models import ConnectionStatus
from triage_engine.services.connection_monitor import ConnectionMonitor


def at(seconds: float) -> datetime:
    return BASE_TIME + timedelta(seconds=seconds)


@pytest.fixture
def monitor() -> ConnectionMonitor:
    return ConnectionMonitor(ConnectionConfig())


class TestReadings:
    def test_first_reading_connects(self, monitor: ConnectionMonitor) -> None:
        transition = monitor.record_reading("p-1", at(0))

        assert transition is not None
        assert transition.previous is None
        assert transition.current == ConnectionStatus.CONNECTED
        assert monitor.is_watched("p-1")

    def test_further_readings_are_not_transitions(self, monitor: ConnectionMonitor) -> None:
        monitor.record_reading("p-1", at(0))

        assert monitor.record_reading("p-1", at(2)) is None
        state = monitor.get_state("p-1")
        assert state is not None
        assert state.last_reading_at == at(2)
        assert state.changed_at == at(0)


class TestSweep:
    def test_silence_degrades_then_disconnects(self, monitor: ConnectionMonitor) -> None:
        monitor.record_reading("p-1", at(0))

        assert monitor.sweep(at(14.9)) == []

        degraded = monitor.sweep(at(15))
        assert [t.current for t in degraded] == [ConnectionStatus.DEGRADED]

        assert monitor.sweep(at(59.9)) == []

        disconnected = monitor.sweep(at(60))
        assert [t.current for t in disconnected] == [ConnectionStatus.DISCONNECTED]
        assert disconnected[0].previous == ConnectionStatus.DEGRADED
        assert disconnected[0].last_reading_at == at(0)

    def test_long_silence_goes_straight_to_disconnected(self, monitor: ConnectionMonitor) -> None:
        monitor.record_reading("p-1", at(0))

        transitions = monitor.sweep(at(90))

        assert len(transitions) == 1
        assert transitions[0].previous == ConnectionStatus.CONNECTED
        assert transitions[0].current == ConnectionStatus.DISCONNECTED

    def test_late_sweep_stamps_the_threshold_crossing(self, monitor: ConnectionMonitor) -> None:
        monitor.record_reading("p-1", at(0))

        degraded = monitor.sweep(at(20))
        assert degraded[0].at == at(15)

        disconnected = monitor.sweep(at(63))
        assert disconnected[0].current == ConnectionStatus.DISCONNECTED
        assert disconnected[0].at == at(60)
        state = monitor.get_state("p-1")
        assert state is not None
        assert state.changed_at == at(60)

    def test_sweep_never_improves_state(self, monitor: ConnectionMonitor) -> None:
        monitor.record_reading("p-1", at(0))
        monitor.sweep(at(60))

        assert monitor.sweep(at(61)) == []
        state = monitor.get_state("p-1")
        assert state is not None
        assert state.status == ConnectionStatus.DISCONNECTED

    def test_reading_after_disconnect_reconnects(self, monitor: ConnectionMonitor) -> None:
        monitor.record_reading("p-1", at(0))
        monitor.sweep(at(60))

        transition = monitor.record_reading("p-1", at(61))

        assert transition is not None
        assert transition.previous == ConnectionStatus.DISCONNECTED
        assert transition.current == ConnectionStatus.CONNECTED

    def test_patients_are_swept_independently(self, monitor: ConnectionMonitor) -> None:
        monitor.record_reading("p-1", at(0))
        monitor.record_reading("p-2", at(50))

        transitions = monitor.sweep(at(60))

        assert [(t.patient_id, t.current) for t in transitions] == [
            ("p-1", ConnectionStatus.DISCONNECTED)
        ]

    @pytest.mark.parametrize(
        ("silence", "expected"),
        [
            (0.0, ConnectionStatus.CONNECTED),
            (14.99, ConnectionStatus.CONNECTED),
            (15.0, ConnectionStatus.DEGRADED),
            (59.99, ConnectionStatus.DEGRADED),
            (60.0, ConnectionStatus.DISCONNECTED),
        ],
    )
    def test_status_for_silence(
        self, monitor: ConnectionMonitor, silence: float, expected: ConnectionStatus
    ) -> None:
        assert monitor.status_for_silence(silence) == expected


class TestClose:
    def test_close_disconnects_and_stops_sweeping(self, monitor: ConnectionMonitor) -> None:
        monitor.record_reading("p-1", at(0))

        transition = monitor.close("p-1", at(3))

        assert transition is not None
        assert transition.current == ConnectionStatus.DISCONNECTED
        assert not monitor.is_watched("p-1")
        assert monitor.sweep(at(120)) == []

    def test_closing_twice_is_not_a_new_transition(self, monitor: ConnectionMonitor) -> None:
        monitor.record_reading("p-1", at(0))
        monitor.close("p-1", at(3))

        assert monitor.close("p-1", at(4)) is None

    def test_reading_after_close_resumes_watching(self, monitor: ConnectionMonitor) -> None:
        monitor.record_reading("p-1", at(0))
        monitor.close("p-1", at(3))

        monitor.record_reading("p-1", at(10))

        assert monitor.watched_patients == frozenset({"p-1"})


def test_grace_must_be_shorter_than_timeout() -> None:
    with pytest.raises(ValueError, match="grace_period_seconds"):
        ConnectionConfig(grace_period_seconds=60.0, timeout_period_seconds=60.0)
