"""
Connection monitor: liveness of each patient's telemetry stream.

    CONNECTED --(silence >= grace)--> DEGRADED --(silence >= timeout)--> DISCONNECTED
        ^                                                                   |
        +------------------------- any reading -----------------------------+

The monitor is the only writer of ConnectionState. It changes state on reading
arrival, on a periodic sweep, and when a stream is closed. Closed streams are
dropped from the sweep set so nothing keeps polling a removed patient.
"""

import threading
from datetime import UTC, datetime, timedelta

import structlog

from triage_engine.config import ConnectionConfig
from triage_engine.domain.models import ConnectionState, ConnectionStatus, ConnectionTransition

logger = structlog.get_logger(__name__)

_STATUS_ORDER = {
    ConnectionStatus.CONNECTED: 0,
    ConnectionStatus.DEGRADED: 1,
    ConnectionStatus.DISCONNECTED: 2,
}


class ConnectionMonitor:
    """Tracks CONNECTED / DEGRADED / DISCONNECTED per patient."""

    def __init__(self, config: ConnectionConfig | None = None) -> None:
        self.config = config or ConnectionConfig()
        self.logger = logger.bind(component="connection_monitor")
        self._states: dict[str, ConnectionState] = {}
        self._watched: set[str] = set()
        self._lock = threading.Lock()

    def _set(
        self,
        patient_id: str,
        status: ConnectionStatus,
        at: datetime,
        last_reading_at: datetime | None,
    ) -> ConnectionTransition | None:
        previous = self._states.get(patient_id)
        unchanged = previous is not None and previous.status == status
        self._states[patient_id] = ConnectionState(
            patient_id=patient_id,
            status=status,
            last_reading_at=last_reading_at,
            changed_at=previous.changed_at if unchanged and previous else at,
        )
        if unchanged:
            return None

        transition = ConnectionTransition(
            patient_id=patient_id,
            previous=previous.status if previous else None,
            current=status,
            at=at,
            last_reading_at=last_reading_at,
        )
        self.logger.info(
            "connection_state_changed",
            patient_id=patient_id,
            previous=transition.previous.value if transition.previous else None,
            current=status.value,
        )
        return transition

    def record_reading(self, patient_id: str, at: datetime) -> ConnectionTransition | None:
        """A reading arrived: the stream is CONNECTED whatever it was before."""
        with self._lock:
            self._watched.add(patient_id)
            return self._set(patient_id, ConnectionStatus.CONNECTED, at, at)

    def status_for_silence(self, silence_seconds: float) -> ConnectionStatus:
        if silence_seconds >= self.config.timeout_period_seconds:
            return ConnectionStatus.DISCONNECTED
        if silence_seconds >= self.config.grace_period_seconds:
            return ConnectionStatus.DEGRADED
        return ConnectionStatus.CONNECTED

    def _threshold(self, status: ConnectionStatus) -> float:
        if status == ConnectionStatus.DISCONNECTED:
            return self.config.timeout_period_seconds
        return self.config.grace_period_seconds

    def sweep(self, now: datetime | None = None) -> list[ConnectionTransition]:
        """Detect silent streams. Only ever moves a stream towards DISCONNECTED."""
        now = now or datetime.now(UTC)
        transitions: list[ConnectionTransition] = []

        with self._lock:
            for patient_id in sorted(self._watched):
                state = self._states[patient_id]
                if state.last_reading_at is None:
                    continue

                silence = (now - state.last_reading_at).total_seconds()
                target = self.status_for_silence(silence)
                if _STATUS_ORDER[target] <= _STATUS_ORDER[state.status]:
                    continue

                # Stamped when the silence crossed the threshold, not when it was noticed
                crossed_at = state.last_reading_at + timedelta(seconds=self._threshold(target))
                transition = self._set(patient_id, target, crossed_at, state.last_reading_at)
                if transition is not None:
                    transitions.append(transition)

        if transitions:
            self.logger.debug("liveness_sweep_completed", transitions=len(transitions))
        return transitions

    def close(self, patient_id: str, at: datetime | None = None) -> ConnectionTransition | None:
        """Stream closed by the transport: DISCONNECTED now, and stop sweeping it."""
        at = at or datetime.now(UTC)
        with self._lock:
            self._watched.discard(patient_id)
            previous = self._states.get(patient_id)
            last_reading_at = previous.last_reading_at if previous else None
            return self._set(patient_id, ConnectionStatus.DISCONNECTED, at, last_reading_at)

    def get_state(self, patient_id: str) -> ConnectionState | None:
        return self._states.get(patient_id)

    def is_watched(self, patient_id: str) -> bool:
        return patient_id in self._watched

    @property
    def watched_patients(self) -> frozenset[str]:
        return frozenset(self._watched)
