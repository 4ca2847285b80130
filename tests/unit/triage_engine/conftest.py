"""Shared fixtures for the triage engine unit tests."""

from datetime import UTC, datetime, timedelta

import pytest

from triage_engine.domain.models import Reading

BASE_TIME = datetime(2026, 1, 1, 8, 0, tzinfo=UTC)


def make_reading(
    seconds: float = 0.0,
    patient_id: str = "p-1",
    heart_rate: float = 75.0,
    temperature: float | None = 36.8,
    oxygen_saturation: float | None = 98.0,
    systolic: float | None = 120.0,
    fall_detected: bool = False,
) -> Reading:
    """A canonical reading ``seconds`` after BASE_TIME, normal unless told otherwise."""
    return Reading(
        patient_id=patient_id,
        timestamp=BASE_TIME + timedelta(seconds=seconds),
        heart_rate=heart_rate,
        temperature=temperature,
        oxygen_saturation=oxygen_saturation,
        systolic=systolic,
        diastolic=80.0 if systolic is not None else None,
        fall_detected=fall_detected,
    )


class FakeClock:
    """Manually advanced clock for liveness and lifecycle timing."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
