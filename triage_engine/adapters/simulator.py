"""
Simulated wearable device.

Stand-in for the real telemetry transport: produces camelCase samples as a
bounded random walk around a scenario baseline, the way the demo dashboard
generates its data. Scenarios push one or more vitals out of range so every
alert path can be exercised without hardware.
"""

import asyncio
import random
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

Scenario = Literal["normal", "tachycardia", "fever", "hypoxia", "fall", "dropout"]


class VitalsBaseline(BaseModel):
    heart_rate: float = 75.0
    temperature: float = 36.8
    oxygen_saturation: float = 98.0
    systolic: float = 120.0
    diastolic: float = 80.0
    battery_level: float = 85.0


SCENARIO_BASELINES: dict[str, VitalsBaseline] = {
    "normal": VitalsBaseline(),
    "tachycardia": VitalsBaseline(heart_rate=138.0, systolic=145.0),
    "fever": VitalsBaseline(heart_rate=104.0, temperature=39.4),
    "hypoxia": VitalsBaseline(heart_rate=112.0, oxygen_saturation=78.0),
    "fall": VitalsBaseline(heart_rate=96.0),
    "dropout": VitalsBaseline(),
}


class SimulatorConfig(BaseModel):
    """Shape of the simulated stream."""

    interval_seconds: float = Field(default=2.0, gt=0.0, description="Time between samples")
    max_samples: int | None = Field(default=None, gt=0, description="End the stream after this")
    dropout_after: int = Field(default=5, gt=0, description="Samples before a dropout goes silent")
    fall_at: int = Field(default=3, ge=0, description="Sample index that carries the fall flag")
    malformed_rate: float = Field(
        default=0.0, ge=0.0, le=1.0, description="Share of samples missing their heart rate"
    )
    realtime: bool = Field(default=True, description="Sleep between samples")


class SimulatedWearable:
    """Random-walk vital-sign generator for one patient."""

    def __init__(
        self,
        patient_id: str,
        scenario: Scenario = "normal",
        config: SimulatorConfig | None = None,
        seed: int | None = None,
        start_at: datetime | None = None,
        location: tuple[float, float] | None = None,
    ) -> None:
        self.patient_id = patient_id
        self.scenario = scenario
        self.config = config or SimulatorConfig()
        self.baseline = SCENARIO_BASELINES[scenario]
        self.location = location
        self.logger = logger.bind(
            source="simulated_wearable", patient_id=patient_id, scenario=scenario
        )
        self._rng = random.Random(seed)
        self._start_at = start_at
        self._current = self.baseline.model_dump()
        self._sent = 0

    @property
    def samples_sent(self) -> int:
        return self._sent

    def _walk(self, name: str, step: float, low: float, high: float) -> float:
        # Drift around the scenario baseline without wandering off
        target = getattr(self.baseline, name)
        value = self._current[name] + (self._rng.random() - 0.5) * step
        value += (target - value) * 0.2
        self._current[name] = max(low, min(high, value))
        return round(self._current[name], 1)

    def _timestamp(self, clock: Callable[[], datetime]) -> datetime:
        if self._start_at is None:
            return clock()
        return self._start_at + timedelta(seconds=self._sent * self.config.interval_seconds)

    def next_sample(self, clock: Callable[[], datetime] | None = None) -> dict[str, Any]:
        """Generate the next raw sample."""
        clock = clock or (lambda: datetime.now(UTC))
        sample: dict[str, Any] = {
            "patientId": self.patient_id,
            "timestamp": self._timestamp(clock).isoformat(),
            "heartRate": self._walk("heart_rate", 4.0, 30.0, 200.0),
            "temperature": self._walk("temperature", 0.3, 34.0, 42.0),
            "oxygenSaturation": self._walk("oxygen_saturation", 1.0, 60.0, 100.0),
            "bloodPressure": {
                "systolic": self._walk("systolic", 8.0, 80.0, 200.0),
                "diastolic": self._walk("diastolic", 5.0, 50.0, 130.0),
            },
            "batteryLevel": max(0.0, round(self.baseline.battery_level - self._sent * 0.05, 1)),
        }
        if self.location is not None:
            sample["location"] = {"lat": self.location[0], "lng": self.location[1]}
        if self.scenario == "fall" and self._sent == self.config.fall_at:
            sample["fallDetected"] = True
        if self.config.malformed_rate and self._rng.random() < self.config.malformed_rate:
            del sample["heartRate"]

        self._sent += 1
        return sample

    async def stream(self) -> AsyncIterator[dict[str, Any]]:
        """
        Yield samples until max_samples is reached.

        A dropout device stops sending after ``dropout_after`` samples but keeps
        the stream open, so only the liveness sweep can notice it.
        """
        while self.config.max_samples is None or self._sent < self.config.max_samples:
            if self.scenario == "dropout" and self._sent >= self.config.dropout_after:
                self.logger.info("device_went_silent", samples_sent=self._sent)
                await asyncio.Event().wait()

            yield self.next_sample()

            if self.config.realtime:
                await asyncio.sleep(self.config.interval_seconds)
            else:
                await asyncio.sleep(0)

        self.logger.info("simulated_stream_finished", samples_sent=self._sent)
