"""
Reading normalizer: raw telemetry sample -> canonical Reading.

Pure function, no side effects. Out-of-bound numbers are clamped and the
reading is flagged suspect; missing mandatory fields and out-of-order
timestamps are rejected with ValidationError. Logging of dropped samples is
the caller's job.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from triage_engine.domain.errors import ValidationError
from triage_engine.domain.models import Location, Reading

# Physiological bounds applied before any further processing
BOUNDS: dict[str, tuple[float, float]] = {
    "heart_rate": (0.0, 300.0),
    "temperature": (20.0, 45.0),
    "oxygen_saturation": (0.0, 100.0),
    "systolic": (0.0, 300.0),
    "diastolic": (0.0, 200.0),
    "battery_level": (0.0, 100.0),
}

MANDATORY_FIELDS = ("patient_id", "timestamp", "heart_rate")


class RawSample(BaseModel):
    """Near-canonical sample as delivered by the transport (snake_case or camelCase)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        allow_inf_nan=False,
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
    )

    patient_id: str = Field(min_length=1)
    timestamp: datetime
    heart_rate: float
    temperature: float | None = None
    oxygen_saturation: float | None = None
    systolic: float | None = None
    diastolic: float | None = None
    battery_level: float | None = None
    blood_pressure: dict[str, float] | None = None
    location: dict[str, float] | None = None
    fall_detected: bool = False


def _clamp(value: float, low: float, high: float) -> tuple[float, bool]:
    if value < low:
        return low, True
    if value > high:
        return high, True
    return value, False


def _parse_location(raw: Mapping[str, float]) -> Location | None:
    latitude = raw.get("latitude", raw.get("lat"))
    longitude = raw.get("longitude", raw.get("long", raw.get("lng", raw.get("lon"))))
    if latitude is None or longitude is None:
        return None
    try:
        return Location(latitude=latitude, longitude=longitude)
    except pydantic.ValidationError:
        return None


def normalize_reading(
    raw: Mapping[str, Any] | Reading, last_accepted_at: datetime | None = None
) -> Reading:
    """
    Validate and clamp a raw sample.

    Args:
        raw: Mapping of sample fields, or an already canonical Reading
        last_accepted_at: Timestamp of the last reading accepted for the same patient

    Raises:
        ValidationError: mandatory field missing/malformed, or timestamp not
            strictly after last_accepted_at.
    """
    if isinstance(raw, Reading):
        raw = raw.model_dump(exclude_none=True)

    patient_hint = raw.get("patient_id", raw.get("patientId"))
    missing = [
        name for name in MANDATORY_FIELDS if raw.get(name, raw.get(to_camel(name))) is None
    ]
    if missing:
        raise ValidationError(
            f"missing mandatory field(s): {', '.join(missing)}",
            patient_id=str(patient_hint) if patient_hint is not None else None,
        )

    try:
        sample = RawSample.model_validate(dict(raw))
    except pydantic.ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ValidationError(
            f"malformed field(s): {', '.join(fields)}",
            patient_id=str(patient_hint) if patient_hint is not None else None,
        ) from e

    timestamp = sample.timestamp
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)

    if last_accepted_at is not None and timestamp <= last_accepted_at:
        raise ValidationError(
            f"out-of-order reading at {timestamp.isoformat()}"
            f" (last accepted {last_accepted_at.isoformat()})",
            patient_id=sample.patient_id,
        )

    values: dict[str, float | None] = {
        "heart_rate": sample.heart_rate,
        "temperature": sample.temperature,
        "oxygen_saturation": sample.oxygen_saturation,
        "systolic": sample.systolic,
        "diastolic": sample.diastolic,
        "battery_level": sample.battery_level,
    }
    if sample.blood_pressure:
        if values["systolic"] is None:
            values["systolic"] = sample.blood_pressure.get("systolic")
        if values["diastolic"] is None:
            values["diastolic"] = sample.blood_pressure.get("diastolic")

    suspect = False
    for name, value in values.items():
        if value is None:
            continue
        low, high = BOUNDS[name]
        values[name], clamped = _clamp(value, low, high)
        suspect = suspect or clamped

    location = None
    if sample.location is not None:
        location = _parse_location(sample.location)
        suspect = suspect or location is None

    return Reading(
        patient_id=sample.patient_id,
        timestamp=timestamp,
        location=location,
        fall_detected=sample.fall_detected,
        suspect=suspect,
        **values,
    )
