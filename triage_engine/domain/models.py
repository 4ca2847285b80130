"""
Domain models for patient telemetry and emergency triage.

These models represent the core business concepts and are framework-agnostic.
Records that change over time (alerts, resource units, connection state) are
frozen and replaced wholesale on every transition.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class HealthStatus(str, Enum):
    """Health status tiers, ordered from best to worst (UNKNOWN aside)."""

    UNKNOWN = "unknown"
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    HealthStatus.UNKNOWN: -1,
    HealthStatus.NORMAL: 0,
    HealthStatus.WARNING: 1,
    HealthStatus.CRITICAL: 2,
}


class Severity(str, Enum):
    """Alert severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class AlertKind(str, Enum):
    """Cause of an alert. Each kind has at most one open alert per patient."""

    HEART_RATE_HIGH = "heart_rate_high"
    HEART_RATE_LOW = "heart_rate_low"
    TEMP_HIGH = "temp_high"
    TEMP_LOW = "temp_low"
    OXYGEN_LOW = "oxygen_low"
    BLOOD_PRESSURE_HIGH = "blood_pressure_high"
    FALL_DETECTED = "fall_detected"
    DEVICE_OFFLINE = "device_offline"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    RESPONDING = "responding"
    RESOLVED = "resolved"


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"


class ResourceType(str, Enum):
    BED = "bed"
    VENTILATOR = "ventilator"
    AMBULANCE = "ambulance"
    STAFF = "staff"


class ResourceStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)


class Reading(BaseModel):
    """One normalized vital-sign sample. Numeric fields are already clamped."""

    model_config = ConfigDict(frozen=True)  # Immutable for better reasoning

    patient_id: str
    timestamp: datetime
    heart_rate: float = Field(ge=0.0, le=300.0, description="beats/min")
    temperature: float | None = Field(default=None, ge=20.0, le=45.0, description="degrees C")
    oxygen_saturation: float | None = Field(default=None, ge=0.0, le=100.0)
    systolic: float | None = Field(default=None, ge=0.0, le=300.0, description="mmHg")
    diastolic: float | None = Field(default=None, ge=0.0, le=200.0, description="mmHg")
    battery_level: float | None = Field(default=None, ge=0.0, le=100.0)
    location: Location | None = None
    fall_detected: bool = False
    suspect: bool = Field(default=False, description="At least one field was clamped")


class Finding(BaseModel):
    """One abnormal vital in a reading."""

    model_config = ConfigDict(frozen=True)

    kind: AlertKind
    tier: HealthStatus
    value: float | None = None


class Classification(BaseModel):
    """Classifier output for one reading."""

    model_config = ConfigDict(frozen=True)

    status: HealthStatus
    raw_status: HealthStatus = Field(description="Tier of the current reading alone")
    findings: tuple[Finding, ...] = ()
    confirmed_findings: tuple[Finding, ...] = Field(
        default=(), description="Findings whose own kind passed the debounce, at that tier"
    )
    immediate: bool = Field(default=False, description="Escalated without debounce")


class ConnectionState(BaseModel):
    model_config = ConfigDict(frozen=True)

    patient_id: str
    status: ConnectionStatus
    last_reading_at: datetime | None = None
    changed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ConnectionTransition(BaseModel):
    """A change of connection status emitted by the Connection Monitor."""

    model_config = ConfigDict(frozen=True)

    patient_id: str
    previous: ConnectionStatus | None
    current: ConnectionStatus
    at: datetime
    last_reading_at: datetime | None = None


class Alert(BaseModel):
    """A tracked emergency condition with its own lifecycle."""

    model_config = ConfigDict(frozen=True)

    id: str
    patient_id: str
    kind: AlertKind
    severity: Severity
    status: AlertStatus = AlertStatus.ACTIVE
    opened_at: datetime
    last_triggered_at: datetime
    closed_at: datetime | None = None
    responder: str | None = None
    dispatched_at: datetime | None = None
    triggering_reading: Reading | None = None
    version: int = Field(default=1, ge=1, description="Bumped on every change")

    @property
    def is_open(self) -> bool:
        return self.status != AlertStatus.RESOLVED


AlertEventType = Literal["opened", "escalated", "dispatched", "resolved"]


class AlertEvent(BaseModel):
    """Lifecycle event published on the alert feed. Idempotent on (alert.id, version)."""

    model_config = ConfigDict(frozen=True)

    type: AlertEventType
    alert: Alert
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def key(self) -> tuple[str, int]:
        return (self.alert.id, self.alert.version)


class ResourceUnit(BaseModel):
    """A finite, assignable facility asset."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: ResourceType
    status: ResourceStatus = ResourceStatus.AVAILABLE
    assigned_alert_id: str | None = None
    location: str | None = None


class ResourceAvailability(BaseModel):
    type: ResourceType
    available: int = Field(ge=0)
    total: int = Field(ge=0)
    by_status: dict[ResourceStatus, int] = Field(default_factory=dict)


class ResourceRecommendation(BaseModel):
    """Suggested units for an alert. Nothing is bound until assign() is called."""

    model_config = ConfigDict(frozen=True)

    alert_id: str
    required_types: tuple[ResourceType, ...]
    units: tuple[ResourceUnit, ...]


class PatientProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    patient_id: str
    name: str | None = None
    facility_id: str = "main"
    room: str | None = None
    assigned_doctor: str | None = None


class PatientSnapshot(BaseModel):
    """Read-only view of one patient at a point in time."""

    model_config = ConfigDict(frozen=True)

    profile: PatientProfile
    status: HealthStatus
    latest_reading: Reading | None = None
    connection: ConnectionState | None = None
    open_alert_count: int = 0

    @property
    def patient_id(self) -> str:
        return self.profile.patient_id


class TriageEntry(BaseModel):
    """Ephemeral ranked view of an open alert. Never persisted."""

    model_config = ConfigDict(frozen=True)

    rank: int = Field(ge=1)
    alert: Alert
    patient: PatientSnapshot | None = None


class FacilitySummary(BaseModel):
    """Counts shown on the facility command board."""

    facility_id: str | None
    total_patients: int
    active_emergencies: int
    responding_emergencies: int
    critical_patients: int
    disconnected_devices: int
    resources: list[ResourceAvailability]
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
