"""
Resource ledger: availability and assignment of finite facility assets.

Resources live in an arena keyed by id. Every state change goes through
``_transition``, which holds that resource's lock for the whole
check-and-set, so the reserve/commit/release sequence is linearizable per
resource: two concurrent reserves on one unit give one success and one
ConflictError.

    AVAILABLE --reserve--> RESERVED --commit--> OCCUPIED
        ^                     |                    |
        +------release--------+--------------------+
    (any) --set_maintenance--> MAINTENANCE --release--> AVAILABLE
"""

import threading
from collections.abc import Callable, Iterable

import structlog

from triage_engine.domain.errors import ConflictError, InvalidStateError, NotFoundError
from triage_engine.domain.models import (
    ResourceAvailability,
    ResourceStatus,
    ResourceType,
    ResourceUnit,
)

logger = structlog.get_logger(__name__)


class ResourceLedger:
    """Thread-safe arena of ResourceUnits."""

    def __init__(self, units: Iterable[ResourceUnit] = ()) -> None:
        self.logger = logger.bind(component="resource_ledger")
        self._units: dict[str, ResourceUnit] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        for unit in units:
            self.add_unit(unit)

    def add_unit(self, unit: ResourceUnit) -> ResourceUnit:
        with self._registry_lock:
            if unit.id in self._units:
                raise ConflictError(f"resource {unit.id} already registered")
            self._units[unit.id] = unit
            self._locks[unit.id] = threading.Lock()
        self.logger.info("resource_registered", resource_id=unit.id, type=unit.type.value)
        return unit

    def _transition(
        self, resource_id: str, change: Callable[[ResourceUnit], ResourceUnit]
    ) -> ResourceUnit:
        """Single choke point for every mutation of one resource."""
        lock = self._locks.get(resource_id)
        if lock is None:
            raise NotFoundError("resource", resource_id)

        with lock:
            current = self._units[resource_id]
            updated = change(current)
            self._units[resource_id] = updated

        self.logger.info(
            "resource_transition",
            resource_id=resource_id,
            previous=current.status.value,
            current=updated.status.value,
            alert_id=updated.assigned_alert_id,
        )
        return updated

    def reserve(self, resource_id: str, alert_id: str) -> ResourceUnit:
        """AVAILABLE -> RESERVED for an alert."""

        def change(unit: ResourceUnit) -> ResourceUnit:
            if unit.status != ResourceStatus.AVAILABLE:
                raise ConflictError(
                    f"resource {unit.id} is {unit.status.value}"
                    + (f" for alert {unit.assigned_alert_id}" if unit.assigned_alert_id else "")
                )
            return unit.model_copy(
                update={"status": ResourceStatus.RESERVED, "assigned_alert_id": alert_id}
            )

        return self._transition(resource_id, change)

    def commit(self, resource_id: str, alert_id: str | None = None) -> ResourceUnit:
        """RESERVED -> OCCUPIED. When alert_id is given it must match the holder."""

        def change(unit: ResourceUnit) -> ResourceUnit:
            if unit.status != ResourceStatus.RESERVED:
                raise InvalidStateError(
                    f"resource {unit.id} is {unit.status.value}; only reserved units commit"
                )
            if alert_id is not None and unit.assigned_alert_id != alert_id:
                raise ConflictError(
                    f"resource {unit.id} is reserved for alert {unit.assigned_alert_id}"
                )
            return unit.model_copy(update={"status": ResourceStatus.OCCUPIED})

        return self._transition(resource_id, change)

    def release(self, resource_id: str, alert_id: str | None = None) -> ResourceUnit:
        """OCCUPIED / RESERVED / MAINTENANCE -> AVAILABLE, clearing the assignment."""

        def change(unit: ResourceUnit) -> ResourceUnit:
            if unit.status == ResourceStatus.AVAILABLE:
                raise InvalidStateError(f"resource {unit.id} is already available")
            if (
                alert_id is not None
                and unit.assigned_alert_id is not None
                and unit.assigned_alert_id != alert_id
            ):
                raise ConflictError(
                    f"resource {unit.id} is held for alert {unit.assigned_alert_id}"
                )
            return unit.model_copy(
                update={"status": ResourceStatus.AVAILABLE, "assigned_alert_id": None}
            )

        return self._transition(resource_id, change)

    def set_maintenance(self, resource_id: str) -> ResourceUnit:
        """Any state -> MAINTENANCE. Drops any assignment."""
        return self._transition(
            resource_id,
            lambda unit: unit.model_copy(
                update={"status": ResourceStatus.MAINTENANCE, "assigned_alert_id": None}
            ),
        )

    # ------------------------------------------------------------------ queries

    def get(self, resource_id: str) -> ResourceUnit:
        unit = self._units.get(resource_id)
        if unit is None:
            raise NotFoundError("resource", resource_id)
        return unit

    def units(self, resource_type: ResourceType | None = None) -> list[ResourceUnit]:
        return [
            unit
            for unit in list(self._units.values())
            if resource_type is None or unit.type == resource_type
        ]

    def first_available(self, resource_type: ResourceType) -> ResourceUnit | None:
        """First AVAILABLE unit of a type, in registration order."""
        for unit in list(self._units.values()):
            if unit.type == resource_type and unit.status == ResourceStatus.AVAILABLE:
                return unit
        return None

    def assigned_to(self, alert_id: str) -> list[ResourceUnit]:
        return [unit for unit in list(self._units.values()) if unit.assigned_alert_id == alert_id]

    def availability(self) -> list[ResourceAvailability]:
        """Per-type counts for every resource type, including types with no units."""
        summary = []
        for resource_type in ResourceType:
            units = self.units(resource_type)
            by_status = {status: 0 for status in ResourceStatus}
            for unit in units:
                by_status[unit.status] += 1
            summary.append(
                ResourceAvailability(
                    type=resource_type,
                    available=by_status[ResourceStatus.AVAILABLE],
                    total=len(units),
                    by_status=by_status,
                )
            )
        return summary
