"""
End-to-end demonstration of the triage engine.

Runs a handful of simulated wearables through the engine, lets a dropout
device go silent, then acts as the facility desk: dispatches the top alert,
asks for a resource recommendation and binds it.

Run with: uv run triage-demo
"""

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from triage_engine.adapters.simulator import SimulatedWearable, SimulatorConfig
from triage_engine.config import AppConfig, ConnectionConfig, LoggingConfig
from triage_engine.domain.models import ResourceType
from triage_engine.observability import configure_logging
from triage_engine.services.engine import TriageEngine

console = Console()

SEVERITY_STYLE = {"critical": "bold red", "high": "red", "medium": "yellow", "low": "green"}

DEMO_PATIENTS = [
    ("p-001", "Rajesh Kumar", "ICU-201", "tachycardia"),
    ("p-002", "Priya Sharma", "Ward-105", "normal"),
    ("p-003", "Amit Patel", "ER-302", "fall"),
    ("p-004", "Sunita Desai", "Ward-208", "fever"),
    ("p-005", "Vikram Singh", "ICU-103", "hypoxia"),
    ("p-006", "Maya Singh", "Ward-110", "dropout"),
]

DEMO_RESOURCES = [
    ("bed-1", ResourceType.BED, "ICU"),
    ("bed-2", ResourceType.BED, "Ward-A"),
    ("vent-1", ResourceType.VENTILATOR, "ICU"),
    ("amb-1", ResourceType.AMBULANCE, None),
    ("amb-2", ResourceType.AMBULANCE, None),
    ("staff-1", ResourceType.STAFF, "Ward-A"),
]


def build_engine() -> TriageEngine:
    # Short liveness windows so the dropout shows up within the demo
    config = AppConfig(
        connection=ConnectionConfig(
            grace_period_seconds=0.5, timeout_period_seconds=1.0, sweep_interval_seconds=0.1
        ),
        logging=LoggingConfig(level="WARNING", format="console"),
    )
    configure_logging(config.logging)

    engine = TriageEngine(config)
    for resource_id, resource_type, location in DEMO_RESOURCES:
        engine.add_resource(resource_id, resource_type, location)
    for patient_id, name, room, _ in DEMO_PATIENTS:
        engine.register_patient(patient_id, name=name, room=room)
    return engine


async def simulate(engine: TriageEngine, duration_seconds: float = 2.0) -> None:
    """Stream every demo patient for a while, then cancel whatever is still running."""
    sources = [
        SimulatedWearable(
            patient_id,
            scenario,  # type: ignore[arg-type]
            SimulatorConfig(interval_seconds=0.05, max_samples=30, dropout_after=4),
            seed=index,
        )
        for index, (patient_id, _, _, scenario) in enumerate(DEMO_PATIENTS)
    ]

    async with engine.monitoring_session():
        tasks = [asyncio.create_task(engine.ingest(source)) for source in sources]
        _, pending = await asyncio.wait(tasks, timeout=duration_seconds)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


def render_patients(engine: TriageEngine) -> None:
    table = Table(title="Patients")
    table.add_column("Patient", style="cyan")
    table.add_column("Room")
    table.add_column("Status")
    table.add_column("HR", justify="right")
    table.add_column("Temp", justify="right")
    table.add_column("SpO2", justify="right")
    table.add_column("Device")
    table.add_column("Open alerts", justify="right")

    for snapshot in engine.list_patients():
        reading = snapshot.latest_reading
        table.add_row(
            snapshot.profile.name or snapshot.patient_id,
            snapshot.profile.room or "-",
            snapshot.status.value,
            f"{reading.heart_rate:.0f}" if reading else "--",
            f"{reading.temperature:.1f}" if reading and reading.temperature else "--",
            f"{reading.oxygen_saturation:.0f}" if reading and reading.oxygen_saturation else "--",
            snapshot.connection.status.value if snapshot.connection else "-",
            str(snapshot.open_alert_count),
        )
    console.print(table)


def render_triage(engine: TriageEngine) -> None:
    table = Table(title="Triage queue")
    table.add_column("#", justify="right")
    table.add_column("Alert", style="magenta")
    table.add_column("Patient", style="cyan")
    table.add_column("Kind")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Responder")

    for entry in engine.get_triage_queue():
        alert = entry.alert
        name = entry.patient.profile.name if entry.patient else None
        table.add_row(
            str(entry.rank),
            alert.id,
            name or alert.patient_id,
            alert.kind.value,
            f"[{SEVERITY_STYLE[alert.severity.value]}]{alert.severity.value}[/]",
            alert.status.value,
            alert.responder or "-",
        )
    console.print(table)


def render_summary(engine: TriageEngine) -> None:
    summary = engine.get_facility_summary()
    table = Table(title="Resources")
    table.add_column("Type", style="cyan")
    table.add_column("Available", justify="right", style="green")
    table.add_column("Total", justify="right")
    for item in summary.resources:
        table.add_row(item.type.value, str(item.available), str(item.total))

    console.print(
        Panel(
            f"Patients: {summary.total_patients}   "
            f"Active emergencies: {summary.active_emergencies}   "
            f"Responding: {summary.responding_emergencies}   "
            f"Critical: {summary.critical_patients}   "
            f"Devices offline: {summary.disconnected_devices}",
            title="Facility",
        )
    )
    console.print(table)


def respond_to_top_alert(engine: TriageEngine) -> None:
    queue = engine.get_triage_queue()
    if not queue:
        console.print("No open alerts", style="green")
        return

    top = queue[0].alert
    dispatched = engine.dispatch(top.id, "Dr. On-Call")
    if dispatched.is_err():
        console.print(f"Dispatch failed: {dispatched.unwrap_err()}", style="red")
        return
    console.print(f"Dispatched Dr. On-Call to {top.id} ({top.kind.value})", style="green")

    recommendation = engine.recommend_resource(top.id)
    if recommendation.is_err():
        console.print(f"Warning: {recommendation.unwrap_err()}", style="yellow")
        return

    for unit in recommendation.unwrap().units:
        assigned = engine.assign(top.id, unit.id)
        if assigned.is_ok():
            engine.commit(unit.id, top.id)
            console.print(f"Assigned {unit.type.value} {unit.id} to {top.id}", style="green")
        else:
            console.print(f"Could not assign {unit.id}: {assigned.unwrap_err()}", style="red")


async def run_demo(duration_seconds: float = 2.0) -> TriageEngine:
    console.print(Panel("Real-time telemetry triage demo", style="blue"))
    engine = build_engine()
    await simulate(engine, duration_seconds)

    render_patients(engine)
    render_triage(engine)
    respond_to_top_alert(engine)
    render_triage(engine)
    render_summary(engine)
    return engine


def main() -> None:
    asyncio.run(run_demo())


if __name__ == "__main__":
    main()
