"""Smoke test for the end-to-end demo."""

from triage_engine.demo import DEMO_PATIENTS, run_demo
from triage_engine.domain.models import AlertKind, ConnectionStatus


async def test_demo_runs_end_to_end() -> None:
    engine = await run_demo(duration_seconds=0.5)

    patients = engine.list_patients()
    assert len(patients) == len(DEMO_PATIENTS)
    # Every stream was cancelled at the end of the run, so every device is offline
    assert all(
        p.connection is not None and p.connection.status == ConnectionStatus.DISCONNECTED
        for p in patients
    )
    kinds = {a.kind for a in engine.get_open_alerts()}
    assert AlertKind.DEVICE_OFFLINE in kinds
    assert AlertKind.FALL_DETECTED in kinds
