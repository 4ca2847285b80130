"""
Status classifier: current reading + short history -> HealthStatus.

Pure function with no side effects, re-run on every new reading.

Rules per reading, first match wins:
    CRITICAL  heart rate / temperature / SpO2 outside the critical band, or a fall
    WARNING   heart rate / temperature outside the warning band, or high systolic
    NORMAL    otherwise

A WARNING or CRITICAL tier only becomes the status once it has persisted for
``confirm_readings`` consecutive readings or ``confirm_seconds`` of reading
time, whichever comes first. Very low SpO2 and falls skip the debounce.
"""

from collections.abc import Sequence

from triage_engine.config import ClassifierPolicy
from triage_engine.domain.models import (
    AlertKind,
    Classification,
    Finding,
    HealthStatus,
    Reading,
)

_ABNORMAL_TIERS = (HealthStatus.CRITICAL, HealthStatus.WARNING)


def find_abnormal_vitals(reading: Reading, policy: ClassifierPolicy) -> list[Finding]:
    """Return one finding per abnormal vital, each at its own tier."""
    critical, warning = HealthStatus.CRITICAL, HealthStatus.WARNING
    findings: list[Finding] = []
    hr = reading.heart_rate

    if hr > policy.critical_heart_rate_high:
        findings.append(Finding(kind=AlertKind.HEART_RATE_HIGH, tier=critical, value=hr))
    elif hr > policy.warning_heart_rate_high:
        findings.append(Finding(kind=AlertKind.HEART_RATE_HIGH, tier=warning, value=hr))
    elif hr < policy.critical_heart_rate_low:
        findings.append(Finding(kind=AlertKind.HEART_RATE_LOW, tier=critical, value=hr))
    elif hr < policy.warning_heart_rate_low:
        findings.append(Finding(kind=AlertKind.HEART_RATE_LOW, tier=warning, value=hr))

    temp = reading.temperature
    if temp is not None:
        if temp > policy.critical_temperature_high:
            findings.append(Finding(kind=AlertKind.TEMP_HIGH, tier=critical, value=temp))
        elif temp > policy.warning_temperature_high:
            findings.append(Finding(kind=AlertKind.TEMP_HIGH, tier=warning, value=temp))
        elif temp < policy.critical_temperature_low:
            findings.append(Finding(kind=AlertKind.TEMP_LOW, tier=critical, value=temp))
        elif temp < policy.warning_temperature_low:
            findings.append(Finding(kind=AlertKind.TEMP_LOW, tier=warning, value=temp))

    spo2 = reading.oxygen_saturation
    if spo2 is not None and spo2 < policy.critical_oxygen_low:
        findings.append(Finding(kind=AlertKind.OXYGEN_LOW, tier=critical, value=spo2))

    if reading.systolic is not None and reading.systolic > policy.warning_systolic_high:
        findings.append(
            Finding(
                kind=AlertKind.BLOOD_PRESSURE_HIGH,
                tier=warning,
                value=reading.systolic,
            )
        )

    if reading.fall_detected:
        findings.append(Finding(kind=AlertKind.FALL_DETECTED, tier=critical))

    return findings


def _tier_of(findings: Sequence[Finding]) -> HealthStatus:
    if any(f.tier == HealthStatus.CRITICAL for f in findings):
        return HealthStatus.CRITICAL
    if findings:
        return HealthStatus.WARNING
    return HealthStatus.NORMAL


def raw_tier(reading: Reading, policy: ClassifierPolicy) -> HealthStatus:
    """Tier of a single reading, ignoring history."""
    return _tier_of(find_abnormal_vitals(reading, policy))


def immediate_kinds(reading: Reading, policy: ClassifierPolicy) -> frozenset[AlertKind]:
    """Alert kinds whose trigger is unambiguous enough to skip the debounce."""
    kinds = set()
    if reading.fall_detected:
        kinds.add(AlertKind.FALL_DETECTED)
    spo2 = reading.oxygen_saturation
    if spo2 is not None and spo2 < policy.immediate_oxygen_low:
        kinds.add(AlertKind.OXYGEN_LOW)
    return frozenset(kinds)


def is_immediate(reading: Reading, policy: ClassifierPolicy) -> bool:
    return bool(immediate_kinds(reading, policy))


def _is_confirmed(
    tier: HealthStatus,
    tiers: Sequence[HealthStatus],
    readings: Sequence[Reading],
    policy: ClassifierPolicy,
) -> bool:
    # Walk back from the newest reading while the tier (or worse) holds
    run_start = len(readings)
    for i in range(len(readings) - 1, -1, -1):
        if tiers[i].rank < tier.rank:
            break
        run_start = i

    run_length = len(readings) - run_start
    if run_length == 0:
        return False
    if run_length >= policy.confirm_readings:
        return True

    elapsed = (readings[-1].timestamp - readings[run_start].timestamp).total_seconds()
    return elapsed >= policy.confirm_seconds


def _confirmed_tier(
    tiers: Sequence[HealthStatus],
    ceiling: HealthStatus,
    window: Sequence[Reading],
    policy: ClassifierPolicy,
) -> HealthStatus:
    for tier in _ABNORMAL_TIERS:
        if tier.rank <= ceiling.rank and _is_confirmed(tier, tiers, window, policy):
            return tier
    return HealthStatus.NORMAL


def _kind_tier(findings: Sequence[Finding], kind: AlertKind) -> HealthStatus:
    tiers = [f.tier for f in findings if f.kind == kind]
    return max(tiers, key=lambda t: t.rank, default=HealthStatus.NORMAL)


def classify(
    reading: Reading,
    history: Sequence[Reading],
    policy: ClassifierPolicy | None = None,
) -> Classification:
    """
    Classify the current reading against its recent history.

    The overall status is debounced over every vital together; each finding
    is also debounced against its own kind, so a single out-of-range sample
    of one vital never counts as a confirmed finding.

    Args:
        reading: The newest reading
        history: Previous readings for the same patient, oldest to newest
        policy: Thresholds and debounce rules (defaults when omitted)
    """
    policy = policy or ClassifierPolicy()

    findings = find_abnormal_vitals(reading, policy)
    current_tier = _tier_of(findings)

    if current_tier == HealthStatus.NORMAL:
        return Classification(status=HealthStatus.NORMAL, raw_status=current_tier)

    previous = list(history)[-(policy.window_size - 1) :] if policy.window_size > 1 else []
    window = [*previous, reading]
    window_findings = [find_abnormal_vitals(r, policy) for r in previous] + [findings]

    skip_debounce = immediate_kinds(reading, policy)
    confirmed: list[Finding] = []
    for finding in findings:
        if finding.kind in skip_debounce:
            confirmed.append(finding)
            continue
        kind_tiers = [_kind_tier(found, finding.kind) for found in window_findings]
        tier = _confirmed_tier(kind_tiers, finding.tier, window, policy)
        if tier != HealthStatus.NORMAL:
            confirmed.append(finding.model_copy(update={"tier": tier}))

    if current_tier == HealthStatus.CRITICAL and skip_debounce:
        return Classification(
            status=HealthStatus.CRITICAL,
            raw_status=current_tier,
            findings=tuple(findings),
            confirmed_findings=tuple(confirmed),
            immediate=True,
        )

    tiers = [_tier_of(found) for found in window_findings]
    status = _confirmed_tier(tiers, current_tier, window, policy)

    return Classification(
        status=status,
        raw_status=current_tier,
        findings=tuple(findings),
        confirmed_findings=tuple(confirmed),
    )
