"""
Core services for the triage engine.

This package contains the pipeline stages (normalizer, classifier, connection
monitor, alert manager), the facility-wide triage aggregator and resource
ledger, and the TriageEngine facade that wires them together.
"""

from .engine import PatientPipeline, TelemetrySource, TriageEngine
from .resource_ledger import ResourceLedger
from .triage import TriageAggregator

__all__ = [
    "PatientPipeline",
    "ResourceLedger",
    "TelemetrySource",
    "TriageAggregator",
    "TriageEngine",
]
