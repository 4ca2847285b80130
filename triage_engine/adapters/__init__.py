"""Telemetry sources that feed the engine."""
