"""Real-time health telemetry and emergency triage engine.

This package contains the business logic and domain models,
isolated from transport and presentation for easy testing and reasoning.
"""

from triage_engine.observability import configure_logging

__all__ = ["configure_logging"]
