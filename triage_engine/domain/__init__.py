"""Domain models, error taxonomy and alert state machine."""
