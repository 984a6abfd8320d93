"""Batch orchestrator for slow, stateful generation services."""

__version__ = "0.1.0"
