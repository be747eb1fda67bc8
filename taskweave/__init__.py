"""taskweave: dependency-aware task queue and workflow state for multi-phase builds."""

__version__ = "0.1.0"
