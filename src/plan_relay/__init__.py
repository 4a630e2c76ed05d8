"""Remote-operated execution-plan orchestrator for coding agents."""

__version__ = "0.1.0"
