"""Execution-plan orchestrator."""
