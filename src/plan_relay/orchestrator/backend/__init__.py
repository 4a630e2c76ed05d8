"""Agent backend adapters."""

from plan_relay.orchestrator.backend.base import AgentBackend, BackendRunRequest, BackendRunResult
from plan_relay.orchestrator.backend.cli_backend import (
    BACKENDS,
    BackendRunError,
    CliAgentBackend,
    GeminiCliBackend,
    KiloCliBackend,
    backend_for,
)

__all__ = [
    "BACKENDS",
    "AgentBackend",
    "BackendRunError",
    "BackendRunRequest",
    "BackendRunResult",
    "CliAgentBackend",
    "GeminiCliBackend",
    "KiloCliBackend",
    "backend_for",
]
