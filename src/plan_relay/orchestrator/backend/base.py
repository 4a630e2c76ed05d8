"""Backend interface for agent invocations."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class BackendRunRequest:
    """Inputs required to execute one agent invocation."""

    prompt: str
    model: str
    project_dir: Path
    command_template: str
    timeout_seconds: int
    prompt_file: Path
    stdout_path: Path
    stderr_path: Path
    extra_flags: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    shutdown_requested: Callable[[], bool] | None = None
    on_spawn: Callable[[int], None] | None = None


@dataclass(slots=True)
class BackendRunResult:
    """Execution outcome from backend runner."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path


class AgentBackend(Protocol):
    """Protocol implemented by backend adapters."""

    name: str

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        """Run one invocation and return execution metadata."""
