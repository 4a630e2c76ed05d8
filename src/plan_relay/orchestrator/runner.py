"""Agent invocation with rate-limit classification and one fallback retry."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from plan_relay.config import validate_model_id
from plan_relay.orchestrator.backend import (
    BackendRunError,
    BackendRunRequest,
    CliAgentBackend,
    backend_for,
)
from plan_relay.orchestrator.failure_classifier import (
    InvocationClassification,
    classify_invocation,
)
from plan_relay.orchestrator.routing import PLATFORM_MODELS, RoutingDefaults

logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND_EXIT_CODE = 127
LAUNCH_FAILED_EXIT_CODE = 126
_STDERR_TAIL_CHARS = 500


@dataclass(slots=True)
class AgentRunOutcome:
    """Normalized result of one logical invocation, fallback included."""

    output: str
    stderr: str
    exit_code: int
    backend: str
    model: str
    fallback_used: bool = False
    rate_limited: bool = False
    timed_out: bool = False
    synthetic: bool = False
    classification: InvocationClassification | None = None

    @property
    def succeeded(self) -> bool:
        return bool(self.output.strip()) and not self.synthetic and not self.timed_out

    def error_summary(self) -> str | None:
        if self.succeeded:
            return None
        if self.timed_out:
            return f"Agent timed out (model {self.model})"
        tail = self.stderr.strip()[-_STDERR_TAIL_CHARS:]
        reason = "rate limited" if self.rate_limited else f"exit {self.exit_code}"
        return f"Agent produced no output ({reason}, model {self.model})" + (
            f": {tail}" if tail else ""
        )


class AgentRunner:
    """Run a prompt through the configured backend.

    Fallback rule: when the primary attempt returns no output and was either
    rate-limited or exited 0, and the model is neither the routine nor the
    fallback model, exactly one retry is made with the fallback model.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        routing: RoutingDefaults,
        work_dir: Path,
        timeout_seconds: int,
        backend_factory: Callable[[str], CliAgentBackend] = backend_for,
        shutdown_requested: Callable[[], bool] | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.routing = routing
        self.work_dir = work_dir
        self.timeout_seconds = timeout_seconds
        self.backend_factory = backend_factory
        self.shutdown_requested = shutdown_requested
        self.env = dict(env or {})

    def run(  # noqa: PLR0913
        self,
        prompt: str,
        model: str,
        project_dir: Path,
        extra_flags: tuple[str, ...] = (),
        *,
        backend: str | None = None,
        on_spawn: Callable[[int], None] | None = None,
    ) -> AgentRunOutcome:
        validate_model_id(model)
        backend_name = backend or self.routing.default_backend
        outcome = self._invoke(
            backend_name=backend_name,
            prompt=prompt,
            model=model,
            project_dir=project_dir,
            extra_flags=extra_flags,
            on_spawn=on_spawn,
        )

        if self._should_fall_back(outcome):
            fallback_model = self.routing.fallback_model
            fallback_backend = _backend_owning(fallback_model, default=backend_name)
            logger.info(
                "Empty output from %s/%s (rate_limited=%s); retrying once with %s/%s",
                backend_name,
                model,
                outcome.rate_limited,
                fallback_backend,
                fallback_model,
            )
            retry = self._invoke(
                backend_name=fallback_backend,
                prompt=prompt,
                model=fallback_model,
                project_dir=project_dir,
                extra_flags=self.routing.extra_flags(fallback_backend),
                on_spawn=on_spawn,
            )
            retry.fallback_used = True
            retry.rate_limited = retry.rate_limited or outcome.rate_limited
            outcome = retry

        if not outcome.output.strip():
            outcome.synthetic = True
            outcome.output = _synthetic_diagnostic(outcome)
        return outcome

    def _should_fall_back(self, outcome: AgentRunOutcome) -> bool:
        if outcome.output.strip() or outcome.timed_out:
            return False
        if not (outcome.rate_limited or outcome.exit_code == 0):
            return False
        return outcome.model not in {self.routing.routine_model, self.routing.fallback_model}

    def _invoke(  # noqa: PLR0913
        self,
        *,
        backend_name: str,
        prompt: str,
        model: str,
        project_dir: Path,
        extra_flags: tuple[str, ...],
        on_spawn: Callable[[int], None] | None,
    ) -> AgentRunOutcome:
        adapter = self.backend_factory(backend_name)
        request = BackendRunRequest(
            prompt=prompt,
            model=model,
            project_dir=project_dir,
            command_template=self.routing.command_template(backend_name),
            timeout_seconds=self.timeout_seconds,
            prompt_file=self.work_dir / "prompt.txt",
            stdout_path=self.work_dir / "stdout.log",
            stderr_path=self.work_dir / "stderr.log",
            extra_flags=extra_flags,
            env=self.env,
            shutdown_requested=self.shutdown_requested,
            on_spawn=on_spawn,
        )
        try:
            result = adapter.run(request)
        except BackendRunError as error:
            logger.warning("Backend %s failed to launch: %s", backend_name, error)
            exit_code = LAUNCH_FAILED_EXIT_CODE if error.transient else COMMAND_NOT_FOUND_EXIT_CODE
            return AgentRunOutcome(
                output="",
                stderr=str(error),
                exit_code=exit_code,
                backend=backend_name,
                model=model,
            )

        stdout = _read_text(result.stdout_path)
        stderr = _read_text(result.stderr_path)
        classification = classify_invocation(
            backend=backend_name,
            exit_code=result.exit_code,
            stderr=stderr,
        )
        return AgentRunOutcome(
            output=stdout,
            stderr=stderr,
            exit_code=result.exit_code,
            backend=backend_name,
            model=model,
            rate_limited=classification.rate_limited,
            timed_out=result.timed_out,
            classification=classification,
        )


def _backend_owning(model: str, *, default: str) -> str:
    for backend, models in PLATFORM_MODELS.items():
        if model in models:
            return backend
    return default


def _synthetic_diagnostic(outcome: AgentRunOutcome) -> str:
    tail = outcome.stderr.strip()[-_STDERR_TAIL_CHARS:]
    lines = [
        f"⚠️ Agent produced no output (exit {outcome.exit_code}, model {outcome.model}).",
    ]
    if outcome.timed_out:
        lines.append("The invocation timed out and was terminated.")
    if outcome.rate_limited:
        lines.append("The backend reported a rate limit or exhausted quota.")
    if outcome.fallback_used:
        lines.append("The fallback model was tried once and returned nothing either.")
    if tail:
        lines.extend(["", "stderr:", tail])
    return "\n".join(lines)


def _read_text(path: Path) -> str:
    try:
        return path.read_text("utf-8", errors="replace")
    except FileNotFoundError:
        return ""
