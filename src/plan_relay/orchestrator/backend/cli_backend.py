"""Subprocess-based adapters for headless agent CLIs."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from plan_relay.orchestrator.backend.base import BackendRunRequest, BackendRunResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Render a command template and run it inside the project directory."""

    name = "cli"

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
        request.prompt_file.parent.mkdir(parents=True, exist_ok=True)
        request.prompt_file.write_text(request.prompt, "utf-8")

        run_args = build_run_args(
            command_template=request.command_template,
            model=request.model,
            prompt=request.prompt,
            prompt_file=request.prompt_file,
            extra_flags=request.extra_flags,
        )
        env = self._child_env(request)

        with self._prepared_project(request.project_dir):
            try:
                with (
                    request.stdout_path.open("w", encoding="utf-8") as stdout_handle,
                    request.stderr_path.open("w", encoding="utf-8") as stderr_handle,
                ):
                    return _run_subprocess_with_shutdown(
                        run_args=run_args,
                        cwd=request.project_dir,
                        env=env,
                        timeout_seconds=request.timeout_seconds,
                        stdout_handle=stdout_handle,
                        stderr_handle=stderr_handle,
                        request=request,
                    )
            except FileNotFoundError as error:
                raise BackendRunError(
                    f"{self.name} command not found: {run_args[0]}",
                    transient=False,
                ) from error
            except OSError as error:
                raise BackendRunError(
                    f"{self.name} failed to start: {error}",
                    transient=True,
                ) from error

    def _child_env(self, request: BackendRunRequest) -> dict[str, str]:
        env = os.environ.copy()
        env.update(request.env)
        env["RELAY_AGENT_BACKEND"] = self.name
        env["RELAY_AGENT_MODEL"] = request.model
        return env

    @contextmanager
    def _prepared_project(self, project_dir: Path) -> Iterator[None]:
        yield


class GeminiCliBackend(CliAgentBackend):
    """Gemini CLI adapter.

    A project-level ``.gemini/settings.json`` may register interactive hooks
    that stall a headless run, so it is moved aside for the duration of the
    invocation and put back afterwards.
    """

    name = "gemini"
    settings_relpath = Path(".gemini") / "settings.json"
    backup_suffix = ".watcher-bak"

    @contextmanager
    def _prepared_project(self, project_dir: Path) -> Iterator[None]:
        settings_path = project_dir / self.settings_relpath
        backup_path = settings_path.with_name(settings_path.name + self.backup_suffix)
        if settings_path.exists() and not backup_path.exists():
            os.replace(settings_path, backup_path)
            logger.info("Relocated %s for headless run", settings_path)
        try:
            yield
        finally:
            if backup_path.exists() and not settings_path.exists():
                os.replace(backup_path, settings_path)
                logger.info("Restored %s", settings_path)


class KiloCliBackend(CliAgentBackend):
    """Kilo CLI adapter routed through OpenRouter."""

    name = "kilo"

    def _child_env(self, request: BackendRunRequest) -> dict[str, str]:
        env = super()._child_env(request)
        api_key = env.get("KILO_API_KEY")
        if api_key and not env.get("OPENROUTER_API_KEY"):
            env["OPENROUTER_API_KEY"] = api_key
        return env


BACKENDS: dict[str, type[CliAgentBackend]] = {
    "gemini": GeminiCliBackend,
    "kilo": KiloCliBackend,
}


def backend_for(name: str) -> CliAgentBackend:
    try:
        return BACKENDS[name.strip().lower()]()
    except KeyError:
        raise ValueError(f"Unsupported backend: {name!r}") from None


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    extra_flags: tuple[str, ...] = (),
) -> list[str]:
    """Render a POSIX command template into argv.

    Supported placeholders: ``{model}``, ``{prompt}``, ``{prompt_file}`` and
    ``{flags}`` (expands to zero or more arguments).
    """

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("CLI backend command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "CLI backend command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            flags=" ".join(shlex.quote(flag) for flag in extra_flags),
        )
    except KeyError as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "CLI backend command template rendered empty command.",
            transient=False,
        )
    return argv


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle,
    stderr_handle,
    request: BackendRunRequest,
) -> BackendRunResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    if request.on_spawn is not None:
        request.on_spawn(process.pid)
    start_monotonic = time.monotonic()

    while True:
        returncode = process.poll()
        if returncode is not None:
            return BackendRunResult(
                exit_code=returncode,
                timed_out=False,
                stdout_path=request.stdout_path,
                stderr_path=request.stderr_path,
            )

        if time.monotonic() - start_monotonic >= timeout_seconds or (
            request.shutdown_requested is not None and request.shutdown_requested()
        ):
            terminate_process(process)
            return BackendRunResult(
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                stdout_path=request.stdout_path,
                stderr_path=request.stderr_path,
            )

        time.sleep(0.1)


def terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
