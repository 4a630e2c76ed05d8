"""Runtime configuration for the relay worker and CLI."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

MODEL_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:/-]+$")

DEFAULT_GEMINI_COMMAND = "gemini --model {model} --yolo {flags} --prompt {prompt}"
DEFAULT_KILO_COMMAND = "kilo run --auto --model {model} {flags} {prompt}"
EXECUTION_MODES = ("step", "auto")


@dataclass(slots=True)
class AgentSettings:
    """External agent invocation settings."""

    backend: str = "gemini"
    model: str | None = None
    routine_model: str = "gemini-2.5-flash"
    fallback_model: str = "gemini-2.5-flash"
    timeout_seconds: int = 1_800
    sandbox: bool = False
    gemini_command_template: str = DEFAULT_GEMINI_COMMAND
    kilo_command_template: str = DEFAULT_KILO_COMMAND

    def command_templates(self) -> dict[str, str]:
        return {
            "gemini": self.gemini_command_template,
            "kilo": self.kilo_command_template,
        }


@dataclass(slots=True)
class DispatchSettings:
    """Polling loop and step-through settings."""

    execution_mode: str = "step"
    poll_interval_seconds: float = 3.0
    cooldown_seconds: float = 10.0
    continue_poll_seconds: float = 2.0


@dataclass(slots=True)
class SessionSettings:
    """Branch naming for session checkpoints."""

    trunk_branch: str = "main"
    branch_prefix: str = "relay"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    state_dir: Path = Path(".relay")
    project_dir: Path | None = None
    db_path: Path | None = None
    sqlite_busy_timeout_ms: int = 5_000
    agent: AgentSettings = field(default_factory=AgentSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    session: SessionSettings = field(default_factory=SessionSettings)

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        project_dir_raw = os.getenv("RELAY_PROJECT_DIR", "").strip()
        db_path_raw = os.getenv("RELAY_DB_PATH", "").strip()
        return cls(
            state_dir=state_dir or Path(os.getenv("RELAY_STATE_DIR", ".relay")),
            project_dir=Path(project_dir_raw) if project_dir_raw else None,
            db_path=Path(db_path_raw) if db_path_raw else None,
            sqlite_busy_timeout_ms=int(os.getenv("RELAY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            agent=AgentSettings(
                backend=os.getenv("RELAY_BACKEND", "gemini").strip().lower(),
                model=os.getenv("RELAY_MODEL", "").strip() or None,
                routine_model=os.getenv("RELAY_ROUTINE_MODEL", "gemini-2.5-flash").strip(),
                fallback_model=os.getenv("RELAY_FALLBACK_MODEL", "gemini-2.5-flash").strip(),
                timeout_seconds=int(os.getenv("RELAY_AGENT_TIMEOUT_SECONDS", "1800")),
                sandbox=_env_bool("RELAY_SANDBOX", default=False),
                gemini_command_template=os.getenv("RELAY_GEMINI_COMMAND", DEFAULT_GEMINI_COMMAND),
                kilo_command_template=os.getenv("RELAY_KILO_COMMAND", DEFAULT_KILO_COMMAND),
            ),
            dispatch=DispatchSettings(
                execution_mode=os.getenv("RELAY_EXECUTION_MODE", "step").strip().lower(),
                poll_interval_seconds=float(os.getenv("RELAY_POLL_INTERVAL_SECONDS", "3")),
                cooldown_seconds=float(os.getenv("RELAY_COOLDOWN_SECONDS", "10")),
                continue_poll_seconds=float(os.getenv("RELAY_CONTINUE_POLL_SECONDS", "2")),
            ),
            session=SessionSettings(
                trunk_branch=os.getenv("RELAY_TRUNK_BRANCH", "main").strip(),
                branch_prefix=os.getenv("RELAY_BRANCH_PREFIX", "relay").strip().strip("/"),
            ),
        )

    @property
    def journal_path(self) -> Path:
        return self.db_path or self.state_dir / "relay.db"

    def validate(self) -> None:
        """Raise configuration error for unsupported or unsafe values."""

        templates = self.agent.command_templates()
        if self.agent.backend not in templates:
            raise ValueError(
                f"Unsupported RELAY_BACKEND: {self.agent.backend!r}. "
                f"Expected one of: {', '.join(sorted(templates))}.",
            )
        for backend, template in templates.items():
            if "{prompt}" not in template and "{prompt_file}" not in template:
                raise ValueError(
                    f"Command template for {backend!r} must include {{prompt}} or {{prompt_file}}.",
                )
        for name, value in (
            ("RELAY_MODEL", self.agent.model),
            ("RELAY_ROUTINE_MODEL", self.agent.routine_model),
            ("RELAY_FALLBACK_MODEL", self.agent.fallback_model),
        ):
            if value is not None:
                validate_model_id(value, source=name)
        if self.dispatch.execution_mode not in EXECUTION_MODES:
            raise ValueError(
                f"RELAY_EXECUTION_MODE must be one of {EXECUTION_MODES}: "
                f"{self.dispatch.execution_mode!r}",
            )
        if self.dispatch.poll_interval_seconds <= 0:
            raise ValueError("RELAY_POLL_INTERVAL_SECONDS must be > 0.")
        if self.dispatch.continue_poll_seconds <= 0:
            raise ValueError("RELAY_CONTINUE_POLL_SECONDS must be > 0.")
        if self.dispatch.cooldown_seconds < 0:
            raise ValueError("RELAY_COOLDOWN_SECONDS must be >= 0.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("RELAY_AGENT_TIMEOUT_SECONDS must be > 0.")
        if not self.session.trunk_branch or not self.session.branch_prefix:
            raise ValueError("RELAY_TRUNK_BRANCH and RELAY_BRANCH_PREFIX must not be empty.")


def validate_model_id(value: str, *, source: str = "model") -> str:
    """Reject model identifiers outside the safe character class."""

    if not MODEL_ID_PATTERN.fullmatch(value):
        raise ValueError(f"Invalid {source}: {value!r}. Allowed characters: A-Z a-z 0-9 . _ : / -")
    return value


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
