"""Platform/model routing tables for plan tasks and agent invocations."""

from __future__ import annotations

from dataclasses import dataclass

from plan_relay.config import AgentSettings, validate_model_id
from plan_relay.orchestrator.models import Tier

SUPPORTED_BACKENDS = ("gemini", "kilo")

TIER_DEFAULTS: dict[str, dict[Tier, str]] = {
    "gemini": {
        Tier.TOP: "gemini-2.5-pro",
        Tier.MID: "gemini-2.5-flash",
        Tier.FREE: "gemini-2.0-flash-lite",
    },
    "kilo": {
        Tier.TOP: "openrouter/minimax/minimax-m2.5",
        Tier.MID: "openrouter/minimax/minimax-m2.5",
        Tier.FREE: "openrouter/z-ai/glm-5",
    },
}

PLATFORM_MODELS: dict[str, tuple[str, ...]] = {
    "gemini": (
        "gemini-2.5-flash",
        "gemini-2.5-pro",
        "gemini-3-pro-preview",
        "gemini-2.0-flash-lite",
    ),
    "kilo": (
        "openrouter/z-ai/glm-5",
        "openrouter/minimax/minimax-m2.5",
        "openrouter/z-ai/glm-4.7-flash",
    ),
}

TIER_EMOJI = {Tier.TOP: "🧠", Tier.MID: "⚡", Tier.FREE: "🆓"}

# Backends whose CLI accepts a sandbox switch.
SANDBOX_FLAGS: dict[str, tuple[str, ...]] = {"gemini": ("--sandbox",)}


@dataclass(slots=True)
class RoutingDefaults:
    """Settings snapshot used to resolve backend, model and command template."""

    default_backend: str
    default_model: str | None
    routine_model: str
    fallback_model: str
    command_templates: dict[str, str]
    sandbox: bool = False

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> RoutingDefaults:
        """Build validated defaults from agent settings."""

        backend = normalize_backend(settings.backend)
        templates = settings.command_templates()
        for name, template in templates.items():
            if not template.strip():
                raise ValueError(f"Empty command template for backend={name!r}")
        if settings.model is not None:
            validate_model_id(settings.model, source="RELAY_MODEL")
        return cls(
            default_backend=backend,
            default_model=settings.model,
            routine_model=validate_model_id(settings.routine_model, source="RELAY_ROUTINE_MODEL"),
            fallback_model=validate_model_id(
                settings.fallback_model,
                source="RELAY_FALLBACK_MODEL",
            ),
            command_templates=templates,
            sandbox=settings.sandbox,
        )

    def command_template(self, backend: str) -> str:
        return self.command_templates[normalize_backend(backend)]

    def extra_flags(self, backend: str) -> tuple[str, ...]:
        if not self.sandbox:
            return ()
        return SANDBOX_FLAGS.get(normalize_backend(backend), ())


def normalize_backend(value: str) -> str:
    backend = value.strip().lower()
    if backend not in SUPPORTED_BACKENDS:
        raise ValueError(
            f"Unsupported backend {value!r}. Expected one of: {', '.join(SUPPORTED_BACKENDS)}",
        )
    return backend


def tier_for_difficulty(difficulty: int) -> Tier:
    return Tier.TOP if difficulty >= 7 else Tier.MID


def difficulty_label(score: int) -> str:
    if score <= 2:
        return "⭐ Trivial"
    if score <= 4:
        return "⭐⭐ Easy"
    if score <= 6:
        return "⭐⭐⭐ Moderate"
    if score <= 8:
        return "🔥 Hard"
    return "💀 Expert"
