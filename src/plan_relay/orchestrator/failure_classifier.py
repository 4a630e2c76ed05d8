"""Deterministic rate-limit classification for agent invocations."""

from __future__ import annotations

from dataclasses import dataclass

RATE_LIMIT_CLASSIFIER_VERSION = 1

_QUOTA_PATTERNS: tuple[str, ...] = (
    "resource_exhausted",
    "resource exhausted",
    "quota",
    "usage limit",
    "credits",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "ratelimit",
    "rate_limit",
    "429",
)


@dataclass(slots=True)
class InvocationClassification:
    """Normalized classification of one agent run."""

    rate_limited: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self, *, backend: str, model: str) -> dict[str, object]:
        """Serialize classifier diagnostics for journal events."""

        return {
            "classifier_version": RATE_LIMIT_CLASSIFIER_VERSION,
            "backend": backend,
            "model": model,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_invocation(*, backend: str, exit_code: int, stderr: str) -> InvocationClassification:
    """Classify an invocation, checking the exit code before stderr.

    Backends retry internally and may print a quota warning while still
    exiting 0; such runs are not rate-limited.
    """

    if exit_code == 0:
        return InvocationClassification(
            rate_limited=False,
            reason_code=f"{backend}_ok",
            matched_rule="exit_code_zero",
            matched_pattern=None,
        )

    haystack = stderr.lower()
    pattern = _first_match(haystack, _QUOTA_PATTERNS)
    if pattern is not None:
        return InvocationClassification(
            rate_limited=True,
            reason_code=f"{backend}_quota",
            matched_rule="quota",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return InvocationClassification(
            rate_limited=True,
            reason_code=f"{backend}_rate_limit",
            matched_rule="rate_limit",
            matched_pattern=pattern,
        )

    return InvocationClassification(
        rate_limited=False,
        reason_code=f"{backend}_failed",
        matched_rule="non_zero_exit",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
