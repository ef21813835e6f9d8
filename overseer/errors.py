"""
Error taxonomy and attempt outcomes for overseer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class OverseerError(Exception):
    """Base error for overseer."""


class ConfigError(OverseerError):
    """Config validation error."""


class InvalidScheduleError(OverseerError):
    """Malformed cron expression."""

    def __init__(self, expression: object, detail: str = "") -> None:
        self.expression = expression
        message = f'Invalid schedule "{expression}"'
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class JobNotFoundError(OverseerError):
    """Job name does not resolve to a registered job."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'Job not found: "{name}"')


class AttemptTimeoutError(OverseerError):
    """A bounded call did not finish within its timeout."""

    def __init__(self, label: str, timeout: float) -> None:
        self.label = label
        self.timeout = timeout
        super().__init__(f"{label} timed out after {timeout:g} seconds")


@dataclass(frozen=True)
class Outcome:
    success: bool
    reason: Optional[str] = None

    @staticmethod
    def ok() -> "Outcome":
        return Outcome(success=True)

    @staticmethod
    def failed(reason: str) -> "Outcome":
        return Outcome(success=False, reason=reason)

    @staticmethod
    def from_exception(exc: BaseException) -> "Outcome":
        text = str(exc).strip()
        return Outcome.failed(f"{type(exc).__name__}: {text}" if text else type(exc).__name__)
