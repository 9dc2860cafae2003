"""Reward engine error taxonomy."""

from __future__ import annotations


class RewardEngineError(Exception):
    """Base class for every error raised by the reward engine."""


class ValidationError(RewardEngineError, ValueError):
    """Malformed or out-of-range input. Nothing was written."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


class UnknownUserError(ValidationError):
    """The user has no ledger snapshot (not registered)."""

    def __init__(self, user_id: str) -> None:
        super().__init__("user_id", f"no ledger for user {user_id!r}")
        self.user_id = user_id


class MissionJoinError(ValidationError):
    """The mission cannot be joined (closed window or terminal status)."""

    def __init__(self, mission_id: str, reason: str) -> None:
        super().__init__("mission_id", reason)
        self.mission_id = mission_id


class MissionFullError(RewardEngineError):
    """The mission reached ``max_participants``."""

    def __init__(self, mission_id: str, max_participants: int) -> None:
        super().__init__(f"Mission {mission_id} is full ({max_participants} participants maximum)")
        self.mission_id = mission_id
        self.max_participants = max_participants


class ConflictError(RewardEngineError):
    """Optimistic concurrency retries exhausted. Transient; the caller may retry."""

    def __init__(self, user_id: str, attempts: int) -> None:
        super().__init__(f"Ledger for user {user_id} kept changing; gave up after {attempts} attempts")
        self.user_id = user_id
        self.attempts = attempts


class InvariantViolation(RewardEngineError):
    """A computed snapshot broke a ledger invariant. Indicates a logic bug."""

    def __init__(self, user_id: str, violations: list[str]) -> None:
        super().__init__(f"Invariant violation for user {user_id}: {'; '.join(violations)}")
        self.user_id = user_id
        self.violations = violations
