"""Reward & progress engine: points, CO2 impact, missions and badges."""

from reloop.rewards.engine import ProcessOutcome, RewardEngine
from reloop.rewards.errors import (
    ConflictError,
    InvariantViolation,
    MissionFullError,
    MissionJoinError,
    RewardEngineError,
    UnknownUserError,
    ValidationError,
)
from reloop.rewards.ledger import InMemoryLedgerStore, LedgerStore
from reloop.rewards.normalizer import EventLimits
from reloop.rewards.types import (
    ApplyResult,
    ImpactTotals,
    MissionStatus,
    MissionType,
    SessionContext,
    UserSnapshot,
)

__all__ = [
    "ApplyResult",
    "ConflictError",
    "EventLimits",
    "ImpactTotals",
    "InMemoryLedgerStore",
    "InvariantViolation",
    "LedgerStore",
    "MissionFullError",
    "MissionJoinError",
    "MissionStatus",
    "MissionType",
    "ProcessOutcome",
    "RewardEngine",
    "RewardEngineError",
    "SessionContext",
    "UnknownUserError",
    "UserSnapshot",
    "ValidationError",
]
