"""Domain types shared by the normalizer, calculator, applier and stores.

Snapshots, events and deltas are frozen dataclasses: the applier never mutates
a snapshot in place, it builds the next one with ``dataclasses.replace``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar


class MissionStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


class MissionType(str, Enum):
    RECYCLING = "RECYCLING"
    COMMUNITY = "COMMUNITY"
    SOCIAL = "SOCIAL"
    CHALLENGE = "CHALLENGE"
    EDUCATION = "EDUCATION"


@dataclass(frozen=True)
class SessionContext:
    """Explicit caller identity for one engine call. The engine keeps no session state."""

    user_id: str
    request_id: str | None = None


@dataclass(frozen=True)
class UserSnapshot:
    """Materialized rewards/progress state of one user."""

    user_id: str
    points_balance: int = 0
    total_weight_recycled_kg: float = 0.0
    co2_saved_kg: float = 0.0
    category_weight_kg: Mapping[str, float] = field(default_factory=dict)
    mission_status: Mapping[str, MissionStatus] = field(default_factory=dict)
    mission_progress: Mapping[str, float] = field(default_factory=dict)
    awarded_badge_ids: frozenset[str] = frozenset()
    submissions_count: int = 0
    social_actions_count: int = 0
    version: int = 0

    @property
    def active_missions(self) -> frozenset[str]:
        return frozenset(m for m, s in self.mission_status.items() if s is MissionStatus.ACTIVE)

    @property
    def completed_missions(self) -> frozenset[str]:
        return frozenset(m for m, s in self.mission_status.items() if s is MissionStatus.COMPLETED)

    def status_of(self, mission_id: str) -> MissionStatus:
        """Per-user mission status; missions never joined are AVAILABLE."""
        return self.mission_status.get(mission_id, MissionStatus.AVAILABLE)

    def progress_of(self, mission_id: str) -> float:
        return self.mission_progress.get(mission_id, 0.0)

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "points_balance": self.points_balance,
            "total_weight_recycled_kg": self.total_weight_recycled_kg,
            "co2_saved_kg": self.co2_saved_kg,
            "category_weight_kg": dict(self.category_weight_kg),
            "mission_status": {m: s.value for m, s in self.mission_status.items()},
            "mission_progress": dict(self.mission_progress),
            "awarded_badge_ids": sorted(self.awarded_badge_ids),
            "submissions_count": self.submissions_count,
            "social_actions_count": self.social_actions_count,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> UserSnapshot:
        return cls(
            user_id=data["user_id"],
            points_balance=int(data.get("points_balance", 0)),
            total_weight_recycled_kg=float(data.get("total_weight_recycled_kg", 0.0)),
            co2_saved_kg=float(data.get("co2_saved_kg", 0.0)),
            category_weight_kg={k: float(v) for k, v in (data.get("category_weight_kg") or {}).items()},
            mission_status={k: MissionStatus(v) for k, v in (data.get("mission_status") or {}).items()},
            mission_progress={k: float(v) for k, v in (data.get("mission_progress") or {}).items()},
            awarded_badge_ids=frozenset(data.get("awarded_badge_ids") or ()),
            submissions_count=int(data.get("submissions_count", 0)),
            social_actions_count=int(data.get("social_actions_count", 0)),
            version=int(data.get("version", 0)),
        )


# ---------------------------------------------------------------------------
# Activity events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WasteSubmission:
    kind: ClassVar[str] = "waste_submission"

    user_id: str
    category_name: str
    weight_kg: float
    submission_id: str
    occurred_at: datetime
    quantity: int = 1
    classification_confidence: float | None = None

    @property
    def idempotency_key(self) -> str:
        return f"waste:{self.submission_id}"

    @property
    def total_weight_kg(self) -> float:
        return self.weight_kg * self.quantity


@dataclass(frozen=True)
class SocialAction:
    kind: ClassVar[str] = "social_action"

    user_id: str
    action_type: str
    action_id: str
    occurred_at: datetime

    @property
    def idempotency_key(self) -> str:
        return f"social:{self.action_id}"


@dataclass(frozen=True)
class MissionJoinRequest:
    kind: ClassVar[str] = "mission_join"

    user_id: str
    mission_id: str
    occurred_at: datetime

    @property
    def idempotency_key(self) -> str:
        return f"join:{self.mission_id}"


ActivityEvent = WasteSubmission | SocialAction | MissionJoinRequest


# ---------------------------------------------------------------------------
# Deltas and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RewardDelta:
    """Proposed additive change to a snapshot, computed before commit."""

    source_event_id: str
    points_delta: int = 0
    co2_delta: float = 0.0
    weight_delta: float = 0.0
    category_delta: Mapping[str, float] = field(default_factory=dict)
    mission_progress_deltas: Mapping[str, float] = field(default_factory=dict)
    submissions_delta: int = 0
    social_actions_delta: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "source_event_id": self.source_event_id,
            "points_delta": self.points_delta,
            "co2_delta": self.co2_delta,
            "weight_delta": self.weight_delta,
            "category_delta": dict(self.category_delta),
            "mission_progress_deltas": dict(self.mission_progress_deltas),
            "submissions_delta": self.submissions_delta,
            "social_actions_delta": self.social_actions_delta,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RewardDelta:
        return cls(
            source_event_id=data["source_event_id"],
            points_delta=int(data.get("points_delta", 0)),
            co2_delta=float(data.get("co2_delta", 0.0)),
            weight_delta=float(data.get("weight_delta", 0.0)),
            category_delta={k: float(v) for k, v in (data.get("category_delta") or {}).items()},
            mission_progress_deltas={k: float(v) for k, v in (data.get("mission_progress_deltas") or {}).items()},
            submissions_delta=int(data.get("submissions_delta", 0)),
            social_actions_delta=int(data.get("social_actions_delta", 0)),
        )


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of one applied event; stored under its idempotency key for replays."""

    snapshot: UserSnapshot
    delta: RewardDelta
    completed_missions: tuple[str, ...] = ()
    mission_reward_points: int = 0
    replayed: bool = False

    @property
    def points_awarded(self) -> int:
        return self.delta.points_delta + self.mission_reward_points

    def as_dict(self) -> dict[str, Any]:
        return {
            "snapshot": self.snapshot.as_dict(),
            "delta": self.delta.as_dict(),
            "completed_missions": list(self.completed_missions),
            "mission_reward_points": self.mission_reward_points,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, replayed: bool = False) -> ApplyResult:
        return cls(
            snapshot=UserSnapshot.from_dict(data["snapshot"]),
            delta=RewardDelta.from_dict(data["delta"]),
            completed_missions=tuple(data.get("completed_missions") or ()),
            mission_reward_points=int(data.get("mission_reward_points", 0)),
            replayed=replayed,
        )


@dataclass(frozen=True)
class ImpactTotals:
    """Community-wide environmental impact summed over every ledger."""

    users: int = 0
    total_weight_recycled_kg: float = 0.0
    co2_saved_kg: float = 0.0
    submissions_count: int = 0
