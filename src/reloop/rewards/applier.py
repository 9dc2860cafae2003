"""Progress applier: commits reward deltas under per-user optimistic concurrency.

Every write follows the same cycle: read the snapshot at version V, compute
the next snapshot, check invariants, ``compare_and_set`` on V. A version
mismatch means another writer got there first; the cycle is retried with
exponential backoff and the delta recomputed against the fresh snapshot.
"""

from __future__ import annotations

import asyncio
import math
import random
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime

import structlog

from reloop.rewards.calculator import calculate
from reloop.rewards.catalog import RuleCatalog
from reloop.rewards.errors import ConflictError, InvariantViolation
from reloop.rewards.ledger import LedgerStore
from reloop.rewards.missions import validate_transition
from reloop.rewards.types import (
    ActivityEvent,
    ApplyResult,
    MissionStatus,
    RewardDelta,
    UserSnapshot,
)

logger = structlog.get_logger()

DEFAULT_MAX_ATTEMPTS = 8
DEFAULT_BACKOFF_BASE_SECONDS = 0.01
DEFAULT_BACKOFF_MAX_SECONDS = 0.5


def _add(mapping: dict[str, float], key: str, amount: float) -> None:
    mapping[key] = mapping.get(key, 0.0) + amount


def apply_delta(
    snapshot: UserSnapshot,
    delta: RewardDelta,
    catalog: RuleCatalog,
) -> tuple[UserSnapshot, tuple[str, ...], int]:
    """Fold ``delta`` into ``snapshot``.

    Returns the next snapshot (version untouched), the missions completed by
    this delta and the reward points they granted. A mission whose progress
    reaches its target moves to COMPLETED and pays ``points_reward`` in the
    very same snapshot, so progress == target is never observable without
    the reward.
    """
    categories = dict(snapshot.category_weight_kg)
    for category, weight in delta.category_delta.items():
        _add(categories, category, weight)

    progress = dict(snapshot.mission_progress)
    status = dict(snapshot.mission_status)
    completed: list[str] = []
    reward_points = 0

    for mission_id, amount in sorted(delta.mission_progress_deltas.items()):
        mission = catalog.mission(mission_id)
        new_progress = progress.get(mission_id, 0.0) + amount
        if mission is not None and math.isclose(new_progress, mission.target_value, rel_tol=1e-9, abs_tol=1e-9):
            # Float noise from repeated kg additions, not a real overshoot
            new_progress = mission.target_value
        progress[mission_id] = new_progress

        if (
            mission is not None
            and new_progress >= mission.target_value
            and status.get(mission_id) is MissionStatus.ACTIVE
        ):
            validate_transition(MissionStatus.ACTIVE, MissionStatus.COMPLETED)
            status[mission_id] = MissionStatus.COMPLETED
            completed.append(mission_id)
            reward_points += mission.points_reward

    next_snapshot = replace(
        snapshot,
        points_balance=snapshot.points_balance + delta.points_delta + reward_points,
        total_weight_recycled_kg=snapshot.total_weight_recycled_kg + delta.weight_delta,
        co2_saved_kg=snapshot.co2_saved_kg + delta.co2_delta,
        category_weight_kg=categories,
        mission_progress=progress,
        mission_status=status,
        submissions_count=snapshot.submissions_count + delta.submissions_delta,
        social_actions_count=snapshot.social_actions_count + delta.social_actions_delta,
    )
    return next_snapshot, tuple(completed), reward_points


def check_invariants(snapshot: UserSnapshot, catalog: RuleCatalog) -> list[str]:
    """Return every ledger invariant ``snapshot`` breaks (empty when sound)."""
    violations: list[str] = []

    for name in (
        "points_balance",
        "total_weight_recycled_kg",
        "co2_saved_kg",
        "submissions_count",
        "social_actions_count",
    ):
        value = getattr(snapshot, name)
        if value < 0:
            violations.append(f"{name} is negative ({value})")

    for category, weight in snapshot.category_weight_kg.items():
        if weight < 0:
            violations.append(f"category_weight_kg[{category}] is negative ({weight})")

    for mission_id, progress in snapshot.mission_progress.items():
        if progress < 0:
            violations.append(f"mission_progress[{mission_id}] is negative ({progress})")
        mission = catalog.mission(mission_id)
        if mission is None:
            continue
        if progress > mission.target_value:
            violations.append(
                f"mission_progress[{mission_id}]={progress} exceeds target {mission.target_value}"
            )
        if progress >= mission.target_value and snapshot.status_of(mission_id) is MissionStatus.ACTIVE:
            violations.append(f"mission {mission_id} reached its target but is still ACTIVE")

    return violations


class ProgressApplier:
    """Applies events to the ledger exactly once per idempotency key."""

    def __init__(
        self,
        store: LedgerStore,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._sleep = sleep

    async def _backoff(self, user_id: str, attempt: int) -> None:
        backoff = min(self.backoff_base_seconds * (2 ** attempt), self.backoff_max_seconds)
        # Jitter keeps colliding writers from retrying in lockstep
        backoff *= random.uniform(0.5, 1.0)  # noqa: S311
        logger.warning(
            "ledger_version_conflict",
            user_id=user_id,
            attempt=attempt + 1,
            backoff_sec=round(backoff, 4),
        )
        await self._sleep(backoff)

    def _guard(self, user_id: str, snapshot: UserSnapshot, catalog: RuleCatalog) -> None:
        violations = check_invariants(snapshot, catalog)
        if violations:
            logger.error("ledger_invariant_violation", user_id=user_id, violations=violations)
            raise InvariantViolation(user_id, violations)

    async def apply(self, event: ActivityEvent, catalog: RuleCatalog, now: datetime | None = None) -> ApplyResult:
        """Apply one event. Replays of an applied idempotency key return the stored result.

        ``now`` is the processing time; missions already ended at ``now`` gain no progress.

        Raises ConflictError when the retries run out and InvariantViolation
        when the computed snapshot is unsound (nothing is written then).
        """
        user_id = event.user_id
        key = event.idempotency_key

        for attempt in range(self.max_attempts):
            prior = await self.store.lookup_idempotency_key(user_id, key)
            if prior is not None:
                logger.info("ledger_replay", user_id=user_id, idempotency_key=key)
                return prior

            snapshot = await self.store.get(user_id)
            delta = calculate(event, snapshot, catalog, now)
            next_snapshot, completed, reward_points = apply_delta(snapshot, delta, catalog)
            self._guard(user_id, next_snapshot, catalog)

            result = ApplyResult(
                snapshot=replace(next_snapshot, version=snapshot.version + 1),
                delta=delta,
                completed_missions=completed,
                mission_reward_points=reward_points,
            )
            if await self.store.compare_and_set(user_id, snapshot.version, next_snapshot, key, result):
                logger.info(
                    "ledger_applied",
                    user_id=user_id,
                    idempotency_key=key,
                    points_delta=delta.points_delta,
                    mission_reward_points=reward_points,
                    completed_missions=list(completed),
                    version=snapshot.version + 1,
                )
                return result

            if attempt + 1 < self.max_attempts:
                await self._backoff(user_id, attempt)

        raise ConflictError(user_id, self.max_attempts)

    async def update(
        self,
        user_id: str,
        mutate: Callable[[UserSnapshot], UserSnapshot | None],
        catalog: RuleCatalog,
    ) -> tuple[UserSnapshot, UserSnapshot]:
        """Generic optimistic read-modify-write for non-event writes (badges, joins, sweeps).

        ``mutate`` gets the current snapshot and returns the next one, or None
        to leave it unchanged. It may run several times and must be pure.
        Returns (before, after); after is before when nothing was written.
        """
        for attempt in range(self.max_attempts):
            snapshot = await self.store.get(user_id)
            next_snapshot = mutate(snapshot)
            if next_snapshot is None:
                return snapshot, snapshot

            self._guard(user_id, next_snapshot, catalog)
            if await self.store.compare_and_set(user_id, snapshot.version, next_snapshot):
                return snapshot, replace(next_snapshot, version=snapshot.version + 1)

            if attempt + 1 < self.max_attempts:
                await self._backoff(user_id, attempt)

        raise ConflictError(user_id, self.max_attempts)
