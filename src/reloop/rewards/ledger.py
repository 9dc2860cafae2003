"""Ledger store interface and the in-process implementation.

The store is the only shared mutable resource. Writers never hold a lock
across their own computation: they read a snapshot at version V and write
back conditioned on V still being current (``compare_and_set``).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Protocol

from reloop.rewards.errors import UnknownUserError
from reloop.rewards.types import ApplyResult, ImpactTotals, UserSnapshot

logger = logging.getLogger(__name__)


class LedgerStore(Protocol):
    """Transactional keyed storage for snapshots, idempotency records and mission counters."""

    async def create(self, user_id: str) -> UserSnapshot:
        """Create the all-zero snapshot at version 0; returns the existing one if present."""
        ...

    async def get(self, user_id: str) -> UserSnapshot:
        """Current snapshot (carrying its version). Raises UnknownUserError."""
        ...

    async def compare_and_set(
        self,
        user_id: str,
        expected_version: int,
        snapshot: UserSnapshot,
        idempotency_key: str | None = None,
        result: ApplyResult | None = None,
    ) -> bool:
        """Write ``snapshot`` iff the stored version is still ``expected_version``.

        When ``idempotency_key`` is given the key and ``result`` are recorded in
        the same atomic step; a key that already exists counts as a conflict.
        """
        ...

    async def record_idempotency_key(self, user_id: str, key: str, result: ApplyResult) -> bool:
        """Record a result under ``key``; False if the key was already recorded."""
        ...

    async def lookup_idempotency_key(self, user_id: str, key: str) -> ApplyResult | None:
        ...

    async def reserve_mission_slot(self, mission_id: str, max_participants: int | None) -> bool:
        """Atomically check capacity and increment the participant count."""
        ...

    async def release_mission_slot(self, mission_id: str) -> None:
        ...

    async def participant_count(self, mission_id: str) -> int:
        ...

    async def users_with_active_missions(self) -> list[str]:
        ...

    async def recent_results(self, user_id: str, limit: int) -> list[ApplyResult]:
        """Applied-event results for ``user_id``, newest first."""
        ...

    async def impact_totals(self) -> ImpactTotals:
        ...


class InMemoryLedgerStore:
    """Process-local ledger store.

    A single asyncio lock guards each store operation; it is never held while
    the caller computes, so concurrent writers still race on ``version`` the
    same way they would against the SQL store.
    """

    def __init__(self) -> None:
        self._snapshots: dict[str, UserSnapshot] = {}
        self._idempotency: dict[tuple[str, str], ApplyResult] = {}
        self._participants: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def create(self, user_id: str) -> UserSnapshot:
        async with self._lock:
            existing = self._snapshots.get(user_id)
            if existing is not None:
                return existing
            snapshot = UserSnapshot(user_id=user_id)
            self._snapshots[user_id] = snapshot
            logger.info("Created ledger for user %s", user_id)
            return snapshot

    async def get(self, user_id: str) -> UserSnapshot:
        # Yield so concurrent read-modify-write cycles genuinely interleave
        await asyncio.sleep(0)
        snapshot = self._snapshots.get(user_id)
        if snapshot is None:
            raise UnknownUserError(user_id)
        return snapshot

    async def compare_and_set(
        self,
        user_id: str,
        expected_version: int,
        snapshot: UserSnapshot,
        idempotency_key: str | None = None,
        result: ApplyResult | None = None,
    ) -> bool:
        async with self._lock:
            current = self._snapshots.get(user_id)
            if current is None:
                raise UnknownUserError(user_id)
            if current.version != expected_version:
                return False
            if idempotency_key is not None and (user_id, idempotency_key) in self._idempotency:
                return False
            self._snapshots[user_id] = replace(snapshot, version=expected_version + 1)
            if idempotency_key is not None and result is not None:
                self._idempotency[(user_id, idempotency_key)] = result
            return True

    async def record_idempotency_key(self, user_id: str, key: str, result: ApplyResult) -> bool:
        async with self._lock:
            if (user_id, key) in self._idempotency:
                return False
            self._idempotency[(user_id, key)] = result
            return True

    async def lookup_idempotency_key(self, user_id: str, key: str) -> ApplyResult | None:
        found = self._idempotency.get((user_id, key))
        return replace(found, replayed=True) if found is not None else None

    async def reserve_mission_slot(self, mission_id: str, max_participants: int | None) -> bool:
        async with self._lock:
            count = self._participants.get(mission_id, 0)
            if max_participants is not None and count >= max_participants:
                return False
            self._participants[mission_id] = count + 1
            return True

    async def release_mission_slot(self, mission_id: str) -> None:
        async with self._lock:
            count = self._participants.get(mission_id, 0)
            if count > 0:
                self._participants[mission_id] = count - 1

    async def participant_count(self, mission_id: str) -> int:
        return self._participants.get(mission_id, 0)

    async def users_with_active_missions(self) -> list[str]:
        return sorted(uid for uid, snap in self._snapshots.items() if snap.active_missions)

    async def recent_results(self, user_id: str, limit: int) -> list[ApplyResult]:
        # Dicts keep insertion order, which is commit order here
        found = [result for (uid, _), result in reversed(self._idempotency.items()) if uid == user_id]
        return found[:limit]

    async def impact_totals(self) -> ImpactTotals:
        snapshots = list(self._snapshots.values())
        return ImpactTotals(
            users=len(snapshots),
            total_weight_recycled_kg=sum(s.total_weight_recycled_kg for s in snapshots),
            co2_saved_kg=sum(s.co2_saved_kg for s in snapshots),
            submissions_count=sum(s.submissions_count for s in snapshots),
        )
