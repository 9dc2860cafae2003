"""Ledger store on async SQLAlchemy.

``compare_and_set`` is a single transaction: a conditional UPDATE on
``version`` plus, when given, the INSERT of the idempotency row. The UNIQUE
constraint on (user_id, idempotency_key) turns a concurrent duplicate into a
rollback, which the applier sees as an ordinary conflict.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reloop.db.models import LedgerIdempotencyKey, MissionEnrollment, UserLedger
from reloop.rewards.errors import UnknownUserError
from reloop.rewards.types import ApplyResult, ImpactTotals, MissionStatus, UserSnapshot

logger = logging.getLogger(__name__)


def _row_to_snapshot(row: UserLedger) -> UserSnapshot:
    return UserSnapshot(
        user_id=row.user_id,
        points_balance=row.points_balance,
        total_weight_recycled_kg=row.total_weight_recycled_kg,
        co2_saved_kg=row.co2_saved_kg,
        category_weight_kg=dict(row.category_weight_kg or {}),
        mission_status={k: MissionStatus(v) for k, v in (row.mission_status or {}).items()},
        mission_progress=dict(row.mission_progress or {}),
        awarded_badge_ids=frozenset(row.awarded_badge_ids or ()),
        submissions_count=row.submissions_count,
        social_actions_count=row.social_actions_count,
        version=row.version,
    )


def _snapshot_values(snapshot: UserSnapshot) -> dict[str, object]:
    data = snapshot.as_dict()
    data.pop("user_id")
    data.pop("version")
    data["active_mission_count"] = len(snapshot.active_missions)
    data["updated_at"] = datetime.now(timezone.utc)
    return data


class SqlLedgerStore:
    """Ledger store backed by the ``user_ledgers`` family of tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, user_id: str) -> UserSnapshot:
        async with self._session_factory() as db:
            existing = await db.get(UserLedger, user_id)
            if existing is not None:
                return _row_to_snapshot(existing)

            row = UserLedger(
                user_id=user_id,
                points_balance=0,
                total_weight_recycled_kg=0.0,
                co2_saved_kg=0.0,
                submissions_count=0,
                social_actions_count=0,
                category_weight_kg={},
                mission_status={},
                mission_progress={},
                awarded_badge_ids=[],
                active_mission_count=0,
                version=0,
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                # Race condition: registered concurrently
                await db.rollback()
                return await self.get(user_id)

            logger.info("Created ledger for user %s", user_id)
            return UserSnapshot(user_id=user_id)

    async def get(self, user_id: str) -> UserSnapshot:
        async with self._session_factory() as db:
            row = await db.get(UserLedger, user_id)
            if row is None:
                raise UnknownUserError(user_id)
            return _row_to_snapshot(row)

    async def compare_and_set(
        self,
        user_id: str,
        expected_version: int,
        snapshot: UserSnapshot,
        idempotency_key: str | None = None,
        result: ApplyResult | None = None,
    ) -> bool:
        async with self._session_factory() as db:
            try:
                outcome = await db.execute(
                    update(UserLedger)
                    .where(
                        UserLedger.user_id == user_id,
                        UserLedger.version == expected_version,
                    )
                    .values(version=expected_version + 1, **_snapshot_values(snapshot))
                    .execution_options(synchronize_session=False)
                )
                if outcome.rowcount != 1:  # type: ignore[attr-defined]
                    await db.rollback()
                    if await db.get(UserLedger, user_id) is None:
                        raise UnknownUserError(user_id)
                    return False

                if idempotency_key is not None and result is not None:
                    db.add(LedgerIdempotencyKey(
                        user_id=user_id,
                        idempotency_key=idempotency_key,
                        result=result.as_dict(),
                    ))
                    await db.flush()

                await db.commit()
            except IntegrityError:
                # Same event committed by a concurrent writer
                await db.rollback()
                return False
        return True

    async def record_idempotency_key(self, user_id: str, key: str, result: ApplyResult) -> bool:
        async with self._session_factory() as db:
            db.add(LedgerIdempotencyKey(user_id=user_id, idempotency_key=key, result=result.as_dict()))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
        return True

    async def lookup_idempotency_key(self, user_id: str, key: str) -> ApplyResult | None:
        async with self._session_factory() as db:
            found = await db.execute(
                select(LedgerIdempotencyKey.result).where(
                    LedgerIdempotencyKey.user_id == user_id,
                    LedgerIdempotencyKey.idempotency_key == key,
                )
            )
            data = found.scalar_one_or_none()
        return ApplyResult.from_dict(data, replayed=True) if data is not None else None

    async def reserve_mission_slot(self, mission_id: str, max_participants: int | None) -> bool:
        async with self._session_factory() as db:
            if await db.get(MissionEnrollment, mission_id) is None:
                db.add(MissionEnrollment(mission_id=mission_id, participant_count=0))
                try:
                    await db.commit()
                except IntegrityError:
                    # Created by a concurrent join
                    await db.rollback()

            stmt = (
                update(MissionEnrollment)
                .where(MissionEnrollment.mission_id == mission_id)
                .values(
                    participant_count=MissionEnrollment.participant_count + 1,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if max_participants is not None:
                stmt = stmt.where(MissionEnrollment.participant_count < max_participants)

            outcome = await db.execute(stmt)
            reserved = outcome.rowcount == 1  # type: ignore[attr-defined]
            await db.commit()
        return reserved

    async def release_mission_slot(self, mission_id: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(MissionEnrollment)
                .where(
                    MissionEnrollment.mission_id == mission_id,
                    MissionEnrollment.participant_count > 0,
                )
                .values(
                    participant_count=MissionEnrollment.participant_count - 1,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await db.commit()

    async def participant_count(self, mission_id: str) -> int:
        async with self._session_factory() as db:
            row = await db.get(MissionEnrollment, mission_id)
            return row.participant_count if row is not None else 0

    async def users_with_active_missions(self) -> list[str]:
        async with self._session_factory() as db:
            found = await db.execute(
                select(UserLedger.user_id)
                .where(UserLedger.active_mission_count > 0)
                .order_by(UserLedger.user_id)
            )
            return list(found.scalars())

    async def recent_results(self, user_id: str, limit: int) -> list[ApplyResult]:
        async with self._session_factory() as db:
            found = await db.execute(
                select(LedgerIdempotencyKey.result)
                .where(LedgerIdempotencyKey.user_id == user_id)
                .order_by(LedgerIdempotencyKey.id.desc())
                .limit(limit)
            )
            return [ApplyResult.from_dict(data) for data in found.scalars()]

    async def impact_totals(self) -> ImpactTotals:
        async with self._session_factory() as db:
            found = await db.execute(
                select(
                    func.count(UserLedger.user_id),
                    func.coalesce(func.sum(UserLedger.total_weight_recycled_kg), 0.0),
                    func.coalesce(func.sum(UserLedger.co2_saved_kg), 0.0),
                    func.coalesce(func.sum(UserLedger.submissions_count), 0),
                )
            )
            users, weight, co2, submissions = found.one()
        return ImpactTotals(
            users=int(users),
            total_weight_recycled_kg=float(weight),
            co2_saved_kg=float(co2),
            submissions_count=int(submissions),
        )
