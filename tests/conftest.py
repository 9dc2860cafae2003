"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from reloop.db.base import Base
from reloop.rewards.applier import ProgressApplier
from reloop.rewards.catalog import RuleCatalog, build_catalog
from reloop.rewards.engine import RewardEngine
from reloop.rewards.ledger import InMemoryLedgerStore
from reloop.rewards.notifications import RecordingNotifier
from reloop.rewards.sql_ledger import SqlLedgerStore
from reloop.rewards.types import SessionContext

NOW = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)
USER_ID = "user-1"


def fixed_clock() -> datetime:
    return NOW


class MovableClock:
    """Engine clock that a test can move forward."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


CATALOG_DATA: dict[str, Any] = {
    "categories": [
        {"category_name": "PLASTIC", "points_per_kg": 10, "co2_factor_per_kg": 1.5},
        {"category_name": "PAPER", "points_per_kg": 5, "co2_factor_per_kg": 0.9},
        {"category_name": "METAL", "points_per_kg": 15, "co2_factor_per_kg": 4.0},
    ],
    "social_actions": [
        {"action_type": "POST_CREATED", "points": 5},
        {"action_type": "POST_LIKED", "points": 1},
    ],
    "missions": [
        {
            "mission_id": "recycle_50",
            "title": "Recycle 50kg",
            "type": "RECYCLING",
            "target_value": 50,
            "points_reward": 200,
            "start_date": "2026-10-01T00:00:00Z",
            "end_date": "2026-10-31T23:59:59Z",
        },
        {
            "mission_id": "plastic_10",
            "title": "Plastic Purge",
            "type": "RECYCLING",
            "category_name": "PLASTIC",
            "target_value": 10,
            "points_reward": 100,
            "start_date": "2026-10-01T00:00:00Z",
            "end_date": "2026-10-31T23:59:59Z",
            "max_participants": 2,
        },
        {
            "mission_id": "community_3",
            "title": "Community Voice",
            "type": "COMMUNITY",
            "action_type": "POST_CREATED",
            "target_value": 3,
            "points_reward": 30,
            "start_date": "2026-10-01T00:00:00Z",
            "end_date": "2026-10-31T23:59:59Z",
        },
        {
            "mission_id": "drops_3",
            "title": "Three Drops",
            "type": "CHALLENGE",
            "target_value": 3,
            "points_reward": 15,
            "start_date": "2026-10-01T00:00:00Z",
            "end_date": "2026-10-31T23:59:59Z",
        },
        {
            "mission_id": "learn_sorting",
            "title": "Sorting 101",
            "type": "EDUCATION",
            "target_value": 1,
            "points_reward": 10,
            "start_date": "2026-10-01T00:00:00Z",
            "end_date": "2026-10-31T23:59:59Z",
        },
        {
            "mission_id": "september_sprint",
            "title": "September Sprint",
            "type": "RECYCLING",
            "target_value": 50,
            "points_reward": 200,
            "start_date": "2026-09-01T00:00:00Z",
            "end_date": "2026-09-30T23:59:59Z",
        },
    ],
    "badges": [
        {"badge_id": "first_drop", "name": "First Drop", "metric": "submissions_count", "threshold": 1},
        {"badge_id": "recycler_10kg", "name": "10kg Recycler", "metric": "total_weight_recycled_kg", "threshold": 10},
        {
            "badge_id": "plastic_hero",
            "name": "Plastic Hero",
            "metric": "category_weight_kg",
            "category_name": "PLASTIC",
            "threshold": 5,
        },
        {"badge_id": "mission_master", "name": "Mission Master", "metric": "completed_missions", "threshold": 1},
    ],
}


@pytest.fixture
def catalog() -> RuleCatalog:
    """Small, fixed rule catalog with October 2026 missions."""
    return build_catalog(CATALOG_DATA)


@pytest.fixture
def ctx() -> SessionContext:
    return SessionContext(user_id=USER_ID, request_id="req-1")


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def applier(store: InMemoryLedgerStore) -> ProgressApplier:
    return ProgressApplier(store, max_attempts=50, backoff_base_seconds=0.0005, backoff_max_seconds=0.005)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def engine(store: InMemoryLedgerStore, catalog: RuleCatalog, notifier: RecordingNotifier) -> RewardEngine:
    """Engine over the in-memory store with USER_ID registered and the clock pinned to NOW."""
    eng = RewardEngine(
        store,
        catalog,
        notifier=notifier,
        clock=fixed_clock,
        max_attempts=50,
        backoff_base_seconds=0.0005,
        backoff_max_seconds=0.005,
    )
    await eng.register_user(USER_ID)
    return eng


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite database with the ledger tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sql_store(db_engine: AsyncEngine) -> SqlLedgerStore:
    return SqlLedgerStore(async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False))


def waste(submission_id: str = "sub-1", category: str = "PLASTIC", weight: float = 2.0, **extra: Any) -> dict[str, Any]:
    """Raw waste submission payload."""
    return {
        "kind": "waste_submission",
        "submission_id": submission_id,
        "category_name": category,
        "weight_kg": weight,
        "occurred_at": NOW.isoformat(),
        **extra,
    }


def social(action_id: str = "act-1", action_type: str = "POST_CREATED", **extra: Any) -> dict[str, Any]:
    """Raw social action payload."""
    return {
        "kind": "social_action",
        "action_id": action_id,
        "action_type": action_type,
        "occurred_at": NOW.isoformat(),
        **extra,
    }
