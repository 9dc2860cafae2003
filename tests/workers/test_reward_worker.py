"""Tests for the arq reward worker."""

from __future__ import annotations

import copy
from datetime import datetime, timezone

from reloop.rewards.catalog import build_catalog
from reloop.rewards.engine import RewardEngine
from reloop.rewards.types import MissionStatus
from reloop.workers.reward_worker import sweep_missions
from reloop.workers.settings import WorkerSettings
from tests.conftest import CATALOG_DATA, USER_ID, MovableClock, waste

SPRING_2020 = datetime(2020, 4, 1, tzinfo=timezone.utc)
SUMMER_2020 = datetime(2020, 6, 15, tzinfo=timezone.utc)


class TestWorkerSettings:
    def test_sweep_is_hourly_cron(self):
        assert sweep_missions in WorkerSettings.functions
        (job,) = WorkerSettings.cron_jobs
        assert job.coroutine is sweep_missions
        assert job.minute == 0

    def test_lifecycle_hooks(self):
        assert WorkerSettings.on_startup.__name__ == "startup"
        assert WorkerSettings.on_shutdown.__name__ == "shutdown"


class TestSweepJob:
    async def test_sweep_job_expires_missions(self, store, ctx):
        data = copy.deepcopy(CATALOG_DATA)
        data["missions"].append({
            "mission_id": "spring_2020",
            "title": "Spring Clean 2020",
            "type": "RECYCLING",
            "target_value": 50,
            "points_reward": 200,
            "start_date": "2020-03-01T00:00:00Z",
            "end_date": "2020-05-31T23:59:59Z",
        })
        clock = MovableClock(SPRING_2020)
        engine = RewardEngine(store, build_catalog(data), clock=clock)
        await engine.register_user(USER_ID)
        await engine.join_mission(ctx, "spring_2020")
        await engine.submit_waste(ctx, waste(weight=30.0, category="PAPER", occurred_at=SPRING_2020.isoformat()))

        assert (await engine.get_snapshot(USER_ID)).progress_of("spring_2020") == 30.0
        assert await sweep_missions({"engine": engine}) == 0

        clock.now = SUMMER_2020
        assert await sweep_missions({"engine": engine}) == 1

        snapshot = await engine.get_snapshot(USER_ID)
        assert snapshot.status_of("spring_2020") is MissionStatus.EXPIRED
        assert snapshot.points_balance == 150
        assert await sweep_missions({"engine": engine}) == 0
