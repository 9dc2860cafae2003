"""End-to-end tests for the reward engine: normalize -> apply -> badges -> notify."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from reloop.config import Settings
from reloop.rewards.catalog import build_catalog
from reloop.rewards.classification import ClassificationResult
from reloop.rewards.engine import RewardEngine
from reloop.rewards.errors import MissionFullError, MissionJoinError, UnknownUserError, ValidationError
from reloop.rewards.ledger import InMemoryLedgerStore
from reloop.rewards.notifications import NotificationKind
from reloop.rewards.types import ImpactTotals, MissionStatus, SessionContext
from tests.conftest import CATALOG_DATA, NOW, USER_ID, MovableClock, fixed_clock, social, waste


class TestWastePipeline:
    """Test a waste submission through the whole unit of work."""

    async def test_first_submission(self, engine, ctx, notifier):
        outcome = await engine.submit_waste(ctx, waste(weight=2.0))

        assert outcome.replayed is False
        assert outcome.points_awarded == 20
        assert outcome.badges_awarded == ("first_drop",)
        snapshot = outcome.snapshot
        assert snapshot.points_balance == 20
        assert snapshot.co2_saved_kg == 3.0
        assert snapshot.total_weight_recycled_kg == 2.0
        assert snapshot.category_weight_kg == {"PLASTIC": 2.0}
        assert snapshot.awarded_badge_ids == frozenset({"first_drop"})
        assert notifier.kinds() == [NotificationKind.POINTS_AWARDED, NotificationKind.BADGE_UNLOCKED]

    async def test_low_confidence_submission(self, engine, ctx):
        outcome = await engine.submit_waste(ctx, waste(weight=2.0, classification_confidence=0.3))
        assert outcome.points_awarded == 10
        assert outcome.snapshot.co2_saved_kg == 3.0

    async def test_replay_yields_identical_state(self, engine, ctx, notifier):
        first = await engine.submit_waste(ctx, waste())
        state = await engine.get_snapshot(USER_ID)
        second = await engine.submit_waste(ctx, waste())

        assert second.replayed is True
        assert await engine.get_snapshot(USER_ID) == state
        assert second.points_awarded == first.points_awarded
        assert second.badges_awarded == ()
        assert notifier.kinds().count(NotificationKind.POINTS_AWARDED) == 1

    async def test_replay_reports_the_original_result(self, engine, ctx):
        """A replay returns the snapshot stored with the first application, not later state."""
        await engine.submit_waste(ctx, waste("sub-1"))
        await engine.submit_waste(ctx, waste("sub-2", weight=3.0))

        replay = await engine.submit_waste(ctx, waste("sub-1"))

        assert replay.replayed is True
        assert replay.snapshot.version == 1
        assert replay.snapshot.points_balance == 20
        assert replay.snapshot.submissions_count == 1
        assert (await engine.get_snapshot(USER_ID)).points_balance == 50

    async def test_oversized_quantity_is_rejected(self, engine, ctx, notifier):
        with pytest.raises(ValidationError) as exc:
            await engine.submit_waste(ctx, waste(weight=1.0, quantity=10**400))
        assert exc.value.field == "quantity"
        assert (await engine.get_snapshot(USER_ID)).version == 0
        assert notifier.sent == []

    async def test_overflowing_weight_is_rejected(self, engine, ctx):
        with pytest.raises(ValidationError) as exc:
            await engine.submit_waste(ctx, waste(weight=1e308, quantity=10))
        assert exc.value.field == "weight_kg"

    async def test_invalid_payload_writes_nothing(self, engine, ctx, notifier):
        with pytest.raises(ValidationError):
            await engine.submit_waste(ctx, waste(weight=-1))
        snapshot = await engine.get_snapshot(USER_ID)
        assert snapshot.version == 0
        assert notifier.sent == []

    async def test_unregistered_user(self, engine, notifier):
        with pytest.raises(UnknownUserError):
            await engine.submit_waste(SessionContext(user_id="ghost"), waste())
        assert notifier.sent == []

    async def test_register_is_idempotent(self, engine):
        await engine.submit_waste(SessionContext(user_id=USER_ID), waste())
        again = await engine.register_user(USER_ID)
        assert again.points_balance == 20


class TestMissionPipeline:
    """Test missions across joins, progress, completion and expiry."""

    async def test_join_then_complete(self, engine, ctx, notifier):
        joined = await engine.join_mission(ctx, "recycle_50", now=NOW)
        assert joined.snapshot.status_of("recycle_50") is MissionStatus.ACTIVE

        for i in range(9):
            await engine.submit_waste(ctx, waste(f"sub-{i}", category="PAPER", weight=5.0))
        before = await engine.get_snapshot(USER_ID)
        assert before.progress_of("recycle_50") == 45.0

        outcome = await engine.submit_waste(ctx, waste("sub-final", category="PAPER", weight=8.0))

        assert outcome.completed_missions == ("recycle_50",)
        snapshot = outcome.snapshot
        assert snapshot.progress_of("recycle_50") == 50.0
        assert snapshot.status_of("recycle_50") is MissionStatus.COMPLETED
        assert snapshot.points_balance == before.points_balance + 40 + 200
        assert "mission_master" in snapshot.awarded_badge_ids
        assert NotificationKind.MISSION_COMPLETED in notifier.kinds()

    async def test_progress_is_monotonic_and_capped(self, engine, ctx):
        await engine.join_mission(ctx, "drops_3", now=NOW)
        seen = []
        for i in range(6):
            await engine.submit_waste(ctx, waste(f"drop-{i}", weight=0.2))
            seen.append((await engine.get_snapshot(USER_ID)).progress_of("drops_3"))

        assert seen == sorted(seen)
        assert max(seen) == 3.0

    async def test_social_actions_progress_community_mission(self, engine, ctx):
        await engine.join_mission(ctx, "community_3", now=NOW)
        for i in range(3):
            outcome = await engine.record_social_action(ctx, social(f"post-{i}"))
        assert outcome.completed_missions == ("community_3",)
        assert outcome.snapshot.points_balance == 3 * 5 + 30
        assert outcome.snapshot.social_actions_count == 3

    async def test_mission_full(self, engine, store):
        for uid in ("u1", "u2", "u3"):
            await engine.register_user(uid)
        await engine.join_mission(SessionContext(user_id="u1"), "plastic_10", now=NOW)
        await engine.join_mission(SessionContext(user_id="u2"), "plastic_10", now=NOW)
        with pytest.raises(MissionFullError):
            await engine.join_mission(SessionContext(user_id="u3"), "plastic_10", now=NOW)

    async def test_sweep_expires_unfinished(self, engine, ctx):
        await engine.join_mission(ctx, "recycle_50", now=NOW)
        await engine.submit_waste(ctx, waste(weight=30.0, category="PAPER"))

        expired = await engine.sweep_expired_missions(datetime(2026, 11, 2, tzinfo=timezone.utc))

        snapshot = await engine.get_snapshot(USER_ID)
        assert expired == 1
        assert snapshot.status_of("recycle_50") is MissionStatus.EXPIRED
        assert snapshot.progress_of("recycle_50") == 30.0
        assert snapshot.points_balance == 150


class TestProcessingClock:
    """The engine clock bounds mission windows, whatever the payload claims."""

    async def test_backdated_join_and_submission_after_mission_end(self, store, catalog, ctx):
        engine = RewardEngine(store, catalog, clock=MovableClock(datetime(2026, 11, 5, tzinfo=timezone.utc)))
        await engine.register_user(USER_ID)
        backdated = "2026-10-15T12:00:00Z"

        with pytest.raises(ValidationError):
            await engine.process(ctx, {"kind": "mission_join", "mission_id": "recycle_50", "occurred_at": backdated})
        with pytest.raises(ValidationError):
            await engine.submit_waste(ctx, waste(weight=50.0, category="PAPER", occurred_at=backdated))

        snapshot = await engine.get_snapshot(USER_ID)
        assert snapshot.points_balance == 0
        assert snapshot.status_of("recycle_50") is MissionStatus.AVAILABLE

    async def test_late_event_after_end_earns_no_mission_reward(self, store, catalog, ctx):
        clock = MovableClock(NOW)
        engine = RewardEngine(store, catalog, clock=clock)
        await engine.register_user(USER_ID)
        await engine.join_mission(ctx, "recycle_50")

        clock.now = datetime(2026, 11, 1, 1, 0, tzinfo=timezone.utc)
        outcome = await engine.submit_waste(
            ctx, waste(weight=50.0, category="PAPER", occurred_at="2026-10-31T23:00:00Z")
        )

        assert outcome.points_awarded == 250
        assert outcome.completed_missions == ()
        assert outcome.snapshot.progress_of("recycle_50") == 0.0
        assert outcome.snapshot.status_of("recycle_50") is MissionStatus.ACTIVE

        assert await engine.sweep_expired_missions() == 1
        assert (await engine.get_snapshot(USER_ID)).points_balance == 250
        with pytest.raises(MissionJoinError):
            await engine.join_mission(ctx, "plastic_10")


class TestConcurrency:
    """Concurrent events for one user never lose updates."""

    async def test_distinct_events_sum(self, engine, ctx):
        payloads = [waste(f"sub-{i}", weight=0.25 * (i + 1)) for i in range(15)]
        payloads += [social(f"act-{i}", action_type="POST_LIKED") for i in range(5)]

        outcomes = await asyncio.gather(*(engine.process(ctx, p) for p in payloads))

        snapshot = await engine.get_snapshot(USER_ID)
        assert snapshot.points_balance == sum(o.points_awarded for o in outcomes)
        assert snapshot.submissions_count == 15
        assert snapshot.social_actions_count == 5

    async def test_duplicate_storm_applies_once(self, engine, ctx):
        outcomes = await asyncio.gather(*(engine.process(ctx, waste()) for _ in range(8)))
        assert sum(1 for o in outcomes if not o.replayed) == 1
        assert (await engine.get_snapshot(USER_ID)).points_balance == 20

    async def test_badge_awarded_once_under_concurrency(self, engine, ctx, notifier):
        await asyncio.gather(*(engine.process(ctx, waste(f"sub-{i}", weight=3.0)) for i in range(6)))

        snapshot = await engine.get_snapshot(USER_ID)
        assert {"first_drop", "recycler_10kg", "plastic_hero"} <= snapshot.awarded_badge_ids
        badge_ids = [n.payload["badge_id"] for n in notifier.sent if n.kind is NotificationKind.BADGE_UNLOCKED]
        assert sorted(badge_ids) == sorted(set(badge_ids))

    async def test_users_are_independent(self, engine):
        await engine.register_user("other")
        await asyncio.gather(
            engine.submit_waste(SessionContext(user_id=USER_ID), waste("a")),
            engine.submit_waste(SessionContext(user_id="other"), waste("a")),
        )
        assert (await engine.get_snapshot(USER_ID)).points_balance == 20
        assert (await engine.get_snapshot("other")).points_balance == 20


class TestCollaborators:
    """Classifier hints, notifier failures and catalog swaps."""

    async def test_classifier_hint_applies(self, store, catalog, ctx):
        classifier = AsyncMock()
        classifier.classify.return_value = ClassificationResult("METAL", 0.9)
        engine = RewardEngine(store, catalog, classifier=classifier, clock=fixed_clock)
        await engine.register_user(USER_ID)

        outcome = await engine.submit_waste(ctx, waste(category="PLASTIC", image_ref="img-1"))

        classifier.classify.assert_awaited_once_with("img-1")
        assert outcome.points_awarded == 10  # contradicted claim falls under the low-confidence policy

    async def test_classifier_failure_falls_back_to_claim(self, store, catalog, ctx):
        classifier = AsyncMock()
        classifier.classify.side_effect = TimeoutError
        engine = RewardEngine(store, catalog, classifier=classifier, clock=fixed_clock)
        await engine.register_user(USER_ID)

        outcome = await engine.submit_waste(ctx, waste(image_ref="img-1"))
        assert outcome.points_awarded == 20

    async def test_notifier_failure_keeps_state(self, store, catalog, ctx):
        notifier = AsyncMock()
        notifier.notify.side_effect = RuntimeError("push service down")
        engine = RewardEngine(store, catalog, notifier=notifier, clock=fixed_clock)
        await engine.register_user(USER_ID)

        outcome = await engine.submit_waste(ctx, waste())
        assert outcome.snapshot.points_balance == 20
        assert (await engine.get_snapshot(USER_ID)).points_balance == 20

    async def test_reload_catalog_affects_later_events_only(self, engine, ctx):
        await engine.submit_waste(ctx, waste("before"))

        richer = {**CATALOG_DATA, "categories": [
            {"category_name": "PLASTIC", "points_per_kg": 100, "co2_factor_per_kg": 1.5},
        ]}
        engine.reload_catalog(build_catalog(richer))
        outcome = await engine.submit_waste(ctx, waste("after"))

        assert outcome.points_awarded == 200
        assert outcome.snapshot.points_balance == 220

    async def test_from_settings_uses_seed(self):
        engine = RewardEngine.from_settings(InMemoryLedgerStore(), Settings(apply_max_attempts=3))
        assert engine.applier.max_attempts == 3
        assert "PLASTIC" in engine.catalog.point_rules

    async def test_from_settings_applies_event_limits(self):
        engine = RewardEngine.from_settings(InMemoryLedgerStore(), Settings(max_submission_weight_kg=5.0))
        assert engine.limits.max_weight_kg == 5.0


class TestReadModels:
    """Recent activity, mission views and community impact."""

    async def test_recent_activity_newest_first(self, engine, ctx):
        await engine.submit_waste(ctx, waste("a", weight=1.0))
        await engine.record_social_action(ctx, social("p"))
        await engine.submit_waste(ctx, waste("b", weight=3.0))
        await engine.submit_waste(ctx, waste("a", weight=1.0))

        recent = await engine.recent_activity(USER_ID)

        assert [r.delta.source_event_id for r in recent] == ["waste:b", "social:p", "waste:a"]
        assert [r.points_awarded for r in recent] == [30, 5, 10]
        latest = await engine.recent_activity(USER_ID, limit=1)
        assert [r.delta.source_event_id for r in latest] == ["waste:b"]

    async def test_recent_activity_unknown_user(self, engine):
        with pytest.raises(UnknownUserError):
            await engine.recent_activity("ghost")

    async def test_user_missions_by_status(self, engine, ctx):
        await engine.join_mission(ctx, "recycle_50")
        await engine.submit_waste(ctx, waste(weight=4.0, category="PAPER"))

        (active,) = await engine.user_missions(USER_ID, MissionStatus.ACTIVE)
        assert active.mission.mission_id == "recycle_50"
        assert active.progress == 4.0
        assert len(await engine.user_missions(USER_ID)) == len(CATALOG_DATA["missions"])

    async def test_open_missions_with_participants(self, engine, ctx):
        await engine.join_mission(ctx, "plastic_10")

        counts = {o.mission.mission_id: o.participants for o in await engine.open_missions()}

        assert counts["plastic_10"] == 1
        assert counts["recycle_50"] == 0
        assert "september_sprint" not in counts

    async def test_impact_totals_across_users(self, engine, ctx):
        await engine.register_user("other")
        await engine.submit_waste(ctx, waste(weight=2.0))
        await engine.submit_waste(SessionContext(user_id="other"), waste("o", category="METAL", weight=1.0))

        totals = await engine.impact_totals()

        assert totals == ImpactTotals(users=2, total_weight_recycled_kg=3.0, co2_saved_kg=7.0, submissions_count=2)
