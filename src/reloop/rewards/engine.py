"""Reward engine facade.

One call is one unit of work:

    normalize -> calculate -> apply -> evaluate badges -> notify

The engine holds no per-session state. The caller passes a SessionContext
with every call, and the only shared mutable resource is the ledger store.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from reloop.config import Settings, get_settings
from reloop.logging_config import bound_request
from reloop.rewards import missions
from reloop.rewards.applier import ProgressApplier
from reloop.rewards.badges import BadgeEvaluator
from reloop.rewards.catalog import BadgeDefinition, RuleCatalog, catalog_from_settings
from reloop.rewards.classification import Classifier, fold_classification
from reloop.rewards.ledger import LedgerStore
from reloop.rewards.normalizer import DEFAULT_LIMITS, EventLimits, normalize
from reloop.rewards.notifications import Notification, NotificationKind, Notifier, NullNotifier
from reloop.rewards.types import (
    ActivityEvent,
    ApplyResult,
    ImpactTotals,
    MissionJoinRequest,
    MissionStatus,
    SessionContext,
    SocialAction,
    UserSnapshot,
    WasteSubmission,
)

logger = structlog.get_logger()

_IMAGE_REF_KEYS = ("image_ref", "imageRef")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProcessOutcome:
    """What one engine call did, as seen by the caller."""

    event: ActivityEvent
    snapshot: UserSnapshot
    points_awarded: int = 0
    completed_missions: tuple[str, ...] = ()
    badges_awarded: tuple[str, ...] = ()
    replayed: bool = False


class RewardEngine:
    """Turns activity events into committed ledger state."""

    def __init__(
        self,
        store: LedgerStore,
        catalog: RuleCatalog,
        *,
        notifier: Notifier | None = None,
        classifier: Classifier | None = None,
        limits: EventLimits = DEFAULT_LIMITS,
        clock: Callable[[], datetime] = _utcnow,
        max_attempts: int = 8,
        backoff_base_seconds: float = 0.01,
        backoff_max_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self._catalog = catalog
        self.notifier: Notifier = notifier or NullNotifier()
        self.classifier = classifier
        self.limits = limits
        self._clock = clock
        self.applier = ProgressApplier(
            store,
            max_attempts=max_attempts,
            backoff_base_seconds=backoff_base_seconds,
            backoff_max_seconds=backoff_max_seconds,
            sleep=sleep,
        )
        self.badges = BadgeEvaluator(self.applier)

    @classmethod
    def from_settings(
        cls,
        store: LedgerStore,
        settings: Settings | None = None,
        *,
        notifier: Notifier | None = None,
        classifier: Classifier | None = None,
    ) -> RewardEngine:
        settings = settings or get_settings()
        return cls(
            store,
            catalog_from_settings(settings),
            notifier=notifier,
            classifier=classifier,
            limits=EventLimits.from_settings(settings),
            max_attempts=settings.apply_max_attempts,
            backoff_base_seconds=settings.apply_backoff_base_seconds,
            backoff_max_seconds=settings.apply_backoff_max_seconds,
        )

    @property
    def catalog(self) -> RuleCatalog:
        return self._catalog

    def reload_catalog(self, catalog: RuleCatalog) -> None:
        """Swap the rule catalog. Calls already in flight keep the old one."""
        self._catalog = catalog
        logger.info(
            "rule_catalog_reloaded",
            categories=len(catalog.point_rules),
            missions=len(catalog.missions),
            badges=len(catalog.badges),
        )

    async def register_user(self, user_id: str) -> UserSnapshot:
        """Create the user's all-zero snapshot. Registering twice returns the existing one."""
        return await self.store.create(user_id)

    async def get_snapshot(self, user_id: str) -> UserSnapshot:
        return await self.store.get(user_id)

    # ------------------------------------------------------------------
    # Activity processing
    # ------------------------------------------------------------------

    async def process(
        self,
        context: SessionContext,
        raw: Mapping[str, Any],
        *,
        now: datetime | None = None,
    ) -> ProcessOutcome:
        """Process one raw activity payload for the session user.

        Raises ValidationError (nothing written), MissionFullError,
        ConflictError (transient, safe to retry with the same payload) or
        InvariantViolation.
        """
        catalog = self._catalog
        now = now or self._clock()
        with bound_request(context.request_id, context.user_id):
            if isinstance(raw, Mapping) and raw.get("kind") == WasteSubmission.kind:
                raw = await self._with_classification(raw)

            event = normalize(raw, context, catalog, now=now, limits=self.limits)
            if isinstance(event, MissionJoinRequest):
                return await self._join(event, catalog, now)

            result = await self.applier.apply(event, catalog, now=now)
            if not result.replayed:
                await self._notify_result(event, result, catalog)

            badges = await self._award_badges(event.user_id, catalog)
            # A replay reports the stored result as it was first computed
            snapshot = result.snapshot
            if badges and not result.replayed:
                snapshot = await self.store.get(event.user_id)

            logger.info(
                "activity_processed",
                kind=event.kind,
                idempotency_key=event.idempotency_key,
                points_awarded=0 if result.replayed else result.points_awarded,
                completed_missions=list(result.completed_missions),
                badges_awarded=[b.badge_id for b in badges],
                replayed=result.replayed,
            )
            return ProcessOutcome(
                event=event,
                snapshot=snapshot,
                points_awarded=result.points_awarded,
                completed_missions=result.completed_missions,
                badges_awarded=tuple(b.badge_id for b in badges),
                replayed=result.replayed,
            )

    async def submit_waste(
        self, context: SessionContext, payload: Mapping[str, Any], *, now: datetime | None = None
    ) -> ProcessOutcome:
        return await self.process(context, {**payload, "kind": WasteSubmission.kind}, now=now)

    async def record_social_action(
        self, context: SessionContext, payload: Mapping[str, Any], *, now: datetime | None = None
    ) -> ProcessOutcome:
        return await self.process(context, {**payload, "kind": SocialAction.kind}, now=now)

    async def join_mission(
        self, context: SessionContext, mission_id: str, *, now: datetime | None = None
    ) -> ProcessOutcome:
        return await self.process(context, {"kind": MissionJoinRequest.kind, "mission_id": mission_id}, now=now)

    async def sweep_expired_missions(self, now: datetime | None = None) -> int:
        """Expire every ACTIVE mission past its end date. Safe to run repeatedly."""
        now = now or self._clock()
        expired = await missions.sweep_expired_missions(self.applier, self._catalog, now)
        logger.info("mission_sweep_complete", expired=expired, now=now.isoformat())
        return expired

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def recent_activity(self, user_id: str, *, limit: int = 10) -> list[ApplyResult]:
        """Most recently applied events for the user, newest first."""
        await self.store.get(user_id)
        return await self.store.recent_results(user_id, limit)

    async def user_missions(self, user_id: str, status: MissionStatus | None = None) -> list[missions.UserMission]:
        snapshot = await self.store.get(user_id)
        return missions.user_missions(snapshot, self._catalog, status)

    async def open_missions(self, now: datetime | None = None) -> list[missions.OpenMission]:
        """Missions that can be joined right now, with participant counts."""
        return await missions.open_missions(self.store, self._catalog, now or self._clock())

    async def impact_totals(self) -> ImpactTotals:
        return await self.store.impact_totals()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _join(self, event: MissionJoinRequest, catalog: RuleCatalog, now: datetime) -> ProcessOutcome:
        snapshot = await missions.join_mission(self.applier, event, catalog, now)
        logger.info("mission_joined", mission_id=event.mission_id)
        return ProcessOutcome(event=event, snapshot=snapshot)

    async def _with_classification(self, raw: Mapping[str, Any]) -> Mapping[str, Any]:
        if self.classifier is None:
            return raw
        image_ref = next((raw[k] for k in _IMAGE_REF_KEYS if raw.get(k)), None)
        if image_ref is None:
            return raw
        try:
            hint = await self.classifier.classify(str(image_ref))
        except Exception:
            logger.warning("classification_unavailable", image_ref=str(image_ref), exc_info=True)
            return raw
        return fold_classification(raw, hint)

    async def _award_badges(self, user_id: str, catalog: RuleCatalog) -> list[BadgeDefinition]:
        badges = await self.badges.award(user_id, catalog)
        for badge in badges:
            await self._notify(Notification(
                user_id=user_id,
                kind=NotificationKind.BADGE_UNLOCKED,
                payload={"badge_id": badge.badge_id, "name": badge.name, "description": badge.description},
            ))
        return badges

    async def _notify_result(self, event: ActivityEvent, result: ApplyResult, catalog: RuleCatalog) -> None:
        if result.points_awarded > 0:
            await self._notify(Notification(
                user_id=event.user_id,
                kind=NotificationKind.POINTS_AWARDED,
                payload={
                    "source_event_id": result.delta.source_event_id,
                    "points": result.points_awarded,
                    "mission_reward_points": result.mission_reward_points,
                    "points_balance": result.snapshot.points_balance,
                    "co2_saved_kg": result.delta.co2_delta,
                },
            ))

        for mission_id in result.completed_missions:
            mission = catalog.mission(mission_id)
            await self._notify(Notification(
                user_id=event.user_id,
                kind=NotificationKind.MISSION_COMPLETED,
                payload={
                    "mission_id": mission_id,
                    "title": mission.title if mission else mission_id,
                    "points_reward": mission.points_reward if mission else 0,
                },
            ))

    async def _notify(self, notification: Notification) -> None:
        try:
            await self.notifier.notify(notification)
        except Exception:
            logger.warning(
                "notification_failed",
                kind=notification.kind.value,
                exc_info=True,
            )
