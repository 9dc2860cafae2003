"""Reward calculator: pure mapping (event, snapshot, catalog) -> RewardDelta.

No I/O and no clock reads: mission windows are checked against
``event.occurred_at`` and the caller-supplied ``now``, so the same inputs always
produce the same delta.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from reloop.rewards.catalog import MissionDefinition, RuleCatalog
from reloop.rewards.types import (
    ActivityEvent,
    MissionType,
    RewardDelta,
    SocialAction,
    UserSnapshot,
    WasteSubmission,
)

CO2_PRECISION = 4


def round_points(value: float) -> int:
    """Round half away from zero (2.5 -> 3), unlike Python's banker's rounding."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def confidence_multiplier(confidence: float | None, catalog: RuleCatalog) -> float:
    """Low-confidence self-report penalty.

    A classification confidence below ``catalog.low_confidence_threshold``
    credits the submission at ``catalog.low_confidence_multiplier``. No
    confidence at all, or one at/above the threshold, is full credit.
    """
    if confidence is not None and confidence < catalog.low_confidence_threshold:
        return catalog.low_confidence_multiplier
    return 1.0


def mission_contribution(mission: MissionDefinition, event: ActivityEvent, now: datetime | None = None) -> float:
    """How much ``event`` advances ``mission``, before capping. 0 means no match.

    Nothing counts once the mission has ended at ``now``, whatever ``occurred_at`` says.
    """
    if not mission.is_open(event.occurred_at):
        return 0.0
    if now is not None and mission.is_expired(now):
        return 0.0

    if isinstance(event, WasteSubmission):
        if mission.type is MissionType.RECYCLING:
            if mission.category_name and mission.category_name.casefold() != event.category_name.casefold():
                return 0.0
            return event.total_weight_kg
        if mission.type is MissionType.CHALLENGE:
            return 1.0
        return 0.0

    if isinstance(event, SocialAction):
        if mission.type in (MissionType.COMMUNITY, MissionType.SOCIAL):
            if mission.action_type and mission.action_type != event.action_type:
                return 0.0
            return 1.0
        return 0.0

    return 0.0


def _mission_deltas(
    event: ActivityEvent, snapshot: UserSnapshot, catalog: RuleCatalog, now: datetime | None
) -> dict[str, float]:
    deltas: dict[str, float] = {}
    for mission_id in sorted(snapshot.active_missions):
        mission = catalog.mission(mission_id)
        if mission is None:
            continue
        contribution = mission_contribution(mission, event, now)
        if contribution <= 0:
            continue
        # Excess over the target is discarded, not carried over
        headroom = mission.target_value - snapshot.progress_of(mission_id)
        delta = min(contribution, headroom)
        if delta > 0:
            deltas[mission_id] = delta
    return deltas


def calculate(
    event: ActivityEvent, snapshot: UserSnapshot, catalog: RuleCatalog, now: datetime | None = None
) -> RewardDelta:
    """Compute the proposed delta for one event against the current snapshot."""
    if isinstance(event, WasteSubmission):
        rule = catalog.point_rule(event.category_name)
        weight = event.total_weight_kg
        multiplier = confidence_multiplier(event.classification_confidence, catalog)
        return RewardDelta(
            source_event_id=event.idempotency_key,
            points_delta=round_points(weight * rule.points_per_kg * multiplier),
            co2_delta=round(weight * rule.co2_factor_per_kg, CO2_PRECISION),
            weight_delta=weight,
            category_delta={rule.category_name: weight},
            mission_progress_deltas=_mission_deltas(event, snapshot, catalog, now),
            submissions_delta=1,
        )

    if isinstance(event, SocialAction):
        social_rule = catalog.find_social_rule(event.action_type)
        return RewardDelta(
            source_event_id=event.idempotency_key,
            points_delta=social_rule.points if social_rule else 0,
            mission_progress_deltas=_mission_deltas(event, snapshot, catalog, now),
            social_actions_delta=1,
        )

    # Mission joins change status only; see reloop.rewards.missions
    return RewardDelta(source_event_id=event.idempotency_key)

