"""Mission lifecycle: state machine, joins with capacity, expiry sweep.

State progression: AVAILABLE -> ACTIVE -> COMPLETED | EXPIRED
COMPLETED and EXPIRED are terminal. ACTIVE -> COMPLETED happens inside the
progress applier's write; this module owns the join and the expiry sweep.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING

from reloop.rewards.catalog import MissionDefinition, RuleCatalog
from reloop.rewards.errors import ConflictError, MissionFullError, MissionJoinError, ValidationError
from reloop.rewards.types import MissionJoinRequest, MissionStatus, UserSnapshot

if TYPE_CHECKING:
    from reloop.rewards.applier import ProgressApplier
    from reloop.rewards.ledger import LedgerStore

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[MissionStatus, list[MissionStatus]] = {
    MissionStatus.AVAILABLE: [MissionStatus.ACTIVE],
    MissionStatus.ACTIVE: [MissionStatus.COMPLETED, MissionStatus.EXPIRED],
    MissionStatus.COMPLETED: [],
    MissionStatus.EXPIRED: [],
}


def validate_transition(current_status: MissionStatus, target_status: MissionStatus) -> None:
    """Validate a mission state transition. Raises ValueError if invalid."""
    valid = VALID_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise ValueError(
            f"Invalid transition: {current_status.value} -> {target_status.value}. "
            f"Valid transitions: {[s.value for s in valid]}"
        )


async def join_mission(
    applier: ProgressApplier,
    request: MissionJoinRequest,
    catalog: RuleCatalog,
    now: datetime | None = None,
) -> UserSnapshot:
    """Move a mission from AVAILABLE to ACTIVE for the requesting user.

    The window must contain both the request's ``occurred_at`` and ``now``.
    Re-joining an ACTIVE mission is a no-op. Capacity is reserved with an
    atomic check-and-increment before the snapshot write; the slot is given
    back if that write never lands.
    """
    mission = catalog.mission(request.mission_id)
    if mission is None:
        raise ValidationError("mission_id", f"unknown mission {request.mission_id!r}")
    if not mission.is_open(request.occurred_at) or (now is not None and not mission.is_open(now)):
        raise MissionJoinError(mission.mission_id, "mission is not open for joining")

    snapshot = await applier.store.get(request.user_id)
    status = snapshot.status_of(mission.mission_id)
    if status is MissionStatus.ACTIVE:
        return snapshot
    if status is not MissionStatus.AVAILABLE:
        raise MissionJoinError(mission.mission_id, f"mission already {status.value.lower()}")

    if not await applier.store.reserve_mission_slot(mission.mission_id, mission.max_participants):
        raise MissionFullError(mission.mission_id, mission.max_participants or 0)

    joined = False

    def _activate(current: UserSnapshot) -> UserSnapshot | None:
        nonlocal joined
        current_status = current.status_of(mission.mission_id)
        if current_status is MissionStatus.ACTIVE:
            joined = False  # a concurrent request already joined
            return None
        validate_transition(current_status, MissionStatus.ACTIVE)
        joined = True
        return replace(
            current,
            mission_status={**current.mission_status, mission.mission_id: MissionStatus.ACTIVE},
            mission_progress={**current.mission_progress, mission.mission_id: 0.0},
        )

    committed = False
    try:
        _, after = await applier.update(request.user_id, _activate, catalog)
        committed = joined
    finally:
        if not committed:
            await applier.store.release_mission_slot(mission.mission_id)

    if committed:
        logger.info("User %s joined mission %s", request.user_id, mission.mission_id)
    return after


async def sweep_expired_missions(
    applier: ProgressApplier,
    catalog: RuleCatalog,
    now: datetime,
) -> int:
    """Expire ACTIVE missions whose end date has passed. No reward is granted.

    Idempotent: a second run over the same period finds nothing ACTIVE to expire.
    Returns the number of (user, mission) transitions made.
    """
    expired_total = 0

    for user_id in await applier.store.users_with_active_missions():
        expired: list[str] = []

        def _expire(current: UserSnapshot) -> UserSnapshot | None:
            expired.clear()
            status = dict(current.mission_status)
            for mission_id in sorted(current.active_missions):
                mission = catalog.mission(mission_id)
                if mission is None or not mission.is_expired(now):
                    continue
                validate_transition(MissionStatus.ACTIVE, MissionStatus.EXPIRED)
                status[mission_id] = MissionStatus.EXPIRED
                expired.append(mission_id)
            if not expired:
                return None
            return replace(current, mission_status=status)

        try:
            await applier.update(user_id, _expire, catalog)
        except ConflictError:
            logger.warning("Mission sweep skipped user %s after repeated conflicts", user_id)
            continue

        if expired:
            logger.info("Expired missions %s for user %s", expired, user_id)
            expired_total += len(expired)

    return expired_total


@dataclass(frozen=True)
class UserMission:
    mission: MissionDefinition
    status: MissionStatus
    progress: float


@dataclass(frozen=True)
class OpenMission:
    mission: MissionDefinition
    participants: int


def user_missions(
    snapshot: UserSnapshot,
    catalog: RuleCatalog,
    status: MissionStatus | None = None,
) -> list[UserMission]:
    """The user's view of every catalog mission, optionally filtered by status."""
    views = [
        UserMission(mission=mission, status=snapshot.status_of(mission_id), progress=snapshot.progress_of(mission_id))
        for mission_id, mission in sorted(catalog.missions.items())
    ]
    if status is not None:
        views = [view for view in views if view.status is status]
    return views


async def open_missions(store: LedgerStore, catalog: RuleCatalog, now: datetime) -> list[OpenMission]:
    """Missions whose window contains ``now``, with their current participant counts."""
    return [
        OpenMission(mission=mission, participants=await store.participant_count(mission_id))
        for mission_id, mission in sorted(catalog.missions.items())
        if mission.is_open(now)
    ]
