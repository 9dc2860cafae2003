"""Badge evaluation and exactly-once awarding.

Badge criteria are stateless predicates over the committed snapshot. Awards
go through the applier's optimistic update, so two concurrent evaluations of
the same user can never both add the same badge.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from reloop.rewards.catalog import BadgeDefinition, RuleCatalog
from reloop.rewards.types import UserSnapshot

if TYPE_CHECKING:
    from reloop.rewards.applier import ProgressApplier

logger = logging.getLogger(__name__)


def evaluate(snapshot: UserSnapshot, catalog: RuleCatalog) -> frozenset[str]:
    """Badge ids the snapshot qualifies for but has not been awarded yet."""
    return frozenset(
        badge.badge_id
        for badge in catalog.badges
        if badge.badge_id not in snapshot.awarded_badge_ids and badge.predicate(snapshot)
    )


class BadgeEvaluator:
    """Awards newly qualifying badges after a successful ledger commit."""

    def __init__(self, applier: ProgressApplier) -> None:
        self.applier = applier

    async def award(self, user_id: str, catalog: RuleCatalog) -> list[BadgeDefinition]:
        """Award every badge the user currently qualifies for.

        Returns the definitions actually added by this call, in catalog
        order. Badges already held are skipped; nothing is ever revoked.
        """
        awarded: frozenset[str] = frozenset()

        def _grant(current: UserSnapshot) -> UserSnapshot | None:
            nonlocal awarded
            # Re-evaluated on every attempt against the fresh snapshot
            awarded = evaluate(current, catalog)
            if not awarded:
                return None
            return replace(current, awarded_badge_ids=current.awarded_badge_ids | awarded)

        await self.applier.update(user_id, _grant, catalog)

        granted = [badge for badge in catalog.badges if badge.badge_id in awarded]
        for badge in granted:
            logger.info("Awarded badge %s to user %s", badge.badge_id, user_id)
        return granted
