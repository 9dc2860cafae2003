"""Notification hand-off after commit.

Delivery belongs to a collaborator. The engine builds ``Notification`` values
and passes them on; a failing notifier never affects committed ledger state.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    POINTS_AWARDED = "points_awarded"
    MISSION_COMPLETED = "mission_completed"
    BADGE_UNLOCKED = "badge_unlocked"


@dataclass(frozen=True)
class Notification:
    user_id: str
    kind: NotificationKind
    payload: dict[str, Any] = field(default_factory=dict)

    def as_message(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "kind": self.kind.value, **self.payload}


class Notifier(Protocol):
    async def notify(self, notification: Notification) -> None:
        ...


class NullNotifier:
    """Drops every notification."""

    async def notify(self, notification: Notification) -> None:
        return None


class RecordingNotifier:
    """Keeps notifications in memory, in hand-off order."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def notify(self, notification: Notification) -> None:
        self.sent.append(notification)

    def kinds(self) -> list[NotificationKind]:
        return [n.kind for n in self.sent]


class RedisNotifier:
    """Publishes notifications over Redis pub/sub.

    Each notification goes to the broadcast channel ``pubsub:<kind>`` and to
    the per-user WebSocket channel ``ws:user:<user_id>``.
    """

    def __init__(self, redis: Any) -> None:
        self.redis = redis

    async def notify(self, notification: Notification) -> None:
        message = notification.as_message()
        ws_payload = {
            "event": "notification",
            "data": {"type": "rewards", "subtype": notification.kind.value, **notification.payload},
        }
        try:
            await self.redis.publish(f"pubsub:{notification.kind.value}", json.dumps(message))
            await self.redis.publish(f"ws:user:{notification.user_id}", json.dumps(ws_payload))
        except Exception:
            logger.warning(
                "Failed to publish %s notification for user %s",
                notification.kind.value,
                notification.user_id,
                exc_info=True,
            )
