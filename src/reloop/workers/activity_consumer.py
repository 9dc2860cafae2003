"""Redis Stream consumer for queued activity events.

Reads JSON activity payloads from the ``activity:events`` stream with
XREADGROUP and feeds them through the reward engine. A message is acked once
it has been applied, or when it can never succeed (validation failures,
full missions). Conflicts and unexpected errors leave it pending; pending
messages idle longer than ``min_idle_ms`` are reclaimed with XAUTOCLAIM and
retried, and a message delivered more than ``max_deliveries`` times is acked
and dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import redis.asyncio as aioredis

from reloop.rewards.engine import RewardEngine
from reloop.rewards.errors import ConflictError, MissionFullError, ValidationError
from reloop.rewards.types import SessionContext

logger = logging.getLogger(__name__)

ACTIVITY_STREAM = "activity:events"
CONSUMER_GROUP = "reward-engine"
RECLAIM_MIN_IDLE_MS = 60_000
MAX_DELIVERIES = 5


class ActivityStreamConsumer:
    """Processes activity events from a Redis Stream."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        engine: RewardEngine,
        consumer_name: str = "reward-worker-1",
        stream: str = ACTIVITY_STREAM,
        group: str = CONSUMER_GROUP,
        min_idle_ms: int = RECLAIM_MIN_IDLE_MS,
        max_deliveries: int = MAX_DELIVERIES,
    ) -> None:
        self.redis = redis_client
        self.engine = engine
        self.consumer_name = consumer_name
        self.stream = stream
        self.group = group
        self.min_idle_ms = min_idle_ms
        self.max_deliveries = max_deliveries
        self._running = False
        self._processed = 0
        self._rejected = 0
        self._errors = 0
        self._dropped = 0

    @property
    def stats(self) -> dict[str, int]:
        return {
            "processed": self._processed,
            "rejected": self._rejected,
            "errors": self._errors,
            "dropped": self._dropped,
        }

    async def setup_group(self) -> None:
        """Create the consumer group (idempotent)."""
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("Created consumer group %s for %s", self.group, self.stream)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    @staticmethod
    def _parse_data(data: dict[str, Any]) -> dict[str, Any]:
        """Payload is either a JSON string under ``data`` or the flat message itself."""
        raw = data.get("data")
        if raw is None:
            return dict(data)
        if isinstance(raw, bytes):
            raw = raw.decode()
        if isinstance(raw, str):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise ValidationError("data", "message is not valid JSON") from exc
            if not isinstance(parsed, dict):
                raise ValidationError("data", "message is not a JSON object")
            return parsed
        return dict(raw)

    async def handle(self, msg_id: str, data: dict[str, Any]) -> bool:
        """Process one message. Returns True when it should be acked."""
        try:
            payload = self._parse_data(data)
            user_id = payload.get("user_id") or payload.get("userId")
            if not user_id:
                raise ValidationError("user_id", "message has no user")
            context = SessionContext(user_id=str(user_id), request_id=payload.get("request_id") or msg_id)
            await self.engine.process(context, payload)
        except (ValidationError, MissionFullError) as e:
            self._rejected += 1
            logger.warning("Rejected activity message %s: %s", msg_id, e)
            return True
        except ConflictError:
            self._errors += 1
            logger.warning("Activity message %s hit a ledger conflict; leaving it pending", msg_id)
            return False
        except Exception:
            self._errors += 1
            logger.exception("Error handling activity message %s", msg_id)
            return False

        self._processed += 1
        return True

    async def consume(self, count: int = 100, block_ms: int = 5000) -> int:
        """Read and process one batch. Returns the number of messages acked."""
        try:
            events = await self.redis.xreadgroup(
                groupname=self.group,
                consumername=self.consumer_name,
                streams={self.stream: ">"},
                count=count,
                block=block_ms,
            )
        except aioredis.ResponseError as e:
            logger.error("XREADGROUP error: %s", e)
            return 0

        if not events:
            return 0

        acked = 0
        for _stream_name, messages in events:
            acked += await self._process_batch(messages)
        return acked

    async def reclaim(self, count: int = 100) -> int:
        """Retry messages left pending longer than ``min_idle_ms``. Returns the number acked."""
        try:
            claimed = await self.redis.xautoclaim(
                self.stream,
                self.group,
                self.consumer_name,
                min_idle_time=self.min_idle_ms,
                start_id="0-0",
                count=count,
            )
        except aioredis.ResponseError as e:
            logger.error("XAUTOCLAIM error: %s", e)
            return 0

        # Reply is [next_start_id, messages] or, on Redis 7, [next_start_id, messages, deleted_ids]
        messages = [(msg_id, data) for msg_id, data in claimed[1] if data] if claimed else []
        if not messages:
            return 0

        deliveries = await self._delivery_counts(messages)
        acked = 0
        retry = []
        for msg_id, data in messages:
            if deliveries.get(msg_id, 0) > self.max_deliveries:
                self._dropped += 1
                logger.error("Dropping activity message %s after %d deliveries", msg_id, deliveries[msg_id])
                await self.redis.xack(self.stream, self.group, msg_id)
                acked += 1
            else:
                retry.append((msg_id, data))
        return acked + await self._process_batch(retry)

    async def _delivery_counts(self, messages: list[tuple[str, dict[str, Any]]]) -> dict[str, int]:
        counts: dict[str, int] = {}
        for msg_id, _data in messages:
            pending = await self.redis.xpending_range(self.stream, self.group, min=msg_id, max=msg_id, count=1)
            counts.update((entry["message_id"], entry["times_delivered"]) for entry in pending)
        return counts

    async def _process_batch(self, messages: list[tuple[str, dict[str, Any]]]) -> int:
        acked = 0
        for msg_id, data in messages:
            if await self.handle(msg_id, data):
                await self.redis.xack(self.stream, self.group, msg_id)
                acked += 1
        return acked

    async def run(self) -> None:
        """Main consumer loop; runs until ``stop`` is called."""
        await self.setup_group()
        self._running = True
        logger.info("Activity consumer started (consumer=%s, stream=%s)", self.consumer_name, self.stream)

        while self._running:
            try:
                await self.reclaim()
                await self.consume()
            except Exception:
                logger.exception("Consumer loop error")
                await asyncio.sleep(1)

    def stop(self) -> None:
        """Signal the consumer to stop."""
        self._running = False
