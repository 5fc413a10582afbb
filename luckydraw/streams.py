import asyncio
import json
import logging
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple

import redis.asyncio as redis

from . import metrics

logger = logging.getLogger(__name__)


class RedisStreamClient:
    """Wrapper for Redis Streams with consumer group support."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.redis: Optional[redis.Redis] = None
        self._owns_client = True

    @classmethod
    def from_client(cls, client: redis.Redis) -> "RedisStreamClient":
        """Wrap an already constructed client (shared pools, test doubles)."""
        instance = cls(redis_url="")
        instance.redis = client
        instance._owns_client = False
        return instance

    async def connect(self):
        if self.redis is None:
            self.redis = redis.from_url(self.redis_url, decode_responses=True)

    async def close(self):
        if self.redis and self._owns_client:
            await self.redis.aclose()

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except redis.RedisError:
            return False

    async def publish(self, stream: str, data: dict) -> str:
        """Publish a message to a stream. Returns message ID."""
        data["_timestamp"] = datetime.utcnow().isoformat()
        msg_id = await self.redis.xadd(stream, {"payload": json.dumps(data, default=str)})
        metrics.STREAM_MESSAGES_PUBLISHED.labels(stream=stream).inc()
        logger.debug(f"Published to {stream}", extra={"stream": stream, "msg_id": msg_id})
        return msg_id

    async def last_id(self, stream: str) -> str:
        """Id of the newest entry, or "0-0" for an empty or missing stream."""
        entries = await self.redis.xrevrange(stream, count=1)
        if entries:
            return entries[0][0]
        return "0-0"

    async def tail(
        self,
        stream: str,
        last_id: Optional[str] = None,
        block_ms: int = 5000,
    ) -> AsyncIterator[Tuple[str, dict]]:
        """Yield every entry appended after ``last_id`` (fan-out, no group).

        Resuming with the last yielded id picks up where a previous tail left
        off, so a dropped subscriber can restart without losing entries.
        """
        if last_id is None:
            last_id = await self.last_id(stream)
        backoff = 1
        max_backoff = 60

        while True:
            try:
                messages = await self.redis.xread({stream: last_id}, count=100, block=block_ms)
            except redis.ConnectionError as e:
                logger.warning(f"Redis connection error while tailing {stream}, backing off {backoff}s: {e}")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, max_backoff)
                continue

            backoff = 1
            if not messages:
                # Servers may answer a blocking read early with nothing.
                await asyncio.sleep(0)
                continue
            for _stream_name, stream_messages in messages:
                for msg_id, msg_data in stream_messages:
                    last_id = msg_id
                    yield msg_id, json.loads(msg_data.get("payload", "{}"))

    async def ensure_consumer_group(self, stream: str, group: str):
        """Create consumer group if it doesn't exist."""
        try:
            await self.redis.xgroup_create(stream, group, id="0", mkstream=True)
            logger.info(f"Created consumer group {group} for stream {stream}")
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def consume(
        self,
        stream: str,
        group: str,
        consumer: str,
        handler: Callable[[dict], Awaitable[None]],
        batch_size: int = 10,
        block_ms: int = 5000
    ):
        """Consume messages from a stream with exponential backoff on failures."""
        await self.ensure_consumer_group(stream, group)
        backoff = 1
        max_backoff = 60

        while True:
            try:
                messages = await self.redis.xreadgroup(
                    groupname=group,
                    consumername=consumer,
                    streams={stream: ">"},
                    count=batch_size,
                    block=block_ms
                )

                if messages:
                    backoff = 1
                    for _stream_name, stream_messages in messages:
                        for msg_id, msg_data in stream_messages:
                            try:
                                payload = json.loads(msg_data.get("payload", "{}"))
                                await handler(payload)
                                await self.redis.xack(stream, group, msg_id)
                                metrics.STREAM_MESSAGES_CONSUMED.labels(
                                    stream=stream, consumer_group=group
                                ).inc()
                            except Exception as e:
                                # Left pending (unacked) for inspection via XPENDING.
                                logger.error(
                                    f"Handler failed for {msg_id}: {e}",
                                    extra={"stream": stream, "msg_id": msg_id}
                                )
                else:
                    await asyncio.sleep(0)

            except redis.ConnectionError as e:
                logger.warning(f"Redis connection error, backing off {backoff}s: {e}")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, max_backoff)
            except Exception as e:
                logger.error(f"Unexpected error in consumer: {e}")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, max_backoff)


# Stream names as constants
STREAM_DRAW_STATE = "draw:state"
STREAM_WINNERS_FINALIZED = "winners:finalized"
COLLECTION_STREAM_PREFIX = "collection:"


def collection_stream(collection: str) -> str:
    return f"{COLLECTION_STREAM_PREFIX}{collection}"
