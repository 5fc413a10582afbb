import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from redis.exceptions import WatchError

from . import metrics
from .streams import RedisStreamClient

logger = logging.getLogger(__name__)

LEASE_KEY = "draw:session:lease"


@dataclass
class LeaseInfo:
    owner_id: str
    role: str
    session_id: Optional[str]
    acquired_at: str
    expires_in_ms: int


class SessionLease:
    """Exclusive, self-expiring ownership of the running draw session.

    One instance per controller. The lease value names the owner; renew and
    release only act when the stored owner is this controller. A controller
    that disappears simply stops renewing and the key expires.
    """

    def __init__(
        self,
        streams: RedisStreamClient,
        owner_id: str,
        role: str,
        ttl_seconds: float = 15.0,
        key: str = LEASE_KEY,
    ):
        self.streams = streams
        self.owner_id = owner_id
        self.role = role
        self.ttl_ms = int(ttl_seconds * 1000)
        self.key = key
        self.session_id: Optional[str] = None

    @property
    def redis(self):
        return self.streams.redis

    def _value(self, session_id: Optional[str]) -> str:
        return json.dumps({
            "owner_id": self.owner_id,
            "role": self.role,
            "session_id": session_id,
            "acquired_at": datetime.utcnow().isoformat(),
        })

    async def acquire(self, session_id: Optional[str]) -> bool:
        acquired = await self.redis.set(self.key, self._value(session_id), nx=True, px=self.ttl_ms)
        if not acquired:
            holder = await self.holder()
            if holder is None or holder.owner_id != self.owner_id:
                metrics.LEASE_EVENTS.labels(event="denied").inc()
                return False
            acquired = await self._replace_if_owner(self._value(session_id))
            if not acquired:
                metrics.LEASE_EVENTS.labels(event="denied").inc()
                return False

        self.session_id = session_id
        metrics.LEASE_EVENTS.labels(event="acquired").inc()
        logger.info(
            "Session lease acquired",
            extra={"controller_id": self.owner_id, "role": self.role, "session_id": session_id}
        )
        return True

    async def renew(self) -> bool:
        renewed = await self._replace_if_owner(self._value(self.session_id))
        metrics.LEASE_EVENTS.labels(event="renewed" if renewed else "lost").inc()
        return renewed

    async def release(self) -> bool:
        released = await self._delete_if_owner()
        if released:
            metrics.LEASE_EVENTS.labels(event="released").inc()
            logger.info(
                "Session lease released",
                extra={"controller_id": self.owner_id, "role": self.role, "session_id": self.session_id}
            )
        self.session_id = None
        return released

    async def holder(self) -> Optional[LeaseInfo]:
        raw = await self.redis.get(self.key)
        if raw is None:
            return None
        data = json.loads(raw)
        ttl = await self.redis.pttl(self.key)
        return LeaseInfo(
            owner_id=data["owner_id"],
            role=data.get("role", ""),
            session_id=data.get("session_id"),
            acquired_at=data.get("acquired_at", ""),
            expires_in_ms=max(ttl, 0),
        )

    async def is_held(self) -> bool:
        holder = await self.holder()
        return holder is not None and holder.owner_id == self.owner_id

    async def held_by_other(self) -> Optional[LeaseInfo]:
        holder = await self.holder()
        if holder is not None and holder.owner_id != self.owner_id:
            return holder
        return None

    async def keep_alive(self, interval: float):
        """Renew every ``interval`` seconds until cancelled or the lease is lost."""
        while True:
            await asyncio.sleep(interval)
            if not await self.renew():
                logger.warning(
                    "Session lease lost, heartbeat stopping",
                    extra={"controller_id": self.owner_id, "role": self.role, "session_id": self.session_id}
                )
                return

    async def _replace_if_owner(self, value: str) -> bool:
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.key)
                    raw = await pipe.get(self.key)
                    if raw is None or json.loads(raw).get("owner_id") != self.owner_id:
                        return False
                    pipe.multi()
                    pipe.set(self.key, value, px=self.ttl_ms)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def _delete_if_owner(self) -> bool:
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.key)
                    raw = await pipe.get(self.key)
                    if raw is None or json.loads(raw).get("owner_id") != self.owner_id:
                        return False
                    pipe.multi()
                    pipe.delete(self.key)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue
