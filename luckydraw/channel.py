import json
import logging
from datetime import datetime
from typing import AsyncIterator, Optional

from pydantic import ValidationError
from redis.exceptions import WatchError

from . import metrics
from .errors import DrawValidationError, VersionConflictError
from .retry import RetryPolicy
from .schemas import DrawSession
from .streams import RedisStreamClient, STREAM_DRAW_STATE

logger = logging.getLogger(__name__)

STATE_KEY = "draw:state:current"
NOTIFY_MAXLEN = 1000

WRITABLE_FIELDS = frozenset(DrawSession.model_fields) - {"version", "last_updated"}


class DrawStateChannel:
    """The one shared draw record, stored as JSON under a single Redis key.

    Every write is a WATCH/MULTI transaction that re-reads the record, merges
    the update, bumps ``version`` and appends a notification entry to the
    ``draw:state`` stream in the same transaction. Subscribers tail that
    stream and re-read the record when it changes.
    """

    def __init__(
        self,
        streams: RedisStreamClient,
        retry: Optional[RetryPolicy] = None,
        key: str = STATE_KEY,
        stream: str = STREAM_DRAW_STATE,
    ):
        self.streams = streams
        self.retry = retry or RetryPolicy()
        self.key = key
        self.stream = stream

    @property
    def redis(self):
        return self.streams.redis

    @staticmethod
    def _decode(raw: Optional[str]) -> DrawSession:
        if raw is None:
            return DrawSession()
        return DrawSession.model_validate_json(raw)

    async def snapshot(self) -> DrawSession:
        raw = await self.retry.run(lambda: self.redis.get(self.key), "draw-state read")
        return self._decode(raw)

    async def publish(self, update: dict, expected_version: Optional[int] = None) -> DrawSession:
        """Merge ``update`` into the shared record.

        With ``expected_version`` the write only happens if the stored record
        still has that version, otherwise VersionConflictError is raised.
        """
        unknown = set(update) - WRITABLE_FIELDS
        if unknown:
            raise DrawValidationError(f"unknown draw-state fields: {sorted(unknown)}")
        return await self.retry.run(
            lambda: self._write(update, expected_version), "draw-state write"
        )

    async def reset(self) -> DrawSession:
        """Recreate the record at idle defaults. The version keeps counting up."""
        return await self.retry.run(lambda: self._write({}, None, replace=True), "draw-state reset")

    async def _write(self, update: dict, expected_version: Optional[int], replace: bool = False) -> DrawSession:
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.key)
                    raw = await pipe.get(self.key)
                    current = self._decode(raw)

                    if expected_version is not None and current.version != expected_version:
                        metrics.CHANNEL_WRITES.labels(outcome="conflict").inc()
                        raise VersionConflictError(expected_version, current.version)

                    if raw is None and not replace:
                        logger.info(
                            "Draw state missing, recreating from defaults",
                            extra={"version": current.version}
                        )

                    base = {} if replace else current.model_dump()
                    try:
                        record = DrawSession.model_validate({
                            **base,
                            **update,
                            "version": current.version + 1,
                            "last_updated": datetime.utcnow(),
                        })
                    except ValidationError as e:
                        raise DrawValidationError(f"invalid draw-state update: {e}") from e

                    notification = {
                        "version": record.version,
                        "phase": record.phase.value,
                        "session_id": record.session_id,
                    }
                    pipe.multi()
                    pipe.set(self.key, record.model_dump_json(by_alias=True))
                    pipe.xadd(
                        self.stream,
                        {"payload": json.dumps(notification)},
                        maxlen=NOTIFY_MAXLEN,
                        approximate=True,
                    )
                    await pipe.execute()
                except WatchError:
                    metrics.CHANNEL_WRITES.labels(outcome="retried").inc()
                    continue

                metrics.CHANNEL_WRITES.labels(outcome="written").inc()
                logger.debug(
                    f"Draw state v{record.version} written",
                    extra={"version": record.version, "phase": record.phase.value, "session_id": record.session_id}
                )
                return record

    async def subscribe(self, block_ms: int = 5000) -> AsyncIterator[DrawSession]:
        """Yield the current record, then every newer version as it lands.

        The generator never ends on its own; close it to unsubscribe. A fresh
        call starts over from the current record.
        """
        last_id = await self.streams.last_id(self.stream)
        current = await self.snapshot()
        seen = current.version
        yield current

        async for _msg_id, _payload in self.streams.tail(self.stream, last_id=last_id, block_ms=block_ms):
            latest = await self.snapshot()
            if latest.version != seen:
                seen = latest.version
                yield latest
