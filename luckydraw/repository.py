import logging
from typing import Any, AsyncIterator, Iterable, Optional

from redis.exceptions import RedisError
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from .database import Database
from .errors import DrawValidationError, RecordNotFoundError
from .models import Participant, Prize, Winner
from .retry import RetryPolicy
from .streams import RedisStreamClient, collection_stream

logger = logging.getLogger(__name__)

COLLECTIONS = {
    "participants": (Participant, "added_at"),
    "prizes": (Prize, "created_at"),
    "winners": (Winner, "won_at"),
}

REMOVE_BATCH_SIZE = 500


class Repository:
    """CRUD over the participant, prize and winner collections.

    Mutations are retried on transient storage errors and announce
    themselves on a per-collection stream that ``subscribe`` listens to.
    """

    def __init__(
        self,
        db: Database,
        streams: Optional[RedisStreamClient] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.db = db
        self.streams = streams
        self.retry = retry or RetryPolicy()

    @staticmethod
    def _model(collection: str):
        try:
            return COLLECTIONS[collection][0]
        except KeyError:
            raise DrawValidationError(f"unknown collection: {collection}") from None

    @staticmethod
    def _check_fields(model, fields: Iterable[str]):
        columns = set(model.__table__.columns.keys())
        unknown = set(fields) - columns
        if unknown:
            raise DrawValidationError(f"unknown {model.__tablename__} fields: {sorted(unknown)}")

    async def list_records(self, collection: str, order_field: Optional[str] = None, descending: bool = True) -> list:
        model = self._model(collection)
        field = order_field or COLLECTIONS[collection][1]
        self._check_fields(model, [field])
        column = getattr(model, field)

        async def op():
            async with self.db.session() as session:
                result = await session.execute(
                    select(model).order_by(column.desc() if descending else column.asc())
                )
                return list(result.scalars().all())

        return await self.retry.run(op, f"list {collection}")

    async def get(self, collection: str, record_id: str):
        model = self._model(collection)

        async def op():
            async with self.db.session() as session:
                return await session.get(model, record_id)

        record = await self.retry.run(op, f"get {collection}")
        if record is None:
            raise RecordNotFoundError(collection, record_id)
        return record

    async def add(self, collection: str, record: dict):
        model = self._model(collection)
        self._check_fields(model, record)
        values = dict(record)
        if model is Prize and values.get("remaining_quota") is None:
            values["remaining_quota"] = values.get("quota")

        async def op():
            async with self.db.session() as session:
                instance = model(**values)
                session.add(instance)
                await session.flush()
                return instance

        instance = await self._mutate(op, collection)
        await self._notify(collection, "added", [instance.id])
        return instance

    async def update(self, collection: str, record_id: str, partial: dict):
        model = self._model(collection)
        if "id" in partial:
            raise DrawValidationError("record id cannot be changed")
        self._check_fields(model, partial)

        async def op():
            async with self.db.session() as session:
                instance = await session.get(model, record_id)
                if instance is None:
                    raise RecordNotFoundError(collection, record_id)
                for key, value in partial.items():
                    setattr(instance, key, value)
                await session.flush()
                return instance

        instance = await self._mutate(op, collection)
        await self._notify(collection, "updated", [record_id])
        return instance

    async def remove(self, collection: str, record_id: str) -> bool:
        return await self.remove_many(collection, [record_id]) > 0

    async def remove_many(self, collection: str, ids: Iterable[str]) -> int:
        model = self._model(collection)
        ids = list(dict.fromkeys(ids))
        removed = 0
        for start in range(0, len(ids), REMOVE_BATCH_SIZE):
            chunk = ids[start:start + REMOVE_BATCH_SIZE]

            async def op(chunk=chunk):
                async with self.db.session() as session:
                    result = await session.execute(delete(model).where(model.id.in_(chunk)))
                    return result.rowcount or 0

            removed += await self._mutate(op, collection)

        if removed:
            await self._notify(collection, "removed", ids)
        logger.info(
            f"Removed {removed} of {len(ids)} {collection} records",
            extra={"collection": collection}
        )
        return removed

    async def subscribe(
        self,
        collection: str,
        order_field: Optional[str] = None,
        block_ms: int = 5000,
    ) -> AsyncIterator[list]:
        """Yield the ordered collection now and again after every change."""
        if self.streams is None:
            raise DrawValidationError("subscriptions need a stream client")
        stream = collection_stream(collection)
        last_id = await self.streams.last_id(stream)
        yield await self.list_records(collection, order_field)
        async for _msg_id, _payload in self.streams.tail(stream, last_id=last_id, block_ms=block_ms):
            yield await self.list_records(collection, order_field)

    async def eligible_participants(self) -> list[Participant]:
        """Participants that have no winner record under their id."""

        async def op():
            async with self.db.session() as session:
                result = await session.execute(
                    select(Participant)
                    .where(Participant.id.not_in(select(Winner.participant_id)))
                    .order_by(Participant.added_at)
                )
                return list(result.scalars().all())

        return await self.retry.run(op, "eligible participants")

    async def winners_for_session(self, session_id: str) -> list[Winner]:
        async def op():
            async with self.db.session() as session:
                result = await session.execute(
                    select(Winner).where(Winner.draw_session == session_id).order_by(Winner.name)
                )
                return list(result.scalars().all())

        return await self.retry.run(op, "session winners")

    async def _mutate(self, op, collection: str) -> Any:
        try:
            return await self.retry.run(op, f"write {collection}")
        except IntegrityError as e:
            raise DrawValidationError(f"{collection} write rejected: {e.orig}") from e

    async def _notify(self, collection: str, action: str, ids: list):
        if self.streams is None:
            return
        try:
            await self.streams.publish(collection_stream(collection), {"action": action, "ids": ids})
        except RedisError as e:
            logger.warning(
                f"Change notification for {collection} not delivered: {e}",
                extra={"collection": collection}
            )
