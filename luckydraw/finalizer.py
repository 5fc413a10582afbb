import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from . import metrics
from .channel import DrawStateChannel
from .database import Database
from .errors import DrawError, FinalizationError
from .models import DrawFinalization, Prize, Winner
from .retry import RetryPolicy
from .schemas import WinnerEntry
from .streams import RedisStreamClient, STREAM_WINNERS_FINALIZED
from .telemetry import draw_span, get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class FinalizeStatus(str, Enum):
    SUCCESS = "success"
    ALREADY_PROCESSED = "already_processed"


@dataclass
class FinalizeResult:
    status: FinalizeStatus
    session_id: str
    winners_added: int = 0
    remaining_quota: Optional[int] = None
    participant_ids: list[str] = field(default_factory=list)
    replayed: bool = False

    @property
    def prize_exhausted(self) -> bool:
        return self.remaining_quota == 0


class WinnerFinalizer:
    """Persists a session's winners exactly once and charges the prize quota.

    The claim row in ``draw_finalizations`` is keyed by session id, so when
    two controllers finalize the same session concurrently one transaction
    commits and the other hits the unique key and reports
    ``already_processed``. A retry by the controller that wrote the claim
    (its commit landed but the acknowledgement was lost) replays the recorded
    result so the follow-up signals still go out.
    """

    def __init__(
        self,
        db: Database,
        channel: Optional[DrawStateChannel] = None,
        streams: Optional[RedisStreamClient] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.db = db
        self.channel = channel
        self.streams = streams
        self.retry = retry or RetryPolicy()

    async def finalize(
        self,
        session_id: str,
        winners: Sequence[WinnerEntry],
        prize_id: Optional[str],
        controller_id: Optional[str] = None,
    ) -> FinalizeResult:
        start_time = time.time()
        with draw_span(
            tracer, "finalize_draw", session_id=session_id, prize_id=prize_id, winner_count=len(winners)
        ) as span:
            try:
                result = await self.retry.run(
                    lambda: self._persist(session_id, winners, prize_id, controller_id),
                    "finalize",
                )
            except DrawError:
                metrics.FINALIZE_OUTCOMES.labels(outcome="error").inc()
                raise
            except Exception as e:
                metrics.FINALIZE_OUTCOMES.labels(outcome="error").inc()
                logger.error(
                    f"Finalize failed: {e}",
                    extra={"session_id": session_id, "prize_id": prize_id}
                )
                raise FinalizationError(f"finalize failed for {session_id}: {e}") from e
            span.set_attribute("draw.outcome", result.status.value)

        metrics.FINALIZE_OUTCOMES.labels(outcome=result.status.value).inc()
        metrics.FINALIZE_DURATION.observe(time.time() - start_time)

        if result.status == FinalizeStatus.ALREADY_PROCESSED:
            logger.info(
                "Session already finalized, nothing written",
                extra={"session_id": session_id, "outcome": result.status.value}
            )
            return result

        if result.replayed:
            logger.warning(
                "Finalize was already committed by this controller, replaying follow-up",
                extra={"session_id": session_id, "prize_id": prize_id, "winner_count": result.winners_added}
            )
        else:
            metrics.WINNERS_PERSISTED.inc(result.winners_added)
            logger.info(
                f"Finalized {result.winners_added} winners",
                extra={
                    "session_id": session_id,
                    "prize_id": prize_id,
                    "winner_count": result.winners_added,
                    "outcome": result.status.value,
                }
            )
        await self._after_commit(result, prize_id)
        return result

    async def _persist(
        self,
        session_id: str,
        winners: Sequence[WinnerEntry],
        prize_id: Optional[str],
        controller_id: Optional[str],
    ) -> FinalizeResult:
        async with self.db.session() as session:
            existing = await session.get(DrawFinalization, session_id)
            if existing is not None:
                if controller_id is not None and existing.controller_id == controller_id:
                    return await self._replay(session, existing)
                return FinalizeResult(FinalizeStatus.ALREADY_PROCESSED, session_id)

            claim = DrawFinalization(
                session_id=session_id,
                controller_id=controller_id,
                prize_id=prize_id,
                finalized_at=datetime.utcnow(),
            )
            session.add(claim)
            try:
                await session.flush()
            except IntegrityError:
                # Only the claim is pending here, so this is the session key.
                await session.rollback()
                return FinalizeResult(FinalizeStatus.ALREADY_PROCESSED, session_id)

            unique = list({w.participant_id: w for w in winners}.values())
            candidate_ids = [w.participant_id for w in unique]
            already_won = set()
            if candidate_ids:
                rows = await session.execute(
                    select(Winner.participant_id).where(Winner.participant_id.in_(candidate_ids))
                )
                already_won = set(rows.scalars().all())

            added = []
            for entry in unique:
                if entry.participant_id in already_won:
                    logger.warning(
                        "Participant already holds a win, skipping",
                        extra={"session_id": session_id, "record_id": entry.participant_id}
                    )
                    continue
                session.add(Winner(
                    id=entry.id,
                    participant_id=entry.participant_id,
                    name=entry.name,
                    won_at=entry.won_at,
                    prize_id=entry.prize_id,
                    prize_name=entry.prize_name,
                    draw_session=session_id,
                    email=entry.email,
                    phone=entry.phone,
                    id_tag=entry.id_tag,
                ))
                added.append(entry.participant_id)

            remaining = None
            if prize_id:
                prize = (await session.execute(
                    select(Prize).where(Prize.id == prize_id).with_for_update()
                )).scalar_one_or_none()
                if prize is None:
                    raise FinalizationError(f"prize {prize_id} no longer exists")
                prize.remaining_quota = max(0, prize.remaining_quota - len(added))
                remaining = prize.remaining_quota

            claim.winners_added = len(added)
            claim.remaining_quota = remaining

        return FinalizeResult(
            FinalizeStatus.SUCCESS,
            session_id,
            winners_added=len(added),
            remaining_quota=remaining,
            participant_ids=added,
        )

    @staticmethod
    async def _replay(session, claim: DrawFinalization) -> FinalizeResult:
        rows = await session.execute(
            select(Winner.participant_id).where(Winner.draw_session == claim.session_id)
        )
        return FinalizeResult(
            FinalizeStatus.SUCCESS,
            claim.session_id,
            winners_added=claim.winners_added,
            remaining_quota=claim.remaining_quota,
            participant_ids=list(rows.scalars().all()),
            replayed=True,
        )

    async def _after_commit(self, result: FinalizeResult, prize_id: Optional[str]):
        # The winners are durable at this point; follow-up signals only log on failure.
        if result.prize_exhausted and self.channel is not None:
            try:
                # Only the global selection goes; the running session keeps its prize snapshot.
                await self.channel.publish({"selected_prize_id": None})
                logger.info("Prize quota exhausted, selection cleared", extra={"prize_id": prize_id})
            except (RedisError, DrawError) as e:
                logger.error(
                    f"Could not clear exhausted prize selection: {e}",
                    extra={"session_id": result.session_id, "prize_id": prize_id}
                )

        if self.streams is not None and result.participant_ids:
            try:
                await self.streams.publish(STREAM_WINNERS_FINALIZED, {
                    "session_id": result.session_id,
                    "prize_id": prize_id,
                    "participant_ids": result.participant_ids,
                })
            except RedisError as e:
                logger.error(
                    f"Pool cleanup request not published: {e}",
                    extra={"session_id": result.session_id, "stream": STREAM_WINNERS_FINALIZED}
                )
