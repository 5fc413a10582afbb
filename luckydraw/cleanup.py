import asyncio
import logging

from . import metrics
from .events import EVENT_POOL_CLEANUP_FAILED, send_draw_event
from .repository import Repository

logger = logging.getLogger(__name__)


class PoolCleaner:
    """Removes freshly drawn winners from the participant pool.

    Runs after finalize has committed, a short while later, and only on a
    best-effort basis: a failure is logged, counted and reported, never
    undone. Eligibility does not rely on it because the pool query already
    excludes anyone with a winner record.
    """

    def __init__(self, repository: Repository, delay_seconds: float = 1.0, service_name: str = "draw-registry"):
        self.repository = repository
        self.delay_seconds = delay_seconds
        self.service_name = service_name

    async def handle_winners_finalized(self, payload: dict) -> int:
        session_id = payload.get("session_id")
        participant_ids = payload.get("participant_ids") or []
        if not participant_ids:
            return 0

        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)

        try:
            removed = await self.repository.remove_many("participants", participant_ids)
        except Exception as e:
            metrics.POOL_CLEANUP_FAILURES.inc()
            logger.error(
                f"Pool cleanup failed, {len(participant_ids)} winners left in the pool: {e}",
                extra={"session_id": session_id, "winner_count": len(participant_ids), "outcome": "failed"}
            )
            await send_draw_event(
                EVENT_POOL_CLEANUP_FAILED,
                self.service_name,
                dimensions={"session_id": session_id or ""},
                properties={"participant_count": len(participant_ids), "error": str(e)},
            )
            return 0

        metrics.POOL_CLEANUP_REMOVED.inc(removed)
        logger.info(
            f"Removed {removed} winners from the participant pool",
            extra={"session_id": session_id, "winner_count": removed, "outcome": "removed"}
        )
        return removed
