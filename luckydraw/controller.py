import asyncio
import logging
import random
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Awaitable, Callable, Optional

from . import metrics
from .advisory import LocalAdvisoryStore
from .channel import DrawStateChannel
from .config import Settings
from .errors import (
    DrawError, DrawValidationError, InvalidTransitionError, LeaseNotHeldError,
    RecordNotFoundError, SessionBusyError, VersionConflictError,
)
from .events import EVENT_FINALIZE_RACE_LOST, EVENT_LEASE_LOST, send_draw_event
from .finalizer import FinalizeResult, FinalizeStatus, WinnerFinalizer
from .lease import SessionLease
from .repository import Repository
from .schemas import DrawSession, ParticipantSnapshot, Phase
from .selection import available_pool, build_winner_entries, draw_count, new_session_id, pick_winners
from .telemetry import draw_span, get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class ControllerRole(str, Enum):
    PRIMARY = "primary"
    VIP = "vip"


ALLOWED_TRANSITIONS = {
    Phase.IDLE: {Phase.COMMITTED},
    Phase.COMMITTED: {Phase.SPINNING, Phase.IDLE},
    Phase.SPINNING: {Phase.SLOWDOWN, Phase.IDLE},
    Phase.SLOWDOWN: {Phase.REVEALED, Phase.IDLE},
    Phase.REVEALED: {Phase.COMMITTED, Phase.IDLE},
}

CLEARED_FIELDS = {
    "phase": Phase.IDLE,
    "session_id": None,
    "owner_id": None,
    "owner_role": None,
    "participants_snapshot": [],
    "predetermined_winners": [],
    "current_winners": [],
    "final_winners": [],
    "should_start_spinning": False,
    "should_start_slowdown": False,
    "show_winner_display": False,
    "processed_by_other_controller": False,
    "controller_active": False,
}


@dataclass
class ControllerStatus:
    role: str
    controller_id: str
    phase: str
    shared_phase: str
    session_id: Optional[str]
    version: int
    other_controller_active: bool
    other_controller_role: Optional[str]
    blocking_message: Optional[str]
    last_error: Optional[str]

    def to_dict(self) -> dict:
        return asdict(self)


class DrawController:
    """Drives one operator's draw sessions through the shared state machine.

    idle -> committed -> spinning -> slowdown -> revealed -> idle

    Winners are chosen at commit and kept locally; the shared record only
    exposes them to the display once slowdown starts. Dwell timers are asyncio
    tasks owned by the controller so ``clear`` can cancel them. Finalization
    only happens while this controller holds the session lease.
    """

    def __init__(
        self,
        role: ControllerRole,
        controller_id: str,
        channel: DrawStateChannel,
        repository: Repository,
        finalizer: WinnerFinalizer,
        lease: SessionLease,
        advisory: Optional[LocalAdvisoryStore] = None,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
        service_name: str = "draw-controller",
    ):
        self.role = ControllerRole(role)
        self.controller_id = controller_id
        self.channel = channel
        self.repository = repository
        self.finalizer = finalizer
        self.lease = lease
        self.advisory = advisory or LocalAdvisoryStore()
        self.settings = settings or Settings()
        self.rng = rng
        self.service_name = service_name

        self.session: Optional[DrawSession] = None
        self.view = DrawSession()
        self.last_error: Optional[Exception] = None
        self.last_result: Optional[FinalizeResult] = None

        self._spin_task: Optional[asyncio.Task] = None
        self._reveal_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._stop_lock = asyncio.Lock()
        self._finalizing = False

    @property
    def phase(self) -> Phase:
        return self.session.phase if self.session else Phase.IDLE

    @property
    def session_id(self) -> Optional[str]:
        return self.session.session_id if self.session else None

    def _extra(self, **fields) -> dict:
        extra = {
            "controller_id": self.controller_id,
            "role": self.role.value,
            "session_id": self.session_id,
            "phase": self.phase.value,
        }
        extra.update(fields)
        return extra

    def _require(self, target: Phase):
        if self.session is None or target not in ALLOWED_TRANSITIONS[self.phase]:
            raise InvalidTransitionError(f"cannot move from {self.phase.value} to {target.value}")

    async def _blocking_reason(self, shared: DrawSession) -> Optional[str]:
        other = await self.lease.held_by_other()
        if other is not None:
            return f"The {other.role} controller is running a draw session. Wait for it to finish."
        if shared.owner_id and shared.owner_id != self.controller_id and (shared.in_flight or shared.awaiting_processing):
            logger.warning(
                f"Lease for {shared.owner_role} session expired in {shared.phase.value}, taking over",
                extra=self._extra(version=shared.version)
            )
        return None

    async def _require_lease(self):
        if await self.lease.is_held():
            return
        if await self.lease.held_by_other() is None and await self.lease.acquire(self.session_id):
            return
        raise LeaseNotHeldError(f"{self.controller_id} does not own session {self.session_id}")

    async def _publish_phase(self, phase: Phase, **fields) -> DrawSession:
        record = await self.channel.publish({"phase": phase, **fields})
        self.view = record
        metrics.PHASE_TRANSITIONS.labels(role=self.role.value, phase=phase.value).inc()
        logger.info(f"Draw phase {phase.value}", extra=self._extra(phase=phase.value, version=record.version))
        return record

    def _schedule(self, delay: float, action: Callable[[], Awaitable], name: str) -> asyncio.Task:
        async def run():
            await asyncio.sleep(delay)
            try:
                return await action()
            except Exception as e:
                self.last_error = e
                logger.error(f"Scheduled {name} failed: {e}", extra=self._extra(), exc_info=True)

        return asyncio.create_task(run(), name=f"{self.controller_id}-{name}")

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]):
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _start_heartbeat(self):
        self._cancel(self._heartbeat_task)
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat(), name=f"{self.controller_id}-lease-heartbeat"
        )

    async def _heartbeat(self):
        await self.lease.keep_alive(self.settings.lease_heartbeat)
        if self.session is not None and self.session.in_flight:
            logger.error("Lease lost while a session is in flight", extra=self._extra())
            await send_draw_event(
                EVENT_LEASE_LOST,
                self.service_name,
                dimensions={"role": self.role.value, "session_id": self.session_id or ""},
            )

    async def _end_lease(self):
        self._cancel(self._heartbeat_task)
        self._heartbeat_task = None
        await self.lease.release()
        metrics.ACTIVE_SESSION.labels(role=self.role.value).set(0)

    async def commit(self, prize_id: Optional[str] = None, spin: bool = False) -> DrawSession:
        """Pick the winners for a new session and publish it as committed.

        ``spin=True`` runs straight on into the spin, the one-tap flow the VIP
        console uses.
        """
        if self.session is not None and self.session.in_flight:
            raise InvalidTransitionError(f"session {self.session_id} is still {self.phase.value}")

        with draw_span(tracer, "draw_commit", role=self.role.value, prize_id=prize_id) as span:
            shared = await self.channel.snapshot()
            self.view = shared

            reason = await self._blocking_reason(shared)
            if reason:
                metrics.SESSIONS_BLOCKED.labels(role=self.role.value).inc()
                logger.warning(f"Commit refused: {reason}", extra=self._extra())
                raise SessionBusyError(reason)

            prize = None
            prize_id = prize_id or shared.selected_prize_id
            if prize_id:
                try:
                    prize = await self.repository.get("prizes", prize_id)
                except RecordNotFoundError:
                    raise DrawValidationError(f"Prize {prize_id} does not exist") from None
                if prize.remaining_quota <= 0:
                    raise DrawValidationError(f"Prize {prize.name} has no remaining quota")

            participants = await self.repository.eligible_participants()
            pool = available_pool(
                [ParticipantSnapshot.model_validate(p) for p in participants],
                excluded_ids=[w.participant_id for w in shared.current_winners],
            )
            if not pool:
                raise DrawValidationError("No eligible participants left to draw from")

            count = draw_count(
                prize.remaining_quota if prize else None,
                self.settings.default_draw_count,
                len(pool),
            )
            if count == 0:
                raise DrawValidationError("Draw count is zero")

            session_id = new_session_id(self.role.value, prize_id)
            winners = build_winner_entries(
                pick_winners(pool, count, self.rng),
                session_id,
                prize.id if prize else None,
                prize.name if prize else None,
            )
            span.set_attribute("draw.session_id", session_id)

            if not await self.lease.acquire(session_id):
                metrics.SESSIONS_BLOCKED.labels(role=self.role.value).inc()
                raise SessionBusyError("Another controller started a draw session first.")

            try:
                record = await self.channel.publish(
                    {
                        "phase": Phase.COMMITTED,
                        "session_id": session_id,
                        "owner_id": self.controller_id,
                        "owner_role": self.role.value,
                        "selected_prize_id": prize.id if prize else None,
                        "selected_prize_name": prize.name if prize else None,
                        "selected_prize_image": prize.image if prize else None,
                        "selected_prize_quota": prize.remaining_quota if prize else count,
                        "participants_snapshot": pool,
                        "predetermined_winners": winners,
                        "current_winners": [],
                        "final_winners": [],
                        "should_start_spinning": False,
                        "should_start_slowdown": False,
                        "show_winner_display": False,
                        "processed_by_other_controller": False,
                        "controller_active": True,
                    },
                    expected_version=shared.version,
                )
            except VersionConflictError:
                await self.lease.release()
                metrics.SESSIONS_BLOCKED.labels(role=self.role.value).inc()
                raise SessionBusyError("The draw state changed while committing. Try again.") from None
            except Exception:
                await self.lease.release()
                raise

        self.session = record
        self.view = record
        self.last_error = None
        self.last_result = None
        self.advisory.begin(session_id)
        self._start_heartbeat()

        metrics.SESSIONS_COMMITTED.labels(role=self.role.value).inc()
        metrics.PHASE_TRANSITIONS.labels(role=self.role.value, phase=Phase.COMMITTED.value).inc()
        metrics.ACTIVE_SESSION.labels(role=self.role.value).set(1)
        logger.info(
            f"Committed session with {len(winners)} winners from {len(pool)} participants",
            extra=self._extra(prize_id=prize_id, winner_count=len(winners), version=record.version)
        )

        if spin:
            return await self.start_spin()
        return self.session

    async def start_spin(self) -> DrawSession:
        self._require(Phase.SPINNING)
        await self._require_lease()
        self.session = await self._publish_phase(Phase.SPINNING, should_start_spinning=True)
        if self.settings.spin_duration > 0:
            self._spin_task = self._schedule(self.settings.spin_duration, self._auto_stop, "spin-dwell")
        return self.session

    async def stop(self) -> DrawSession:
        """End the spin; the reveal follows after the slowdown dwell."""
        async with self._stop_lock:
            self._cancel(self._spin_task)
            return await self._enter_slowdown()

    async def _auto_stop(self):
        async with self._stop_lock:
            if self.phase == Phase.SPINNING:
                await self._enter_slowdown()

    async def _enter_slowdown(self) -> DrawSession:
        self._require(Phase.SLOWDOWN)
        await self._require_lease()
        winners = self.session.predetermined_winners
        self.session = await self._publish_phase(
            Phase.SLOWDOWN,
            should_start_spinning=True,
            should_start_slowdown=True,
            predetermined_winners=winners,
        )
        self._reveal_task = self._schedule(self.settings.slowdown_duration, self.reveal, "reveal")
        return self.session

    async def reveal(self) -> Optional[FinalizeResult]:
        """Finalize the session (if this controller should) and publish the reveal.

        Returns None when another controller already handled the session and
        this one only adopted the shared result.
        """
        if self.session is None or self.session.phase != Phase.SLOWDOWN:
            raise InvalidTransitionError(f"cannot reveal from {self.phase.value}")

        local = self.session
        session_id = local.session_id
        shared = await self.channel.snapshot()
        self.view = shared

        if self.advisory.is_processed(session_id) or (
            shared.session_id == session_id and shared.processed_by_other_controller
        ):
            logger.info("Session already processed, adopting shared result", extra=self._extra())
            await self._adopt_revealed(shared)
            return None

        if await self.lease.held_by_other() is not None or not await self.lease.acquire(session_id):
            logger.info("Another controller owns this session, adopting shared result", extra=self._extra())
            await self._adopt_revealed(shared)
            return None

        with draw_span(tracer, "draw_reveal", role=self.role.value, session_id=session_id) as span:
            self._finalizing = True
            try:
                result = await self.finalizer.finalize(
                    session_id,
                    local.predetermined_winners,
                    local.selected_prize_id,
                    controller_id=self.controller_id,
                )
            except DrawError as e:
                self.last_error = e
                logger.error(f"Finalize failed, session stays in slowdown: {e}", extra=self._extra())
                raise
            finally:
                self._finalizing = False
            span.set_attribute("draw.outcome", result.status.value)

        self.last_result = result
        if result.status == FinalizeStatus.ALREADY_PROCESSED:
            await send_draw_event(
                EVENT_FINALIZE_RACE_LOST,
                self.service_name,
                dimensions={"role": self.role.value, "session_id": session_id},
            )

        if self.session is None or self.session.session_id != session_id:
            logger.warning("Session was cleared during finalize, reveal not published", extra=self._extra())
            return result

        winners = local.predetermined_winners
        self.session = await self._publish_phase(
            Phase.REVEALED,
            current_winners=winners,
            final_winners=winners,
            should_start_spinning=False,
            should_start_slowdown=False,
            show_winner_display=True,
            processed_by_other_controller=True,
            controller_active=False,
        )
        self.advisory.mark_processed(session_id)
        await self._end_lease()
        metrics.SESSIONS_REVEALED.labels(role=self.role.value).inc()
        return result

    async def _adopt_revealed(self, shared: DrawSession):
        winners = shared.current_winners or self.session.predetermined_winners
        self.session = self.session.model_copy(update={
            "phase": Phase.REVEALED,
            "current_winners": winners,
            "final_winners": winners,
            "should_start_spinning": False,
            "should_start_slowdown": False,
            "show_winner_display": True,
            "processed_by_other_controller": True,
        })
        self.advisory.mark_processed(self.session.session_id)
        self._cancel(self._heartbeat_task)

    async def clear(self) -> DrawSession:
        """Return to idle. Winner records and prize quota are left untouched."""
        other = await self.lease.held_by_other()
        if other is not None:
            raise SessionBusyError(f"The {other.role} controller owns the running session.")

        self._cancel(self._spin_task)
        if not self._finalizing:
            self._cancel(self._reveal_task)

        previous = self.session_id
        self.session = None
        fields = dict(CLEARED_FIELDS)
        if (await self.channel.snapshot()).selected_prize_id is None:
            # An exhausted prize was deselected at finalize; drop its label with the session.
            fields.update(selected_prize_name=None, selected_prize_image=None, selected_prize_quota=0)
        record = await self.channel.publish(fields)
        self.view = record
        self.advisory.clear()
        await self._end_lease()

        metrics.PHASE_TRANSITIONS.labels(role=self.role.value, phase=Phase.IDLE.value).inc()
        logger.info("Draw cleared", extra=self._extra(session_id=previous, version=record.version))
        return record

    async def adopt(self) -> DrawSession:
        """Follow the session currently in the shared record without writing to it."""
        shared = await self.channel.snapshot()
        if shared.session_id is None or shared.phase == Phase.IDLE:
            raise InvalidTransitionError("there is no draw session to follow")
        self.session = shared
        self.view = shared
        return shared

    async def select_prize(self, prize_id: Optional[str]) -> DrawSession:
        shared = await self.channel.snapshot()
        if shared.in_flight:
            raise SessionBusyError("The prize cannot change while a draw is running.")

        if prize_id is None:
            fields = {
                "selected_prize_id": None,
                "selected_prize_name": None,
                "selected_prize_image": None,
                "selected_prize_quota": 0,
            }
        else:
            prize = await self.repository.get("prizes", prize_id)
            fields = {
                "selected_prize_id": prize.id,
                "selected_prize_name": prize.name,
                "selected_prize_image": prize.image,
                "selected_prize_quota": prize.remaining_quota,
            }
        self.view = await self.channel.publish(fields)
        return self.view

    async def drain(self) -> Optional[FinalizeResult]:
        """Wait for pending dwell and reveal tasks; re-raise a failure they recorded."""
        for name in ("_spin_task", "_reveal_task"):
            task = getattr(self, name)
            if task is not None:
                await asyncio.wait([task])
        if self.last_error is not None:
            raise self.last_error
        return self.last_result

    async def status(self) -> ControllerStatus:
        shared = await self.channel.snapshot()
        self.view = shared
        other = await self.lease.held_by_other()
        return ControllerStatus(
            role=self.role.value,
            controller_id=self.controller_id,
            phase=self.phase.value,
            shared_phase=shared.phase.value,
            session_id=self.session_id or shared.session_id,
            version=shared.version,
            other_controller_active=other is not None,
            other_controller_role=other.role if other else None,
            blocking_message=(
                f"The {other.role} controller is running a draw session." if other else None
            ),
            last_error=str(self.last_error) if self.last_error else None,
        )

    async def observe(self, block_ms: int = 5000):
        """Keep ``view`` current from the channel subscription. Runs until cancelled."""
        async for snapshot in self.channel.subscribe(block_ms=block_ms):
            self.view = snapshot
            if self.session is None:
                continue
            if snapshot.session_id == self.session.session_id:
                if snapshot.owner_id != self.controller_id:
                    self.session = snapshot
            elif not self.session.in_flight:
                logger.info("Shared session moved on, dropping local session", extra=self._extra())
                self.session = None

    async def close(self):
        for task in (self._spin_task, self._reveal_task, self._heartbeat_task):
            self._cancel(task)
        if await self.lease.is_held():
            await self.lease.release()
