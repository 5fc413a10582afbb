import asyncio
import logging
import random
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from .channel import DrawStateChannel
from .schemas import DrawSession, ParticipantSnapshot, Phase

logger = logging.getLogger(__name__)


class DisplayMode(str, Enum):
    READY = "ready"
    SPINNING = "spinning"
    REVEALED = "revealed"


@dataclass
class DisplayView:
    mode: DisplayMode = DisplayMode.READY
    session_id: Optional[str] = None
    prize_name: Optional[str] = None
    prize_image: Optional[str] = None
    slot_count: int = 1
    names: list[str] = field(default_factory=list)
    version: int = 0

    @property
    def single_slot(self) -> bool:
        return self.slot_count == 1

    def to_dict(self) -> dict:
        data = asdict(self)
        data["mode"] = self.mode.value
        data["single_slot"] = self.single_slot
        return data


class DisplayRenderer:
    """Read-only projection of the shared draw record for the big screen.

    Winners only appear once the controller has moved the session to
    slowdown. While spinning, the visible names are random picks from the
    participant snapshot frozen into the session, refreshed on a ticker.
    """

    def __init__(self, channel: DrawStateChannel, tick_interval: float = 0.05, rng: Optional[random.Random] = None):
        self.channel = channel
        self.tick_interval = tick_interval
        self.rng = rng or random.Random()
        self.view = DisplayView()
        self._pool: list[ParticipantSnapshot] = []
        self._pool_session: Optional[str] = None
        self._ticker: Optional[asyncio.Task] = None

    def apply(self, snapshot: DrawSession) -> DisplayView:
        if snapshot.session_id != self._pool_session:
            self._pool = list(snapshot.participants_snapshot)
            self._pool_session = snapshot.session_id

        slots = max(1, min(snapshot.selected_prize_quota or 1, len(self._pool) or 1))
        common = {
            "session_id": snapshot.session_id,
            "prize_name": snapshot.selected_prize_name,
            "prize_image": snapshot.selected_prize_image,
            "version": snapshot.version,
        }

        if snapshot.phase in (Phase.SLOWDOWN, Phase.REVEALED) or snapshot.should_start_slowdown:
            winners = snapshot.current_winners or snapshot.predetermined_winners
            view = DisplayView(
                mode=DisplayMode.REVEALED,
                slot_count=len(winners) or slots,
                names=[w.name for w in winners],
                **common,
            )
        elif snapshot.phase == Phase.SPINNING or snapshot.should_start_spinning:
            view = DisplayView(mode=DisplayMode.SPINNING, slot_count=slots, names=self.rolling_names(slots), **common)
        else:
            view = DisplayView(mode=DisplayMode.READY, slot_count=slots, **common)

        if view.mode != self.view.mode:
            logger.info(
                f"Display switched to {view.mode.value}",
                extra={"session_id": snapshot.session_id, "phase": snapshot.phase.value, "version": snapshot.version}
            )
        self.view = view
        return view

    def rolling_names(self, slots: int) -> list[str]:
        if not self._pool:
            return []
        if slots <= len(self._pool):
            picks = self.rng.sample(self._pool, slots)
        else:
            picks = self.rng.choices(self._pool, k=slots)
        return [p.name for p in picks]

    async def _tick(self):
        while True:
            await asyncio.sleep(self.tick_interval)
            if self.view.mode == DisplayMode.SPINNING:
                self.view.names = self.rolling_names(self.view.slot_count)

    def _start_ticker(self):
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.create_task(self._tick(), name="display-ticker")

    def _stop_ticker(self):
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    async def run(self, block_ms: int = 5000):
        """Follow the channel until cancelled."""
        try:
            async for snapshot in self.channel.subscribe(block_ms=block_ms):
                view = self.apply(snapshot)
                if view.mode == DisplayMode.SPINNING:
                    self._start_ticker()
                else:
                    self._stop_ticker()
        finally:
            self._stop_ticker()
