import random
import time
import uuid
from datetime import datetime
from typing import Iterable, Optional, Sequence

from .schemas import ParticipantSnapshot, WinnerEntry

SESSION_PREFIXES = {"primary": "admin", "vip": "vip"}


def new_session_id(role: str, prize_id: Optional[str]) -> str:
    prefix = SESSION_PREFIXES.get(role, role)
    return f"{prefix}-{prize_id or 'open'}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def available_pool(
    participants: Iterable[ParticipantSnapshot],
    excluded_ids: Iterable[str] = (),
) -> list[ParticipantSnapshot]:
    """Participants minus anyone already drawn, matched by id."""
    excluded = set(excluded_ids)
    return [p for p in participants if p.id not in excluded]


def draw_count(remaining_quota: Optional[int], default_count: int, pool_size: int) -> int:
    wanted = default_count if remaining_quota is None else remaining_quota
    return max(0, min(wanted, pool_size))


def pick_winners(
    pool: Sequence[ParticipantSnapshot],
    count: int,
    rng: Optional[random.Random] = None,
) -> list[ParticipantSnapshot]:
    """Uniform random sample without replacement."""
    rng = rng or random.SystemRandom()
    return rng.sample(list(pool), min(count, len(pool)))


def build_winner_entries(
    picks: Iterable[ParticipantSnapshot],
    session_id: str,
    prize_id: Optional[str],
    prize_name: Optional[str],
) -> list[WinnerEntry]:
    won_at = datetime.utcnow()
    return [
        WinnerEntry(
            id=str(uuid.uuid4()),
            participant_id=p.id,
            name=p.name,
            won_at=won_at,
            prize_id=prize_id,
            prize_name=prize_name,
            draw_session=session_id,
            email=p.email,
            phone=p.phone,
            id_tag=p.id_tag,
        )
        for p in picks
    ]
