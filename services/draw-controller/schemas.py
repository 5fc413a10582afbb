from typing import Optional

from pydantic import BaseModel


class CommitRequest(BaseModel):
    prize_id: Optional[str] = None
    spin: bool = False


class SelectPrizeRequest(BaseModel):
    prize_id: Optional[str] = None


class TransitionResponse(BaseModel):
    session_id: Optional[str] = None
    phase: str
    version: int
    winner_count: int = 0
