from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class Phase(str, Enum):
    IDLE = "idle"
    COMMITTED = "committed"
    SPINNING = "spinning"
    SLOWDOWN = "slowdown"
    REVEALED = "revealed"


ACTIVE_PHASES = (Phase.COMMITTED, Phase.SPINNING, Phase.SLOWDOWN)


class WireModel(BaseModel):
    """Base for records stored in the shared channel (camelCase on the wire)."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class ParticipantSnapshot(WireModel):
    id: str
    name: str
    added_at: Optional[datetime] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    id_tag: Optional[str] = None


class WinnerEntry(WireModel):
    id: str
    participant_id: str
    name: str
    won_at: datetime
    prize_id: Optional[str] = None
    prize_name: Optional[str] = None
    draw_session: str
    email: Optional[str] = None
    phone: Optional[str] = None
    id_tag: Optional[str] = None


class DrawSession(WireModel):
    """The single shared draw record both controllers and the display read."""

    version: int = 0
    session_id: Optional[str] = None
    phase: Phase = Phase.IDLE
    owner_id: Optional[str] = None
    owner_role: Optional[str] = None
    selected_prize_id: Optional[str] = None
    selected_prize_name: Optional[str] = None
    selected_prize_image: Optional[str] = None
    selected_prize_quota: int = 0
    participants_snapshot: list[ParticipantSnapshot] = Field(default_factory=list)
    predetermined_winners: list[WinnerEntry] = Field(default_factory=list)
    current_winners: list[WinnerEntry] = Field(default_factory=list)
    final_winners: list[WinnerEntry] = Field(default_factory=list)
    should_start_spinning: bool = False
    should_start_slowdown: bool = False
    show_winner_display: bool = False
    processed_by_other_controller: bool = False
    controller_active: bool = False
    last_updated: Optional[datetime] = None

    @property
    def in_flight(self) -> bool:
        return self.phase in ACTIVE_PHASES

    @property
    def awaiting_processing(self) -> bool:
        return self.phase == Phase.REVEALED and not self.processed_by_other_controller


class ParticipantRecord(BaseModel):
    id: str
    name: str
    added_at: datetime
    email: Optional[str] = None
    phone: Optional[str] = None
    id_tag: Optional[str] = None

    class Config:
        from_attributes = True


class PrizeRecord(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    image: Optional[str] = None
    quota: int
    remaining_quota: int
    created_at: datetime

    class Config:
        from_attributes = True


class WinnerRecord(BaseModel):
    id: str
    participant_id: str
    name: str
    won_at: datetime
    prize_id: Optional[str] = None
    prize_name: Optional[str] = None
    draw_session: str
    email: Optional[str] = None
    phone: Optional[str] = None
    id_tag: Optional[str] = None

    class Config:
        from_attributes = True
