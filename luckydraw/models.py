import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


def new_id() -> str:
    return str(uuid.uuid4())


class Participant(Base):
    __tablename__ = "participants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    added_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    id_tag: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class Prize(Base):
    __tablename__ = "prizes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    quota: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_quota: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "remaining_quota >= 0 AND remaining_quota <= quota",
            name="ck_prize_remaining_quota",
        ),
    )


class Winner(Base):
    __tablename__ = "winners"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    # Not a foreign key: the participant row is removed after the win.
    participant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    won_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    prize_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    prize_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    draw_session: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    id_tag: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint("draw_session", "participant_id", name="uq_winner_session_participant"),
    )


class DrawFinalization(Base):
    """Claim row written once per finalized session."""

    __tablename__ = "draw_finalizations"

    session_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    controller_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    prize_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    winners_added: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining_quota: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    finalized_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
