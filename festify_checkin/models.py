from __future__ import annotations
import uuid
from datetime import datetime, timezone
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import UniqueConstraint, Index
from sqlalchemy.types import DateTime, String

Base = declarative_base()

def utcnow():
    return datetime.now(timezone.utc)

def new_id() -> str:
    return uuid.uuid4().hex

class CheckIn(Base):
    __tablename__ = "checkins"
    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_name: Mapped[str] = mapped_column(String(255), default="Unknown", nullable=False)
    device_info: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    checked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_checkin_per_user_per_event"),
        Index("ix_checkins_event_checked_at", "event_id", "checked_at"),
    )
