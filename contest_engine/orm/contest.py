"""
contest_engine/orm/contest.py
Contest definitions.

Lifecycle (Scheduled / Live / Ended) is NOT stored; it is derived from
start_time, end_time and the current clock by the contest registry.
Only administrative cancellation is persisted.
"""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, DateTime, Text, Index, Enum as SQLEnum

from contest_engine.orm.base import Base


class ContestDifficulty(str, PyEnum):
    """Difficulty band shown to participants"""
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"


class Contest(Base):
    """
    A timed contest that users join and submit exactly one score to.

    Invariants (enforced by the registry on create/update):
    - start_time < end_time
    - max_participants > 0, duration_minutes > 0, question_count > 0
    - definition is frozen once any participation exists
    """
    __tablename__ = "contests"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    subject_id = Column(String(100), nullable=True, index=True)
    difficulty = Column(SQLEnum(ContestDifficulty), default=ContestDifficulty.MEDIUM, nullable=False)

    question_count = Column(Integer, nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    # Schedule (naive UTC)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)

    max_participants = Column(Integer, nullable=False)
    prize = Column(String(255), nullable=True)

    # Administrative cancellation
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(255), nullable=True)

    # Metadata
    created_by = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_contests_schedule", "start_time", "end_time"),
    )

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None

    def __repr__(self):
        return f"<Contest(id={self.id}, title='{self.title}', start={self.start_time}, end={self.end_time})>"
