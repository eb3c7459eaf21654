"""
contest_engine/orm/score_event.py
Append-only score ledger.

The autoincrement id is the logical sequence number: it orders events
independently of wall-clock time. (source_kind, source_id) is the
idempotency key; the unique constraint makes duplicate credit impossible
even when two writers race.

Rows are never updated or deleted.
"""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, DateTime, Index, UniqueConstraint, Enum as SQLEnum

from contest_engine.orm.base import Base


class ScoreSourceKind(str, PyEnum):
    """Activity that produced the points"""
    CONTEST_PARTICIPATION = "ContestParticipation"
    QUIZ_ATTEMPT = "QuizAttempt"
    DAILY_CHALLENGE = "DailyChallenge"
    ACHIEVEMENT = "Achievement"


class ScoreEvent(Base):
    """
    Single immutable scoring event.
    """
    __tablename__ = "score_events"

    # Sequence number
    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(128), nullable=False)
    points = Column(Integer, nullable=False)
    source_kind = Column(SQLEnum(ScoreSourceKind), nullable=False)
    source_id = Column(String(128), nullable=False)

    occurred_at = Column(DateTime, nullable=False)
    recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("source_kind", "source_id", name="uq_score_event_source"),
        Index("ix_score_events_user_seq", "user_id", "id"),
        Index("ix_score_events_occurred", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    @property
    def sequence(self) -> int:
        return self.id

    def __repr__(self):
        return (
            f"<ScoreEvent(seq={self.id}, user_id='{self.user_id}', points={self.points}, "
            f"source={self.source_kind}:{self.source_id})>"
        )
