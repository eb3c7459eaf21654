"""
contest_engine/orm/participation.py
One user's participation in one contest.

State machine: JOINED -> IN_PROGRESS -> COMPLETED (terminal, absorbing).
completed_at is set iff status is COMPLETED; score is write-once.
The version column is a compare-and-swap guard: an UPDATE against a
stale version raises StaleDataError instead of overwriting.
"""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Index, UniqueConstraint, Enum as SQLEnum
)

from contest_engine.orm.base import Base


class ParticipationStatus(str, PyEnum):
    """Participation lifecycle"""
    JOINED = "Joined"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"


class ContestParticipation(Base):
    """
    Participation record. Never deleted; kept for standings and history.
    """
    __tablename__ = "contest_participations"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)

    contest_id = Column(
        Integer,
        ForeignKey("contests.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    user_id = Column(String(128), nullable=False, index=True)

    status = Column(
        SQLEnum(ParticipationStatus),
        default=ParticipationStatus.JOINED,
        nullable=False,
        index=True
    )

    joined_at = Column(DateTime, nullable=False)
    started_at = Column(DateTime, nullable=True)

    # Terminal result (write-once)
    score = Column(Integer, nullable=True)
    correct_count = Column(Integer, nullable=True)
    total_questions = Column(Integer, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Ledger lineage for the score contribution
    score_event_id = Column(Integer, ForeignKey("score_events.id"), nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("contest_id", "user_id", name="uq_participation_contest_user"),
        Index("ix_participations_user_joined", "user_id", "joined_at"),
    )

    __mapper_args__ = {
        "version_id_col": version,
    }

    @property
    def is_completed(self) -> bool:
        return self.status == ParticipationStatus.COMPLETED

    def __repr__(self):
        return (
            f"<ContestParticipation(id={self.id}, contest_id={self.contest_id}, "
            f"user_id='{self.user_id}', status={self.status})>"
        )
