"""
Contest & Participation API Schemas (Pydantic)
"""
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from contest_engine.orm.contest import ContestDifficulty
from contest_engine.orm.participation import ParticipationStatus


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Store everything as naive UTC."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ContestCreate(BaseModel):
    """Request schema for creating a contest."""
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    subject_id: Optional[str] = Field(default=None, max_length=100)
    difficulty: ContestDifficulty = ContestDifficulty.MEDIUM
    question_count: int
    duration_minutes: int
    start_time: datetime
    end_time: datetime
    max_participants: int
    prize: Optional[str] = Field(default=None, max_length=255)

    @field_validator('title')
    @classmethod
    def strip_title(cls, v):
        return v.strip()

    @field_validator('start_time', 'end_time')
    @classmethod
    def to_naive_utc(cls, v):
        return _naive_utc(v)


class ContestUpdate(BaseModel):
    """Partial update; only allowed before anyone joins."""
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    subject_id: Optional[str] = Field(default=None, max_length=100)
    difficulty: Optional[ContestDifficulty] = None
    question_count: Optional[int] = None
    duration_minutes: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    max_participants: Optional[int] = None
    prize: Optional[str] = Field(default=None, max_length=255)

    @field_validator('start_time', 'end_time')
    @classmethod
    def to_naive_utc(cls, v):
        return _naive_utc(v)


class ContestCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class ContestResponse(BaseModel):
    """Response schema for contest data."""
    id: int
    title: str
    description: Optional[str] = None
    subject_id: Optional[str] = None
    difficulty: ContestDifficulty
    question_count: int
    duration_minutes: int
    start_time: datetime
    end_time: datetime
    max_participants: int
    prize: Optional[str] = None
    created_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    state: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ContestStateResponse(BaseModel):
    contest_id: int
    state: str
    cancelled: bool
    participant_count: int
    as_of: datetime


class ParticipationResponse(BaseModel):
    """Response schema for a participation record."""
    id: int
    contest_id: int
    user_id: str
    status: ParticipationStatus
    joined_at: datetime
    started_at: Optional[datetime] = None
    score: Optional[int] = None
    correct_count: Optional[int] = None
    total_questions: Optional[int] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ScoreSubmission(BaseModel):
    """Request schema for submitting a contest score."""
    score: int = Field(..., ge=0)
    correct_count: int = Field(..., ge=0)
    total_questions: int = Field(..., gt=0)


class StandingResponse(BaseModel):
    rank: int
    participation_id: int
    user_id: str
    score: int
    correct_count: Optional[int] = None
    total_questions: Optional[int] = None
    completed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ContestStandingsResponse(BaseModel):
    contest_id: int
    standings: List[StandingResponse]
