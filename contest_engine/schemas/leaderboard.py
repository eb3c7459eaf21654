"""
Leaderboard & Score Event API Schemas (Pydantic)
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from contest_engine.orm.score_event import ScoreSourceKind
from contest_engine.schemas.contest import _naive_utc


class LeaderboardEntryResponse(BaseModel):
    rank: int
    user_id: str
    window_total: int
    display_name: str
    avatar_url: Optional[str] = None
    badge_count: int = 0
    last_event_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeaderboardPageResponse(BaseModel):
    """One page of one snapshot version; pass `version` back to keep paging it."""
    window: str
    version: int
    page: int
    page_size: int
    total_count: int
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    generated_at: datetime
    entries: List[LeaderboardEntryResponse]


class ScoreEventCreate(BaseModel):
    """Non-contest XP credit (quiz attempt, daily challenge, achievement)."""
    user_id: str = Field(..., min_length=1, max_length=128)
    points: int
    source_kind: ScoreSourceKind
    source_id: str = Field(..., min_length=1, max_length=128)
    occurred_at: Optional[datetime] = None

    @field_validator('occurred_at')
    @classmethod
    def to_naive_utc(cls, v):
        return _naive_utc(v)


class ScoreEventResponse(BaseModel):
    sequence: int
    user_id: str
    points: int
    source_kind: ScoreSourceKind
    source_id: str
    occurred_at: datetime
    deduplicated: bool


class ProfileUpdate(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=255)
    avatar_url: Optional[str] = Field(default=None, max_length=500)
    badge_count: int = Field(default=0, ge=0)


class ProfileResponse(BaseModel):
    user_id: str
    display_name: str
    avatar_url: Optional[str] = None
    badge_count: int

    model_config = ConfigDict(from_attributes=True)


class UserStandingResponse(BaseModel):
    user_id: str
    global_total: int
    weekly_total: int
    monthly_total: int
    level: int
    ranks: Dict[str, Optional[int]]


class RebuildResponse(BaseModel):
    """Versions published by an on-demand rebuild, keyed by window."""
    versions: Dict[str, int]
    propagated: bool
