"""
contest_engine/orm/leaderboard_profile.py
Display data merged into leaderboard rows. Never used for ranking.
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime

from contest_engine.orm.base import Base


class LeaderboardProfile(Base):
    __tablename__ = "leaderboard_profiles"

    user_id = Column(String(128), primary_key=True)
    display_name = Column(String(255), nullable=False)
    avatar_url = Column(String(500), nullable=True)
    badge_count = Column(Integer, default=0, nullable=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<LeaderboardProfile(user_id='{self.user_id}', display_name='{self.display_name}')>"
