from .base import Base

from .contest import Contest, ContestDifficulty
from .participation import ContestParticipation, ParticipationStatus
from .score_event import ScoreEvent, ScoreSourceKind
from .leaderboard_profile import LeaderboardProfile
