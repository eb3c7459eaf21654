"""
Ranking primitives for windowed leaderboards.

Ordering (total, deterministic):
1. window_total DESC
2. last_event_at ASC (time of the user's most recent qualifying event;
   reaching a total first wins the higher position)
3. user_id ASC

Rank numbering is standard competition ranking: tied entries share a rank
and the next distinct entry's rank skips the tied slots (1, 2, 2, 4).
By default entries tie when their totals are equal; with
require_same_time=True they must also share last_event_at.
"""
import math
from bisect import bisect_left
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

RankKey = Tuple[int, datetime, str]


@dataclass(frozen=True)
class LeaderboardEntry:
    """One materialized leaderboard row."""
    user_id: str
    window_total: int
    rank: int
    display_name: str
    avatar_url: Optional[str]
    badge_count: int
    last_event_at: datetime

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "window_total": self.window_total,
            "rank": self.rank,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
            "badge_count": self.badge_count,
            "last_event_at": self.last_event_at.isoformat(),
        }


def make_key(total: int, last_event_at: datetime, user_id: str) -> RankKey:
    return (-total, last_event_at, user_id)


def level_for_xp(total_xp: int) -> int:
    """XP level: max(1, floor(sqrt(xp / 100) + 1))."""
    if total_xp <= 0:
        return 1
    return max(1, math.floor(math.sqrt(total_xp / 100) + 1))


class RankedIndex:
    """
    Sorted index of rank keys with a parallel competition-rank array.

    Updates move one user's key and re-rank only the affected span:
    entries between the old and new position always, then onward until a
    recomputed rank matches the stored one. Inserting a new user shifts
    every later position, so that pass runs to the end.
    """

    def __init__(self, require_same_time: bool = False):
        self.require_same_time = require_same_time
        self._keys: List[RankKey] = []
        self._ranks: List[int] = []
        self._by_user: Dict[str, RankKey] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._by_user

    def key_of(self, user_id: str) -> Optional[RankKey]:
        return self._by_user.get(user_id)

    def _ties(self, a: RankKey, b: RankKey) -> bool:
        if a[0] != b[0]:
            return False
        if self.require_same_time:
            return a[1] == b[1]
        return True

    def load(self, keys: Iterable[RankKey]) -> None:
        """Replace the whole index and rank it in one O(n log n) pass."""
        self._keys = sorted(keys)
        self._by_user = {key[2]: key for key in self._keys}
        self._ranks = [0] * len(self._keys)
        self._rerank(0, len(self._keys) - 1)

    def upsert(self, key: RankKey) -> int:
        """
        Insert or move the key's user.

        Returns:
            number of entries whose rank changed
        """
        user_id = key[2]
        old_key = self._by_user.get(user_id)

        if old_key is not None:
            old_pos = bisect_left(self._keys, old_key)
            del self._keys[old_pos]
            del self._ranks[old_pos]

        new_pos = bisect_left(self._keys, key)
        self._keys.insert(new_pos, key)
        self._ranks.insert(new_pos, 0)
        self._by_user[user_id] = key

        if old_key is None:
            return self._rerank(new_pos, len(self._keys) - 1)
        return self._rerank(min(old_pos, new_pos), max(old_pos, new_pos))

    def _rerank(self, lo: int, hi: int) -> int:
        changed = 0
        for i in range(lo, len(self._keys)):
            if i > 0 and self._ties(self._keys[i - 1], self._keys[i]):
                rank = self._ranks[i - 1]
            else:
                rank = i + 1
            if i > hi and rank == self._ranks[i]:
                break
            if rank != self._ranks[i]:
                self._ranks[i] = rank
                changed += 1
        return changed

    def rank_of(self, user_id: str) -> Optional[int]:
        key = self._by_user.get(user_id)
        if key is None:
            return None
        return self._ranks[bisect_left(self._keys, key)]

    def rows(self) -> List[Tuple[RankKey, int]]:
        return list(zip(self._keys, self._ranks))
