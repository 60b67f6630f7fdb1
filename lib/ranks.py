"""Taster rank tiers.

A taster's rank is derived from the number of distinct tastings they have
scored. Nothing here touches the database; callers count, this module maps
the count to a tier.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class Rank:
    key: str
    kanji: str
    romaji: str
    english: str
    min_sakes: int
    color: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'kanji': self.kanji,
            'romaji': self.romaji,
            'english': self.english,
            'min_sakes': self.min_sakes,
            'color': self.color,
        }


@dataclass(frozen=True)
class NextRank:
    rank: Rank
    progress: float
    remaining: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'next_rank': self.rank.to_dict(),
            'progress': self.progress,
            'remaining': self.remaining,
        }


RANKS: Tuple[Rank, ...] = (
    Rank('murabito', '村人', 'Murabito', 'Villager', 0, '#FFFFFF'),
    Rank('ashigaru', '足軽', 'Ashigaru', 'Foot Soldier', 3, '#79C39A'),
    Rank('ronin', '浪人', 'Ronin', 'Ronin', 6, '#79C39A'),
    Rank('samurai', '侍', 'Samurai', 'Samurai', 10, '#C4A35A'),
    Rank('daimyo', '大名', 'Daimyō', 'Feudal Lord', 15, '#C4A35A'),
    Rank('shogun', '将軍', 'Shōgun', 'Shogun', 20, '#FF0080'),
    Rank('tenno', '天皇', 'Tennō', 'Emperor', 30, '#FF0080'),
)


def rank_for(count: int) -> Rank:
    """Return the highest tier whose threshold is <= count."""
    if count < 0:
        raise ValueError(f"Tasting count cannot be negative: {count}")
    for rank in reversed(RANKS):
        if count >= rank.min_sakes:
            return rank
    return RANKS[0]


def next_rank_for(count: int) -> Optional[NextRank]:
    """Return the next tier and progress toward it, or None at the top."""
    current = rank_for(count)
    index = RANKS.index(current)
    if index >= len(RANKS) - 1:
        return None

    following = RANKS[index + 1]
    span = following.min_sakes - current.min_sakes
    return NextRank(
        rank=following,
        progress=(count - current.min_sakes) / span,
        remaining=following.min_sakes - count,
    )


def rank_by_key(key: Optional[str]) -> Rank:
    for rank in RANKS:
        if rank.key == key:
            return rank
    return RANKS[0]
