from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional


class RaceStatus(str, Enum):
    UPCOMING = "upcoming"
    BETTING_OPEN = "betting_open"
    RACING = "racing"
    FINISHED = "finished"


ACTIVE_STATUSES = (RaceStatus.BETTING_OPEN, RaceStatus.RACING)

# Forward-only lifecycle.
_STATUS_ORDER = {
    RaceStatus.UPCOMING: 0,
    RaceStatus.BETTING_OPEN: 1,
    RaceStatus.RACING: 2,
    RaceStatus.FINISHED: 3,
}


def can_transition(current: RaceStatus, target: RaceStatus) -> bool:
    return _STATUS_ORDER[target] > _STATUS_ORDER[current]


@dataclass
class User:
    """
    Domain representation of a player.

    Counters are plain token amounts; the wallet address is only ever set
    to a value the token client accepted.
    """

    id: str
    username: str
    first_name: str
    wallet_address: Optional[str] = None
    verified: bool = False
    total_won: int = 0
    races_won: int = 0
    races_participated: int = 0
    race_rewards_earned: int = 0
    bonus_received: bool = False
    bonus_amount: int = 0
    referral_code: Optional[str] = None
    referred_by: Optional[str] = None
    referral_count: int = 0
    referral_earnings: int = 0
    created_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.username or self.first_name or self.id

    @property
    def is_registered(self) -> bool:
        return bool(self.wallet_address) and self.verified


@dataclass
class Horse:
    id: int
    name: str
    emoji: str
    finish_time: Optional[float] = None
    position: Optional[int] = None

    @property
    def label(self) -> str:
        return f"{self.emoji} {self.name}"


@dataclass
class Winner:
    horse_id: int
    horse_name: str


@dataclass
class Race:
    """
    One cycle of the game.

    `horses` is a snapshot of the roster taken at creation time; after the
    race is simulated each horse carries its finish time and position.
    """

    race_id: str
    start_time: datetime
    status: RaceStatus
    horses: List[Horse]
    prize_pool: int
    end_time: Optional[datetime] = None
    winner: Optional[Winner] = None
    total_payout: int = 0
    settled: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def find_horse(self, horse_id: int) -> Optional[Horse]:
        for horse in self.horses:
            if horse.id == horse_id:
                return horse
        return None

    def horse_at(self, position: int) -> Optional[Horse]:
        for horse in self.horses:
            if horse.position == position:
                return horse
        return None

    def podium(self) -> List[Horse]:
        placed = [h for h in self.horses if h.position is not None]
        placed.sort(key=lambda h: h.position)
        return placed[:3]


@dataclass
class Participant:
    """A confirmed bet: one user, one horse, one race."""

    race_id: str
    user_id: str
    username: str
    horse_id: int
    horse_name: str
    proof_ref: Optional[str] = None
    joined_at: Optional[datetime] = None
    payout: int = 0
    payout_ref: Optional[str] = None


@dataclass
class TempSelection:
    """A horse pick waiting for its tweet proof."""

    user_id: str
    race_id: str
    horse_id: int
    horse_name: str
    created_at: Optional[datetime] = None


@dataclass
class TransferResult:
    success: bool
    reference: Optional[str] = None
    error: Optional[str] = None


HORSE_ROSTER: List[Horse] = [
    Horse(1, "Thunder Bolt", "⚡"),
    Horse(2, "Magic Mane", "🦄"),
    Horse(3, "Lightning Storm", "🌩️"),
    Horse(4, "Speed Demon", "💨"),
    Horse(5, "Star Gazer", "⭐"),
    Horse(6, "Flame Runner", "🔥"),
    Horse(7, "Midnight Shadow", "🌙"),
    Horse(8, "Golden Arrow", "🏹"),
    Horse(9, "Storm Chaser", "🌪️"),
    Horse(10, "Wild Spirit", "🦅"),
    Horse(11, "Diamond Dash", "💎"),
    Horse(12, "Phoenix Rising", "🐦‍🔥"),
    Horse(13, "Ice Breaker", "❄️"),
    Horse(14, "Rocket Rider", "🚀"),
    Horse(15, "Solar Flare", "☀️"),
    Horse(16, "Cosmic Cruiser", "🌌"),
]


def snapshot_roster(roster: Optional[List[Horse]] = None) -> List[Horse]:
    """Return fresh copies of the roster with results cleared."""

    source = roster if roster is not None else HORSE_ROSTER
    return [Horse(id=h.id, name=h.name, emoji=h.emoji) for h in source]
