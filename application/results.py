from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from domain.models import Horse, Participant, Race, TempSelection, User

if TYPE_CHECKING:
    from application.rewards import RewardOutcome


class RejectionReason(str, Enum):
    """
    Why an operation was refused.

    The application layer only returns these codes; turning them into
    text is the job of the chat interface.
    """

    RACE_NOT_FOUND = "race_not_found"
    BETTING_CLOSED = "betting_closed"
    UNKNOWN_HORSE = "unknown_horse"
    ALREADY_BET = "already_bet"
    SELECTION_EXISTS = "selection_exists"
    NO_SELECTION = "no_selection"
    NOT_REGISTERED = "not_registered"
    INVALID_ADDRESS = "invalid_address"
    ACTIVE_RACE_EXISTS = "active_race_exists"
    USER_NOT_FOUND = "user_not_found"


class RaceStateError(Exception):
    """Raised when a caller drives a race through an impossible transition."""


@dataclass
class CreateRaceResult:
    success: bool
    reason: Optional[RejectionReason] = None
    race: Optional[Race] = None


@dataclass
class BetResult:
    """Result of `place_bet` / `confirm_bet`."""

    success: bool
    reason: Optional[RejectionReason] = None
    race: Optional[Race] = None
    horse: Optional[Horse] = None
    selection: Optional[TempSelection] = None
    participant: Optional[Participant] = None
    rewards: List["RewardOutcome"] = field(default_factory=list)


@dataclass
class RegistrationResult:
    success: bool
    reason: Optional[RejectionReason] = None
    user: Optional[User] = None
    rewards: List["RewardOutcome"] = field(default_factory=list)
