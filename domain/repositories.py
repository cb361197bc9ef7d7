from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Protocol

from .models import Participant, Race, RaceStatus, TempSelection, TransferResult, User


class UserRepository(Protocol):
    """
    Abstraction over player persistence.

    Counter updates are deltas and implementations should apply them
    atomically in storage, never as read-modify-write in Python.
    """

    def get_user(self, user_id: str) -> Optional[User]:
        """Return the user with the given platform ID, or None if not found."""

        ...

    def get_by_referral_code(self, referral_code: str) -> Optional[User]:
        ...

    def get_all_users(self) -> List[User]:
        """Return all users currently known to the system."""

        ...

    def count_users(self) -> int:
        ...

    def add_user(self, user: User) -> bool:
        """Persist a new user. Returns False if the ID is already taken."""

        ...

    def delete_user(self, user_id: str) -> None:
        ...

    def update_profile(self, user_id: str, username: str, first_name: str) -> None:
        ...

    def set_verified(self, user_id: str) -> None:
        ...

    def set_wallet(self, user_id: str, wallet_address: str) -> None:
        ...

    def set_referral_code(self, user_id: str, referral_code: str) -> None:
        ...

    def set_referred_by(self, user_id: str, referrer_id: str) -> bool:
        """Link a referrer once. Returns False if the user already has one."""

        ...

    def add_winnings(self, user_id: str, amount: int, race_won: bool = False) -> None:
        ...

    def increment_races_participated(self, user_id: str) -> None:
        ...

    def add_race_reward(self, user_id: str, amount: int) -> None:
        ...

    def claim_bonus(self, user_id: str) -> bool:
        """
        Flip `bonus_received` from false to true.

        Returns True only for the caller that performed the flip, so the
        signup bonus can never be sent twice for the same user.
        """

        ...

    def release_bonus(self, user_id: str) -> None:
        """Undo a claim after a transfer that definitely did not happen."""

        ...

    def record_bonus(self, user_id: str, amount: int) -> None:
        ...

    def add_referral_earnings(self, user_id: str, amount: int) -> None:
        ...


class RaceRepository(Protocol):
    """
    Persistence for races and their participants.

    Every status change is a compare-and-set so that two writers (a
    scheduler tick and a recovery pass) cannot both move the same race.
    """

    def create_race(self, race: Race) -> bool:
        """
        Insert a race. Returns False when the race is active and another
        active race already exists.
        """

        ...

    def get_race(self, race_id: str) -> Optional[Race]:
        ...

    def get_active_race(self) -> Optional[Race]:
        """Return the race in `betting_open` or `racing`, if any."""

        ...

    def list_unsettled_races(self, started_before: datetime) -> List[Race]:
        """Races started before the cutoff that are not finished or not settled."""

        ...

    def list_recent_races(self, limit: int) -> List[Race]:
        ...

    def transition_status(
        self,
        race_id: str,
        expected: RaceStatus,
        target: RaceStatus,
    ) -> bool:
        ...

    def save_results(self, race: Race) -> bool:
        """
        Store horses, winner and end time and move the race from `racing`
        to `finished`. Returns False if the race was not `racing`.
        """

        ...

    def claim_settlement(self, race_id: str) -> bool:
        """Mark a finished race as settled. Only the first caller gets True."""

        ...

    def record_total_payout(self, race_id: str, total_payout: int) -> None:
        ...

    def add_participant(self, participant: Participant) -> bool:
        """Insert-or-reject on (race_id, user_id)."""

        ...

    def get_participant(self, race_id: str, user_id: str) -> Optional[Participant]:
        ...

    def list_participants(self, race_id: str) -> List[Participant]:
        ...

    def record_payout(
        self,
        race_id: str,
        user_id: str,
        payout: int,
        payout_ref: Optional[str],
    ) -> None:
        ...


class SelectionRepository(Protocol):
    """Short-lived horse picks waiting for proof."""

    def add_selection(self, selection: TempSelection) -> bool:
        """Insert-or-reject on (user_id, race_id)."""

        ...

    def get_selection(self, user_id: str, race_id: str) -> Optional[TempSelection]:
        ...

    def list_selections(self, race_id: str) -> List[TempSelection]:
        ...

    def delete_selection(self, user_id: str, race_id: str) -> None:
        ...

    def delete_selections_before(self, cutoff: datetime) -> int:
        """Delete picks created before `cutoff`; return how many went."""

        ...


class TokenTransferClient(Protocol):
    """
    The chain as the game sees it: validate an address, send tokens,
    read the bot wallet.

    Implementations must not raise for transfer failures; they report them
    through `TransferResult`.
    """

    def validate_address(self, address: str) -> bool:
        ...

    def send_tokens(self, address: str, amount: int) -> TransferResult:
        ...

    def get_balance(self, address: Optional[str] = None) -> Decimal:
        """Token balance in whole tokens; the bot wallet when no address is given."""

        ...

    def get_bot_address(self) -> str:
        ...
