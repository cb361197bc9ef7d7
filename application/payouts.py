from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from domain.models import Participant, Race
from domain.repositories import RaceRepository, TokenTransferClient, UserRepository

logger = logging.getLogger(__name__)

BASIS_POINTS = 10_000

# 85% / 12.5% / 2.5% for the first three places.
DEFAULT_SPLIT_BPS = (8500, 1250, 250)

PLACE_LABELS = {1: "1ST PLACE", 2: "2ND PLACE", 3: "3RD PLACE"}


def validate_split(split_bps: Sequence[int]) -> None:
    if not split_bps:
        raise ValueError("Payout split needs at least one place.")
    if any(bps < 0 for bps in split_bps):
        raise ValueError("Payout split cannot contain negative shares.")
    if sum(split_bps) > BASIS_POINTS:
        raise ValueError("Payout split cannot exceed 100%.")


def split_prize_pool(prize_pool: int, split_bps: Sequence[int]) -> List[int]:
    """Floor each place's share of the pool."""

    return [prize_pool * bps // BASIS_POINTS for bps in split_bps]


@dataclass
class PrizeBucket:
    """Everyone who backed the horse that finished at `place`."""

    place: int
    share: int
    horse_id: Optional[int] = None
    horse_name: Optional[str] = None
    members: List[Participant] = field(default_factory=list)

    @property
    def label(self) -> str:
        return PLACE_LABELS.get(self.place, f"{self.place}TH PLACE")

    @property
    def per_member(self) -> int:
        if not self.members:
            return 0
        return self.share // len(self.members)

    @property
    def allocated(self) -> int:
        return self.per_member * len(self.members)


@dataclass
class TransferOutcome:
    user_id: str
    username: str
    place: int
    amount: int
    success: bool
    reference: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SettlementReport:
    """
    What a settlement pass did.

    `unpaid_remainder` is the part of the pool no bucket was allocated:
    shares of places nobody backed plus the floor-division residue. It is
    forfeited, not carried into the next race.
    """

    race_id: str
    prize_pool: int
    participant_count: int = 0
    buckets: List[PrizeBucket] = field(default_factory=list)
    transfers: List[TransferOutcome] = field(default_factory=list)
    already_settled: bool = False

    @property
    def no_participants(self) -> bool:
        return self.participant_count == 0

    @property
    def winner_count(self) -> int:
        return sum(len(b.members) for b in self.buckets)

    @property
    def no_winners(self) -> bool:
        return self.winner_count == 0

    @property
    def allocated(self) -> int:
        return sum(b.allocated for b in self.buckets)

    @property
    def unpaid_remainder(self) -> int:
        if self.already_settled:
            return 0
        return self.prize_pool - self.allocated

    @property
    def total_paid(self) -> int:
        return sum(t.amount for t in self.transfers if t.success)

    @property
    def failures(self) -> List[TransferOutcome]:
        return [t for t in self.transfers if not t.success]

    @property
    def failed_amount(self) -> int:
        return sum(t.amount for t in self.failures)


def build_buckets(
    race: Race,
    participants: Sequence[Participant],
    split_bps: Sequence[int] = DEFAULT_SPLIT_BPS,
) -> List[PrizeBucket]:
    """Group participants by the podium horse they backed."""

    shares = split_prize_pool(race.prize_pool, split_bps)
    buckets: List[PrizeBucket] = []
    for index, share in enumerate(shares):
        place = index + 1
        horse = race.horse_at(place)
        bucket = PrizeBucket(place=place, share=share)
        if horse is not None:
            bucket.horse_id = horse.id
            bucket.horse_name = horse.name
            bucket.members = [p for p in participants if p.horse_id == horse.id]
        buckets.append(bucket)
    return buckets


def pay_out_buckets(
    race: Race,
    buckets: Sequence[PrizeBucket],
    user_repo: UserRepository,
    race_repo: RaceRepository,
    token_client: TokenTransferClient,
) -> List[TransferOutcome]:
    """
    Attempt one transfer per winner.

    Each transfer stands alone: a failure is recorded and the loop moves on.
    Nothing here retries.
    """

    outcomes: List[TransferOutcome] = []
    for bucket in buckets:
        amount = bucket.per_member
        for participant in bucket.members:
            outcome = _pay_participant(
                race, participant, bucket.place, amount, user_repo, race_repo, token_client
            )
            outcomes.append(outcome)
    return outcomes


def _pay_participant(
    race: Race,
    participant: Participant,
    place: int,
    amount: int,
    user_repo: UserRepository,
    race_repo: RaceRepository,
    token_client: TokenTransferClient,
) -> TransferOutcome:
    outcome = TransferOutcome(
        user_id=participant.user_id,
        username=participant.username,
        place=place,
        amount=amount,
        success=False,
    )

    if amount <= 0:
        outcome.error = "nothing to pay"
        return outcome

    user = user_repo.get_user(participant.user_id)
    if user is None or not user.wallet_address:
        outcome.error = "no wallet address"
        logger.warning(
            "Cannot pay %s in race %s: no wallet address", participant.user_id, race.race_id
        )
        return outcome

    result = token_client.send_tokens(user.wallet_address, amount)
    if not result.success:
        outcome.error = result.error or "transfer failed"
        logger.error(
            "Payout of %s to %s in race %s failed: %s",
            amount,
            participant.user_id,
            race.race_id,
            outcome.error,
        )
        return outcome

    race_repo.record_payout(race.race_id, participant.user_id, amount, result.reference)
    user_repo.add_winnings(participant.user_id, amount, race_won=place == 1)
    outcome.success = True
    outcome.reference = result.reference
    logger.info(
        "Paid %s to %s (%s) in race %s, tx %s",
        amount,
        participant.user_id,
        PLACE_LABELS.get(place, place),
        race.race_id,
        result.reference,
    )
    return outcome
