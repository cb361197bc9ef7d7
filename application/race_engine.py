from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from application.payouts import (
    DEFAULT_SPLIT_BPS,
    SettlementReport,
    build_buckets,
    pay_out_buckets,
    validate_split,
)
from application.prize_pool import PrizePoolPolicy
from application.results import BetResult, CreateRaceResult, RaceStateError, RejectionReason
from application.rewards import RewardSettings, issue_participation_rewards
from domain.models import (
    Horse,
    Participant,
    Race,
    RaceStatus,
    TempSelection,
    Winner,
    snapshot_roster,
)
from domain.repositories import (
    RaceRepository,
    SelectionRepository,
    TokenTransferClient,
    UserRepository,
)

logger = logging.getLogger(__name__)

# Simulated finish times, in seconds.
MIN_FINISH_TIME = 60.0
MAX_FINISH_TIME = 90.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_race_id(now: datetime, rng: random.Random) -> str:
    return f"race_{int(now.timestamp() * 1000)}_{rng.randrange(1000)}"


@dataclass
class FinishOutcome:
    """What `finish_race` did to one race."""

    race: Race
    report: SettlementReport
    betting_closed: bool = False
    simulated: bool = False


class RaceEngine:
    """
    Race lifecycle: create, take bets, close, simulate, settle.

    The engine holds no timers. Something outside (the scheduler, an admin
    command) decides when each transition happens; the engine only makes
    sure each one happens at most once, leaning on the repositories'
    compare-and-set and insert-or-reject operations.
    """

    def __init__(
        self,
        race_repo: RaceRepository,
        selection_repo: SelectionRepository,
        user_repo: UserRepository,
        token_client: TokenTransferClient,
        prize_pool_policy: PrizePoolPolicy,
        member_count: Optional[Callable[[], int]] = None,
        split_bps: Sequence[int] = DEFAULT_SPLIT_BPS,
        reward_settings: Optional[RewardSettings] = None,
        stale_after: timedelta = timedelta(minutes=60),
        selection_ttl: timedelta = timedelta(hours=2),
        roster: Optional[List[Horse]] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        validate_split(split_bps)
        self._races = race_repo
        self._selections = selection_repo
        self._users = user_repo
        self._token_client = token_client
        self._prize_pool_policy = prize_pool_policy
        self._member_count = member_count or (lambda: 0)
        self._split_bps = tuple(split_bps)
        self._rewards = reward_settings or RewardSettings()
        self._stale_after = stale_after
        self._selection_ttl = selection_ttl
        self._roster = roster
        self._rng = rng or random.SystemRandom()
        self._clock = clock

    # Queries

    def get_open_race(self) -> Optional[Race]:
        """The race currently in `betting_open` or `racing`, if any."""

        return self._races.get_active_race()

    def get_race(self, race_id: str) -> Optional[Race]:
        return self._races.get_race(race_id)

    def list_participants(self, race_id: str) -> List[Participant]:
        return self._races.list_participants(race_id)

    def get_participant(self, race_id: str, user_id: str) -> Optional[Participant]:
        return self._races.get_participant(race_id, user_id)

    def get_selection(self, race_id: str, user_id: str) -> Optional[TempSelection]:
        return self._selections.get_selection(user_id, race_id)

    def list_pending_selections(self, race_id: str) -> List[TempSelection]:
        """Picks still waiting for their tweet proof."""

        return self._selections.list_selections(race_id)

    def list_recent_races(self, limit: int = 5) -> List[Race]:
        return self._races.list_recent_races(limit)

    # Lifecycle

    def create_race(self) -> CreateRaceResult:
        now = self._clock()
        prize_pool = self._prize_pool_policy.compute(self._member_count())
        race = Race(
            race_id=generate_race_id(now, self._rng),
            start_time=now,
            status=RaceStatus.UPCOMING,
            horses=snapshot_roster(self._roster),
            prize_pool=prize_pool,
        )
        # `upcoming` is never stored; a new race opens for betting at once.
        race.status = RaceStatus.BETTING_OPEN

        if not self._races.create_race(race):
            logger.warning("Not creating a race: another race is still active")
            return CreateRaceResult(success=False, reason=RejectionReason.ACTIVE_RACE_EXISTS)

        logger.info("Created race %s with prize pool %s", race.race_id, prize_pool)
        return CreateRaceResult(success=True, race=race)

    def place_bet(self, race_id: str, user_id: str, horse_id: int) -> BetResult:
        """
        Record a provisional pick. The bet only counts once `confirm_bet`
        is called with a proof reference.
        """

        race = self._races.get_race(race_id)
        if race is None:
            return BetResult(success=False, reason=RejectionReason.RACE_NOT_FOUND)
        if race.status != RaceStatus.BETTING_OPEN:
            return BetResult(success=False, reason=RejectionReason.BETTING_CLOSED, race=race)

        horse = race.find_horse(horse_id)
        if horse is None:
            return BetResult(success=False, reason=RejectionReason.UNKNOWN_HORSE, race=race)

        user = self._users.get_user(user_id)
        if user is None or not user.is_registered:
            return BetResult(success=False, reason=RejectionReason.NOT_REGISTERED, race=race)

        participant = self._races.get_participant(race_id, user_id)
        if participant is not None:
            return BetResult(
                success=False,
                reason=RejectionReason.ALREADY_BET,
                race=race,
                horse=race.find_horse(participant.horse_id),
                participant=participant,
            )

        selection = TempSelection(
            user_id=user_id,
            race_id=race_id,
            horse_id=horse.id,
            horse_name=horse.name,
            created_at=self._clock(),
        )
        if not self._selections.add_selection(selection):
            existing = self._selections.get_selection(user_id, race_id)
            return BetResult(
                success=False,
                reason=RejectionReason.SELECTION_EXISTS,
                race=race,
                horse=race.find_horse(existing.horse_id) if existing else None,
                selection=existing,
            )

        logger.info("User %s picked horse #%s in race %s", user_id, horse.id, race_id)
        return BetResult(success=True, race=race, horse=horse, selection=selection)

    def confirm_bet(self, race_id: str, user_id: str, proof_ref: str) -> BetResult:
        """Promote a pending pick to a participant and pay participation rewards."""

        race = self._races.get_race(race_id)
        if race is None:
            return BetResult(success=False, reason=RejectionReason.RACE_NOT_FOUND)
        if race.status != RaceStatus.BETTING_OPEN:
            return BetResult(success=False, reason=RejectionReason.BETTING_CLOSED, race=race)

        selection = self._selections.get_selection(user_id, race_id)
        if selection is None:
            if self._races.get_participant(race_id, user_id) is not None:
                return BetResult(success=False, reason=RejectionReason.ALREADY_BET, race=race)
            return BetResult(success=False, reason=RejectionReason.NO_SELECTION, race=race)

        user = self._users.get_user(user_id)
        participant = Participant(
            race_id=race_id,
            user_id=user_id,
            username=user.display_name if user else user_id,
            horse_id=selection.horse_id,
            horse_name=selection.horse_name,
            proof_ref=proof_ref,
            joined_at=self._clock(),
        )
        if not self._races.add_participant(participant):
            if self._races.get_participant(race_id, user_id) is not None:
                reason = RejectionReason.ALREADY_BET
            else:
                reason = RejectionReason.BETTING_CLOSED
            return BetResult(success=False, reason=reason, race=race)

        self._selections.delete_selection(user_id, race_id)
        self._users.increment_races_participated(user_id)
        logger.info(
            "User %s joined race %s on horse #%s", user_id, race_id, participant.horse_id
        )

        rewards = issue_participation_rewards(
            user_id, self._rewards, self._users, self._token_client
        )
        return BetResult(
            success=True,
            race=race,
            horse=race.find_horse(participant.horse_id),
            participant=participant,
            rewards=rewards,
        )

    def close_betting(self, race_id: str) -> bool:
        closed = self._races.transition_status(
            race_id, RaceStatus.BETTING_OPEN, RaceStatus.RACING
        )
        if closed:
            logger.info("Betting closed for race %s", race_id)
        else:
            logger.warning("Race %s is not open for betting; nothing to close", race_id)
        return closed

    def simulate_race(self, race_id: str) -> Optional[Race]:
        """
        Draw a finish time per horse and rank them.

        Ties on the drawn time are broken by horse id so that the ordering
        is fully determined by the draws.
        """

        race = self._races.get_race(race_id)
        if race is None or race.status != RaceStatus.RACING:
            logger.warning("Race %s is not racing; not simulating", race_id)
            return None

        for horse in race.horses:
            horse.finish_time = self._rng.uniform(MIN_FINISH_TIME, MAX_FINISH_TIME)

        ordered = sorted(race.horses, key=lambda h: (h.finish_time, h.id))
        for position, horse in enumerate(ordered, start=1):
            horse.position = position

        race.horses = ordered
        race.winner = Winner(ordered[0].id, ordered[0].name) if ordered else None
        race.status = RaceStatus.FINISHED
        race.end_time = self._clock()

        if not self._races.save_results(race):
            logger.warning("Race %s was finished by someone else", race_id)
            return None

        if ordered:
            logger.info(
                "Race %s finished, winner %s (%.2fs)",
                race_id,
                ordered[0].name,
                ordered[0].finish_time,
            )
        return race

    def settle_payouts(self, race: Race) -> SettlementReport:
        """
        Split the prize pool over the podium buckets and send the transfers.

        Settlement is claimed in storage before any transfer, so a second
        call for the same race returns an `already_settled` report and
        sends nothing.
        """

        if race.status != RaceStatus.FINISHED:
            raise RaceStateError(f"Race {race.race_id} is {race.status.value}, not finished")

        if not self._races.claim_settlement(race.race_id):
            logger.info("Race %s is already settled", race.race_id)
            return SettlementReport(
                race_id=race.race_id, prize_pool=race.prize_pool, already_settled=True
            )

        participants = self._races.list_participants(race.race_id)
        report = SettlementReport(
            race_id=race.race_id,
            prize_pool=race.prize_pool,
            participant_count=len(participants),
        )
        if not participants:
            self._races.record_total_payout(race.race_id, 0)
            logger.info("Race %s had no participants; nothing to pay", race.race_id)
            return report

        report.buckets = build_buckets(race, participants, self._split_bps)
        report.transfers = pay_out_buckets(
            race, report.buckets, self._users, self._races, self._token_client
        )
        self._races.record_total_payout(race.race_id, report.total_paid)
        race.total_payout = report.total_paid
        race.settled = True

        logger.info(
            "Race %s settled: %s paid, %s failed, %s unpaid",
            race.race_id,
            report.total_paid,
            report.failed_amount,
            report.unpaid_remainder,
        )
        return report

    def finish_race(self, race_id: str) -> Optional[FinishOutcome]:
        """
        Drive a race to `finished` and settle it, from whatever state it
        was left in. Returns None when there was nothing left to do.
        """

        race = self._races.get_race(race_id)
        if race is None:
            return None

        betting_closed = False
        if race.status in (RaceStatus.UPCOMING, RaceStatus.BETTING_OPEN):
            betting_closed = self._races.transition_status(
                race_id, race.status, RaceStatus.RACING
            )
            if not betting_closed:
                logger.warning(
                    "Could not move race %s from %s to racing; another race may be active",
                    race_id,
                    race.status.value,
                )

        simulated = False
        race = self._races.get_race(race_id)
        if race.status == RaceStatus.RACING:
            simulated = self.simulate_race(race_id) is not None
            race = self._races.get_race(race_id)

        if race.status != RaceStatus.FINISHED or race.settled:
            return None

        report = self.settle_payouts(race)
        if report.already_settled:
            return None
        return FinishOutcome(
            race=self._races.get_race(race_id) or race,
            report=report,
            betting_closed=betting_closed,
            simulated=simulated,
        )

    def recover_stale_races(self) -> List[FinishOutcome]:
        """Finish every race left unsettled for longer than the staleness threshold."""

        cutoff = self._clock() - self._stale_after
        outcomes: List[FinishOutcome] = []
        for race in self._races.list_unsettled_races(started_before=cutoff):
            logger.warning(
                "Recovering stale race %s (status %s, started %s)",
                race.race_id,
                race.status.value,
                race.start_time.isoformat(),
            )
            outcome = self.finish_race(race.race_id)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    def cleanup_expired_selections(self) -> int:
        removed = self._selections.delete_selections_before(self._clock() - self._selection_ttl)
        if removed:
            logger.info("Cleaned up %s expired horse selections", removed)
        return removed
