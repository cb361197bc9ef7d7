import unittest

from application.prize_pool import FlatPrizePool, LinearPrizePool
from application.race_engine import RaceEngine
from application.results import RaceStateError, RejectionReason
from application.rewards import RewardKind, RewardSettings
from domain.models import Race, RaceStatus, User
from fakes import (
    FakeTokenClient,
    FixedClock,
    InMemoryRaceRepository,
    InMemorySelectionRepository,
    InMemoryUserRepository,
    SequenceRng,
    fixed_member_count,
    wallet,
)

PROOF = "https://x.com/someone/status/1790000000000000000"

# Horse n finishes in 59 + n seconds, so the podium is horses 1, 2, 3.
IN_ID_ORDER = [60.0 + i for i in range(16)]


class RaceEngineTestCase(unittest.TestCase):
    prize_pool = 1000

    def setUp(self):
        self.users = InMemoryUserRepository()
        self.races = InMemoryRaceRepository()
        self.selections = InMemorySelectionRepository()
        self.token = FakeTokenClient()
        self.clock = FixedClock()
        self.engine = self.build_engine()

    def build_engine(self, **kwargs):
        kwargs.setdefault("prize_pool_policy", FlatPrizePool(self.prize_pool))
        kwargs.setdefault("rng", SequenceRng(IN_ID_ORDER))
        return RaceEngine(
            self.races,
            self.selections,
            self.users,
            self.token,
            clock=self.clock,
            **kwargs,
        )

    def register(self, n, **fields):
        user = User(
            id=f"u{n}",
            username=f"player{n}",
            first_name=f"Player {n}",
            wallet_address=wallet(n),
            verified=True,
            **fields,
        )
        self.users.add_user(user)
        return user

    def open_race(self):
        result = self.engine.create_race()
        self.assertTrue(result.success)
        return result.race

    def bet(self, race, user_id, horse_id):
        picked = self.engine.place_bet(race.race_id, user_id, horse_id)
        self.assertTrue(picked.success, picked.reason)
        confirmed = self.engine.confirm_bet(race.race_id, user_id, PROOF)
        self.assertTrue(confirmed.success, confirmed.reason)
        return confirmed


class RaceCreationTests(RaceEngineTestCase):
    def test_new_race_opens_for_betting_with_full_roster(self):
        race = self.open_race()

        self.assertEqual(race.status, RaceStatus.BETTING_OPEN)
        self.assertEqual([h.id for h in race.horses], list(range(1, 17)))
        self.assertEqual(race.prize_pool, 1000)
        self.assertEqual(self.engine.get_open_race().race_id, race.race_id)

    def test_only_one_race_can_be_active(self):
        self.open_race()
        self.clock.advance(seconds=1)

        result = self.engine.create_race()

        self.assertFalse(result.success)
        self.assertEqual(result.reason, RejectionReason.ACTIVE_RACE_EXISTS)

    def test_next_race_can_open_once_the_current_one_finished(self):
        race = self.open_race()
        self.engine.finish_race(race.race_id)
        self.clock.advance(minutes=10)

        result = self.engine.create_race()

        self.assertTrue(result.success)
        self.assertNotEqual(result.race.race_id, race.race_id)

    def test_prize_pool_follows_member_count(self):
        engine = self.build_engine(
            prize_pool_policy=LinearPrizePool(base=700, per_member=100),
            member_count=fixed_member_count(5),
        )

        result = engine.create_race()

        self.assertEqual(result.race.prize_pool, 1200)


class BettingTests(RaceEngineTestCase):
    def setUp(self):
        super().setUp()
        self.register(1)
        self.race = self.open_race()

    def test_pick_then_confirm_creates_participant(self):
        result = self.bet(self.race, "u1", 5)

        self.assertEqual(result.participant.horse_id, 5)
        self.assertEqual(result.participant.proof_ref, PROOF)
        self.assertIsNone(self.engine.get_selection(self.race.race_id, "u1"))
        self.assertEqual(self.users.get_user("u1").races_participated, 1)

    def test_second_pick_is_rejected_and_first_is_kept(self):
        self.engine.place_bet(self.race.race_id, "u1", 5)

        second = self.engine.place_bet(self.race.race_id, "u1", 7)
        confirmed = self.engine.confirm_bet(self.race.race_id, "u1", PROOF)

        self.assertFalse(second.success)
        self.assertEqual(second.reason, RejectionReason.SELECTION_EXISTS)
        self.assertEqual(second.horse.id, 5)
        self.assertEqual(confirmed.participant.horse_id, 5)

    def test_confirm_without_pick_is_rejected(self):
        result = self.engine.confirm_bet(self.race.race_id, "u1", PROOF)

        self.assertFalse(result.success)
        self.assertEqual(result.reason, RejectionReason.NO_SELECTION)

    def test_confirm_twice_is_rejected(self):
        self.bet(self.race, "u1", 5)

        again = self.engine.confirm_bet(self.race.race_id, "u1", PROOF)
        repick = self.engine.place_bet(self.race.race_id, "u1", 6)

        self.assertEqual(again.reason, RejectionReason.ALREADY_BET)
        self.assertEqual(repick.reason, RejectionReason.ALREADY_BET)
        self.assertEqual(len(self.engine.list_participants(self.race.race_id)), 1)

    def test_unregistered_user_cannot_pick(self):
        self.users.add_user(User(id="u9", username="lurker", first_name="Lurker"))

        result = self.engine.place_bet(self.race.race_id, "u9", 5)

        self.assertEqual(result.reason, RejectionReason.NOT_REGISTERED)

    def test_unknown_horse_and_unknown_race(self):
        self.assertEqual(
            self.engine.place_bet(self.race.race_id, "u1", 99).reason,
            RejectionReason.UNKNOWN_HORSE,
        )
        self.assertEqual(
            self.engine.place_bet("race_missing", "u1", 1).reason,
            RejectionReason.RACE_NOT_FOUND,
        )

    def test_bets_are_rejected_once_betting_closed(self):
        self.engine.place_bet(self.race.race_id, "u1", 5)
        self.assertTrue(self.engine.close_betting(self.race.race_id))

        self.register(2)
        pick = self.engine.place_bet(self.race.race_id, "u2", 3)
        confirm = self.engine.confirm_bet(self.race.race_id, "u1", PROOF)

        self.assertEqual(pick.reason, RejectionReason.BETTING_CLOSED)
        self.assertEqual(confirm.reason, RejectionReason.BETTING_CLOSED)
        self.assertEqual(self.engine.list_participants(self.race.race_id), [])

    def test_close_betting_only_once(self):
        self.assertTrue(self.engine.close_betting(self.race.race_id))
        self.assertFalse(self.engine.close_betting(self.race.race_id))

    def test_expired_picks_are_cleaned_up(self):
        self.engine.place_bet(self.race.race_id, "u1", 5)
        self.clock.advance(hours=3)

        removed = self.engine.cleanup_expired_selections()

        self.assertEqual(removed, 1)
        self.assertIsNone(self.engine.get_selection(self.race.race_id, "u1"))


    def test_unconfirmed_picks_are_listed_as_pending(self):
        self.register(2)
        self.engine.place_bet(self.race.race_id, "u1", 5)
        self.bet(self.race, "u2", 6)

        pending = self.engine.list_pending_selections(self.race.race_id)

        self.assertEqual([s.user_id for s in pending], ["u1"])


class ParticipationRewardTests(RaceEngineTestCase):
    def test_first_confirmed_bet_pays_race_reward_and_signup_bonus(self):
        self.engine = self.build_engine(
            reward_settings=RewardSettings(signup_bonus=500, race_reward=100)
        )
        self.register(1)
        race = self.open_race()

        result = self.bet(race, "u1", 2)

        kinds = [r.kind for r in result.rewards]
        self.assertEqual(kinds, [RewardKind.RACE_REWARD, RewardKind.SIGNUP_BONUS])
        self.assertEqual(self.token.amounts_to(wallet(1)), [100, 500])
        user = self.users.get_user("u1")
        self.assertTrue(user.bonus_received)
        self.assertEqual(user.race_rewards_earned, 100)

    def test_race_reward_stops_at_cap(self):
        self.engine = self.build_engine(
            reward_settings=RewardSettings(race_reward=100, race_reward_cap=100)
        )
        self.register(1)
        first = self.open_race()
        self.bet(first, "u1", 2)
        self.engine.finish_race(first.race_id)
        self.clock.advance(minutes=10)
        second = self.open_race()

        result = self.bet(second, "u1", 2)

        self.assertEqual(result.rewards, [])
        self.assertEqual(self.users.get_user("u1").race_rewards_earned, 100)


class SimulationTests(RaceEngineTestCase):
    def test_positions_are_one_to_n_with_winner_first(self):
        race = self.open_race()
        self.engine.close_betting(race.race_id)

        finished = self.engine.simulate_race(race.race_id)

        self.assertEqual([h.position for h in finished.horses], list(range(1, 17)))
        self.assertEqual(finished.winner.horse_id, 1)
        self.assertEqual(finished.status, RaceStatus.FINISHED)
        self.assertEqual(self.engine.get_race(race.race_id).winner.horse_name, "Thunder Bolt")

    def test_ties_are_broken_by_horse_id(self):
        self.engine = self.build_engine(rng=SequenceRng([75.0]))
        race = self.open_race()
        self.engine.close_betting(race.race_id)

        finished = self.engine.simulate_race(race.race_id)

        self.assertEqual([h.id for h in finished.horses], list(range(1, 17)))

    def test_simulate_requires_racing_status(self):
        race = self.open_race()

        self.assertIsNone(self.engine.simulate_race(race.race_id))
        self.assertEqual(self.engine.get_race(race.race_id).status, RaceStatus.BETTING_OPEN)


class SettlementTests(RaceEngineTestCase):
    def setUp(self):
        super().setUp()
        for n in (1, 2, 3):
            self.register(n)
        self.race = self.open_race()

    def test_split_across_podium_buckets(self):
        self.bet(self.race, "u1", 1)
        self.bet(self.race, "u2", 1)
        self.bet(self.race, "u3", 3)

        outcome = self.engine.finish_race(self.race.race_id)
        report = outcome.report

        self.assertTrue(outcome.betting_closed)
        self.assertTrue(outcome.simulated)
        self.assertEqual(self.token.amounts_to(wallet(1)), [425])
        self.assertEqual(self.token.amounts_to(wallet(2)), [425])
        self.assertEqual(self.token.amounts_to(wallet(3)), [25])
        self.assertEqual(report.total_paid, 875)
        self.assertEqual(report.unpaid_remainder, 125)
        self.assertLessEqual(report.total_paid, self.race.prize_pool)

        stored = self.engine.get_race(self.race.race_id)
        self.assertTrue(stored.settled)
        self.assertEqual(stored.total_payout, 875)
        self.assertEqual(self.engine.get_participant(self.race.race_id, "u1").payout, 425)
        winner = self.users.get_user("u1")
        self.assertEqual(winner.races_won, 1)
        self.assertEqual(winner.total_won, 425)
        self.assertEqual(self.users.get_user("u3").races_won, 0)

    def test_no_participants_pays_nothing(self):
        outcome = self.engine.finish_race(self.race.race_id)

        self.assertTrue(outcome.report.no_participants)
        self.assertEqual(outcome.report.total_paid, 0)
        self.assertEqual(self.token.transfers, [])
        self.assertTrue(self.engine.get_race(self.race.race_id).settled)

    def test_no_winners_forfeits_whole_pool(self):
        self.bet(self.race, "u1", 16)

        report = self.engine.finish_race(self.race.race_id).report

        self.assertFalse(report.no_participants)
        self.assertTrue(report.no_winners)
        self.assertEqual(report.unpaid_remainder, 1000)
        self.assertEqual(self.token.transfers, [])

    def test_failed_transfer_is_recorded_and_others_still_paid(self):
        self.bet(self.race, "u1", 1)
        self.bet(self.race, "u2", 1)
        self.token.failing.add(wallet(2))

        report = self.engine.finish_race(self.race.race_id).report

        self.assertEqual(len(report.failures), 1)
        self.assertEqual(report.failures[0].user_id, "u2")
        self.assertEqual(report.failed_amount, 425)
        self.assertEqual(report.total_paid, 425)
        self.assertEqual(self.engine.get_participant(self.race.race_id, "u2").payout, 0)
        self.assertEqual(self.users.get_user("u2").total_won, 0)

    def test_settlement_happens_once(self):
        self.bet(self.race, "u1", 1)
        outcome = self.engine.finish_race(self.race.race_id)

        again = self.engine.settle_payouts(outcome.race)

        self.assertTrue(again.already_settled)
        self.assertIsNone(self.engine.finish_race(self.race.race_id))
        self.assertEqual(len(self.token.transfers), 1)

    def test_settle_requires_finished_race(self):
        with self.assertRaises(RaceStateError):
            self.engine.settle_payouts(self.race)


class RecoveryTests(RaceEngineTestCase):
    def test_stale_race_is_finished_exactly_once(self):
        self.register(1)
        race = self.open_race()
        self.bet(race, "u1", 1)
        self.clock.advance(minutes=61)

        first = self.engine.recover_stale_races()
        second = self.engine.recover_stale_races()

        self.assertEqual([o.race.race_id for o in first], [race.race_id])
        self.assertEqual(second, [])
        self.assertEqual(self.token.amounts_to(wallet(1)), [850])
        self.assertIsNone(self.engine.get_open_race())

    def test_fresh_race_is_left_alone(self):
        race = self.open_race()
        self.clock.advance(minutes=5)

        self.assertEqual(self.engine.recover_stale_races(), [])
        self.assertEqual(self.engine.get_race(race.race_id).status, RaceStatus.BETTING_OPEN)

    def test_race_stuck_in_racing_is_simulated_and_settled(self):
        race = self.open_race()
        self.engine.close_betting(race.race_id)
        self.clock.advance(hours=2)

        outcomes = self.engine.recover_stale_races()

        self.assertEqual(len(outcomes), 1)
        self.assertFalse(outcomes[0].betting_closed)
        self.assertTrue(outcomes[0].simulated)
        self.assertEqual(outcomes[0].race.status, RaceStatus.FINISHED)

    def test_recent_races_are_newest_first(self):
        first = self.open_race()
        self.engine.finish_race(first.race_id)
        self.clock.advance(minutes=10)
        second = self.open_race()

        recent = self.engine.list_recent_races(5)

        self.assertEqual([r.race_id for r in recent], [second.race_id, first.race_id])
        self.assertEqual(len(self.engine.list_recent_races(1)), 1)

    def test_blocked_start_is_logged_and_race_left_untouched(self):
        self.open_race()
        queued = Race(
            race_id="race_queued",
            start_time=self.clock.now,
            status=RaceStatus.UPCOMING,
            horses=[],
            prize_pool=0,
        )
        self.races.create_race(queued)

        with self.assertLogs("application.race_engine", "WARNING") as logs:
            outcome = self.engine.finish_race("race_queued")

        self.assertIsNone(outcome)
        self.assertIn("race_queued", logs.output[0])
        self.assertEqual(self.engine.get_race("race_queued").status, RaceStatus.UPCOMING)


if __name__ == "__main__":
    unittest.main()
