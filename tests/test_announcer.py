import unittest
from types import SimpleNamespace
from unittest import mock

import requests
from telebot.apihelper import ApiTelegramException

from application.events import BettingClosingSoon, PayoutsSettled, RaceOpened
from application.payouts import SettlementReport
from application.prize_pool import FlatPrizePool
from application.race_engine import RaceEngine
from domain.models import User
from fakes import (
    FakeTokenClient,
    FixedClock,
    InMemoryRaceRepository,
    InMemorySelectionRepository,
    InMemoryUserRepository,
    SequenceRng,
    wallet,
)
from interfaces.telegram.announcer import ChannelMemberCounter, TelegramAnnouncer
from interfaces.telegram.handlers import require_admin
from settings import Settings

CHANNEL = "-100200300"
PROOF = "https://x.com/someone/status/1790000000000000000"


def forbidden():
    return ApiTelegramException(
        "sendMessage", "", {"error_code": 403, "description": "Forbidden: bot was blocked"}
    )


class TelegramAnnouncerTests(unittest.TestCase):
    def setUp(self):
        self.users = InMemoryUserRepository()
        self.token = FakeTokenClient()
        self.engine = RaceEngine(
            InMemoryRaceRepository(),
            InMemorySelectionRepository(),
            self.users,
            self.token,
            FlatPrizePool(1000),
            rng=SequenceRng([60.0 + i for i in range(16)]),
            clock=FixedClock(),
        )
        self.bot = mock.Mock()
        self.announcer = TelegramAnnouncer(self.bot, CHANNEL, self.users)

    def join(self, race, n, horse_id):
        self.users.add_user(
            User(
                id=f"u{n}",
                username=f"player{n}",
                first_name=f"Player {n}",
                wallet_address=wallet(n),
                verified=True,
            )
        )
        self.engine.place_bet(race.race_id, f"u{n}", horse_id)
        self.engine.confirm_bet(race.race_id, f"u{n}", PROOF)

    def recipients(self):
        return [c.args[0] for c in self.bot.send_message.call_args_list]

    def test_only_paid_winners_get_a_private_message(self):
        race = self.engine.create_race().race
        self.join(race, 1, 1)
        self.join(race, 2, 1)
        self.token.failing.add(wallet(2))
        outcome = self.engine.finish_race(race.race_id)

        self.announcer(PayoutsSettled(race=outcome.race, report=outcome.report))

        self.assertEqual(self.recipients(), [CHANNEL, "u1"])
        dm = self.bot.send_message.call_args_list[1].args[1]
        self.assertIn("1ST PLACE", dm)
        self.assertIn("0xtx1", dm)

    def test_already_settled_report_posts_nothing(self):
        race = self.engine.create_race().race
        report = SettlementReport(race_id=race.race_id, prize_pool=1000, already_settled=True)

        self.announcer(PayoutsSettled(race=race, report=report))

        self.bot.send_message.assert_not_called()

    def test_race_events_go_to_the_channel(self):
        race = self.engine.create_race().race

        self.announcer(RaceOpened(race=race))
        self.announcer(BettingClosingSoon(race=race, minutes_left=1))

        self.assertEqual(self.recipients(), [CHANNEL, CHANNEL])

    def test_telegram_errors_are_logged_and_swallowed(self):
        self.bot.send_message.side_effect = forbidden()

        with self.assertLogs("interfaces.telegram.announcer", "WARNING"):
            delivered = self.announcer.send("u1", "hello")

        self.assertFalse(delivered)

    def test_no_channel_means_no_channel_posts(self):
        announcer = TelegramAnnouncer(self.bot, None, self.users)
        race = self.engine.create_race().race

        announcer(RaceOpened(race=race))

        self.bot.send_message.assert_not_called()


class ChannelMemberCounterTests(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch("interfaces.telegram.announcer.telebot.TeleBot")
        self.bot = patcher.start().return_value
        self.addCleanup(patcher.stop)

    def test_reads_the_channel_member_count(self):
        self.bot.get_chat_member_count.return_value = 50

        self.assertEqual(ChannelMemberCounter("token", CHANNEL)(), 50)
        self.bot.get_chat_member_count.assert_called_once_with(CHANNEL)

    def test_falls_back_to_last_known_count(self):
        counter = ChannelMemberCounter("token", CHANNEL)
        self.bot.get_chat_member_count.side_effect = [
            50,
            requests.ConnectionError("timeout"),
            forbidden(),
        ]

        self.assertEqual(counter(), 50)
        with self.assertLogs("interfaces.telegram.announcer", "WARNING"):
            self.assertEqual(counter(), 50)
            self.assertEqual(counter(), 50)

    def test_without_channel_counts_nobody(self):
        counter = ChannelMemberCounter("token", None)

        self.assertEqual(counter(), 0)
        self.bot.get_chat_member_count.assert_not_called()


class RequireAdminTests(unittest.TestCase):
    def setUp(self):
        settings = Settings(telegram_bot_token="x", admin_ids=frozenset({"1"}))
        self.handler = mock.Mock()
        self.guarded = require_admin(settings)(self.handler)

    def message(self, user_id, text="/airdrop_user @player 100"):
        return SimpleNamespace(from_user=SimpleNamespace(id=user_id), text=text)

    def test_admin_reaches_the_handler(self):
        message = self.message(1)

        self.guarded(message)

        self.handler.assert_called_once_with(message)

    def test_other_users_are_ignored(self):
        with self.assertLogs("interfaces.telegram.handlers", "WARNING") as logs:
            self.guarded(self.message(2))
            self.guarded(self.message(2, text=None))

        self.handler.assert_not_called()
        self.assertIn("/airdrop_user", logs.output[0])


if __name__ == "__main__":
    unittest.main()
