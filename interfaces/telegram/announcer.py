from __future__ import annotations

import logging
from typing import Optional, Union

import requests
import telebot
from telebot.apihelper import ApiTelegramException

from application.events import (
    BettingClosed,
    BettingClosingSoon,
    PayoutsSettled,
    RaceEvent,
    RaceFinished,
    RaceOpened,
)
from domain.repositories import UserRepository
from interfaces.telegram import formatting

logger = logging.getLogger(__name__)

ChatId = Union[int, str]


class TelegramAnnouncer:
    """
    Scheduler listener that narrates races in the main channel and sends
    each paid winner a private message.

    Delivery failures are logged and dropped; a race never waits on Telegram.
    """

    def __init__(
        self,
        bot: telebot.TeleBot,
        channel_id: Optional[ChatId],
        user_repo: UserRepository,
        symbol: str = "PONY",
        explorer_tx_url: str = "https://basescan.org/tx/",
        interval_minutes: int = 10,
    ) -> None:
        self._bot = bot
        self._channel_id = channel_id
        self._users = user_repo
        self._symbol = symbol
        self._explorer_tx_url = explorer_tx_url
        self._interval_minutes = interval_minutes
        if channel_id is None:
            logger.warning("MAIN_CHANNEL_ID not set; race announcements are disabled")

    def __call__(self, event: RaceEvent) -> None:
        if isinstance(event, RaceOpened):
            self._post(
                formatting.race_opened(event.race, self._symbol, self._interval_minutes)
            )
        elif isinstance(event, BettingClosingSoon):
            self._post(formatting.betting_closing_soon(event.race, event.minutes_left))
        elif isinstance(event, BettingClosed):
            self._post(formatting.betting_closed(event.race))
        elif isinstance(event, RaceFinished):
            self._post(formatting.race_results(event.race, recovered=event.recovered))
        elif isinstance(event, PayoutsSettled):
            self._announce_payouts(event)

    def _announce_payouts(self, event: PayoutsSettled) -> None:
        report = event.report
        if report.already_settled:
            return
        self._post(formatting.settlement_summary(report, event.race, self._symbol))

        horse_names = {b.place: b.horse_name or "" for b in report.buckets}
        for transfer in report.transfers:
            if not transfer.success:
                continue
            user = self._users.get_user(transfer.user_id)
            text = formatting.winner_dm(
                transfer,
                horse_names.get(transfer.place, ""),
                user,
                self._symbol,
                self._explorer_tx_url,
            )
            self.send(transfer.user_id, text)

    def _post(self, text: str) -> None:
        if self._channel_id is None:
            return
        self.send(self._channel_id, text)

    def send(self, chat_id: ChatId, text: str) -> bool:
        try:
            self._bot.send_message(chat_id, text, disable_web_page_preview=True)
        except ApiTelegramException as exc:
            logger.warning("Could not deliver message to %s: %s", chat_id, exc)
            return False
        return True


class ChannelMemberCounter:
    """
    Member count of the main channel, for prize pools that grow with the
    community. Falls back to the last known count when Telegram errors.
    """

    def __init__(self, bot_token: str, channel_id: Optional[ChatId]) -> None:
        # API calls only; never polled.
        self._bot = telebot.TeleBot(bot_token, threaded=False)
        self._channel_id = channel_id
        self._last_count = 0

    def __call__(self) -> int:
        if self._channel_id is None:
            return self._last_count
        try:
            self._last_count = int(self._bot.get_chat_member_count(self._channel_id))
        except (ApiTelegramException, requests.RequestException) as exc:
            logger.warning(
                "Could not read member count of %s, using %s: %s",
                self._channel_id,
                self._last_count,
                exc,
            )
        return self._last_count
