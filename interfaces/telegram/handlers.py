from __future__ import annotations

import functools
import logging
import re
from typing import Optional

import telebot
from telebot.apihelper import ApiTelegramException
from telebot.types import CallbackQuery, InlineKeyboardButton, InlineKeyboardMarkup

from application.race_engine import RaceEngine, utc_now
from application.registration import (
    ExternalContext,
    find_user,
    get_or_create_user,
    mark_verified,
    purge_user,
    referral_link,
    register_wallet,
    start,
)
from application.results import BetResult, RejectionReason
from application.rewards import send_manual_airdrop
from application.scheduler import RaceScheduler
from domain.models import RaceStatus
from domain.repositories import TokenTransferClient, UserRepository
from interfaces.telegram import formatting
from interfaces.telegram.callback_data import (
    encode_horse_pick,
    encode_registration_step,
    parse_horse_pick,
    parse_registration_step,
)
from settings import Settings

logger = logging.getLogger(__name__)

TWEET_URL_PATTERN = re.compile(
    r"^https?://(www\.|mobile\.)?(twitter|x)\.com/[A-Za-z0-9_]{1,15}/status/\d+",
    re.IGNORECASE,
)

GENERIC_ERROR = "❌ Something went wrong. Please try again."


def is_tweet_url(url: str) -> bool:
    return bool(TWEET_URL_PATTERN.match(url or ""))


def _command_argument(text: Optional[str]) -> str:
    """Everything after the command word, e.g. "5" for "/horse 5"."""

    parts = (text or "").split(maxsplit=1)
    return parts[1].strip() if len(parts) > 1 else ""


def _build_external_context(from_user) -> ExternalContext:
    """Extract a channel-agnostic context object from a Telegram user."""

    return ExternalContext(
        provider="telegram",
        provider_user_id=str(from_user.id),
        first_name=from_user.first_name or "",
        username=from_user.username or "",
    )


def _chat_id(update):
    if isinstance(update, CallbackQuery):
        return update.message.chat.id
    return update.chat.id


def require_admin(settings: Settings):
    """Decorator for admin commands: non-admins are logged and ignored."""

    def decorator(handler):
        @functools.wraps(handler)
        def wrapper(message):
            if not settings.is_admin(message.from_user.id):
                command = (message.text or "").split(maxsplit=1)[:1]
                logger.warning(
                    "Unauthorized admin command %s from %s",
                    command[0] if command else "?",
                    message.from_user.id,
                )
                return
            handler(message)

        return wrapper

    return decorator


def create_telegram_bot(
    bot_token: str,
    engine: RaceEngine,
    user_repo: UserRepository,
    token_client: TokenTransferClient,
    settings: Settings,
    scheduler: Optional[RaceScheduler] = None,
) -> telebot.TeleBot:
    """
    Configure and return a TeleBot instance wired to the application layer.

    This module contains only Telegram-specific concerns: parsing Telegram
    messages/callbacks, admin gating, and turning application results into
    text.
    """

    bot = telebot.TeleBot(bot_token)
    symbol = settings.token_symbol
    reward_settings = settings.reward_settings()

    def reply(chat_id, text: str, reply_markup=None) -> None:
        try:
            bot.send_message(
                chat_id, text, reply_markup=reply_markup, disable_web_page_preview=True
            )
        except ApiTelegramException as exc:
            logger.warning("Could not reply in chat %s: %s", chat_id, exc)

    def guarded(handler):
        @functools.wraps(handler)
        def wrapper(update):
            try:
                handler(update)
            except Exception:
                logger.exception("Handler %s failed", handler.__name__)
                reply(_chat_id(update), GENERIC_ERROR)

        return wrapper

    admin_only = require_admin(settings)

    def bot_username() -> str:
        if settings.bot_username:
            return settings.bot_username
        return bot.get_me().username

    # Registration

    def send_registration_intro(chat_id, user_id: str) -> None:
        markup = InlineKeyboardMarkup(row_width=1)
        if settings.twitter_url:
            markup.add(InlineKeyboardButton("🐦 Follow us on Twitter", url=settings.twitter_url))
        markup.add(
            InlineKeyboardButton(
                "✅ I followed! Continue →",
                callback_data=encode_registration_step(2, user_id),
            )
        )
        reply(
            chat_id,
            "🏇 REGISTRATION\n\n"
            f"🎁 Get {formatting.format_amount(settings.signup_bonus)} ${symbol} just for signing up!\n\n"
            "✅ Step 1: Join Telegram\n"
            "⬜ Step 2: Follow us on Twitter\n"
            "⬜ Step 3: Share the registration tweet\n"
            "⬜ Step 4: Submit your wallet\n"
            "⬜ Step 5: Receive your signup bonus\n\n"
            "Follow us, then press Continue.",
            reply_markup=markup,
        )

    def begin_registration(message) -> None:
        if message.chat.type != "private":
            markup = InlineKeyboardMarkup()
            markup.add(
                InlineKeyboardButton(
                    "🔐 Register in private chat",
                    url=f"https://t.me/{bot_username()}?start=register",
                )
            )
            reply(
                message.chat.id,
                "🔒 Registration is private! Press the button to continue in a DM.",
                reply_markup=markup,
            )
            return

        ctx = _build_external_context(message.from_user)
        user = get_or_create_user(ctx, user_repo).user
        if user.is_registered:
            reply(
                message.chat.id,
                "✅ Already registered! Use /race to join the current race "
                "and /balance to see your stats.",
            )
            return
        if user.verified:
            reply(message.chat.id, "💼 Reply with your Base (Ethereum) wallet address to finish.")
            return
        send_registration_intro(message.chat.id, user.id)

    @bot.message_handler(commands=["start"])
    @guarded
    def handle_start(message):
        argument = _command_argument(message.text)
        ctx = _build_external_context(message.from_user)

        if argument.lower() == "register":
            start(ctx, None, user_repo)
            begin_registration(message)
            return

        result = start(ctx, argument or None, user_repo)
        lines = [
            "🏇 Welcome to Pixel Ponies!",
            "",
            f"🎁 Signup bonus: {formatting.format_amount(settings.signup_bonus)} ${symbol} "
            "when you register!",
            "",
            "/register - register your wallet",
            "/race - see the current race",
            "/help - all commands",
        ]
        if result.referrer is not None:
            lines += ["", f"👥 You were invited by {result.referrer.display_name}."]
        reply(message.chat.id, "\n".join(lines))

    @bot.message_handler(commands=["help"])
    @guarded
    def handle_help(message):
        lines = [
            "/register               - register your wallet",
            "/race                   - current race and horses",
            "/horse <number>         - pick a horse",
            "/verify <tweet url>     - confirm your pick with your tweet",
            "/balance                - your stats",
            "/referral               - your referral link",
            "/invite                 - invite friends",
            "/airdrop                - your signup bonus status",
            "/racetime               - time left in the current race",
        ]
        if settings.is_admin(message.from_user.id):
            lines += [
                "",
                "/admin_race             - finish the current race and start a new one",
                "/admin_recover          - settle stale races now",
                "/admin_balance          - bot wallet balance",
                "/list_racers            - participants of the current race",
                "/list_users             - registered users",
                "/race_history           - last races and their payouts",
                "/airdrop_user <user> <amount> - send tokens to a user",
                "/delete_user <user>     - purge a user record",
            ]
        reply(message.chat.id, "\n".join(lines))

    @bot.message_handler(commands=["register"])
    @guarded
    def handle_register(message):
        begin_registration(message)

    @bot.callback_query_handler(func=lambda call: call.data.startswith("reg_step"))
    @guarded
    def handle_registration_step(call):
        try:
            step, user_id = parse_registration_step(call.data)
        except ValueError:
            bot.answer_callback_query(call.id, "Invalid step.")
            return

        if user_id != str(call.from_user.id):
            bot.answer_callback_query(call.id, "This button is not for you.")
            return
        bot.answer_callback_query(call.id)

        if step == 2:
            tweet = formatting.registration_tweet(bot_username(), settings.signup_bonus, symbol)
            markup = InlineKeyboardMarkup(row_width=1)
            markup.add(
                InlineKeyboardButton(
                    "🐦 Post registration tweet", url=formatting.tweet_intent_url(tweet)
                )
            )
            markup.add(
                InlineKeyboardButton(
                    "✅ I tweeted! Continue →",
                    callback_data=encode_registration_step(3, user_id),
                )
            )
            bot.edit_message_text(
                "✅ Step 2 complete!\n\n"
                "⬜ Step 3: Share the registration tweet\n\n"
                "Post the tweet, then press Continue.",
                chat_id=call.message.chat.id,
                message_id=call.message.message_id,
                reply_markup=markup,
            )
            return

        mark_verified(_build_external_context(call.from_user), user_repo)
        bot.edit_message_text(
            "✅ Step 3 complete!\n\n"
            "⬜ Step 4: Reply to this message with your Base (Ethereum) wallet address "
            f"to receive your {formatting.format_amount(settings.signup_bonus)} ${symbol} "
            "signup bonus.",
            chat_id=call.message.chat.id,
            message_id=call.message.message_id,
        )

    # Racing

    def reply_to_pick(chat_id, result: BetResult) -> None:
        if result.success:
            tweet = formatting.race_tweet(
                result.horse, settings.race_reward, symbol, bot_username()
            )
            markup = InlineKeyboardMarkup()
            markup.add(
                InlineKeyboardButton("🐦 Tweet now", url=formatting.tweet_intent_url(tweet))
            )
            reply(
                chat_id,
                f"🐎 Great choice: {result.horse.label}\n\n"
                "🎯 Next steps:\n"
                "1. Press \"Tweet now\"\n"
                "2. Copy the link of your tweet\n"
                "3. Send /verify TWEET_URL\n\n"
                "⚠️ Your pick only counts once it is verified!",
                reply_markup=markup,
            )
        elif result.reason == RejectionReason.SELECTION_EXISTS and result.horse:
            reply(
                chat_id,
                f"⚠️ You already picked {result.horse.label}. "
                "Tweet it and send /verify TWEET_URL.",
            )
        elif result.reason == RejectionReason.ALREADY_BET and result.horse:
            reply(chat_id, f"⚠️ You already picked {result.horse.label} in this race!")
        else:
            reply(chat_id, formatting.reason_message(result.reason))

    @bot.message_handler(commands=["race"])
    @guarded
    def handle_race(message):
        race = engine.get_open_race()
        if race is None:
            reply(message.chat.id, "⏰ No active race. The next one starts soon!")
            return

        user_id = str(message.from_user.id)
        participants = engine.list_participants(race.race_id)
        own_pick = None
        for participant in participants:
            if participant.user_id == user_id:
                own_pick = f"#{participant.horse_id} {participant.horse_name}"
        if own_pick is None:
            selection = engine.get_selection(race.race_id, user_id)
            if selection is not None:
                own_pick = f"#{selection.horse_id} {selection.horse_name} (not verified yet)"

        markup = None
        if race.status == RaceStatus.BETTING_OPEN:
            markup = InlineKeyboardMarkup(row_width=4)
            markup.add(
                *[
                    InlineKeyboardButton(
                        f"{h.id} {h.emoji}",
                        callback_data=encode_horse_pick(race.race_id, h.id),
                    )
                    for h in sorted(race.horses, key=lambda h: h.id)
                ]
            )

        reply(
            message.chat.id,
            formatting.race_board(
                race, len(participants), symbol, settings.race_reward, own_pick
            ),
            reply_markup=markup,
        )

    @bot.message_handler(commands=["horse"])
    @guarded
    def handle_horse(message):
        try:
            horse_id = int(_command_argument(message.text))
        except ValueError:
            reply(message.chat.id, "Usage: /horse NUMBER")
            return

        race = engine.get_open_race()
        if race is None:
            reply(message.chat.id, formatting.reason_message(RejectionReason.RACE_NOT_FOUND))
            return

        result = engine.place_bet(race.race_id, str(message.from_user.id), horse_id)
        reply_to_pick(message.chat.id, result)

    @bot.callback_query_handler(func=lambda call: call.data.startswith("horse:"))
    @guarded
    def handle_horse_button(call):
        try:
            race_id, horse_id = parse_horse_pick(call.data)
        except ValueError:
            bot.answer_callback_query(call.id, "Invalid selection.")
            return

        result = engine.place_bet(race_id, str(call.from_user.id), horse_id)
        bot.answer_callback_query(call.id)
        reply_to_pick(call.message.chat.id, result)

    @bot.message_handler(commands=["verify"])
    @guarded
    def handle_verify(message):
        url = _command_argument(message.text)
        if not is_tweet_url(url):
            reply(message.chat.id, "Usage: /verify TWEET_URL (a twitter.com or x.com status link)")
            return

        race = engine.get_open_race()
        if race is None:
            reply(message.chat.id, formatting.reason_message(RejectionReason.RACE_NOT_FOUND))
            return

        result = engine.confirm_bet(race.race_id, str(message.from_user.id), url)
        if not result.success:
            reply(message.chat.id, formatting.reason_message(result.reason))
            return

        lines = [
            "✅ Tweet verified!",
            "",
            f"🎉 You're in the race on {result.horse.label if result.horse else 'your horse'}!",
        ]
        lines += formatting.reward_lines(result.rewards, symbol)
        lines.append("🍀 Good luck!")
        reply(message.chat.id, "\n".join(lines))

    @bot.message_handler(commands=["balance"])
    @guarded
    def handle_balance(message):
        user = user_repo.get_user(str(message.from_user.id))
        if user is None:
            reply(message.chat.id, formatting.reason_message(RejectionReason.USER_NOT_FOUND))
            return
        reply(message.chat.id, formatting.balance_card(user, symbol))

    @bot.message_handler(commands=["referral", "invite"])
    @guarded
    def handle_referral(message):
        ctx = _build_external_context(message.from_user)
        user = get_or_create_user(ctx, user_repo).user
        link = referral_link(bot_username(), user.referral_code)
        reply(
            message.chat.id,
            "👥 Invite friends and earn "
            f"{formatting.format_amount(settings.referral_reward)} ${symbol} "
            "when they register and race!\n\n"
            f"🔗 Your link: {link}\n"
            f"🎫 Your code: {user.referral_code}\n\n"
            f"Referrals: {user.referral_count}\n"
            f"Earned: {formatting.format_amount(user.referral_earnings)} ${symbol}",
        )

    @bot.message_handler(commands=["airdrop"])
    @guarded
    def handle_airdrop(message):
        user = user_repo.get_user(str(message.from_user.id))
        reply(message.chat.id, formatting.airdrop_status(user, settings.signup_bonus, symbol))

    @bot.message_handler(commands=["racetime"])
    @guarded
    def handle_racetime(message):
        race = engine.get_open_race()
        next_tick = scheduler.next_tick_at() if scheduler is not None else None
        seconds_left = None
        if next_tick is not None:
            seconds_left = int((next_tick - utc_now()).total_seconds())
        reply(message.chat.id, formatting.race_countdown(race, seconds_left))

    # Admin

    @bot.message_handler(commands=["admin_race"])
    @admin_only
    @guarded
    def handle_admin_race(message):
        if scheduler is not None:
            race = scheduler.run_manual_tick()
        else:
            current = engine.get_open_race()
            if current is not None:
                engine.finish_race(current.race_id)
            race = engine.create_race().race
        if race is None:
            reply(message.chat.id, "❌ Could not start a race. Check the logs.")
            return
        logger.info("Admin %s started race %s", message.from_user.id, race.race_id)
        reply(
            message.chat.id,
            "✅ Manual race started!\n\n"
            f"Race ID: {race.race_id}\n"
            f"Prize pool: {formatting.format_amount(race.prize_pool)} ${symbol}",
        )

    @bot.message_handler(commands=["admin_recover"])
    @admin_only
    @guarded
    def handle_admin_recover(message):
        if scheduler is not None:
            outcomes = scheduler.run_maintenance()
        else:
            outcomes = engine.recover_stale_races()
        if not outcomes:
            reply(message.chat.id, "✅ No stale races.")
            return
        lines = [f"🔧 Recovered {len(outcomes)} race(s):"]
        for outcome in outcomes:
            lines.append(
                f"{outcome.race.race_id}: paid "
                f"{formatting.format_amount(outcome.report.total_paid)} ${symbol}, "
                f"{len(outcome.report.failures)} failed"
            )
        reply(message.chat.id, "\n".join(lines))

    @bot.message_handler(commands=["list_racers"])
    @admin_only
    @guarded
    def handle_list_racers(message):
        race = engine.get_open_race()
        if race is None:
            reply(message.chat.id, "❌ No active race found")
            return
        text = formatting.participants_list(
            race,
            engine.list_participants(race.race_id),
            pending=len(engine.list_pending_selections(race.race_id)),
        )
        reply(message.chat.id, text)

    @bot.message_handler(commands=["list_users"])
    @admin_only
    @guarded
    def handle_list_users(message):
        users = user_repo.get_all_users()
        reply(message.chat.id, formatting.users_list(users, user_repo.count_users()))

    @bot.message_handler(commands=["admin_balance"])
    @admin_only
    @guarded
    def handle_admin_balance(message):
        address = token_client.get_bot_address()
        balance = token_client.get_balance()
        reply(
            message.chat.id,
            "💰 Bot wallet\n\n"
            f"Address: {address}\n"
            f"Balance: {balance:,f} ${symbol}",
        )

    @bot.message_handler(commands=["race_history"])
    @admin_only
    @guarded
    def handle_race_history(message):
        reply(message.chat.id, formatting.race_history(engine.list_recent_races(5), symbol))

    @bot.message_handler(commands=["airdrop_user"])
    @admin_only
    @guarded
    def handle_airdrop_user(message):
        parts = _command_argument(message.text).split()
        if len(parts) != 2 or not parts[1].isdigit() or int(parts[1]) <= 0:
            reply(message.chat.id, "Usage: /airdrop_user <username or id> <amount>")
            return

        user = find_user(user_repo, parts[0])
        if user is None:
            reply(message.chat.id, f"❌ User {parts[0]} not found")
            return

        outcome = send_manual_airdrop(user.id, int(parts[1]), user_repo, token_client)
        logger.info(
            "Admin %s airdropped %s to %s: %s",
            message.from_user.id,
            outcome.amount,
            user.id,
            "ok" if outcome.success else outcome.error,
        )
        reply(
            message.chat.id,
            formatting.airdrop_result(outcome, user, symbol, settings.explorer_tx_url),
        )

    @bot.message_handler(commands=["delete_user"])
    @admin_only
    @guarded
    def handle_delete_user(message):
        handle = _command_argument(message.text)
        if not handle:
            reply(message.chat.id, "Usage: /delete_user <username or id>")
            return
        user = purge_user(handle, user_repo)
        if user is None:
            reply(message.chat.id, f"❌ User {handle} not found")
            return
        logger.warning("Admin %s purged user %s", message.from_user.id, user.id)
        reply(message.chat.id, f"🗑️ Deleted @{user.display_name} ({user.id})")

    # Must stay last: catches plain text in private chats.
    @bot.message_handler(
        func=lambda m: m.chat.type == "private" and not (m.text or "").startswith("/"),
        content_types=["text"],
    )
    @guarded
    def handle_wallet_submission(message):
        user = user_repo.get_user(str(message.from_user.id))
        if user is None or not user.verified or user.wallet_address:
            return

        ctx = _build_external_context(message.from_user)
        result = register_wallet(ctx, message.text, user_repo, token_client, reward_settings)
        if not result.success:
            reply(message.chat.id, formatting.reason_message(result.reason))
            return

        lines = [
            "✅ REGISTRATION COMPLETE!",
            "",
            f"💎 Wallet: {formatting.short_address(result.user.wallet_address)}",
        ]
        lines += formatting.reward_lines(result.rewards, symbol)
        lines += [
            "",
            "🏇 You're ready to race!",
            "/race - join the current race",
            "/balance - check your stats",
        ]
        reply(message.chat.id, "\n".join(lines))

    return bot
