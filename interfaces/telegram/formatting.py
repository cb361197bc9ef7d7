from __future__ import annotations

from typing import Iterable, List, Optional
from urllib.parse import quote

from application.payouts import SettlementReport, TransferOutcome
from application.results import RejectionReason
from application.rewards import RewardKind, RewardOutcome
from domain.models import Horse, Participant, Race, RaceStatus, User

PLACE_MEDALS = {1: "🥇", 2: "🥈", 3: "🥉"}

REASON_MESSAGES = {
    RejectionReason.RACE_NOT_FOUND: "❌ No active race right now. The next one starts soon!",
    RejectionReason.BETTING_CLOSED: "🔒 Betting is closed for this race. Wait for the next one!",
    RejectionReason.UNKNOWN_HORSE: "❌ Unknown horse number. Use /race to see the field.",
    RejectionReason.ALREADY_BET: "⚠️ You are already in this race.",
    RejectionReason.SELECTION_EXISTS: "⚠️ You already picked a horse. Tweet it and /verify TWEET_URL.",
    RejectionReason.NO_SELECTION: "❌ Pick your horse first with /horse NUMBER.",
    RejectionReason.NOT_REGISTERED: "❌ Please complete registration first with /register.",
    RejectionReason.INVALID_ADDRESS: (
        "❌ Invalid wallet address. Please send a valid Base/Ethereum address (starts with 0x)."
    ),
    RejectionReason.ACTIVE_RACE_EXISTS: "⚠️ A race is already running.",
    RejectionReason.USER_NOT_FOUND: "❌ Use /start first.",
}

REWARD_LABELS = {
    RewardKind.SIGNUP_BONUS: "Signup bonus",
    RewardKind.RACE_REWARD: "Race reward",
    RewardKind.REFERRAL_REWARD: "Referral reward",
    RewardKind.REFERRED_BONUS: "Referral welcome bonus",
    RewardKind.AIRDROP: "Airdrop",
}


def format_amount(amount: int) -> str:
    """Compact token amount: 10000000000 -> 10B, 250000000 -> 250M."""

    for divisor, suffix in ((10**9, "B"), (10**6, "M"), (10**3, "K")):
        if amount >= divisor:
            value = f"{amount / divisor:,.3f}".rstrip("0").rstrip(".")
            return f"{value}{suffix}"
    return f"{amount:,}"


def reason_message(reason: Optional[RejectionReason]) -> str:
    if reason is None:
        return "❌ Something went wrong. Please try again."
    return REASON_MESSAGES.get(reason, "❌ Request rejected.")


def short_address(address: str) -> str:
    if len(address) <= 14:
        return address
    return f"{address[:8]}...{address[-6:]}"


def tx_link(explorer_tx_url: str, reference: Optional[str]) -> str:
    if not reference:
        return ""
    return f"{explorer_tx_url}{reference}"


def tweet_intent_url(text: str) -> str:
    return f"https://twitter.com/intent/tweet?text={quote(text)}"


def horse_grid(horses: Iterable[Horse], per_row: int = 3) -> str:
    rows: List[str] = []
    row: List[str] = []
    for horse in horses:
        row.append(f"{horse.id}. {horse.label}")
        if len(row) == per_row:
            rows.append("  ".join(row))
            row = []
    if row:
        rows.append("  ".join(row))
    return "\n".join(rows)


def _status_label(status: RaceStatus) -> str:
    return status.value.replace("_", " ").upper()


def race_board(
    race: Race,
    participant_count: int,
    symbol: str,
    race_reward: int = 0,
    own_pick: Optional[str] = None,
) -> str:
    lines = [
        f"🏁 CURRENT RACE: {race.race_id}",
        f"🟢 Status: {_status_label(race.status)}",
        "",
        f"🎯 Your pick: {own_pick or 'None yet'}",
        "",
        "🐎 Choose your pony:",
        horse_grid(sorted(race.horses, key=lambda h: h.id)),
        "",
        f"💰 Prize pool: {format_amount(race.prize_pool)} ${symbol}",
        f"👥 Players: {participant_count}",
    ]
    if race_reward:
        lines.append(f"🎁 Race reward: {format_amount(race_reward)} ${symbol} per participant!")
    lines += [
        "",
        "🎯 To enter:",
        "1. Pick a pony: /horse NUMBER",
        "2. Tweet your pick",
        "3. Verify: /verify TWEET_URL",
    ]
    return "\n".join(lines)


def race_opened(race: Race, symbol: str, interval_minutes: int) -> str:
    return "\n".join(
        [
            "🎯 BETTING NOW OPEN! 🎯",
            f"🏁 Race ID: {race.race_id}",
            "",
            "🐎 CHOOSE YOUR CHAMPION:",
            horse_grid(sorted(race.horses, key=lambda h: h.id)),
            "",
            f"💰 Prize pool: {format_amount(race.prize_pool)} ${symbol}",
            "",
            "🎯 Use /horse NUMBER to pick your champion!",
            "🐦 Tweet your pick and /verify your tweet!",
            "",
            f"🏇 RACES EVERY {interval_minutes} MINUTES!",
        ]
    )


def betting_closing_soon(race: Race, minutes_left: int) -> str:
    unit = "MINUTE" if minutes_left == 1 else "MINUTES"
    return "\n".join(
        [
            f"⚠️ {minutes_left} {unit} WARNING ⚠️",
            "",
            f"🔒 Betting for race {race.race_id} closes in {minutes_left} {unit.lower()}!",
            "",
            "⏰ Last chance to:",
            "1. Pick your horse with /horse NUMBER",
            "2. Tweet your pick",
            "3. /verify TWEET_URL to enter!",
        ]
    )


def betting_closed(race: Race) -> str:
    return (
        "🚪 BETTING IS NOW CLOSED!\n\n"
        "📺 AND THEY'RE OFF! The horses are charging out of the gate! 🐎💨"
    )


def race_results(race: Race, recovered: bool = False) -> str:
    note = " (system recovery)" if recovered else ""
    lines = [f"🎺 OFFICIAL RACE RESULTS{note} 🎺", ""]
    titles = {1: "WINNER", 2: "PLACE", 3: "SHOW"}
    for horse in race.podium():
        finish = f" ({horse.finish_time:.2f}s)" if horse.finish_time is not None else ""
        lines.append(
            f"{PLACE_MEDALS[horse.position]} {titles[horse.position]}: {horse.label}{finish}"
        )
    return "\n".join(lines)


def settlement_summary(report: SettlementReport, race: Race, symbol: str) -> str:
    if report.no_participants:
        return "🏁 No participants this race\n\nNext race starting soon! Don't miss it! 🚀"

    if report.no_winners:
        podium = "\n".join(
            f"{PLACE_MEDALS[h.position]} {h.label}" for h in race.podium()
        )
        return (
            "😢 NO WINNERS THIS RACE!\n\n"
            f"{report.participant_count} players raced but nobody picked a podium horse.\n\n"
            f"{podium}\n\n"
            "🍀 Better luck next time!"
        )

    lines = ["🎉 RACE PAYOUTS", ""]
    for bucket in report.buckets:
        medal = PLACE_MEDALS.get(bucket.place, "🏅")
        if bucket.members:
            lines.append(
                f"{medal} {bucket.label} ({len(bucket.members)} players): "
                f"{format_amount(bucket.per_member)} ${symbol} each"
            )
        elif bucket.horse_name:
            lines.append(f"{medal} {bucket.label}: nobody picked {bucket.horse_name}")

    lines.append("")
    for transfer in report.transfers:
        lines.append(transfer_line(transfer, symbol))

    if report.unpaid_remainder:
        lines += ["", f"💤 Unclaimed: {format_amount(report.unpaid_remainder)} ${symbol}"]
    return "\n".join(lines)


def transfer_line(transfer: TransferOutcome, symbol: str) -> str:
    if transfer.success:
        return (
            f"🏆 @{transfer.username} won {format_amount(transfer.amount)} ${symbol}"
        )
    if transfer.error == "no wallet address":
        return f"❌ Cannot pay @{transfer.username} - no wallet address"
    return f"❌ Failed to send ${symbol} to @{transfer.username} - please contact support"


def winner_dm(
    transfer: TransferOutcome,
    horse_name: str,
    user: Optional[User],
    symbol: str,
    explorer_tx_url: str,
) -> str:
    medal = PLACE_MEDALS.get(transfer.place, "🏅")
    place = {1: "1ST PLACE", 2: "2ND PLACE", 3: "3RD PLACE"}.get(
        transfer.place, f"PLACE {transfer.place}"
    )
    lines = [
        f"{medal} {place}! {medal}",
        "",
        f"🐎 Your horse {horse_name} finished {place.split(' ')[0].lower()}!",
        f"💰 Prize: {format_amount(transfer.amount)} ${symbol}",
    ]
    if user is not None:
        lines.append(f"💎 Your total: {format_amount(user.total_won)} ${symbol}")
    link = tx_link(explorer_tx_url, transfer.reference)
    if link:
        lines += ["", f"🔗 Transaction: {link}"]
    lines += ["", "🎊 Great job! Keep racing!"]
    return "\n".join(lines)


def reward_lines(rewards: Iterable[RewardOutcome], symbol: str) -> List[str]:
    lines = []
    for reward in rewards:
        label = REWARD_LABELS.get(reward.kind, reward.kind.value)
        if reward.success:
            lines.append(f"🎁 {label}: {format_amount(reward.amount)} ${symbol} sent!")
        else:
            lines.append(f"⚠️ {label} could not be sent right now. We'll look into it.")
    return lines


def balance_card(user: User, symbol: str) -> str:
    wallet = short_address(user.wallet_address) if user.wallet_address else "not registered"
    return "\n".join(
        [
            f"💰 Stats for {user.display_name}",
            "",
            f"💎 Wallet: {wallet}",
            f"🏆 Total won: {format_amount(user.total_won)} ${symbol}",
            f"🥇 Races won: {user.races_won}",
            f"🏇 Races entered: {user.races_participated}",
            f"🎁 Race rewards: {format_amount(user.race_rewards_earned)} ${symbol}",
            f"🎉 Signup bonus: {'received' if user.bonus_received else 'pending'}",
            f"👥 Referrals: {user.referral_count} "
            f"({format_amount(user.referral_earnings)} ${symbol})",
        ]
    )


def participants_list(race: Race, participants: List[Participant], pending: int = 0) -> str:
    footer = f"\n\n⏳ Unverified picks: {pending}" if pending else ""
    if not participants:
        return f"📋 Race {race.race_id}\n\nNo participants yet{footer}"
    lines = [f"📋 Race {race.race_id} - {len(participants)} participants", ""]
    for index, p in enumerate(participants, start=1):
        lines.append(f"{index}. @{p.username} - Horse #{p.horse_id} {p.horse_name}")
    return "\n".join(lines) + footer


def users_list(users: List[User], total: int, limit: int = 10) -> str:
    lines = ["👥 User statistics", "", f"Total users: {total}", "", f"Recent users (last {limit}):"]
    for index, user in enumerate(users[:limit], start=1):
        verified = "✅" if user.verified else "❌"
        wallet = "💎" if user.wallet_address else "❌"
        lines.append(f"{index}. @{user.display_name} {verified} {wallet}")
    return "\n".join(lines)


def registration_tweet(bot_username: str, signup_bonus: int, symbol: str) -> str:
    text = f"I just registered to race on #PixelPonies and got {format_amount(signup_bonus)} ${symbol}!"
    if bot_username:
        text += f"\n\nRegister and get yours: https://t.me/{bot_username}"
    return text


def race_tweet(horse: Horse, race_reward: int, symbol: str, bot_username: str) -> str:
    text = f"I just picked horse #{horse.id} {horse.name} {horse.emoji} to win on #PixelPonies!"
    if race_reward:
        text += f" Racing for {format_amount(race_reward)} ${symbol}."
    if bot_username:
        text += f"\n\nhttps://t.me/{bot_username}"
    return text


def race_countdown(race: Optional[Race], seconds_left: Optional[int]) -> str:
    if seconds_left is None:
        return "⏰ The race schedule is not running right now."
    minutes, seconds = divmod(max(seconds_left, 0), 60)
    if race is not None and race.status == RaceStatus.BETTING_OPEN:
        return (
            f"⏰ Betting for race {race.race_id} closes in {minutes}m {seconds:02d}s\n\n"
            "🎯 Pick your pony with /horse NUMBER!"
        )
    return f"⏰ Next race starts in {minutes}m {seconds:02d}s"


def airdrop_status(user: Optional[User], signup_bonus: int, symbol: str) -> str:
    if user is not None and user.bonus_received and user.bonus_amount:
        return (
            "🎁 Airdrop status: CLAIMED ✅\n\n"
            f"💰 You received: {format_amount(user.bonus_amount)} ${symbol}\n\n"
            "🏇 Keep racing to win more!"
        )
    if user is not None and user.bonus_received:
        return "🎁 Airdrop status: PROCESSING ⏳\n\nYour signup bonus is on its way."
    return (
        "🎁 Airdrop status: NOT CLAIMED\n\n"
        f"💰 Register with /register to get {format_amount(signup_bonus)} ${symbol}!"
    )


def race_history(races: List[Race], symbol: str) -> str:
    if not races:
        return "📜 No races yet"
    lines = ["📜 Recent races", ""]
    for race in races:
        winner = race.winner.horse_name if race.winner else "-"
        settled = "✅" if race.settled else "⏳"
        lines.append(
            f"{settled} {race.race_id} [{_status_label(race.status)}] winner: {winner}, "
            f"paid {format_amount(race.total_payout)}/{format_amount(race.prize_pool)} ${symbol}"
        )
    return "\n".join(lines)


def airdrop_result(outcome: RewardOutcome, user: User, symbol: str, explorer_tx_url: str) -> str:
    if not outcome.success:
        return f"❌ Airdrop to @{user.display_name} failed: {outcome.error or 'unknown error'}"
    lines = [
        "✅ Manual airdrop sent",
        "",
        f"User: @{user.display_name} ({user.id})",
        f"Amount: {format_amount(outcome.amount)} ${symbol}",
    ]
    link = tx_link(explorer_tx_url, outcome.reference)
    if link:
        lines.append(f"🔗 {link}")
    return "\n".join(lines)
