import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

from dotenv import load_dotenv

from application.payouts import DEFAULT_SPLIT_BPS
from application.rewards import RewardSettings


def _int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}.")


def _admin_ids(raw: str) -> FrozenSet[str]:
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


def _split_bps(raw: Optional[str]) -> Tuple[int, ...]:
    if not raw:
        return DEFAULT_SPLIT_BPS
    try:
        return tuple(int(part) for part in raw.split(",") if part.strip())
    except ValueError:
        raise RuntimeError(f"PAYOUT_SPLIT_BPS must be comma-separated integers, got {raw!r}.")


@dataclass(frozen=True)
class Settings:
    telegram_bot_token: str
    main_channel_id: Optional[str] = None
    bot_username: str = ""
    db_path: str = "ponies.db"
    database_url: Optional[str] = None
    rpc_url: str = "https://mainnet.base.org"
    token_address: str = ""
    bot_private_key: str = ""
    admin_ids: FrozenSet[str] = field(default_factory=frozenset)
    race_interval_minutes: int = 10
    warning_lead_minutes: int = 1
    stale_race_minutes: int = 60
    selection_ttl_minutes: int = 120
    prize_pool_policy: str = "linear"
    prize_pool_amount: int = 700
    prize_pool_base: int = 700
    prize_pool_per_member: int = 100
    prize_pool_cohort_size: int = 100
    prize_pool_tiers: str = "100,50,25"
    payout_split_bps: Tuple[int, ...] = DEFAULT_SPLIT_BPS
    signup_bonus: int = 10_000_000_000
    race_reward: int = 100_000_000
    race_reward_cap: int = 0
    referral_reward: int = 250_000_000
    referred_bonus: int = 0
    token_symbol: str = "PONY"
    explorer_tx_url: str = "https://basescan.org/tx/"
    twitter_url: str = ""
    log_level: str = "INFO"

    def is_admin(self, user_id) -> bool:
        return str(user_id) in self.admin_ids

    def reward_settings(self) -> RewardSettings:
        return RewardSettings(
            signup_bonus=self.signup_bonus,
            race_reward=self.race_reward,
            race_reward_cap=self.race_reward_cap,
            referral_reward=self.referral_reward,
            referred_bonus=self.referred_bonus,
        )


def load_settings() -> Settings:
    """Read configuration from the environment (and `.env`, if present)."""

    load_dotenv()

    token = os.environ.get("TELEGRAM_BOT_TOKEN")
    if not token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN environment variable is not set.")

    return Settings(
        telegram_bot_token=token,
        main_channel_id=os.environ.get("MAIN_CHANNEL_ID") or None,
        bot_username=os.environ.get("BOT_USERNAME", ""),
        db_path=os.environ.get("DB_PATH", "ponies.db"),
        database_url=os.environ.get("DATABASE_URL") or None,
        rpc_url=os.environ.get("RPC_URL", "https://mainnet.base.org"),
        token_address=os.environ.get("TOKEN_ADDRESS", ""),
        bot_private_key=os.environ.get("BOT_PRIVATE_KEY", ""),
        admin_ids=_admin_ids(os.environ.get("ADMIN_IDS", "")),
        race_interval_minutes=_int("RACE_INTERVAL_MINUTES", 10),
        warning_lead_minutes=_int("WARNING_LEAD_MINUTES", 1),
        stale_race_minutes=_int("STALE_RACE_MINUTES", 60),
        selection_ttl_minutes=_int("SELECTION_TTL_MINUTES", 120),
        prize_pool_policy=os.environ.get("PRIZE_POOL_POLICY", "linear"),
        prize_pool_amount=_int("PRIZE_POOL_AMOUNT", 700),
        prize_pool_base=_int("PRIZE_POOL_BASE", 700),
        prize_pool_per_member=_int("PRIZE_POOL_PER_MEMBER", 100),
        prize_pool_cohort_size=_int("PRIZE_POOL_COHORT_SIZE", 100),
        prize_pool_tiers=os.environ.get("PRIZE_POOL_TIERS", "100,50,25"),
        payout_split_bps=_split_bps(os.environ.get("PAYOUT_SPLIT_BPS")),
        signup_bonus=_int("SIGNUP_BONUS", 10_000_000_000),
        race_reward=_int("RACE_REWARD", 100_000_000),
        race_reward_cap=_int("RACE_REWARD_CAP", 0),
        referral_reward=_int("REFERRAL_REWARD", 250_000_000),
        referred_bonus=_int("REFERRED_BONUS", 0),
        token_symbol=os.environ.get("TOKEN_SYMBOL", "PONY"),
        explorer_tx_url=os.environ.get("EXPLORER_TX_URL", "https://basescan.org/tx/"),
        twitter_url=os.environ.get("TWITTER_URL", ""),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    )
