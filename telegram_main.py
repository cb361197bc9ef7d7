import logging
from datetime import timedelta

from application.prize_pool import build_prize_pool_policy
from application.race_engine import RaceEngine
from application.scheduler import RaceScheduler
from infrastructure.chain.token_client_web3 import Web3TokenClient
from interfaces.telegram.announcer import ChannelMemberCounter, TelegramAnnouncer
from interfaces.telegram.handlers import create_telegram_bot
from settings import Settings, load_settings

logger = logging.getLogger(__name__)


def build_repositories(settings: Settings):
    """Postgres when DATABASE_URL is set, otherwise a local SQLite file."""

    if settings.database_url:
        from infrastructure.db.race_repository_postgres import PostgresRaceRepository
        from infrastructure.db.selection_repository_postgres import PostgresSelectionRepository
        from infrastructure.db.user_repository_postgres import PostgresUserRepository

        logger.info("Using Postgres storage")
        return (
            PostgresUserRepository(settings.database_url),
            PostgresRaceRepository(settings.database_url),
            PostgresSelectionRepository(settings.database_url),
        )

    from infrastructure.db.race_repository_sqlite import SqliteRaceRepository
    from infrastructure.db.selection_repository_sqlite import SqliteSelectionRepository
    from infrastructure.db.user_repository_sqlite import SqliteUserRepository

    logger.info("Using SQLite storage at %s", settings.db_path)
    return (
        SqliteUserRepository(settings.db_path),
        SqliteRaceRepository(settings.db_path),
        SqliteSelectionRepository(settings.db_path),
    )


def main() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if not settings.token_address or not settings.bot_private_key:
        raise RuntimeError("TOKEN_ADDRESS and BOT_PRIVATE_KEY environment variables must be set.")

    user_repo, race_repo, selection_repo = build_repositories(settings)
    token_client = Web3TokenClient(
        settings.rpc_url, settings.token_address, settings.bot_private_key
    )
    logger.info("Bot wallet: %s", token_client.get_bot_address())

    prize_pool_policy = build_prize_pool_policy(
        settings.prize_pool_policy,
        amount=settings.prize_pool_amount,
        base=settings.prize_pool_base,
        per_member=settings.prize_pool_per_member,
        cohort_size=settings.prize_pool_cohort_size,
        tiers=settings.prize_pool_tiers,
    )

    engine = RaceEngine(
        race_repo,
        selection_repo,
        user_repo,
        token_client,
        prize_pool_policy,
        member_count=ChannelMemberCounter(settings.telegram_bot_token, settings.main_channel_id),
        split_bps=settings.payout_split_bps,
        reward_settings=settings.reward_settings(),
        stale_after=timedelta(minutes=settings.stale_race_minutes),
        selection_ttl=timedelta(minutes=settings.selection_ttl_minutes),
    )
    scheduler = RaceScheduler(
        engine,
        interval=timedelta(minutes=settings.race_interval_minutes),
        warning_lead=timedelta(minutes=settings.warning_lead_minutes),
    )

    bot = create_telegram_bot(
        settings.telegram_bot_token,
        engine,
        user_repo,
        token_client,
        settings,
        scheduler=scheduler,
    )
    scheduler.add_listener(
        TelegramAnnouncer(
            bot,
            settings.main_channel_id,
            user_repo,
            symbol=settings.token_symbol,
            explorer_tx_url=settings.explorer_tx_url,
            interval_minutes=settings.race_interval_minutes,
        )
    )

    scheduler.start()
    try:
        logger.info("Bot is polling")
        bot.infinity_polling()
    finally:
        scheduler.shutdown()


if __name__ == "__main__":
    main()
