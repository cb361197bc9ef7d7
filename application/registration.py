from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from application.results import RegistrationResult, RejectionReason
from application.rewards import RewardSettings, issue_signup_bonus
from domain.models import User
from domain.repositories import TokenTransferClient, UserRepository

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass
class ExternalContext:
    """
    Information about the caller from a particular channel.

    The application layer never depends on concrete SDK types; it only sees
    this small context object.
    """

    provider: str
    provider_user_id: str
    first_name: str
    username: str = ""


@dataclass
class StartResult:
    user: User
    referrer: Optional[User] = None
    is_new: bool = False


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: List[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_referral_code(user_id: str, now: datetime) -> str:
    """`PP` + last four characters of the user id + base-36 epoch millis."""

    stamp = _to_base36(int(now.timestamp() * 1000))
    return f"PP{user_id[-4:]}{stamp}".upper()


def referral_link(bot_username: str, referral_code: str) -> str:
    return f"https://t.me/{bot_username}?start={referral_code}"


def get_or_create_user(
    external_ctx: ExternalContext,
    user_repo: UserRepository,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> StartResult:
    """Return the caller's user, creating it (with a referral code) on first contact."""

    existing = user_repo.get_user(external_ctx.provider_user_id)
    if existing is not None:
        if (
            external_ctx.username and existing.username != external_ctx.username
        ) or (external_ctx.first_name and existing.first_name != external_ctx.first_name):
            user_repo.update_profile(
                existing.id,
                external_ctx.username or existing.username,
                external_ctx.first_name or existing.first_name,
            )
            existing = user_repo.get_user(existing.id) or existing
        if not existing.referral_code:
            code = generate_referral_code(existing.id, clock())
            user_repo.set_referral_code(existing.id, code)
            existing.referral_code = code
        return StartResult(user=existing)

    now = clock()
    user = User(
        id=external_ctx.provider_user_id,
        username=external_ctx.username,
        first_name=external_ctx.first_name,
        referral_code=generate_referral_code(external_ctx.provider_user_id, now),
        created_at=now,
    )
    user_repo.add_user(user)
    logger.info("Created user %s (%s)", user.id, user.display_name)
    stored = user_repo.get_user(user.id)
    return StartResult(user=stored or user, is_new=True)


def start(
    external_ctx: ExternalContext,
    referral_code: Optional[str],
    user_repo: UserRepository,
) -> StartResult:
    """
    Handle `/start [code]`.

    A referral code only sticks if it belongs to someone else and the
    caller has no referrer yet.
    """

    result = get_or_create_user(external_ctx, user_repo)
    if not referral_code:
        return result

    referrer = user_repo.get_by_referral_code(referral_code.strip().upper())
    if referrer is None or referrer.id == result.user.id:
        return result

    if user_repo.set_referred_by(result.user.id, referrer.id):
        logger.info("User %s was referred by %s", result.user.id, referrer.id)
        result.user.referred_by = referrer.id
        result.referrer = referrer
    return result


def mark_verified(external_ctx: ExternalContext, user_repo: UserRepository) -> User:
    """The follow and registration tweet steps are done."""

    user = get_or_create_user(external_ctx, user_repo).user
    if not user.verified:
        user_repo.set_verified(user.id)
        user.verified = True
    return user


def register_wallet(
    external_ctx: ExternalContext,
    address: str,
    user_repo: UserRepository,
    token_client: TokenTransferClient,
    reward_settings: Optional[RewardSettings] = None,
) -> RegistrationResult:
    """
    Store the caller's wallet and send the signup bonus.

    The address is checked before anything is written.
    """

    address = (address or "").strip()
    if not address or not token_client.validate_address(address):
        return RegistrationResult(success=False, reason=RejectionReason.INVALID_ADDRESS)

    user = get_or_create_user(external_ctx, user_repo).user
    user_repo.set_wallet(user.id, address)
    logger.info("Wallet registered for user %s", user.id)

    rewards = issue_signup_bonus(
        user.id, reward_settings or RewardSettings(), user_repo, token_client
    )
    stored = user_repo.get_user(user.id)
    return RegistrationResult(success=True, user=stored or user, rewards=rewards)


def find_user(user_repo: UserRepository, handle: str) -> Optional[User]:
    """Look a user up by platform id or by @username (case-insensitive)."""

    handle = (handle or "").strip()
    if not handle:
        return None
    user = user_repo.get_user(handle)
    if user is not None:
        return user

    username = handle.lstrip("@").lower()
    for candidate in user_repo.get_all_users():
        if candidate.username and candidate.username.lower() == username:
            return candidate
    return None


def purge_user(handle: str, user_repo: UserRepository) -> Optional[User]:
    """Hard-delete a user record. Returns the deleted user, if one matched."""

    user = find_user(user_repo, handle)
    if user is None:
        return None
    user_repo.delete_user(user.id)
    logger.warning("User %s (%s) was purged", user.id, user.display_name)
    return user
