from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from domain.repositories import TokenTransferClient, UserRepository

logger = logging.getLogger(__name__)


class RewardKind(str, Enum):
    SIGNUP_BONUS = "signup_bonus"
    RACE_REWARD = "race_reward"
    REFERRAL_REWARD = "referral_reward"
    REFERRED_BONUS = "referred_bonus"
    AIRDROP = "airdrop"


@dataclass
class RewardSettings:
    """Token amounts handed out outside of race prizes. Zero disables one."""

    signup_bonus: int = 0
    race_reward: int = 0
    race_reward_cap: int = 0
    referral_reward: int = 0
    referred_bonus: int = 0


@dataclass
class RewardOutcome:
    kind: RewardKind
    user_id: str
    amount: int
    success: bool
    reference: Optional[str] = None
    error: Optional[str] = None


def issue_race_reward(
    user_id: str,
    settings: RewardSettings,
    user_repo: UserRepository,
    token_client: TokenTransferClient,
) -> Optional[RewardOutcome]:
    """Send the per-race participation reward, honouring the optional cap."""

    if settings.race_reward <= 0:
        return None

    user = user_repo.get_user(user_id)
    if user is None or not user.wallet_address:
        return None
    if settings.race_reward_cap and user.race_rewards_earned >= settings.race_reward_cap:
        logger.info("Race reward cap reached for user %s", user_id)
        return None

    result = token_client.send_tokens(user.wallet_address, settings.race_reward)
    if not result.success:
        logger.error("Race reward failed for user %s: %s", user_id, result.error)
        return RewardOutcome(
            RewardKind.RACE_REWARD, user_id, settings.race_reward, False, error=result.error
        )

    user_repo.add_race_reward(user_id, settings.race_reward)
    logger.info("Race reward of %s sent to user %s", settings.race_reward, user_id)
    return RewardOutcome(
        RewardKind.RACE_REWARD, user_id, settings.race_reward, True, reference=result.reference
    )


def issue_signup_bonus(
    user_id: str,
    settings: RewardSettings,
    user_repo: UserRepository,
    token_client: TokenTransferClient,
) -> List[RewardOutcome]:
    """
    Send the one-time signup bonus, followed by the referral rewards it
    unlocks.

    The bonus flag is claimed before the transfer. It is handed back only
    when the client failed without broadcasting anything (no reference);
    a sent-but-unconfirmed transfer or a crash leaves it claimed for an
    operator to look at.
    """

    if settings.signup_bonus <= 0:
        return []

    user = user_repo.get_user(user_id)
    if user is None or not user.wallet_address or user.bonus_received:
        return []
    if not user_repo.claim_bonus(user_id):
        return []

    result = token_client.send_tokens(user.wallet_address, settings.signup_bonus)
    if not result.success:
        if result.reference is None:
            user_repo.release_bonus(user_id)
        logger.error("Signup bonus failed for user %s: %s", user_id, result.error)
        return [
            RewardOutcome(
                RewardKind.SIGNUP_BONUS, user_id, settings.signup_bonus, False, error=result.error
            )
        ]

    user_repo.record_bonus(user_id, settings.signup_bonus)
    logger.info("Signup bonus of %s sent to user %s", settings.signup_bonus, user_id)

    outcomes = [
        RewardOutcome(
            RewardKind.SIGNUP_BONUS,
            user_id,
            settings.signup_bonus,
            True,
            reference=result.reference,
        )
    ]
    outcomes.extend(issue_referral_rewards(user_id, settings, user_repo, token_client))
    return outcomes


def issue_referral_rewards(
    user_id: str,
    settings: RewardSettings,
    user_repo: UserRepository,
    token_client: TokenTransferClient,
) -> List[RewardOutcome]:
    """Reward the referrer, then give the referred user their extra bonus."""

    user = user_repo.get_user(user_id)
    if user is None or not user.referred_by or settings.referral_reward <= 0:
        return []

    referrer = user_repo.get_user(user.referred_by)
    if referrer is None or not referrer.wallet_address:
        return []

    outcomes: List[RewardOutcome] = []
    result = token_client.send_tokens(referrer.wallet_address, settings.referral_reward)
    if not result.success:
        logger.error("Referral reward to %s failed: %s", referrer.id, result.error)
        outcomes.append(
            RewardOutcome(
                RewardKind.REFERRAL_REWARD,
                referrer.id,
                settings.referral_reward,
                False,
                error=result.error,
            )
        )
        return outcomes

    user_repo.add_referral_earnings(referrer.id, settings.referral_reward)
    outcomes.append(
        RewardOutcome(
            RewardKind.REFERRAL_REWARD,
            referrer.id,
            settings.referral_reward,
            True,
            reference=result.reference,
        )
    )

    if settings.referred_bonus > 0 and user.wallet_address:
        bonus = token_client.send_tokens(user.wallet_address, settings.referred_bonus)
        if bonus.success:
            user_repo.add_winnings(user.id, settings.referred_bonus)
        else:
            logger.error("Referred bonus to %s failed: %s", user.id, bonus.error)
        outcomes.append(
            RewardOutcome(
                RewardKind.REFERRED_BONUS,
                user.id,
                settings.referred_bonus,
                bonus.success,
                reference=bonus.reference,
                error=bonus.error,
            )
        )

    logger.info("Referral rewards processed for %s (referrer %s)", user.id, referrer.id)
    return outcomes


def issue_participation_rewards(
    user_id: str,
    settings: RewardSettings,
    user_repo: UserRepository,
    token_client: TokenTransferClient,
) -> List[RewardOutcome]:
    """Everything a confirmed bet earns: race reward, then first-time bonuses."""

    outcomes: List[RewardOutcome] = []
    race_reward = issue_race_reward(user_id, settings, user_repo, token_client)
    if race_reward is not None:
        outcomes.append(race_reward)
    outcomes.extend(issue_signup_bonus(user_id, settings, user_repo, token_client))
    return outcomes


def send_manual_airdrop(
    user_id: str,
    amount: int,
    user_repo: UserRepository,
    token_client: TokenTransferClient,
) -> RewardOutcome:
    """
    Operator payment to one user, e.g. to make up a payout that failed
    during settlement. Counted as winnings on success.
    """

    if amount <= 0:
        raise ValueError("Airdrop amount must be positive.")

    user = user_repo.get_user(user_id)
    if user is None or not user.wallet_address:
        return RewardOutcome(
            RewardKind.AIRDROP, user_id, amount, False, error="no wallet address"
        )

    result = token_client.send_tokens(user.wallet_address, amount)
    if not result.success:
        logger.error("Manual airdrop of %s to %s failed: %s", amount, user_id, result.error)
        return RewardOutcome(
            RewardKind.AIRDROP,
            user_id,
            amount,
            False,
            reference=result.reference,
            error=result.error,
        )

    user_repo.add_winnings(user_id, amount)
    logger.info("Manual airdrop of %s sent to %s, tx %s", amount, user_id, result.reference)
    return RewardOutcome(
        RewardKind.AIRDROP, user_id, amount, True, reference=result.reference
    )
