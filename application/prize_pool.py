from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence


class PrizePoolPolicy(Protocol):
    """Computes the prize pool of a new race from the community size."""

    def compute(self, member_count: int) -> int:
        ...


@dataclass
class FlatPrizePool:
    amount: int

    def compute(self, member_count: int) -> int:
        return self.amount


@dataclass
class LinearPrizePool:
    """`base + member_count * per_member`."""

    base: int
    per_member: int

    def compute(self, member_count: int) -> int:
        return self.base + max(member_count, 0) * self.per_member


@dataclass
class TieredPrizePool:
    """
    Members are bucketed into cohorts of `cohort_size`. Every member of the
    n-th cohort is worth `tiers[n]`; members past the last tier are worth
    the last tier's amount.

    With cohort_size=100 and tiers=[100, 50, 25], a group of 250 members
    gives base + 100*100 + 100*50 + 50*25.
    """

    base: int
    cohort_size: int
    tiers: Sequence[int]

    def __post_init__(self) -> None:
        if self.cohort_size <= 0:
            raise ValueError("cohort_size must be positive")
        if not self.tiers:
            raise ValueError("at least one tier is required")

    def compute(self, member_count: int) -> int:
        remaining = max(member_count, 0)
        total = self.base
        for index in range(len(self.tiers)):
            if remaining <= 0:
                break
            unit = self.tiers[index]
            if index == len(self.tiers) - 1:
                total += remaining * unit
                break
            in_cohort = min(remaining, self.cohort_size)
            total += in_cohort * unit
            remaining -= in_cohort
        return total


def _parse_tiers(raw: str) -> List[int]:
    return [int(part) for part in raw.split(",") if part.strip()]


def build_prize_pool_policy(
    name: str,
    amount: int = 700,
    base: int = 700,
    per_member: int = 100,
    cohort_size: int = 100,
    tiers: Optional[str] = None,
) -> PrizePoolPolicy:
    """Build the configured policy by name (`flat`, `linear` or `tiered`)."""

    name = (name or "linear").strip().lower()
    if name == "flat":
        return FlatPrizePool(amount=amount)
    if name == "linear":
        return LinearPrizePool(base=base, per_member=per_member)
    if name == "tiered":
        return TieredPrizePool(
            base=base,
            cohort_size=cohort_size,
            tiers=_parse_tiers(tiers or "100,50,25"),
        )
    raise ValueError(f"Unknown prize pool policy: {name}")
