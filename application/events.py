from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Union

from application.payouts import SettlementReport
from domain.models import Race


@dataclass
class RaceOpened:
    race: Race


@dataclass
class BettingClosingSoon:
    race: Race
    minutes_left: int


@dataclass
class BettingClosed:
    race: Race


@dataclass
class RaceFinished:
    race: Race
    recovered: bool = False


@dataclass
class PayoutsSettled:
    race: Race
    report: SettlementReport


RaceEvent = Union[RaceOpened, BettingClosingSoon, BettingClosed, RaceFinished, PayoutsSettled]

RaceEventListener = Callable[[RaceEvent], None]
