import copy
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from domain.models import (
    ACTIVE_STATUSES,
    RaceStatus,
    TransferResult,
    can_transition,
)
from domain.repositories import (
    RaceRepository,
    SelectionRepository,
    TokenTransferClient,
    UserRepository,
)

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


def wallet(n: int) -> str:
    return "0x" + f"{n:040x}"


class FixedClock:
    def __init__(self, now=None):
        self.now = now or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class SequenceRng:
    """Hands out preset finish times in draw order."""

    def __init__(self, times):
        self._times = list(times)
        self._index = 0

    def uniform(self, a, b):
        value = self._times[self._index % len(self._times)]
        self._index += 1
        return value

    def randrange(self, stop):
        return 0


class InMemoryUserRepository(UserRepository):
    def __init__(self):
        self.users = {}

    def get_user(self, user_id):
        user = self.users.get(user_id)
        return copy.deepcopy(user) if user else None

    def get_by_referral_code(self, referral_code):
        for user in self.users.values():
            if user.referral_code == referral_code:
                return copy.deepcopy(user)
        return None

    def get_all_users(self):
        return [copy.deepcopy(u) for u in self.users.values()]

    def count_users(self):
        return len(self.users)

    def add_user(self, user):
        if user.id in self.users:
            return False
        self.users[user.id] = copy.deepcopy(user)
        return True

    def delete_user(self, user_id):
        self.users.pop(user_id, None)

    def update_profile(self, user_id, username, first_name):
        self.users[user_id].username = username
        self.users[user_id].first_name = first_name

    def set_verified(self, user_id):
        self.users[user_id].verified = True

    def set_wallet(self, user_id, wallet_address):
        self.users[user_id].wallet_address = wallet_address

    def set_referral_code(self, user_id, referral_code):
        self.users[user_id].referral_code = referral_code

    def set_referred_by(self, user_id, referrer_id):
        user = self.users[user_id]
        if user.referred_by is not None:
            return False
        user.referred_by = referrer_id
        return True

    def add_winnings(self, user_id, amount, race_won=False):
        user = self.users[user_id]
        user.total_won += amount
        if race_won:
            user.races_won += 1

    def increment_races_participated(self, user_id):
        self.users[user_id].races_participated += 1

    def add_race_reward(self, user_id, amount):
        user = self.users[user_id]
        user.race_rewards_earned += amount
        user.total_won += amount

    def claim_bonus(self, user_id):
        user = self.users[user_id]
        if user.bonus_received:
            return False
        user.bonus_received = True
        return True

    def release_bonus(self, user_id):
        user = self.users[user_id]
        if user.bonus_amount == 0:
            user.bonus_received = False

    def record_bonus(self, user_id, amount):
        user = self.users[user_id]
        user.bonus_amount = amount
        user.total_won += amount

    def add_referral_earnings(self, user_id, amount):
        user = self.users[user_id]
        user.referral_count += 1
        user.referral_earnings += amount
        user.total_won += amount


class InMemoryRaceRepository(RaceRepository):
    def __init__(self):
        self.races = {}
        self.participants = {}

    def _active_id(self):
        for race in self.races.values():
            if race.status in ACTIVE_STATUSES:
                return race.race_id
        return None

    def create_race(self, race):
        if race.race_id in self.races:
            return False
        if race.status in ACTIVE_STATUSES and self._active_id() is not None:
            return False
        self.races[race.race_id] = copy.deepcopy(race)
        return True

    def get_race(self, race_id):
        race = self.races.get(race_id)
        return copy.deepcopy(race) if race else None

    def get_active_race(self):
        race_id = self._active_id()
        return self.get_race(race_id) if race_id else None

    def list_unsettled_races(self, started_before):
        races = [
            r
            for r in self.races.values()
            if r.start_time < started_before
            and (r.status != RaceStatus.FINISHED or not r.settled)
        ]
        return [copy.deepcopy(r) for r in sorted(races, key=lambda r: r.start_time)]

    def list_recent_races(self, limit):
        races = sorted(self.races.values(), key=lambda r: r.start_time, reverse=True)
        return [copy.deepcopy(r) for r in races[:limit]]

    def transition_status(self, race_id, expected, target):
        if not can_transition(expected, target):
            return False
        race = self.races.get(race_id)
        if race is None or race.status != expected:
            return False
        active = self._active_id()
        if target in ACTIVE_STATUSES and active not in (None, race_id):
            return False
        race.status = target
        return True

    def save_results(self, race):
        stored = self.races.get(race.race_id)
        if stored is None or stored.status != RaceStatus.RACING:
            return False
        stored.status = RaceStatus.FINISHED
        stored.horses = copy.deepcopy(race.horses)
        stored.winner = copy.deepcopy(race.winner)
        stored.end_time = race.end_time
        return True

    def claim_settlement(self, race_id):
        race = self.races.get(race_id)
        if race is None or race.status != RaceStatus.FINISHED or race.settled:
            return False
        race.settled = True
        return True

    def record_total_payout(self, race_id, total_payout):
        self.races[race_id].total_payout = total_payout

    def add_participant(self, participant):
        race = self.races.get(participant.race_id)
        if race is None or race.status != RaceStatus.BETTING_OPEN:
            return False
        key = (participant.race_id, participant.user_id)
        if key in self.participants:
            return False
        self.participants[key] = copy.deepcopy(participant)
        return True

    def get_participant(self, race_id, user_id):
        participant = self.participants.get((race_id, user_id))
        return copy.deepcopy(participant) if participant else None

    def list_participants(self, race_id):
        return [
            copy.deepcopy(p) for (rid, _), p in self.participants.items() if rid == race_id
        ]

    def record_payout(self, race_id, user_id, payout, payout_ref):
        participant = self.participants[(race_id, user_id)]
        participant.payout = payout
        participant.payout_ref = payout_ref


class InMemorySelectionRepository(SelectionRepository):
    def __init__(self):
        self.selections = {}

    def add_selection(self, selection):
        key = (selection.user_id, selection.race_id)
        if key in self.selections:
            return False
        self.selections[key] = copy.deepcopy(selection)
        return True

    def get_selection(self, user_id, race_id):
        selection = self.selections.get((user_id, race_id))
        return copy.deepcopy(selection) if selection else None

    def list_selections(self, race_id):
        return [copy.deepcopy(s) for s in self.selections.values() if s.race_id == race_id]

    def delete_selection(self, user_id, race_id):
        self.selections.pop((user_id, race_id), None)

    def delete_selections_before(self, cutoff):
        expired = [k for k, s in self.selections.items() if s.created_at < cutoff]
        for key in expired:
            del self.selections[key]
        return len(expired)


class FakeTokenClient(TokenTransferClient):
    """Records every transfer; addresses in `failing` always fail."""

    def __init__(self, balance=Decimal("1000000")):
        self.transfers = []
        self.failing = set()
        self.fail_all = False
        self.unconfirmed = False
        self.balance = balance

    def validate_address(self, address):
        return bool(address) and bool(_ADDRESS.match(address))

    def send_tokens(self, address, amount):
        if self.fail_all or address in self.failing:
            return TransferResult(success=False, error="rpc unavailable")
        if self.unconfirmed:
            return TransferResult(success=False, reference="0xpending", error="transaction not confirmed")
        self.transfers.append((address, amount))
        return TransferResult(success=True, reference=f"0xtx{len(self.transfers)}")

    def get_balance(self, address=None):
        return self.balance

    def get_bot_address(self):
        return wallet(0xB07)

    def amounts_to(self, address):
        return [amount for addr, amount in self.transfers if addr == address]


def fixed_member_count(count):
    return lambda: count
