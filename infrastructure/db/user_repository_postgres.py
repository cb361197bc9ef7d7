from __future__ import annotations

from typing import List, Optional

import psycopg2

from domain.models import User
from domain.repositories import UserRepository

_COLUMNS = (
    "id, username, first_name, wallet_address, verified, total_won, races_won, "
    "races_participated, race_rewards_earned, bonus_received, bonus_amount, "
    "referral_code, referred_by, referral_count, referral_earnings, created_at"
)


class PostgresUserRepository(UserRepository):
    """
    Postgres-backed implementation of `UserRepository`.

    Same `users` schema as the SQLite repository, with native booleans,
    BIGINT token counters and TIMESTAMPTZ.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._ensure_table()

    def _get_connection(self):
        return psycopg2.connect(self._dsn)

    def _ensure_table(self) -> None:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        username TEXT NOT NULL DEFAULT '',
                        first_name TEXT NOT NULL DEFAULT '',
                        wallet_address TEXT,
                        verified BOOLEAN NOT NULL DEFAULT FALSE,
                        total_won BIGINT NOT NULL DEFAULT 0,
                        races_won INTEGER NOT NULL DEFAULT 0,
                        races_participated INTEGER NOT NULL DEFAULT 0,
                        race_rewards_earned BIGINT NOT NULL DEFAULT 0,
                        bonus_received BOOLEAN NOT NULL DEFAULT FALSE,
                        bonus_amount BIGINT NOT NULL DEFAULT 0,
                        referral_code TEXT UNIQUE,
                        referred_by TEXT,
                        referral_count INTEGER NOT NULL DEFAULT 0,
                        referral_earnings BIGINT NOT NULL DEFAULT 0,
                        created_at TIMESTAMPTZ DEFAULT now()
                    )
                    """
                )
                conn.commit()

    @staticmethod
    def _to_domain(row: tuple) -> User:
        return User(
            id=str(row[0]),
            username=row[1] or "",
            first_name=row[2] or "",
            wallet_address=row[3],
            verified=bool(row[4]),
            total_won=int(row[5]),
            races_won=int(row[6]),
            races_participated=int(row[7]),
            race_rewards_earned=int(row[8]),
            bonus_received=bool(row[9]),
            bonus_amount=int(row[10]),
            referral_code=row[11],
            referred_by=row[12],
            referral_count=int(row[13]),
            referral_earnings=int(row[14]),
            created_at=row[15],
        )

    def _execute(self, sql: str, params: tuple) -> int:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                conn.commit()
                return cur.rowcount

    def _fetch_one(self, where: str, params: tuple) -> Optional[User]:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_COLUMNS} FROM users {where}", params)
                row = cur.fetchone()
                if not row:
                    return None
                return self._to_domain(row)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_one("WHERE id = %s", (user_id,))

    def get_by_referral_code(self, referral_code: str) -> Optional[User]:
        return self._fetch_one("WHERE referral_code = %s", (referral_code,))

    def get_all_users(self) -> List[User]:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_COLUMNS} FROM users ORDER BY created_at DESC")
                return [self._to_domain(row) for row in cur.fetchall()]

    def count_users(self) -> int:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM users")
                return int(cur.fetchone()[0])

    def add_user(self, user: User) -> bool:
        inserted = self._execute(
            """
            INSERT INTO users (
                id, username, first_name, wallet_address, verified,
                referral_code, referred_by, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
            ON CONFLICT (id) DO NOTHING
            """,
            (
                user.id,
                user.username,
                user.first_name,
                user.wallet_address,
                user.verified,
                user.referral_code,
                user.referred_by,
                user.created_at,
            ),
        )
        return inserted == 1

    def delete_user(self, user_id: str) -> None:
        self._execute("DELETE FROM users WHERE id = %s", (user_id,))

    def update_profile(self, user_id: str, username: str, first_name: str) -> None:
        self._execute(
            "UPDATE users SET username = %s, first_name = %s WHERE id = %s",
            (username, first_name, user_id),
        )

    def set_verified(self, user_id: str) -> None:
        self._execute("UPDATE users SET verified = TRUE WHERE id = %s", (user_id,))

    def set_wallet(self, user_id: str, wallet_address: str) -> None:
        self._execute(
            "UPDATE users SET wallet_address = %s WHERE id = %s",
            (wallet_address, user_id),
        )

    def set_referral_code(self, user_id: str, referral_code: str) -> None:
        self._execute(
            "UPDATE users SET referral_code = %s WHERE id = %s",
            (referral_code, user_id),
        )

    def set_referred_by(self, user_id: str, referrer_id: str) -> bool:
        updated = self._execute(
            "UPDATE users SET referred_by = %s WHERE id = %s AND referred_by IS NULL",
            (referrer_id, user_id),
        )
        return updated == 1

    def add_winnings(self, user_id: str, amount: int, race_won: bool = False) -> None:
        self._execute(
            """
            UPDATE users
            SET total_won = total_won + %s,
                races_won = races_won + %s
            WHERE id = %s
            """,
            (amount, 1 if race_won else 0, user_id),
        )

    def increment_races_participated(self, user_id: str) -> None:
        self._execute(
            "UPDATE users SET races_participated = races_participated + 1 WHERE id = %s",
            (user_id,),
        )

    def add_race_reward(self, user_id: str, amount: int) -> None:
        self._execute(
            """
            UPDATE users
            SET race_rewards_earned = race_rewards_earned + %s,
                total_won = total_won + %s
            WHERE id = %s
            """,
            (amount, amount, user_id),
        )

    def claim_bonus(self, user_id: str) -> bool:
        updated = self._execute(
            """
            UPDATE users
            SET bonus_received = TRUE
            WHERE id = %s AND bonus_received = FALSE
            """,
            (user_id,),
        )
        return updated == 1

    def release_bonus(self, user_id: str) -> None:
        self._execute(
            """
            UPDATE users
            SET bonus_received = FALSE
            WHERE id = %s AND bonus_amount = 0
            """,
            (user_id,),
        )

    def record_bonus(self, user_id: str, amount: int) -> None:
        self._execute(
            """
            UPDATE users
            SET bonus_amount = %s,
                total_won = total_won + %s
            WHERE id = %s
            """,
            (amount, amount, user_id),
        )

    def add_referral_earnings(self, user_id: str, amount: int) -> None:
        self._execute(
            """
            UPDATE users
            SET referral_count = referral_count + 1,
                referral_earnings = referral_earnings + %s,
                total_won = total_won + %s
            WHERE id = %s
            """,
            (amount, amount, user_id),
        )
