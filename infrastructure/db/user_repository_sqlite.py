from __future__ import annotations

import sqlite3
from typing import List, Optional

from domain.models import User
from domain.repositories import UserRepository
from infrastructure.db.timestamps import from_epoch, to_epoch

_COLUMNS = (
    "id, username, first_name, wallet_address, verified, total_won, races_won, "
    "races_participated, race_rewards_earned, bonus_received, bonus_amount, "
    "referral_code, referred_by, referral_count, referral_earnings, created_at"
)


class SqliteUserRepository(UserRepository):
    """
    SQLite-backed implementation of `UserRepository`.

    This repository owns the `users` table and maps rows to the `User`
    domain model. It is self-initialising: the table is created if needed.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._ensure_table()

    def _get_connection(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path)

    def _ensure_table(self) -> None:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL DEFAULT '',
                    first_name TEXT NOT NULL DEFAULT '',
                    wallet_address TEXT,
                    verified INTEGER NOT NULL DEFAULT 0,
                    total_won INTEGER NOT NULL DEFAULT 0,
                    races_won INTEGER NOT NULL DEFAULT 0,
                    races_participated INTEGER NOT NULL DEFAULT 0,
                    race_rewards_earned INTEGER NOT NULL DEFAULT 0,
                    bonus_received INTEGER NOT NULL DEFAULT 0,
                    bonus_amount INTEGER NOT NULL DEFAULT 0,
                    referral_code TEXT UNIQUE,
                    referred_by TEXT,
                    referral_count INTEGER NOT NULL DEFAULT 0,
                    referral_earnings INTEGER NOT NULL DEFAULT 0,
                    created_at REAL
                )
                """
            )
            conn.commit()

    @staticmethod
    def _to_domain(row: sqlite3.Row) -> User:
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
            created_at=from_epoch(row[15]),
        )

    def _execute(self, sql: str, params: tuple) -> int:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            conn.commit()
            return cur.rowcount

    def get_user(self, user_id: str) -> Optional[User]:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT {_COLUMNS} FROM users WHERE id = ?", (user_id,))
            row = cur.fetchone()
            if not row:
                return None
            return self._to_domain(row)

    def get_by_referral_code(self, referral_code: str) -> Optional[User]:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT {_COLUMNS} FROM users WHERE referral_code = ?", (referral_code,))
            row = cur.fetchone()
            if not row:
                return None
            return self._to_domain(row)

    def get_all_users(self) -> List[User]:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT {_COLUMNS} FROM users ORDER BY created_at DESC")
            rows = cur.fetchall()
            return [self._to_domain(row) for row in rows]

    def count_users(self) -> int:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM users")
            return int(cur.fetchone()[0])

    def add_user(self, user: User) -> bool:
        inserted = self._execute(
            """
            INSERT OR IGNORE INTO users (
                id, username, first_name, wallet_address, verified,
                referral_code, referred_by, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user.id,
                user.username,
                user.first_name,
                user.wallet_address,
                int(user.verified),
                user.referral_code,
                user.referred_by,
                to_epoch(user.created_at),
            ),
        )
        return inserted == 1

    def delete_user(self, user_id: str) -> None:
        self._execute("DELETE FROM users WHERE id = ?", (user_id,))

    def update_profile(self, user_id: str, username: str, first_name: str) -> None:
        self._execute(
            "UPDATE users SET username = ?, first_name = ? WHERE id = ?",
            (username, first_name, user_id),
        )

    def set_verified(self, user_id: str) -> None:
        self._execute("UPDATE users SET verified = 1 WHERE id = ?", (user_id,))

    def set_wallet(self, user_id: str, wallet_address: str) -> None:
        self._execute(
            "UPDATE users SET wallet_address = ? WHERE id = ?",
            (wallet_address, user_id),
        )

    def set_referral_code(self, user_id: str, referral_code: str) -> None:
        self._execute(
            "UPDATE users SET referral_code = ? WHERE id = ?",
            (referral_code, user_id),
        )

    def set_referred_by(self, user_id: str, referrer_id: str) -> bool:
        updated = self._execute(
            """
            UPDATE users
            SET referred_by = ?
            WHERE id = ? AND referred_by IS NULL
            """,
            (referrer_id, user_id),
        )
        return updated == 1

    def add_winnings(self, user_id: str, amount: int, race_won: bool = False) -> None:
        self._execute(
            """
            UPDATE users
            SET total_won = total_won + ?,
                races_won = races_won + ?
            WHERE id = ?
            """,
            (amount, 1 if race_won else 0, user_id),
        )

    def increment_races_participated(self, user_id: str) -> None:
        self._execute(
            "UPDATE users SET races_participated = races_participated + 1 WHERE id = ?",
            (user_id,),
        )

    def add_race_reward(self, user_id: str, amount: int) -> None:
        self._execute(
            """
            UPDATE users
            SET race_rewards_earned = race_rewards_earned + ?,
                total_won = total_won + ?
            WHERE id = ?
            """,
            (amount, amount, user_id),
        )

    def claim_bonus(self, user_id: str) -> bool:
        updated = self._execute(
            "UPDATE users SET bonus_received = 1 WHERE id = ? AND bonus_received = 0",
            (user_id,),
        )
        return updated == 1

    def release_bonus(self, user_id: str) -> None:
        self._execute(
            "UPDATE users SET bonus_received = 0 WHERE id = ? AND bonus_amount = 0",
            (user_id,),
        )

    def record_bonus(self, user_id: str, amount: int) -> None:
        self._execute(
            """
            UPDATE users
            SET bonus_amount = ?,
                total_won = total_won + ?
            WHERE id = ?
            """,
            (amount, amount, user_id),
        )

    def add_referral_earnings(self, user_id: str, amount: int) -> None:
        self._execute(
            """
            UPDATE users
            SET referral_count = referral_count + 1,
                referral_earnings = referral_earnings + ?,
                total_won = total_won + ?
            WHERE id = ?
            """,
            (amount, amount, user_id),
        )
