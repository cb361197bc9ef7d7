from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

from domain.models import (
    ACTIVE_STATUSES,
    Horse,
    Participant,
    Race,
    RaceStatus,
    Winner,
    can_transition,
)
from domain.repositories import RaceRepository
from infrastructure.db.timestamps import from_epoch, to_epoch

_RACE_COLUMNS = (
    "race_id, start_time, end_time, status, horses, winner_horse_id, "
    "winner_horse_name, prize_pool, total_payout, settled"
)
_PARTICIPANT_COLUMNS = (
    "race_id, user_id, username, horse_id, horse_name, proof_ref, joined_at, "
    "payout, payout_ref"
)


def _active_slot(status: RaceStatus) -> Optional[int]:
    # UNIQUE allows any number of NULLs but a single 1.
    return 1 if status in ACTIVE_STATUSES else None


def encode_horses(horses: List[Horse]) -> str:
    return json.dumps([asdict(h) for h in horses], ensure_ascii=False)


def decode_horses(raw: Optional[str]) -> List[Horse]:
    return [Horse(**item) for item in json.loads(raw or "[]")]


class SqliteRaceRepository(RaceRepository):
    """
    SQLite-backed implementation of `RaceRepository`.

    Owns the `races` and `race_participants` tables. The single-active-race
    rule lives in the schema: `active_slot` is 1 for the race in
    `betting_open`/`racing` and NULL otherwise, under a UNIQUE constraint.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._ensure_tables()

    def _get_connection(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path)

    def _ensure_tables(self) -> None:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS races (
                    race_id TEXT PRIMARY KEY,
                    start_time REAL NOT NULL,
                    end_time REAL,
                    status TEXT NOT NULL DEFAULT 'upcoming'
                        CHECK (status IN ('upcoming', 'betting_open', 'racing', 'finished')),
                    horses TEXT NOT NULL,
                    winner_horse_id INTEGER,
                    winner_horse_name TEXT,
                    prize_pool INTEGER NOT NULL DEFAULT 0,
                    total_payout INTEGER NOT NULL DEFAULT 0,
                    settled INTEGER NOT NULL DEFAULT 0,
                    active_slot INTEGER UNIQUE
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS race_participants (
                    race_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    username TEXT NOT NULL,
                    horse_id INTEGER NOT NULL,
                    horse_name TEXT NOT NULL,
                    proof_ref TEXT,
                    joined_at REAL,
                    payout INTEGER NOT NULL DEFAULT 0,
                    payout_ref TEXT,
                    PRIMARY KEY (race_id, user_id)
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_races_status ON races(status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_races_start_time ON races(start_time)")
            conn.commit()

    @staticmethod
    def _to_domain(row: sqlite3.Row) -> Race:
        winner = None
        if row[5] is not None:
            winner = Winner(horse_id=int(row[5]), horse_name=row[6])
        return Race(
            race_id=row[0],
            start_time=from_epoch(row[1]),
            end_time=from_epoch(row[2]),
            status=RaceStatus(row[3]),
            horses=decode_horses(row[4]),
            winner=winner,
            prize_pool=int(row[7]),
            total_payout=int(row[8]),
            settled=bool(row[9]),
        )

    @staticmethod
    def _participant_to_domain(row: sqlite3.Row) -> Participant:
        return Participant(
            race_id=row[0],
            user_id=str(row[1]),
            username=row[2],
            horse_id=int(row[3]),
            horse_name=row[4],
            proof_ref=row[5],
            joined_at=from_epoch(row[6]),
            payout=int(row[7]),
            payout_ref=row[8],
        )

    def _execute(self, sql: str, params: tuple) -> int:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            conn.commit()
            return cur.rowcount

    def _fetch_races(self, where: str, params: tuple) -> List[Race]:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT {_RACE_COLUMNS} FROM races {where}", params)
            return [self._to_domain(row) for row in cur.fetchall()]

    def create_race(self, race: Race) -> bool:
        try:
            self._execute(
                """
                INSERT INTO races (
                    race_id, start_time, end_time, status, horses, winner_horse_id,
                    winner_horse_name, prize_pool, total_payout, settled, active_slot
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    race.race_id,
                    to_epoch(race.start_time),
                    to_epoch(race.end_time),
                    race.status.value,
                    encode_horses(race.horses),
                    race.winner.horse_id if race.winner else None,
                    race.winner.horse_name if race.winner else None,
                    race.prize_pool,
                    race.total_payout,
                    int(race.settled),
                    _active_slot(race.status),
                ),
            )
        except sqlite3.IntegrityError:
            return False
        return True

    def get_race(self, race_id: str) -> Optional[Race]:
        races = self._fetch_races("WHERE race_id = ?", (race_id,))
        return races[0] if races else None

    def get_active_race(self) -> Optional[Race]:
        races = self._fetch_races("WHERE active_slot = 1", ())
        return races[0] if races else None

    def list_unsettled_races(self, started_before: datetime) -> List[Race]:
        return self._fetch_races(
            """
            WHERE start_time < ? AND (status != 'finished' OR settled = 0)
            ORDER BY start_time
            """,
            (to_epoch(started_before),),
        )

    def list_recent_races(self, limit: int) -> List[Race]:
        return self._fetch_races("ORDER BY start_time DESC LIMIT ?", (limit,))

    def transition_status(
        self,
        race_id: str,
        expected: RaceStatus,
        target: RaceStatus,
    ) -> bool:
        if not can_transition(expected, target):
            return False
        try:
            updated = self._execute(
                """
                UPDATE races
                SET status = ?, active_slot = ?
                WHERE race_id = ? AND status = ?
                """,
                (target.value, _active_slot(target), race_id, expected.value),
            )
        except sqlite3.IntegrityError:
            return False
        return updated == 1

    def save_results(self, race: Race) -> bool:
        updated = self._execute(
            """
            UPDATE races
            SET status = 'finished',
                active_slot = NULL,
                horses = ?,
                winner_horse_id = ?,
                winner_horse_name = ?,
                end_time = ?
            WHERE race_id = ? AND status = 'racing'
            """,
            (
                encode_horses(race.horses),
                race.winner.horse_id if race.winner else None,
                race.winner.horse_name if race.winner else None,
                to_epoch(race.end_time),
                race.race_id,
            ),
        )
        return updated == 1

    def claim_settlement(self, race_id: str) -> bool:
        updated = self._execute(
            """
            UPDATE races
            SET settled = 1
            WHERE race_id = ? AND status = 'finished' AND settled = 0
            """,
            (race_id,),
        )
        return updated == 1

    def record_total_payout(self, race_id: str, total_payout: int) -> None:
        self._execute(
            "UPDATE races SET total_payout = ? WHERE race_id = ?",
            (total_payout, race_id),
        )

    def add_participant(self, participant: Participant) -> bool:
        # The race must still be open at the moment of the insert.
        inserted = self._execute(
            """
            INSERT OR IGNORE INTO race_participants (
                race_id, user_id, username, horse_id, horse_name, proof_ref,
                joined_at, payout, payout_ref
            )
            SELECT ?, ?, ?, ?, ?, ?, ?, 0, NULL
            WHERE EXISTS (
                SELECT 1 FROM races WHERE race_id = ? AND status = 'betting_open'
            )
            """,
            (
                participant.race_id,
                participant.user_id,
                participant.username,
                participant.horse_id,
                participant.horse_name,
                participant.proof_ref,
                to_epoch(participant.joined_at),
                participant.race_id,
            ),
        )
        return inserted == 1

    def get_participant(self, race_id: str, user_id: str) -> Optional[Participant]:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                f"""
                SELECT {_PARTICIPANT_COLUMNS}
                FROM race_participants
                WHERE race_id = ? AND user_id = ?
                """,
                (race_id, user_id),
            )
            row = cur.fetchone()
            if not row:
                return None
            return self._participant_to_domain(row)

    def list_participants(self, race_id: str) -> List[Participant]:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                f"""
                SELECT {_PARTICIPANT_COLUMNS}
                FROM race_participants
                WHERE race_id = ?
                ORDER BY joined_at
                """,
                (race_id,),
            )
            return [self._participant_to_domain(row) for row in cur.fetchall()]

    def record_payout(
        self,
        race_id: str,
        user_id: str,
        payout: int,
        payout_ref: Optional[str],
    ) -> None:
        self._execute(
            """
            UPDATE race_participants
            SET payout = ?, payout_ref = ?
            WHERE race_id = ? AND user_id = ?
            """,
            (payout, payout_ref, race_id, user_id),
        )
