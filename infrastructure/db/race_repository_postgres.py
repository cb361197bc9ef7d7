from __future__ import annotations

from datetime import datetime
from typing import List, Optional

import psycopg2
from psycopg2.extras import Json

from domain.models import Horse, Participant, Race, RaceStatus, Winner, can_transition
from domain.repositories import RaceRepository
from infrastructure.db.race_repository_sqlite import _active_slot

_RACE_COLUMNS = (
    "race_id, start_time, end_time, status, horses, winner_horse_id, "
    "winner_horse_name, prize_pool, total_payout, settled"
)
_PARTICIPANT_COLUMNS = (
    "race_id, user_id, username, horse_id, horse_name, proof_ref, joined_at, "
    "payout, payout_ref"
)


def _horses_json(horses: List[Horse]) -> Json:
    return Json(
        [
            {
                "id": h.id,
                "name": h.name,
                "emoji": h.emoji,
                "finish_time": h.finish_time,
                "position": h.position,
            }
            for h in horses
        ]
    )


class PostgresRaceRepository(RaceRepository):
    """
    Postgres-backed implementation of `RaceRepository`.

    Mirrors the SQLite schema; `horses` is stored as JSONB and the
    single-active-race rule is the same UNIQUE `active_slot` column.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._ensure_tables()

    def _get_connection(self):
        return psycopg2.connect(self._dsn)

    def _ensure_tables(self) -> None:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS races (
                        race_id TEXT PRIMARY KEY,
                        start_time TIMESTAMPTZ NOT NULL,
                        end_time TIMESTAMPTZ,
                        status TEXT NOT NULL DEFAULT 'upcoming'
                            CHECK (status IN ('upcoming', 'betting_open', 'racing', 'finished')),
                        horses JSONB NOT NULL,
                        winner_horse_id INTEGER,
                        winner_horse_name TEXT,
                        prize_pool BIGINT NOT NULL DEFAULT 0,
                        total_payout BIGINT NOT NULL DEFAULT 0,
                        settled BOOLEAN NOT NULL DEFAULT FALSE,
                        active_slot INTEGER UNIQUE
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS race_participants (
                        race_id TEXT NOT NULL REFERENCES races(race_id) ON DELETE CASCADE,
                        user_id TEXT NOT NULL,
                        username TEXT NOT NULL,
                        horse_id INTEGER NOT NULL,
                        horse_name TEXT NOT NULL,
                        proof_ref TEXT,
                        joined_at TIMESTAMPTZ DEFAULT now(),
                        payout BIGINT NOT NULL DEFAULT 0,
                        payout_ref TEXT,
                        PRIMARY KEY (race_id, user_id)
                    )
                    """
                )
                cur.execute("CREATE INDEX IF NOT EXISTS idx_races_status ON races(status)")
                conn.commit()

    @staticmethod
    def _to_domain(row: tuple) -> Race:
        winner = None
        if row[5] is not None:
            winner = Winner(horse_id=int(row[5]), horse_name=row[6])
        return Race(
            race_id=row[0],
            start_time=row[1],
            end_time=row[2],
            status=RaceStatus(row[3]),
            # psycopg2 decodes JSONB into Python lists/dicts.
            horses=[Horse(**item) for item in (row[4] or [])],
            winner=winner,
            prize_pool=int(row[7]),
            total_payout=int(row[8]),
            settled=bool(row[9]),
        )

    @staticmethod
    def _participant_to_domain(row: tuple) -> Participant:
        return Participant(
            race_id=row[0],
            user_id=str(row[1]),
            username=row[2],
            horse_id=int(row[3]),
            horse_name=row[4],
            proof_ref=row[5],
            joined_at=row[6],
            payout=int(row[7]),
            payout_ref=row[8],
        )

    def _execute(self, sql: str, params: tuple) -> int:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                conn.commit()
                return cur.rowcount

    def _fetch_races(self, where: str, params: tuple) -> List[Race]:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_RACE_COLUMNS} FROM races {where}", params)
                return [self._to_domain(row) for row in cur.fetchall()]

    def create_race(self, race: Race) -> bool:
        inserted = self._execute(
            """
            INSERT INTO races (
                race_id, start_time, end_time, status, horses, winner_horse_id,
                winner_horse_name, prize_pool, total_payout, settled, active_slot
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
            """,
            (
                race.race_id,
                race.start_time,
                race.end_time,
                race.status.value,
                _horses_json(race.horses),
                race.winner.horse_id if race.winner else None,
                race.winner.horse_name if race.winner else None,
                race.prize_pool,
                race.total_payout,
                race.settled,
                _active_slot(race.status),
            ),
        )
        return inserted == 1

    def get_race(self, race_id: str) -> Optional[Race]:
        races = self._fetch_races("WHERE race_id = %s", (race_id,))
        return races[0] if races else None

    def get_active_race(self) -> Optional[Race]:
        races = self._fetch_races("WHERE active_slot = 1", ())
        return races[0] if races else None

    def list_unsettled_races(self, started_before: datetime) -> List[Race]:
        return self._fetch_races(
            """
            WHERE start_time < %s AND (status <> 'finished' OR NOT settled)
            ORDER BY start_time
            """,
            (started_before,),
        )

    def list_recent_races(self, limit: int) -> List[Race]:
        return self._fetch_races("ORDER BY start_time DESC LIMIT %s", (limit,))

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
                SET status = %s, active_slot = %s
                WHERE race_id = %s AND status = %s
                """,
                (target.value, _active_slot(target), race_id, expected.value),
            )
        except psycopg2.IntegrityError:
            return False
        return updated == 1

    def save_results(self, race: Race) -> bool:
        updated = self._execute(
            """
            UPDATE races
            SET status = 'finished',
                active_slot = NULL,
                horses = %s,
                winner_horse_id = %s,
                winner_horse_name = %s,
                end_time = %s
            WHERE race_id = %s AND status = 'racing'
            """,
            (
                _horses_json(race.horses),
                race.winner.horse_id if race.winner else None,
                race.winner.horse_name if race.winner else None,
                race.end_time,
                race.race_id,
            ),
        )
        return updated == 1

    def claim_settlement(self, race_id: str) -> bool:
        updated = self._execute(
            """
            UPDATE races
            SET settled = TRUE
            WHERE race_id = %s AND status = 'finished' AND NOT settled
            """,
            (race_id,),
        )
        return updated == 1

    def record_total_payout(self, race_id: str, total_payout: int) -> None:
        self._execute(
            "UPDATE races SET total_payout = %s WHERE race_id = %s",
            (total_payout, race_id),
        )

    def add_participant(self, participant: Participant) -> bool:
        inserted = self._execute(
            """
            INSERT INTO race_participants (
                race_id, user_id, username, horse_id, horse_name, proof_ref, joined_at
            )
            SELECT %s, %s, %s, %s, %s, %s, %s
            WHERE EXISTS (
                SELECT 1 FROM races WHERE race_id = %s AND status = 'betting_open'
            )
            ON CONFLICT (race_id, user_id) DO NOTHING
            """,
            (
                participant.race_id,
                participant.user_id,
                participant.username,
                participant.horse_id,
                participant.horse_name,
                participant.proof_ref,
                participant.joined_at,
                participant.race_id,
            ),
        )
        return inserted == 1

    def get_participant(self, race_id: str, user_id: str) -> Optional[Participant]:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_PARTICIPANT_COLUMNS}
                    FROM race_participants
                    WHERE race_id = %s AND user_id = %s
                    """,
                    (race_id, user_id),
                )
                row = cur.fetchone()
                if not row:
                    return None
                return self._participant_to_domain(row)

    def list_participants(self, race_id: str) -> List[Participant]:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_PARTICIPANT_COLUMNS}
                    FROM race_participants
                    WHERE race_id = %s
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
            SET payout = %s, payout_ref = %s
            WHERE race_id = %s AND user_id = %s
            """,
            (payout, payout_ref, race_id, user_id),
        )
