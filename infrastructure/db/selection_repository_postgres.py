from __future__ import annotations

from datetime import datetime
from typing import List, Optional

import psycopg2

from domain.models import TempSelection
from domain.repositories import SelectionRepository


class PostgresSelectionRepository(SelectionRepository):
    """Postgres-backed implementation of `SelectionRepository`."""

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
                    CREATE TABLE IF NOT EXISTS temp_selections (
                        user_id TEXT NOT NULL,
                        race_id TEXT NOT NULL,
                        horse_id INTEGER NOT NULL,
                        horse_name TEXT NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        PRIMARY KEY (user_id, race_id)
                    )
                    """
                )
                conn.commit()

    @staticmethod
    def _to_domain(row: tuple) -> TempSelection:
        return TempSelection(
            user_id=str(row[0]),
            race_id=row[1],
            horse_id=int(row[2]),
            horse_name=row[3],
            created_at=row[4],
        )

    def add_selection(self, selection: TempSelection) -> bool:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO temp_selections (
                        user_id, race_id, horse_id, horse_name, created_at
                    )
                    VALUES (%s, %s, %s, %s, COALESCE(%s, now()))
                    ON CONFLICT (user_id, race_id) DO NOTHING
                    """,
                    (
                        selection.user_id,
                        selection.race_id,
                        selection.horse_id,
                        selection.horse_name,
                        selection.created_at,
                    ),
                )
                conn.commit()
                return cur.rowcount == 1

    def get_selection(self, user_id: str, race_id: str) -> Optional[TempSelection]:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT user_id, race_id, horse_id, horse_name, created_at
                    FROM temp_selections
                    WHERE user_id = %s AND race_id = %s
                    """,
                    (user_id, race_id),
                )
                row = cur.fetchone()
                if not row:
                    return None
                return self._to_domain(row)

    def list_selections(self, race_id: str) -> List[TempSelection]:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT user_id, race_id, horse_id, horse_name, created_at
                    FROM temp_selections
                    WHERE race_id = %s
                    """,
                    (race_id,),
                )
                return [self._to_domain(row) for row in cur.fetchall()]

    def delete_selection(self, user_id: str, race_id: str) -> None:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM temp_selections WHERE user_id = %s AND race_id = %s",
                    (user_id, race_id),
                )
                conn.commit()

    def delete_selections_before(self, cutoff: datetime) -> int:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM temp_selections WHERE created_at < %s", (cutoff,))
                conn.commit()
                return cur.rowcount
