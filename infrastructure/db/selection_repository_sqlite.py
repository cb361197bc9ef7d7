from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import List, Optional

from domain.models import TempSelection
from domain.repositories import SelectionRepository
from infrastructure.db.timestamps import from_epoch, to_epoch


class SqliteSelectionRepository(SelectionRepository):
    """
    SQLite-backed implementation of `SelectionRepository`.

    Stores pending horse picks in a `temp_selections` table keyed by
    (user_id, race_id).
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
                CREATE TABLE IF NOT EXISTS temp_selections (
                    user_id TEXT NOT NULL,
                    race_id TEXT NOT NULL,
                    horse_id INTEGER NOT NULL,
                    horse_name TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    PRIMARY KEY (user_id, race_id)
                )
                """
            )
            conn.commit()

    @staticmethod
    def _to_domain(row: sqlite3.Row) -> TempSelection:
        return TempSelection(
            user_id=str(row[0]),
            race_id=row[1],
            horse_id=int(row[2]),
            horse_name=row[3],
            created_at=from_epoch(row[4]),
        )

    def add_selection(self, selection: TempSelection) -> bool:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT OR IGNORE INTO temp_selections (
                    user_id, race_id, horse_id, horse_name, created_at
                )
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    selection.user_id,
                    selection.race_id,
                    selection.horse_id,
                    selection.horse_name,
                    to_epoch(selection.created_at),
                ),
            )
            conn.commit()
            return cur.rowcount == 1

    def get_selection(self, user_id: str, race_id: str) -> Optional[TempSelection]:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT user_id, race_id, horse_id, horse_name, created_at
                FROM temp_selections
                WHERE user_id = ? AND race_id = ?
                """,
                (user_id, race_id),
            )
            row = cur.fetchone()
            if not row:
                return None
            return self._to_domain(row)

    def list_selections(self, race_id: str) -> List[TempSelection]:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT user_id, race_id, horse_id, horse_name, created_at
                FROM temp_selections
                WHERE race_id = ?
                """,
                (race_id,),
            )
            return [self._to_domain(row) for row in cur.fetchall()]

    def delete_selection(self, user_id: str, race_id: str) -> None:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "DELETE FROM temp_selections WHERE user_id = ? AND race_id = ?",
                (user_id, race_id),
            )
            conn.commit()

    def delete_selections_before(self, cutoff: datetime) -> int:
        with self._get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "DELETE FROM temp_selections WHERE created_at < ?",
                (to_epoch(cutoff),),
            )
            conn.commit()
            return cur.rowcount
