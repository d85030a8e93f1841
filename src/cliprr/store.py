"""Persistence for detection output.

The processing core produces SegmentMatch records; this store keeps the latest
result per episode in the same SQLite file as the job queue.
"""

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from sqlite_utils import Database

from .models import SegmentMatch, sort_matches

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS segment_matches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    show_id INTEGER NOT NULL,
    episode_id INTEGER NOT NULL,
    season_number INTEGER NOT NULL,
    start_offset REAL NOT NULL,
    end_offset REAL NOT NULL,
    confidence REAL NOT NULL,
    label TEXT NOT NULL,
    detected_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_segments_show ON segment_matches(show_id, season_number);
CREATE INDEX IF NOT EXISTS idx_segments_episode ON segment_matches(episode_id);
"""


class SQLiteSegmentStore:
    """Latest detected segments per episode."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
        self.db = Database(conn)
        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.executescript(SCHEMA_SQL)
        self._lock = threading.Lock()

    def replace_for_episode(self, episode_id: int, matches: Sequence[SegmentMatch]) -> None:
        """Atomically replace every stored segment of an episode."""
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            with self.db.conn:
                self.db.conn.execute(
                    "DELETE FROM segment_matches WHERE episode_id = ?", (episode_id,)
                )
                self.db.conn.executemany(
                    """
                    INSERT INTO segment_matches
                        (show_id, episode_id, season_number, start_offset, end_offset,
                         confidence, label, detected_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            m.show_id, m.episode_id, m.season_number, m.start_offset,
                            m.end_offset, m.confidence, m.label, now,
                        )
                        for m in matches
                    ],
                )

    def get_segments(self, show_id: int, season: Optional[int] = None) -> List[SegmentMatch]:
        where = "show_id = ?"
        params: list = [show_id]
        if season is not None:
            where += " AND season_number = ?"
            params.append(season)

        with self._lock:
            rows = list(self.db["segment_matches"].rows_where(where, params, order_by="episode_id, start_offset"))

        return self._to_matches(rows)

    def get_for_episode(self, episode_id: int) -> List[SegmentMatch]:
        with self._lock:
            rows = list(self.db["segment_matches"].rows_where("episode_id = ?", [episode_id]))
        return sort_matches(self._to_matches(rows))

    @staticmethod
    def _to_matches(rows) -> List[SegmentMatch]:
        return [
            SegmentMatch(
                show_id=row["show_id"],
                episode_id=row["episode_id"],
                season_number=row["season_number"],
                start_offset=row["start_offset"],
                end_offset=row["end_offset"],
                confidence=row["confidence"],
                label=row["label"],
            )
            for row in rows
        ]

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()
