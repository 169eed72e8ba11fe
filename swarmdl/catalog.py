"""SQLite torrent catalog.

Persists the listing of added torrents (id, name, size, status, info hash)
so session ids stay stable across restarts. Piece state is not stored.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from swarmdl.models import TorrentInfo, TorrentStatus


@dataclass
class CatalogEntry:
    """One row of the ``torrents`` table."""

    id: int
    name: str
    size: int
    status: TorrentStatus
    info_hash: bytes


class TorrentCatalog:
    """Torrent listing backed by SQLite.

    Attributes:
        db_path: Database file, or ``:memory:``
        db: SQLite database connection
    """

    def __init__(self, db_path: Path | str = ":memory:"):
        self.db_path = str(db_path) if str(db_path) == ":memory:" else str(Path(db_path).expanduser())
        self.db = self._init_database()
        self.logger = logging.getLogger(__name__)

    def _init_database(self) -> sqlite3.Connection:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        db = sqlite3.connect(self.db_path)
        db.execute("""
            CREATE TABLE IF NOT EXISTS torrents (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                size INTEGER NOT NULL,
                status TEXT NOT NULL,
                info_hash BLOB NOT NULL UNIQUE
            )
        """)
        db.commit()
        return db

    def add(self, torrent_info: TorrentInfo) -> int:
        """Insert a torrent and return its id.

        A torrent already in the catalog keeps its id and is reset to Pending.
        """
        cursor = self.db.execute(
            "SELECT id FROM torrents WHERE info_hash = ?",
            (torrent_info.info_hash,),
        )
        row = cursor.fetchone()
        if row is not None:
            self.update_status(row[0], TorrentStatus.PENDING)
            return row[0]

        cursor = self.db.execute(
            "INSERT INTO torrents (name, size, status, info_hash) VALUES (?, ?, ?, ?)",
            (
                torrent_info.name,
                torrent_info.total_length,
                TorrentStatus.PENDING.value,
                torrent_info.info_hash,
            ),
        )
        self.db.commit()
        self.logger.debug("Catalogued %s as #%d", torrent_info.name, cursor.lastrowid)
        return cursor.lastrowid

    def update_status(self, torrent_id: int, status: TorrentStatus | str) -> None:
        self.db.execute(
            "UPDATE torrents SET status = ? WHERE id = ?",
            (TorrentStatus(status).value, torrent_id),
        )
        self.db.commit()

    def remove(self, torrent_id: int) -> bool:
        """Delete a row; returns False if the id is unknown."""
        cursor = self.db.execute("DELETE FROM torrents WHERE id = ?", (torrent_id,))
        self.db.commit()
        return cursor.rowcount > 0

    def get(self, torrent_id: int) -> CatalogEntry | None:
        cursor = self.db.execute(
            "SELECT id, name, size, status, info_hash FROM torrents WHERE id = ?",
            (torrent_id,),
        )
        row = cursor.fetchone()
        return _entry(row) if row else None

    def list_torrents(self) -> list[CatalogEntry]:
        cursor = self.db.execute(
            "SELECT id, name, size, status, info_hash FROM torrents ORDER BY id",
        )
        return [_entry(row) for row in cursor.fetchall()]

    def close(self) -> None:
        """Close database connection."""
        if self.db:
            self.db.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _entry(row: tuple) -> CatalogEntry:
    torrent_id, name, size, status, info_hash = row
    return CatalogEntry(
        id=torrent_id,
        name=name,
        size=size,
        status=TorrentStatus(status),
        info_hash=bytes(info_hash),
    )
