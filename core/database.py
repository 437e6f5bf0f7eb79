# core/database.py

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterable, List, Optional

from core.errors import StoreError
from core.fingerprint import Fingerprint
from core.models import AssetRecord

logger = logging.getLogger(__name__)

_COLUMNS = ("id, file_name, file_path, file_size, last_modified, width, height, "
            "thumbnail, fingerprint, fingerprint_bits, tags")


class AssetDatabase:
    """
    SQLite store for asset records with a multi-value tag index.

    Records come back in insertion order (ascending id), which search and
    duplicate views rely on for tie-breaking.
    """

    def __init__(self, db_path: str = "data/visionquest.db"):
        self.db_path = db_path
        self.conn = None
        self._lock = threading.RLock()
        self._initialize_database()

    def _initialize_database(self):
        """Create database schema"""
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.execute("PRAGMA foreign_keys = ON")

            cursor = self.conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS assets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    file_name TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    file_size INTEGER NOT NULL,
                    last_modified REAL,
                    width INTEGER,
                    height INTEGER,
                    thumbnail BLOB,
                    fingerprint TEXT,
                    fingerprint_bits INTEGER,
                    tags TEXT NOT NULL DEFAULT '[]',
                    indexed_date TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # One row per (asset, tag) so tag lookups hit an index
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS asset_tags (
                    asset_id INTEGER NOT NULL,
                    tag TEXT NOT NULL,
                    FOREIGN KEY (asset_id) REFERENCES assets(id) ON DELETE CASCADE,
                    UNIQUE(asset_id, tag)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_name_size ON assets(file_name, file_size)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_fingerprint ON assets(fingerprint)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_tag ON asset_tags(tag)
            """)

            self.conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open database {self.db_path}: {e}") from e

    def add(self, record: AssetRecord) -> int:
        """Insert a record and return its new id"""
        fingerprint = record.fingerprint
        with self._lock:
            try:
                with self._connection():
                    cursor = self.conn.execute("""
                        INSERT INTO assets
                        (file_name, file_path, file_size, last_modified, width, height,
                         thumbnail, fingerprint, fingerprint_bits, tags)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        record.file_name,
                        record.file_path,
                        record.file_size,
                        record.last_modified,
                        record.width,
                        record.height,
                        record.thumbnail,
                        fingerprint.to_hex() if fingerprint else None,
                        fingerprint.bits if fingerprint else None,
                        json.dumps(record.tags),
                    ))
                    asset_id = cursor.lastrowid
                    self._write_tags(asset_id, record.tags)
            except sqlite3.Error as e:
                raise StoreError(f"Failed to add {record.file_name}: {e}") from e

        record.id = asset_id
        return asset_id

    def get(self, asset_id: int) -> Optional[AssetRecord]:
        rows = self._query(f"SELECT {_COLUMNS} FROM assets WHERE id = ?", (asset_id,))
        return self._to_record(rows[0]) if rows else None

    def get_all(self) -> List[AssetRecord]:
        """All records in insertion order"""
        rows = self._query(f"SELECT {_COLUMNS} FROM assets ORDER BY id")
        return [self._to_record(row) for row in rows]

    def find_by_name_and_size(self, file_name: str, file_size: int) -> Optional[AssetRecord]:
        rows = self._query(f"""
            SELECT {_COLUMNS} FROM assets
            WHERE file_name = ? AND file_size = ?
            ORDER BY id LIMIT 1
        """, (file_name, file_size))
        return self._to_record(rows[0]) if rows else None

    def find_by_tag(self, tag: str) -> List[AssetRecord]:
        rows = self._query(f"""
            SELECT {', '.join('a.' + c.strip() for c in _COLUMNS.split(','))}
            FROM assets a JOIN asset_tags t ON t.asset_id = a.id
            WHERE t.tag = ?
            ORDER BY a.id
        """, (tag.lower(),))
        return [self._to_record(row) for row in rows]

    def update_tags(self, asset_id: int, tags: List[str]):
        with self._lock:
            try:
                with self._connection():
                    self.conn.execute(
                        "UPDATE assets SET tags = ? WHERE id = ?",
                        (json.dumps(tags), asset_id),
                    )
                    self.conn.execute("DELETE FROM asset_tags WHERE asset_id = ?", (asset_id,))
                    self._write_tags(asset_id, tags)
            except sqlite3.Error as e:
                raise StoreError(f"Failed to update tags of {asset_id}: {e}") from e

    def update_fingerprint(self, asset_id: int, fingerprint: Fingerprint):
        with self._lock:
            try:
                with self._connection():
                    self.conn.execute(
                        "UPDATE assets SET fingerprint = ?, fingerprint_bits = ? WHERE id = ?",
                        (fingerprint.to_hex(), fingerprint.bits, asset_id),
                    )
            except sqlite3.Error as e:
                raise StoreError(f"Failed to update fingerprint of {asset_id}: {e}") from e

    def delete(self, asset_id: int) -> bool:
        """Remove a record. Returns False if no such id exists."""
        with self._lock:
            try:
                with self._connection():
                    cursor = self.conn.execute("DELETE FROM assets WHERE id = ?", (asset_id,))
            except sqlite3.Error as e:
                raise StoreError(f"Failed to delete {asset_id}: {e}") from e
        return cursor.rowcount > 0

    def count(self) -> int:
        return self._query("SELECT COUNT(*) FROM assets")[0][0]

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StoreError("Database is closed")
        return self.conn

    def _write_tags(self, asset_id: int, tags: Iterable[str]):
        self.conn.executemany(
            "INSERT OR IGNORE INTO asset_tags (asset_id, tag) VALUES (?, ?)",
            [(asset_id, tag.lower()) for tag in tags],
        )

    def _query(self, sql: str, params: tuple = ()) -> list:
        with self._lock:
            try:
                return self._connection().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Database query failed: {e}") from e

    @staticmethod
    def _to_record(row) -> AssetRecord:
        (asset_id, file_name, file_path, file_size, last_modified,
         width, height, thumbnail, fingerprint, bits, tags) = row

        return AssetRecord(
            id=asset_id,
            file_name=file_name,
            file_path=file_path,
            file_size=file_size,
            last_modified=last_modified,
            width=width,
            height=height,
            thumbnail=thumbnail or b"",
            fingerprint=Fingerprint.from_hex(fingerprint, bits) if fingerprint else None,
            tags=json.loads(tags) if tags else [],
        )
