"""Append-only persistence of raw fee points and computed snapshots."""

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from .constants import (
    DEFAULT_DB_PATH,
    DEFAULT_JSONL_DIR,
    RAW_POINTS_FILENAME,
    SNAPSHOTS_FILENAME,
)
from .logging import get_logger
from .types import FeeDataPoint, FeeSnapshot, format_timestamp

logger = get_logger(__name__)


class FeeStore:
    """
    History of fee samples and snapshots.

    Both record types are append-only: rows are written once and never
    updated or deleted. The engine is the only writer; reporting code may
    read concurrently.
    """

    def __init__(self, backend: str = "sqlite", db_path: str = None, jsonl_dir: str = None):
        """
        Initialize fee store.

        Args:
            backend: "sqlite" or "jsonl"
            db_path: Path to SQLite database (for sqlite backend), ":memory:" allowed
            jsonl_dir: Directory holding the JSONL files (for jsonl backend)
        """
        self.backend = backend
        self.db_path = db_path or DEFAULT_DB_PATH
        self.jsonl_dir = jsonl_dir or DEFAULT_JSONL_DIR
        self._lock = threading.Lock()

        if backend == "sqlite":
            self._init_sqlite()
        elif backend == "jsonl":
            self._init_jsonl()
        else:
            raise ValueError(f"Unknown backend: {backend}")

    def _init_sqlite(self):
        """Initialize SQLite database and schema."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS fee_data_points (
                id               INTEGER PRIMARY KEY AUTOINCREMENT,
                fee_amount       INTEGER NOT NULL,
                timestamp        TEXT    NOT NULL,
                transaction_hash TEXT    NOT NULL,
                ledger_sequence  INTEGER NOT NULL,
                created_at       TEXT    NOT NULL DEFAULT (datetime('now'))
            )
        """)
        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_fee_data_points_timestamp
                ON fee_data_points (timestamp)
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS fee_snapshots (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                base_fee    TEXT NOT NULL,
                min_fee     TEXT NOT NULL,
                max_fee     TEXT NOT NULL,
                avg_fee     TEXT NOT NULL,
                captured_at TEXT NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_fee_snapshots_captured_at
                ON fee_snapshots (captured_at)
        """)
        self.conn.commit()
        logger.info(f"Initialized SQLite fee store: {self.db_path}")

    def _init_jsonl(self):
        """Initialize JSONL record files."""
        base = Path(self.jsonl_dir)
        base.mkdir(parents=True, exist_ok=True)
        self.points_path = base / RAW_POINTS_FILENAME
        self.snapshots_path = base / SNAPSHOTS_FILENAME
        self.points_path.touch(exist_ok=True)
        self.snapshots_path.touch(exist_ok=True)
        logger.info(f"Initialized JSONL fee store: {self.jsonl_dir}")

    def _append_lines(self, path: Path, records: Iterable[dict]):
        with path.open("a", encoding="utf-8") as f:
            for record in records:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")

    def _read_lines(self, path: Path) -> List[dict]:
        with path.open("r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    def append_points(self, points: List[FeeDataPoint]) -> int:
        """
        Append raw fee points.

        Returns:
            Number of points written
        """
        if not points:
            return 0
        records = [point.to_record() for point in points]

        with self._lock:
            if self.backend == "sqlite":
                self.conn.executemany("""
                    INSERT INTO fee_data_points
                    (fee_amount, timestamp, transaction_hash, ledger_sequence)
                    VALUES (:fee_amount, :timestamp, :transaction_hash, :ledger_sequence)
                """, records)
                self.conn.commit()
            else:
                self._append_lines(self.points_path, records)

        logger.debug(f"Stored {len(records)} fee data points")
        return len(records)

    def append_snapshot(self, snapshot: FeeSnapshot):
        """Append one computed snapshot."""
        record = snapshot.to_record()

        with self._lock:
            if self.backend == "sqlite":
                self.conn.execute("""
                    INSERT INTO fee_snapshots
                    (base_fee, min_fee, max_fee, avg_fee, captured_at)
                    VALUES (:base_fee, :min_fee, :max_fee, :avg_fee, :captured_at)
                """, record)
                self.conn.commit()
            else:
                self._append_lines(self.snapshots_path, [record])

        logger.debug(f"Stored fee snapshot captured at {record['captured_at']}")

    def recent_points(self, limit: int = 100) -> List[FeeDataPoint]:
        """
        Most recently stored points.

        Args:
            limit: Maximum number of points to return

        Returns:
            Points in insertion order (oldest of the selection first)
        """
        with self._lock:
            if self.backend == "sqlite":
                rows = self.conn.execute("""
                    SELECT fee_amount, timestamp, transaction_hash, ledger_sequence
                    FROM fee_data_points ORDER BY id DESC LIMIT ?
                """, (limit,)).fetchall()
                records = [dict(row) for row in reversed(rows)]
            else:
                records = self._read_lines(self.points_path)[-limit:] if limit > 0 else []
        return [FeeDataPoint.from_record(record) for record in records]

    def count_points(self) -> int:
        with self._lock:
            if self.backend == "sqlite":
                row = self.conn.execute("SELECT COUNT(*) AS n FROM fee_data_points").fetchone()
                return row["n"]
            return len(self._read_lines(self.points_path))

    def snapshots_between(self, start: datetime, end: datetime) -> List[FeeSnapshot]:
        """
        Snapshots captured within ``[start, end]``, oldest first.

        Timestamps are stored as uniform ISO-8601 UTC strings, so the range
        filter compares them lexically.
        """
        lo, hi = format_timestamp(start), format_timestamp(end)
        with self._lock:
            if self.backend == "sqlite":
                rows = self.conn.execute("""
                    SELECT base_fee, min_fee, max_fee, avg_fee, captured_at
                    FROM fee_snapshots
                    WHERE captured_at >= ? AND captured_at <= ?
                    ORDER BY captured_at, id
                """, (lo, hi)).fetchall()
                records = [dict(row) for row in rows]
            else:
                records = sorted(
                    (r for r in self._read_lines(self.snapshots_path) if lo <= r["captured_at"] <= hi),
                    key=lambda r: r["captured_at"],
                )
        return [FeeSnapshot.from_record(record) for record in records]

    def latest_snapshot(self) -> Optional[FeeSnapshot]:
        """Most recently stored snapshot, if any."""
        with self._lock:
            if self.backend == "sqlite":
                row = self.conn.execute("""
                    SELECT base_fee, min_fee, max_fee, avg_fee, captured_at
                    FROM fee_snapshots ORDER BY id DESC LIMIT 1
                """).fetchone()
                record = dict(row) if row else None
            else:
                records = self._read_lines(self.snapshots_path)
                record = records[-1] if records else None
        return FeeSnapshot.from_record(record) if record else None

    def close(self):
        """Close connections and cleanup."""
        if self.backend == "sqlite" and hasattr(self, "conn"):
            self.conn.close()
            logger.debug("Closed SQLite connection")
