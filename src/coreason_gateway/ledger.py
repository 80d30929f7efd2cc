# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from coreason_gateway.models import UsageRecord
from coreason_gateway.utils.logger import logger

COLUMNS = (
    "request_id",
    "provider",
    "model",
    "user_id",
    "input_tokens",
    "output_tokens",
    "cached_tokens",
    "thinking_tokens",
    "cost",
    "success",
    "outcome",
    "latency",
    "timestamp",
)


class UsageLedger:
    """
    Append-only log of UsageRecords.

    Records are always kept in memory; with a `path` they are also written to a
    SQLite table and read back on start, so period counters survive restarts.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._records: List[UsageRecord] = []
        self._conn: Optional[sqlite3.Connection] = None
        self.write_errors = 0

        if path:
            if path != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._init_db()
            self._records = self._load()
            logger.info(f"Usage ledger opened at {path} ({len(self._records)} records)")

    def _init_db(self) -> None:
        assert self._conn is not None
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS usage_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id TEXT,
                    provider TEXT NOT NULL,
                    model TEXT NOT NULL,
                    user_id TEXT,
                    input_tokens INTEGER DEFAULT 0,
                    output_tokens INTEGER DEFAULT 0,
                    cached_tokens INTEGER DEFAULT 0,
                    thinking_tokens INTEGER DEFAULT 0,
                    cost REAL DEFAULT 0,
                    success INTEGER DEFAULT 1,
                    outcome TEXT NOT NULL,
                    latency REAL DEFAULT 0,
                    timestamp REAL NOT NULL
                )
            """)
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_usage_timestamp ON usage_records(timestamp)")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_usage_user ON usage_records(user_id)")

    def _load(self) -> List[UsageRecord]:
        assert self._conn is not None
        cursor = self._conn.execute(f"SELECT {', '.join(COLUMNS)} FROM usage_records ORDER BY timestamp, id")
        return [UsageRecord(**dict(zip(COLUMNS, row))) for row in cursor.fetchall()]

    def append(self, record: UsageRecord) -> None:
        """
        Keeps the record in memory and writes it to SQLite when configured.
        A failed write is logged and counted; the in-memory record stays.
        """
        with self._lock:
            self._records.append(record)
            if self._conn is None:
                return
            row: Dict[str, Any] = record.model_dump(mode="json")
            try:
                with self._conn:
                    self._conn.execute(
                        f"INSERT INTO usage_records ({', '.join(COLUMNS)}) VALUES ({', '.join('?' for _ in COLUMNS)})",
                        tuple(row[c] for c in COLUMNS),
                    )
            except sqlite3.Error as e:
                self.write_errors += 1
                logger.error(f"Failed to persist usage record {record.request_id} to {self.path}: {e}")

    def records(self, start: Optional[float] = None, end: Optional[float] = None) -> List[UsageRecord]:
        """Records with `start <= timestamp <= end`, oldest first."""
        with self._lock:
            records = list(self._records)
        return [
            r for r in records if (start is None or r.timestamp >= start) and (end is None or r.timestamp <= end)
        ]

    def purge_before(self, cutoff: float) -> int:
        with self._lock:
            kept = [r for r in self._records if r.timestamp >= cutoff]
            purged = len(self._records) - len(kept)
            self._records = kept
            if self._conn is not None:
                with self._conn:
                    self._conn.execute("DELETE FROM usage_records WHERE timestamp < ?", (cutoff,))
        return purged

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
