from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from .models import BacktestRecord
from .settings import settings


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS backtest_records (
    id TEXT PRIMARY KEY,
    created_at_ms INTEGER NOT NULL,
    status TEXT NOT NULL,
    symbol TEXT NOT NULL,
    record_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_backtest_records_created
    ON backtest_records (created_at_ms DESC);
"""


def get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    db_path = Path(db_path or settings.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def initialize_database(db_path: Path | None = None) -> None:
    with get_connection(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
        conn.commit()


class SqliteRecordStore:
    """Backtest records keyed by id, stored whole as JSON."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = Path(db_path or settings.db_path)
        initialize_database(self.db_path)

    def _get(self, backtest_id: str) -> BacktestRecord | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT record_json FROM backtest_records WHERE id = ?",
                (backtest_id,),
            ).fetchone()
        if row is None:
            return None
        return BacktestRecord.from_dict(json.loads(row["record_json"]))

    def _put(self, record: BacktestRecord) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO backtest_records (id, created_at_ms, status, symbol, record_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    record_json = excluded.record_json,
                    updated_at = excluded.updated_at
                """,
                (
                    record.id,
                    record.created_at_ms,
                    record.status,
                    record.symbol,
                    json.dumps(record.to_dict()),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()

    def _list_recent(self, limit: int) -> list[BacktestRecord]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT record_json FROM backtest_records ORDER BY created_at_ms DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [BacktestRecord.from_dict(json.loads(r["record_json"])) for r in rows]

    async def get(self, backtest_id: str) -> BacktestRecord | None:
        return await asyncio.to_thread(self._get, backtest_id)

    async def put(self, record: BacktestRecord) -> None:
        await asyncio.to_thread(self._put, record)

    async def list_recent(self, limit: int = 20) -> list[BacktestRecord]:
        return await asyncio.to_thread(self._list_recent, limit)
