import json
import time
from datetime import datetime
from typing import Any, List, Optional, Tuple

import aiosqlite

from .schemas import HistoryEntry, ToolCallRecord


DAY_S = 24 * 60 * 60


def utc_now() -> str:
    return datetime.utcnow().isoformat() + "Z"


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS commands(
                    id TEXT PRIMARY KEY,
                    timestamp REAL,
                    command TEXT,
                    source TEXT,
                    tool_calls_json TEXT,
                    response TEXT,
                    error TEXT,
                    cancelled INTEGER DEFAULT 0,
                    summary TEXT
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    command_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS configs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    payload_json TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_commands_timestamp ON commands(timestamp);
                CREATE INDEX IF NOT EXISTS idx_events_command ON events(command_id, seq);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    # History

    async def append_history(self, entry: HistoryEntry) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO commands(id, timestamp, command, source, tool_calls_json, response, error, cancelled, summary) "
            "VALUES (?,?,?,?,?,?,?,?,?)",
            (
                entry.id,
                entry.timestamp,
                entry.command,
                entry.source,
                json.dumps([record.model_dump() for record in entry.tool_calls]),
                entry.response,
                entry.error,
                1 if entry.cancelled else 0,
                entry.summary,
            ),
        )

    def _row_to_entry(self, row: aiosqlite.Row) -> HistoryEntry:
        return HistoryEntry(
            id=row["id"],
            timestamp=row["timestamp"],
            command=row["command"] or "",
            source=row["source"] or "interactive",
            tool_calls=[ToolCallRecord(**item) for item in json.loads(row["tool_calls_json"] or "[]")],
            response=row["response"],
            error=row["error"],
            cancelled=bool(row["cancelled"]),
            summary=row["summary"] or "",
        )

    async def list_history(self, limit: Optional[int] = None) -> List[HistoryEntry]:
        """Most recent entries, oldest first."""
        if limit is not None:
            rows = await self.fetchall(
                "SELECT * FROM (SELECT * FROM commands ORDER BY timestamp DESC, rowid DESC LIMIT ?) "
                "ORDER BY timestamp ASC, rowid ASC",
                (max(int(limit), 0),),
            )
        else:
            rows = await self.fetchall("SELECT * FROM commands ORDER BY timestamp ASC, rowid ASC")
        return [self._row_to_entry(row) for row in rows]

    async def get_history_entry(self, command_id: str) -> Optional[HistoryEntry]:
        row = await self.fetchone("SELECT * FROM commands WHERE id=?", (command_id,))
        return self._row_to_entry(row) if row else None

    async def clear_history(self) -> None:
        await self.execute("DELETE FROM commands")

    async def prune_history(self, max_entries: int, max_age_days: float, now: Optional[float] = None) -> None:
        cutoff = (now if now is not None else time.time()) - max_age_days * DAY_S
        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM commands WHERE timestamp <= ?", (cutoff,))
            await db.execute(
                "DELETE FROM commands WHERE id NOT IN "
                "(SELECT id FROM commands ORDER BY timestamp DESC, rowid DESC LIMIT ?)",
                (max(int(max_entries), 0),),
            )
            await db.execute(
                "DELETE FROM events WHERE created_at <= ?",
                (datetime.utcfromtimestamp(cutoff).isoformat() + "Z",),
            )
            await db.commit()

    # Events

    async def add_event(self, command_id: str, seq: int, event_type: str, payload: dict) -> dict:
        created_at = utc_now()
        await self.execute(
            "INSERT INTO events(command_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
            (command_id, seq, event_type, json.dumps(payload), created_at),
        )
        return {
            "command_id": command_id,
            "seq": seq,
            "event_type": event_type,
            "payload": payload,
            "created_at": created_at,
        }

    async def last_event_seq(self, command_id: str) -> int:
        row = await self.fetchone("SELECT MAX(seq) as max_seq FROM events WHERE command_id=?", (command_id,))
        return int(row["max_seq"]) if row and row["max_seq"] is not None else 0

    async def list_events(self, command_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events WHERE command_id=? AND seq>? ORDER BY seq ASC",
            (command_id, after_seq),
        )
        return [
            {
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload_json"] or "{}"),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    # Config

    async def save_config(self, payload: dict) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)", (utc_now(), json.dumps(payload))
        )
