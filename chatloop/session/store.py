"""
SQLite-backed conversation store.

Holds each conversation's message history (saved after every turn) and the
clarification questions still waiting for an answer, so a paused loop can be
resumed by ``respond_to_clarification``.

Uses ``aiosqlite`` for async database access with a write lock to serialise
mutations.  Schema is version-tracked via a ``schema_version`` table;
migrations are applied automatically on ``init()``.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from chatloop.llm.types import Message

# ---------------------------------------------------------------------------
# Schema management
# ---------------------------------------------------------------------------

SCHEMA_VERSION = 1

MIGRATIONS: dict[int, list[str]] = {
    1: [
        """CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS conversations (
            conversation_id TEXT PRIMARY KEY,
            updated_at TEXT NOT NULL,
            history TEXT NOT NULL DEFAULT '[]'
        )""",
        """CREATE TABLE IF NOT EXISTS pending_clarifications (
            question_id TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL,
            tool_call_id TEXT NOT NULL,
            tool_name TEXT NOT NULL,
            request TEXT NOT NULL,
            created_at TEXT NOT NULL
        )""",
        """CREATE INDEX IF NOT EXISTS idx_pending_conversation
           ON pending_clarifications(conversation_id)""",
    ],
}


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ConversationStore:
    """
    Async SQLite store for conversation histories and pending clarifications.

    Usage::

        store = ConversationStore("~/.chatloop/conversations.db")
        await store.init()
        await store.save_history(cid, history)
        history = await store.load_history(cid)
        await store.close()
    """

    def __init__(self, db_path: str) -> None:
        if db_path == ":memory:":
            self.db_path = db_path
        else:
            path = Path(db_path).expanduser().resolve()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
        self._write_lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Open the database and ensure the schema is up to date."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self._db.execute("PRAGMA journal_mode=WAL")
        await self._run_migrations()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Migration runner
    # ------------------------------------------------------------------

    async def _get_schema_version(self) -> int:
        """Return the current schema version, or 0 if not initialised."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        row = await cursor.fetchone()
        if row is None:
            return 0
        cursor = await self._db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        if row is None:
            return 0
        return int(row[0])

    async def _set_schema_version(self, version: int) -> None:
        assert self._db is not None
        cursor = await self._db.execute("SELECT COUNT(*) FROM schema_version")
        row = await cursor.fetchone()
        assert row is not None
        if row[0] == 0:
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
        else:
            await self._db.execute("UPDATE schema_version SET version = ?", (version,))

    async def _run_migrations(self) -> None:
        assert self._db is not None
        current = await self._get_schema_version()
        if current >= SCHEMA_VERSION:
            return

        for version in range(current + 1, SCHEMA_VERSION + 1):
            stmts = MIGRATIONS.get(version)
            if stmts is None:
                raise RuntimeError(f"Missing migration for schema version {version}")
            for stmt in stmts:
                await self._db.execute(stmt)
            await self._set_schema_version(version)

        await self._db.commit()

    async def get_schema_version(self) -> int:
        return await self._get_schema_version()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def save_history(self, conversation_id: str, history: list[Message]) -> None:
        """Replace the stored history of *conversation_id*."""
        assert self._db is not None
        payload = json.dumps([m.to_dict() for m in history])
        now = datetime.now(timezone.utc).isoformat()
        async with self._write_lock:
            await self._db.execute(
                """INSERT INTO conversations (conversation_id, updated_at, history)
                   VALUES (?, ?, ?)
                   ON CONFLICT(conversation_id)
                   DO UPDATE SET updated_at = excluded.updated_at,
                                 history = excluded.history""",
                (conversation_id, now, payload),
            )
            await self._db.commit()

    async def load_history(self, conversation_id: str) -> list[Message] | None:
        """Return the stored history, or ``None`` if the conversation is unknown."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT history FROM conversations WHERE conversation_id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return [Message.from_dict(d) for d in json.loads(row[0])]

    async def list_conversations(self) -> list[dict]:
        """Return ``{conversation_id, updated_at}`` rows, most recent first."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT conversation_id, updated_at FROM conversations ORDER BY updated_at DESC"
        )
        rows = await cursor.fetchall()
        return [{"conversation_id": r[0], "updated_at": r[1]} for r in rows]

    # ------------------------------------------------------------------
    # Pending clarifications
    # ------------------------------------------------------------------

    async def add_pending_clarification(
        self,
        conversation_id: str,
        question_id: str,
        *,
        tool_call_id: str,
        tool_name: str,
        request: dict,
    ) -> None:
        assert self._db is not None
        now = datetime.now(timezone.utc).isoformat()
        async with self._write_lock:
            await self._db.execute(
                """INSERT OR REPLACE INTO pending_clarifications
                   (question_id, conversation_id, tool_call_id, tool_name, request, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (question_id, conversation_id, tool_call_id, tool_name, json.dumps(request), now),
            )
            await self._db.commit()

    async def get_pending_clarification(
        self, conversation_id: str, question_id: str
    ) -> dict | None:
        assert self._db is not None
        cursor = await self._db.execute(
            """SELECT question_id, tool_call_id, tool_name, request, created_at
               FROM pending_clarifications
               WHERE conversation_id = ? AND question_id = ?""",
            (conversation_id, question_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "question_id": row[0],
            "tool_call_id": row[1],
            "tool_name": row[2],
            "request": json.loads(row[3]),
            "created_at": row[4],
        }

    async def list_pending_clarifications(self, conversation_id: str) -> list[str]:
        """Question ids still awaiting an answer, oldest first."""
        assert self._db is not None
        cursor = await self._db.execute(
            """SELECT question_id FROM pending_clarifications
               WHERE conversation_id = ? ORDER BY created_at ASC, rowid ASC""",
            (conversation_id,),
        )
        return [r[0] for r in await cursor.fetchall()]

    async def pop_pending_clarification(
        self, conversation_id: str, question_id: str
    ) -> dict | None:
        """Remove and return a pending clarification (``None`` if absent)."""
        pending = await self.get_pending_clarification(conversation_id, question_id)
        if pending is None:
            return None
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                "DELETE FROM pending_clarifications WHERE question_id = ?",
                (question_id,),
            )
            await self._db.commit()
        return pending

    async def delete_conversation(self, conversation_id: str) -> None:
        """Forget the history and every pending question of a conversation."""
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                "DELETE FROM pending_clarifications WHERE conversation_id = ?",
                (conversation_id,),
            )
            await self._db.execute(
                "DELETE FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            )
            await self._db.commit()
