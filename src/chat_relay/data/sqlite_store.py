import json
import uuid
from datetime import UTC, datetime

import aiosqlite

from ..config import DEFAULT_CHAT_TITLE
from ..errors import NotFound, ValidationError

SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    user_id TEXT,
    session_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    parent_message_id TEXT REFERENCES messages(id) ON DELETE SET NULL,
    raw TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tool_calls (
    id TEXT PRIMARY KEY,
    assistant_message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    tool_name TEXT NOT NULL,
    tool_args TEXT NOT NULL DEFAULT '{}',
    tool_result TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    error TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS messages_chat_id_idx ON messages(chat_id);
CREATE INDEX IF NOT EXISTS tool_calls_assistant_message_id_idx ON tool_calls(assistant_message_id);
"""

MESSAGE_COLUMNS = "id, chat_id, role, content, parent_message_id, raw, created_at"
TOOL_CALL_COLUMNS = (
    "id, assistant_message_id, tool_name, tool_args, tool_result, status, error, created_at"
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _uuid() -> str:
    return str(uuid.uuid4())


def _message_row(row) -> dict:
    msg = dict(row)
    msg["raw"] = json.loads(msg["raw"]) if msg["raw"] else {}
    return msg


def _tool_call_row(row) -> dict:
    call = dict(row)
    call["tool_args"] = json.loads(call["tool_args"]) if call["tool_args"] else {}
    call["tool_result"] = json.loads(call["tool_result"]) if call["tool_result"] else None
    return call


class SQLiteStore:
    def __init__(self, path: str) -> None:
        self._path = path
        self._db: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Return the database connection, raising if not initialized."""
        if self._db is None:
            raise RuntimeError("SQLiteStore not initialized, call initialize() first")
        return self._db

    async def initialize(self) -> None:
        self._db = await aiosqlite.connect(self._path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()

    # --- Chats ---

    async def create_chat(
        self,
        title: str = DEFAULT_CHAT_TITLE,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> dict:
        if not user_id and not session_id:
            raise ValidationError("A chat needs an owner: user_id or session_id")
        cid = _uuid()
        now = _now()
        # Exactly one owner: an authenticated user wins over the anonymous session.
        session_id = None if user_id else session_id
        await self.db.execute(
            "INSERT INTO chats (id, title, user_id, session_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            (cid, title, user_id, session_id, now, now),
        )
        await self.db.commit()
        return {
            "id": cid,
            "title": title,
            "user_id": user_id,
            "session_id": session_id,
            "created_at": now,
            "updated_at": now,
        }

    async def list_chats(self, user_id: str | None, session_id: str | None) -> list[dict]:
        cursor = await self.db.execute(
            "SELECT id, title, user_id, session_id, created_at, updated_at FROM chats "
            "WHERE (? IS NOT NULL AND user_id = ?) OR (? IS NOT NULL AND session_id = ?) "
            "ORDER BY updated_at DESC",
            (user_id, user_id, session_id, session_id),
        )
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def get_chat(self, chat_id: str) -> dict | None:
        cursor = await self.db.execute(
            "SELECT id, title, user_id, session_id, created_at, updated_at FROM chats WHERE id = ?",
            (chat_id,),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def update_chat_title(self, chat_id: str, title: str) -> None:
        await self.db.execute(
            "UPDATE chats SET title = ?, updated_at = ? WHERE id = ?",
            (title, _now(), chat_id),
        )
        await self.db.commit()

    async def claim_chat(self, chat_id: str, user_id: str) -> None:
        """Move an anonymous chat to the user who just authenticated."""
        await self.db.execute(
            "UPDATE chats SET user_id = ?, session_id = NULL WHERE id = ?",
            (user_id, chat_id),
        )
        await self.db.commit()

    async def touch_chat(self, chat_id: str) -> None:
        await self.db.execute(
            "UPDATE chats SET updated_at = ? WHERE id = ?",
            (_now(), chat_id),
        )
        await self.db.commit()

    async def delete_chat(self, chat_id: str) -> None:
        await self.db.execute(
            "DELETE FROM tool_calls WHERE assistant_message_id IN "
            "(SELECT id FROM messages WHERE chat_id = ?)",
            (chat_id,),
        )
        await self.db.execute("DELETE FROM messages WHERE chat_id = ?", (chat_id,))
        await self.db.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
        await self.db.commit()

    # --- Messages ---

    async def add_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        parts: list[dict] | None = None,
        parent_message_id: str | None = None,
        message_id: str | None = None,
        hidden: bool = False,
    ) -> dict:
        if role not in ("system", "user", "assistant", "tool"):
            raise ValidationError(f"Invalid role: {role}")
        mid = message_id or _uuid()
        now = _now()
        raw: dict = {}
        if parts is not None:
            raw["parts"] = parts
        if hidden:
            raw["hidden"] = True
        await self.db.execute(
            f"INSERT INTO messages ({MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (mid, chat_id, role, content, parent_message_id, json.dumps(raw), now),
        )
        await self.db.commit()
        await self.touch_chat(chat_id)
        return {
            "id": mid,
            "chat_id": chat_id,
            "role": role,
            "content": content,
            "parent_message_id": parent_message_id,
            "raw": raw,
            "created_at": now,
        }

    async def get_message(self, message_id: str) -> dict | None:
        cursor = await self.db.execute(
            f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = ?",
            (message_id,),
        )
        row = await cursor.fetchone()
        return _message_row(row) if row else None

    async def get_messages(self, chat_id: str) -> list[dict]:
        cursor = await self.db.execute(
            f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE chat_id = ? ORDER BY created_at, rowid",
            (chat_id,),
        )
        rows = await cursor.fetchall()
        return [_message_row(r) for r in rows]

    # --- Tool calls ---

    async def create_tool_call(
        self,
        tool_call_id: str,
        assistant_message_id: str,
        tool_name: str,
        tool_args: dict,
        tool_result: dict | None = None,
        status: str = "success",
        error: str | None = None,
    ) -> dict:
        owner = await self.get_message(assistant_message_id)
        if owner is None:
            raise NotFound(f"Message {assistant_message_id} not found")
        if owner["role"] != "assistant":
            raise ValidationError("Tool calls must belong to an assistant message")
        if status not in ("pending", "success", "error"):
            raise ValidationError(f"Invalid tool call status: {status}")
        now = _now()
        await self.db.execute(
            f"INSERT INTO tool_calls ({TOOL_CALL_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                tool_call_id,
                assistant_message_id,
                tool_name,
                json.dumps(tool_args, default=str),
                json.dumps(tool_result, default=str) if tool_result is not None else None,
                status,
                error,
                now,
            ),
        )
        await self.db.commit()
        return {
            "id": tool_call_id,
            "assistant_message_id": assistant_message_id,
            "tool_name": tool_name,
            "tool_args": tool_args,
            "tool_result": tool_result,
            "status": status,
            "error": error,
            "created_at": now,
        }

    async def get_tool_call(self, tool_call_id: str) -> dict | None:
        cursor = await self.db.execute(
            f"SELECT {TOOL_CALL_COLUMNS} FROM tool_calls WHERE id = ?",
            (tool_call_id,),
        )
        row = await cursor.fetchone()
        return _tool_call_row(row) if row else None

    async def get_tool_calls_for_messages(self, message_ids: list[str]) -> list[dict]:
        if not message_ids:
            return []
        placeholders = ", ".join("?" for _ in message_ids)
        cursor = await self.db.execute(
            f"SELECT {TOOL_CALL_COLUMNS} FROM tool_calls "
            f"WHERE assistant_message_id IN ({placeholders}) ORDER BY created_at, rowid",
            tuple(message_ids),
        )
        rows = await cursor.fetchall()
        return [_tool_call_row(r) for r in rows]
