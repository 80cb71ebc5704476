"""SQLite conversation store — remembers agent conversation ids per chat.

Only the agent-issued identifier is kept, never message history.
Async via aiosqlite.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from agentbridge.gateway.message import is_uuid

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    platform TEXT NOT NULL,
    session_id TEXT NOT NULL,
    agent TEXT,
    conversation_id TEXT NOT NULL,
    updated_at TIMESTAMP,
    PRIMARY KEY (platform, session_id)
);
"""


class ConversationStore:
    """SQLite-backed map of (platform, session) to agent conversation id."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open the database connection and create tables."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        logger.info(f"Conversation store connected: {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def get(self, platform: str, session_id: str) -> tuple[str, str] | None:
        """Return (conversation_id, agent) for a chat, if one is stored."""
        if not self._db:
            return None
        cursor = await self._db.execute(
            "SELECT conversation_id, agent FROM conversations WHERE platform = ? AND session_id = ?",
            (platform, session_id),
        )
        row = await cursor.fetchone()
        if row:
            return row[0], row[1] or ""
        return None

    async def save(
        self, platform: str, session_id: str, conversation_id: str, agent: str = ""
    ) -> None:
        """Store the conversation id for a chat. Non-UUID ids are refused."""
        if not self._db:
            return
        if not is_uuid(conversation_id):
            raise ValueError(f"Not an agent conversation id: {conversation_id!r}")
        now = datetime.now(timezone.utc).isoformat()
        await self._db.execute(
            """INSERT OR REPLACE INTO conversations
               (platform, session_id, agent, conversation_id, updated_at)
               VALUES (?, ?, ?, ?, ?)""",
            (platform, session_id, agent, conversation_id, now),
        )
        await self._db.commit()

    async def forget(self, platform: str, session_id: str) -> None:
        """Drop the stored conversation id for a chat."""
        if not self._db:
            return
        await self._db.execute(
            "DELETE FROM conversations WHERE platform = ? AND session_id = ?",
            (platform, session_id),
        )
        await self._db.commit()
