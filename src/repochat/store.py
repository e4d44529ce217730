"""SQLite-backed session, message and catalog store.

Every call opens its own connection, so a store instance can be shared
freely between concurrent requests. A completed turn is written in a single
transaction: either the session update and both messages land, or none do.
"""

import json
import logging
import sqlite3
import time
import uuid
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from .core import ChatSession, Citation, Message, Project, parse_citations

logger = logging.getLogger(__name__)

SUMMARY_LEN = 120

_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    url TEXT NOT NULL DEFAULT '',
    repo TEXT NOT NULL DEFAULT '',
    tags TEXT NOT NULL DEFAULT '[]',
    position INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    visitor_id TEXT NOT NULL,
    created_ms INTEGER NOT NULL,
    last_message_ms INTEGER,
    last_message_summary TEXT NOT NULL DEFAULT '',
    active_repo TEXT
);
CREATE INDEX IF NOT EXISTS idx_sessions_visitor ON sessions (visitor_id, last_message_ms);
CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    session_id TEXT NOT NULL REFERENCES sessions (id),
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    citations TEXT NOT NULL DEFAULT '[]',
    created_ms INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_session ON messages (session_id, seq);
"""


class StoreError(Exception):
    """A store operation failed."""


class SessionNotFound(StoreError):
    """The session doesn't exist or belongs to a different visitor."""


class ChatStore:
    """Narrow CRUD accessor over the repochat database."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn:
            conn.executescript(_SCHEMA)

    # ── Catalog ──────────────────────────────────────────────────────

    def list_projects(self) -> list[Project]:
        """Return the whole catalog in its configured order."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT id, name, description, url, repo, tags FROM projects ORDER BY position, id"
            ).fetchall()
        return [
            Project(
                id=row["id"],
                name=row["name"],
                description=row["description"],
                url=row["url"],
                repo=row["repo"],
                tags=_load_json_list(row["tags"]),
            )
            for row in rows
        ]

    def replace_projects(self, projects: Iterable[Project]) -> int:
        """Swap the catalog for a new one. Returns the number stored."""
        rows = [
            (p.id, p.name, p.description, p.url, p.repo, json.dumps(p.tags), position)
            for position, p in enumerate(projects)
        ]
        with closing(self._connect()) as conn:
            try:
                with conn:
                    conn.execute("DELETE FROM projects")
                    conn.executemany(
                        "INSERT OR REPLACE INTO projects (id, name, description, url, repo, tags, position) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        rows,
                    )
            except sqlite3.Error as e:
                raise StoreError(f"Failed to replace catalog: {e}") from e
        logger.info("Catalog now holds %d projects", len(rows))
        return len(rows)

    # ── Sessions ─────────────────────────────────────────────────────

    def create_session(self, visitor_id: str, session_id: str | None = None) -> ChatSession:
        """Create an empty session owned by visitor_id."""
        session = ChatSession(
            id=session_id or uuid.uuid4().hex,
            visitor_id=visitor_id,
            created_at=_ms_to_datetime(_now_ms()),
        )
        with closing(self._connect()) as conn:
            try:
                with conn:
                    conn.execute(
                        "INSERT INTO sessions (id, visitor_id, created_ms) VALUES (?, ?, ?)",
                        (session.id, visitor_id, _datetime_to_ms(session.created_at)),
                    )
            except sqlite3.IntegrityError as e:
                raise StoreError(f"Session {session.id} already exists") from e
            except sqlite3.Error as e:
                raise StoreError(f"Failed to create session: {e}") from e
        return session

    def get_session(self, session_id: str) -> ChatSession | None:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return _row_to_session(row) if row else None

    def list_sessions(self, visitor_id: str) -> list[ChatSession]:
        """Return a visitor's sessions, most recently active first."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE visitor_id = ? "
                "ORDER BY COALESCE(last_message_ms, created_ms) DESC, created_ms DESC",
                (visitor_id,),
            ).fetchall()
        return [_row_to_session(row) for row in rows]

    # ── Messages ─────────────────────────────────────────────────────

    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        citations: list[Citation] | None = None,
    ) -> Message:
        """Append one message to an existing session."""
        with closing(self._connect()) as conn:
            try:
                with conn:
                    if not conn.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,)).fetchone():
                        raise SessionNotFound(session_id)
                    return self._insert_message(conn, session_id, role, content, citations, _now_ms())
            except sqlite3.Error as e:
                raise StoreError(f"Failed to append message: {e}") from e

    def record_turn(
        self,
        session_id: str,
        visitor_id: str,
        question: str,
        answer: str,
        citations: list[Citation],
        active_repo: str | None = None,
    ) -> ChatSession:
        """Persist a completed turn atomically, creating the session if new.

        Raises SessionNotFound if the session is owned by another visitor.
        """
        now = _now_ms()
        with closing(self._connect()) as conn:
            try:
                with conn:
                    row = conn.execute(
                        "SELECT visitor_id, active_repo FROM sessions WHERE id = ?", (session_id,)
                    ).fetchone()
                    if row is None:
                        conn.execute(
                            "INSERT INTO sessions (id, visitor_id, created_ms) VALUES (?, ?, ?)",
                            (session_id, visitor_id, now),
                        )
                    elif row["visitor_id"] != visitor_id:
                        raise SessionNotFound(session_id)

                    self._insert_message(conn, session_id, "user", question, None, now)
                    self._insert_message(conn, session_id, "assistant", answer, citations, now)
                    conn.execute(
                        "UPDATE sessions SET last_message_ms = MAX(COALESCE(last_message_ms, 0), ?), "
                        "last_message_summary = ?, active_repo = COALESCE(?, active_repo) WHERE id = ?",
                        (now, _truncate(answer.strip() or question.strip(), SUMMARY_LEN), active_repo, session_id),
                    )
                    updated = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to record turn: {e}") from e
        return _row_to_session(updated)

    def list_messages(self, session_id: str, visitor_id: str, limit: int | None = None) -> list[Message]:
        """Return a session's messages oldest first, keeping the newest `limit`."""
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT visitor_id FROM sessions WHERE id = ?", (session_id,)).fetchone()
            if row is None or row["visitor_id"] != visitor_id:
                raise SessionNotFound(session_id)

            query = "SELECT * FROM messages WHERE session_id = ? ORDER BY seq DESC"
            params: tuple = (session_id,)
            if limit is not None:
                query += " LIMIT ?"
                params = (session_id, max(0, limit))
            rows = conn.execute(query, params).fetchall()

        return [_row_to_message(r) for r in reversed(rows)]

    # ── Private helpers ──────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def _insert_message(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        role: str,
        content: str,
        citations: list[Citation] | None,
        created_ms: int,
    ) -> Message:
        message = Message(
            id=uuid.uuid4().hex,
            session_id=session_id,
            role=role,
            content=content,
            citations=list(citations or []) if role == "assistant" else [],
            created_at=_ms_to_datetime(created_ms),
        )
        conn.execute(
            "INSERT INTO messages (id, session_id, role, content, citations, created_ms) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                message.id,
                session_id,
                role,
                content,
                json.dumps([c.to_dict() for c in message.citations]),
                created_ms,
            ),
        )
        return message


def _row_to_session(row: sqlite3.Row) -> ChatSession:
    return ChatSession(
        id=row["id"],
        visitor_id=row["visitor_id"],
        created_at=_ms_to_datetime(row["created_ms"]),
        last_message_at=_ms_to_datetime(row["last_message_ms"]),
        last_message_summary=row["last_message_summary"],
        active_repo=row["active_repo"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        session_id=row["session_id"],
        role=row["role"],
        content=row["content"],
        citations=parse_citations(_load_json_list(row["citations"])),
        created_at=_ms_to_datetime(row["created_ms"]),
    )


def _load_json_list(raw: str | None) -> list:
    try:
        data = json.loads(raw or "[]")
    except json.JSONDecodeError:
        return []
    return data if isinstance(data, list) else []


def _now_ms() -> int:
    return int(time.time() * 1000)


def _ms_to_datetime(ms: int | None) -> datetime | None:
    """Convert millisecond timestamp to datetime, or None."""
    if ms is None:
        return None
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (ValueError, OSError, OverflowError):
        return None


def _datetime_to_ms(dt: datetime | None) -> int:
    return int(dt.timestamp() * 1000) if dt else _now_ms()


def _truncate(text: str, max_len: int) -> str:
    """Truncate text to max_len, adding ellipsis if needed."""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."
