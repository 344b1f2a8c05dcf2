"""SQLite persistence for conversations and their messages."""

from __future__ import annotations

import contextlib
import json
import logging
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol, Sequence, runtime_checkable

from ..services.sources import Source, sources_from_json, sources_to_json

SCHEMA_VERSION = 2
SCHEMA_FILENAME = "schema.sql"
TITLE_LENGTH = 50
MESSAGE_ROLES = ("user", "assistant")


def _parse_schema_objects() -> dict[str, set[str]]:
    """Extract schema object names from ``schema.sql`` for compatibility checks."""

    schema_path = Path(__file__).with_name(SCHEMA_FILENAME)
    schema_sql = schema_path.read_text(encoding="utf-8")
    patterns = {
        "table": re.compile(
            r"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?(?P<name>[A-Za-z_][\w]*)",
            re.IGNORECASE,
        ),
        "index": re.compile(
            r"CREATE\s+INDEX\s+(?:IF\s+NOT\s+EXISTS\s+)?(?P<name>[A-Za-z_][\w]*)",
            re.IGNORECASE,
        ),
        "trigger": re.compile(
            r"CREATE\s+TRIGGER\s+(?:IF\s+NOT\s+EXISTS\s+)?(?P<name>[A-Za-z_][\w]*)",
            re.IGNORECASE,
        ),
    }
    objects: dict[str, set[str]] = {"table": set(), "index": set(), "trigger": set()}
    for kind, pattern in patterns.items():
        for match in pattern.finditer(schema_sql):
            objects[kind].add(match.group("name"))
    return objects


EXPECTED_SCHEMA_OBJECTS = _parse_schema_objects()
logger = logging.getLogger(__name__)


class DatabaseError(RuntimeError):
    """Raised when database bootstrap, migrations or queries fail."""


class DatabaseManager:
    """Manage per-thread SQLite connections and the schema version."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        if not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._connection_lock = threading.RLock()
        self._connections: dict[int, sqlite3.Connection] = {}

    def connect(self) -> sqlite3.Connection:
        """Return this thread's SQLite connection, opening it on first use."""
        thread_id = threading.get_ident()
        with self._connection_lock:
            connection = self._connections.get(thread_id)
            if connection is None:
                connection = sqlite3.connect(self.path, check_same_thread=False)
                connection.row_factory = sqlite3.Row
                connection.execute("PRAGMA foreign_keys = ON")
                self._connections[thread_id] = connection
            return connection

    def close(self) -> None:
        with self._connection_lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            connection.close()

    def initialize(self) -> None:
        """Create the schema, or bring an older database up to date."""
        connection = self.connect()
        try:
            with connection:
                version = self._get_user_version(connection)
                if version > SCHEMA_VERSION:
                    if not self._is_schema_compatible(connection):
                        raise DatabaseError(
                            "Database schema version is newer than this application supports"
                        )
                    logger.warning(
                        "Detected newer database schema version %s; resetting to %s",
                        version,
                        SCHEMA_VERSION,
                    )
                    version = 0
                if version == 0:
                    self._install_base_schema(connection)
                elif version < SCHEMA_VERSION:
                    self._apply_migrations(connection, version)
        except sqlite3.DatabaseError as exc:
            raise DatabaseError(str(exc)) from exc
        logger.debug("Database ready", extra={"path": str(self.path)})

    def _install_base_schema(self, connection: sqlite3.Connection) -> None:
        schema_path = Path(__file__).with_name(SCHEMA_FILENAME)
        connection.executescript(schema_path.read_text(encoding="utf-8"))
        self._set_user_version(connection, SCHEMA_VERSION)

    def _apply_migrations(self, connection: sqlite3.Connection, current: int) -> None:
        """Upgrade a database written at schema version ``current``."""
        if current < 2:
            columns = {
                row["name"] for row in connection.execute("PRAGMA table_info(conversations)")
            }
            if "bookmarked" not in columns:
                connection.execute(
                    "ALTER TABLE conversations ADD COLUMN bookmarked INTEGER NOT NULL DEFAULT 0"
                )
        self._install_base_schema(connection)
        logger.info(
            "Migrated database schema",
            extra={"from_version": current, "to_version": SCHEMA_VERSION},
        )

    def _is_schema_compatible(self, connection: sqlite3.Connection) -> bool:
        existing: dict[str, set[str]] = {"table": set(), "index": set(), "trigger": set()}
        cursor = connection.execute(
            "SELECT type, name FROM sqlite_master WHERE type IN ('table', 'index', 'trigger')"
        )
        for row in cursor.fetchall():
            kind = row["type"]
            if kind in existing:
                existing[kind].add(row["name"])
        return all(
            expected <= existing.get(kind, set())
            for kind, expected in EXPECTED_SCHEMA_OBJECTS.items()
        )

    @staticmethod
    def _get_user_version(connection: sqlite3.Connection) -> int:
        row = connection.execute("PRAGMA user_version").fetchone()
        return int(row[0]) if row else 0

    @staticmethod
    def _set_user_version(connection: sqlite3.Connection, version: int) -> None:
        connection.execute(f"PRAGMA user_version = {version}")

    @contextlib.contextmanager
    def transaction(self) -> Iterable[sqlite3.Connection]:
        """Context manager that wraps operations in a transaction."""
        connection = self.connect()
        try:
            with connection:
                yield connection
        except sqlite3.DatabaseError as exc:
            raise DatabaseError(str(exc)) from exc


class BaseRepository:
    """Common utilities shared by repository implementations."""

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    @contextlib.contextmanager
    def transaction(self) -> Iterable[sqlite3.Connection]:
        with self.db.transaction() as connection:
            yield connection

    @staticmethod
    def _row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
        if row is None:
            return None
        return {key: row[key] for key in row.keys()}


@dataclass(frozen=True, slots=True)
class StoredMessage:
    """Message row as persisted for a conversation."""

    id: int
    conversation_id: int
    role: str
    content: str
    sources: tuple[Source, ...] = ()
    follow_ups: tuple[str, ...] = ()
    created_at: str | None = None

    @property
    def is_user(self) -> bool:
        return self.role == "user"


@dataclass(frozen=True, slots=True)
class ConversationRecord:
    id: int
    title: str | None
    mode: str
    is_persistent: bool
    bookmarked: bool = False
    created_at: str | None = None
    updated_at: str | None = None
    message_count: int = field(default=0)


@runtime_checkable
class ConversationStore(Protocol):
    """Persistence contract used by the chat orchestrator."""

    def create_transient_conversation(self, mode: str = "general") -> int:
        ...

    def append_message(
        self,
        conversation_id: int,
        content: str,
        role: str,
        sources: Sequence[Source] = (),
        follow_ups: Sequence[str] = (),
    ) -> StoredMessage:
        ...

    def list_messages(self, conversation_id: int) -> list[StoredMessage]:
        ...

    def update_follow_ups(self, message_id: int, follow_ups: Sequence[str]) -> None:
        ...

    def delete_conversation(self, conversation_id: int) -> None:
        ...


class ConversationRepository(BaseRepository):
    """SQLite-backed :class:`ConversationStore`.

    Conversations start out transient and become persistent once their first
    message is stored (a trigger flips ``is_persistent``). Transient rows that
    never received a message are removed by :meth:`cleanup_empty_conversations`.
    """

    def create_transient_conversation(self, mode: str = "general") -> int:
        with self.transaction() as connection:
            cursor = connection.execute(
                "INSERT INTO conversations (mode) VALUES (?)", (mode,)
            )
            conversation_id = int(cursor.lastrowid)
        logger.debug(
            "Created transient conversation",
            extra={"conversation_id": conversation_id, "mode": mode},
        )
        return conversation_id

    def get(self, conversation_id: int) -> ConversationRecord | None:
        row = self.db.connect().execute(
            """
            SELECT conversations.*, COUNT(messages.id) AS message_count
            FROM conversations
            LEFT JOIN messages ON messages.conversation_id = conversations.id
            WHERE conversations.id = ?
            GROUP BY conversations.id
            """,
            (conversation_id,),
        ).fetchone()
        return self._decode_conversation_row(row)

    def list_conversations(
        self, *, include_transient: bool = False, bookmarked_only: bool = False
    ) -> list[ConversationRecord]:
        """Return conversations, most recently updated first."""

        clauses = []
        if not include_transient:
            clauses.append("conversations.is_persistent = 1")
        if bookmarked_only:
            clauses.append("conversations.bookmarked = 1")
        return self._query_conversations(clauses)

    def search_conversations(self, query: str) -> list[ConversationRecord]:
        """Return stored conversations whose title or any message contains ``query``."""

        query = query.strip()
        if not query:
            return self.list_conversations()
        pattern = f"%{query}%"
        return self._query_conversations(
            [
                "conversations.is_persistent = 1",
                """(
                    conversations.title LIKE ?
                    OR EXISTS (
                        SELECT 1 FROM messages AS matched
                        WHERE matched.conversation_id = conversations.id
                          AND matched.content LIKE ?
                    )
                )""",
            ],
            (pattern, pattern),
        )

    def toggle_bookmark(self, conversation_id: int) -> bool:
        """Flip the bookmark flag and return its new value."""

        with self.transaction() as connection:
            cursor = connection.execute(
                "UPDATE conversations SET bookmarked = 1 - bookmarked WHERE id = ?",
                (conversation_id,),
            )
            if cursor.rowcount == 0:
                raise DatabaseError(f"Conversation {conversation_id} does not exist")
            row = connection.execute(
                "SELECT bookmarked FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        bookmarked = bool(row["bookmarked"])
        logger.info(
            "Toggled conversation bookmark",
            extra={"conversation_id": conversation_id, "bookmarked": bookmarked},
        )
        return bookmarked

    def _query_conversations(
        self, clauses: Sequence[str], params: Sequence[Any] = ()
    ) -> list[ConversationRecord]:
        query = """
            SELECT conversations.*, COUNT(messages.id) AS message_count
            FROM conversations
            LEFT JOIN messages ON messages.conversation_id = conversations.id
        """
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " GROUP BY conversations.id ORDER BY conversations.updated_at DESC, conversations.id DESC"
        rows = self.db.connect().execute(query, tuple(params)).fetchall()
        return [record for record in (self._decode_conversation_row(row) for row in rows) if record]

    def append_message(
        self,
        conversation_id: int,
        content: str,
        role: str,
        sources: Sequence[Source] = (),
        follow_ups: Sequence[str] = (),
    ) -> StoredMessage:
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Unsupported message role: {role!r}")
        sources_payload = sources_to_json(sources) if sources else None
        follow_ups_payload = json.dumps(list(follow_ups)) if follow_ups else None
        with self.transaction() as connection:
            exists = connection.execute(
                "SELECT title FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if exists is None:
                raise DatabaseError(f"Conversation {conversation_id} does not exist")
            cursor = connection.execute(
                """
                INSERT INTO messages (conversation_id, role, content, sources, follow_ups)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation_id, role, content, sources_payload, follow_ups_payload),
            )
            message_id = int(cursor.lastrowid)
            if exists["title"] is None and role == "user":
                connection.execute(
                    "UPDATE conversations SET title = ? WHERE id = ?",
                    (self._title_from(content), conversation_id),
                )
            row = connection.execute(
                "SELECT * FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
        logger.debug(
            "Stored message",
            extra={
                "conversation_id": conversation_id,
                "role": role,
                "sources": len(sources),
            },
        )
        return self._decode_message_row(row)  # type: ignore[return-value]

    def update_follow_ups(self, message_id: int, follow_ups: Sequence[str]) -> None:
        payload = json.dumps(list(follow_ups)) if follow_ups else None
        with self.transaction() as connection:
            connection.execute(
                "UPDATE messages SET follow_ups = ? WHERE id = ?", (payload, message_id)
            )
        logger.debug(
            "Updated follow-up suggestions",
            extra={"message_id": message_id, "count": len(follow_ups)},
        )

    def list_messages(self, conversation_id: int) -> list[StoredMessage]:
        rows = self.db.connect().execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id ASC",
            (conversation_id,),
        ).fetchall()
        return [message for message in (self._decode_message_row(row) for row in rows) if message]

    def delete_conversation(self, conversation_id: int) -> None:
        with self.transaction() as connection:
            connection.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        logger.info("Deleted conversation", extra={"conversation_id": conversation_id})

    def cleanup_empty_conversations(self) -> int:
        with self.transaction() as connection:
            cursor = connection.execute(
                """
                DELETE FROM conversations
                WHERE is_persistent = 0
                  AND NOT EXISTS (
                      SELECT 1 FROM messages WHERE messages.conversation_id = conversations.id
                  )
                """
            )
            removed = cursor.rowcount
        if removed:
            logger.info("Removed empty conversations", extra={"count": removed})
        return removed

    # ------------------------------------------------------------------
    @staticmethod
    def _title_from(content: str) -> str:
        title = " ".join(content.split())
        if len(title) > TITLE_LENGTH:
            title = title[:TITLE_LENGTH].rstrip() + "..."
        return title or "New Conversation"

    def _decode_conversation_row(self, row: sqlite3.Row | None) -> ConversationRecord | None:
        data = self._row_to_dict(row)
        if data is None:
            return None
        return ConversationRecord(
            id=int(data["id"]),
            title=data.get("title"),
            mode=data.get("mode") or "general",
            is_persistent=bool(data.get("is_persistent")),
            bookmarked=bool(data.get("bookmarked")),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            message_count=int(data.get("message_count") or 0),
        )

    def _decode_message_row(self, row: sqlite3.Row | None) -> StoredMessage | None:
        data = self._row_to_dict(row)
        if data is None:
            return None
        follow_ups: list[str] = []
        payload = data.get("follow_ups")
        if payload:
            try:
                decoded = json.loads(payload)
            except json.JSONDecodeError:
                logger.warning(
                    "Discarding malformed stored follow-ups",
                    extra={"message_id": data["id"]},
                )
                decoded = []
            if isinstance(decoded, list):
                follow_ups = [str(item) for item in decoded]
        return StoredMessage(
            id=int(data["id"]),
            conversation_id=int(data["conversation_id"]),
            role=str(data["role"]),
            content=str(data["content"]),
            sources=tuple(sources_from_json(data.get("sources"))),
            follow_ups=tuple(follow_ups),
            created_at=data.get("created_at"),
        )


__all__ = [
    "BaseRepository",
    "ConversationRecord",
    "ConversationRepository",
    "ConversationStore",
    "DatabaseError",
    "DatabaseManager",
    "MESSAGE_ROLES",
    "StoredMessage",
]
