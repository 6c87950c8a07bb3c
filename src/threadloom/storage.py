"""SQLite storage for conversations, the message tree and artifact versions."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from .config import DEFAULT_MODEL, DEFAULT_TITLE, ROLES
from .errors import InvalidArgument, InvariantViolation, NotFound
from .models import Artifact, ArtifactType, Conversation, Message

logger = logging.getLogger(__name__)


class ConversationStore:
    """SQLite-backed storage for conversations, messages and artifacts.

    Messages form a forest through ``parent_message_id``. Rows are only ever
    appended, except for in-place edits of leaf messages. Multi-step writes on
    one conversation run under :meth:`conversation_lock`.
    """

    def __init__(self, db_path: Path | str):
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.RLock()
        self._conversation_locks: dict[int, list] = {}  # id -> [RLock, users]
        self._migrate()

    def _migrate(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                model TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_message_at TEXT,
                message_count INTEGER NOT NULL DEFAULT 0,
                token_count INTEGER NOT NULL DEFAULT 0,
                source_id TEXT UNIQUE
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                parent_message_id INTEGER,
                created_at TEXT NOT NULL,
                edited_at TEXT,
                tokens INTEGER,
                finish_reason TEXT,
                FOREIGN KEY (conversation_id) REFERENCES conversations(id),
                FOREIGN KEY (parent_message_id) REFERENCES messages(id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conv
                ON messages(conversation_id);

            CREATE INDEX IF NOT EXISTS idx_messages_parent
                ON messages(parent_message_id);

            CREATE TABLE IF NOT EXISTS artifacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id INTEGER NOT NULL,
                conversation_id INTEGER NOT NULL,
                type TEXT NOT NULL,
                title TEXT,
                identifier TEXT NOT NULL,
                language TEXT,
                content TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (conversation_id, identifier, version),
                FOREIGN KEY (message_id) REFERENCES messages(id),
                FOREIGN KEY (conversation_id) REFERENCES conversations(id)
            );

            CREATE INDEX IF NOT EXISTS idx_artifacts_message
                ON artifacts(message_id);

            CREATE TABLE IF NOT EXISTS import_metadata (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                import_time TEXT NOT NULL,
                file_path TEXT,
                conversations_imported INTEGER,
                messages_imported INTEGER
            );
        """)
        self.conn.commit()

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    @contextmanager
    def conversation_lock(self, conversation_id: int):
        """Serialize tree mutations within one conversation.

        Entries are counted per holder or waiter and dropped once unused.
        """
        with self._lock:
            entry = self._conversation_locks.setdefault(conversation_id, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if not entry[1]:
                    del self._conversation_locks[conversation_id]

    # -- conversations -----------------------------------------------------

    def create_conversation(
        self,
        title: str | None = None,
        model: str | None = None,
        created_at: str | None = None,
        source_id: str | None = None,
    ) -> Conversation:
        now = created_at or _now()
        with self._lock:
            cur = self.conn.execute(
                """INSERT INTO conversations (title, model, created_at, updated_at, source_id)
                   VALUES (?, ?, ?, ?, ?)""",
                (title or DEFAULT_TITLE, model or DEFAULT_MODEL, now, now, source_id),
            )
            self.conn.commit()
        return self.get_conversation(cur.lastrowid)

    def get_conversation(self, conversation_id: int) -> Conversation:
        row = self._fetchone(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        )
        if not row:
            raise NotFound(f"Conversation not found: {conversation_id}")
        return _to_conversation(row)

    def find_by_source(self, source_id: str) -> Conversation | None:
        row = self._fetchone(
            "SELECT * FROM conversations WHERE source_id = ?", (source_id,)
        )
        return _to_conversation(row) if row else None

    def list_conversations(self, limit: int = 20, offset: int = 0) -> list[Conversation]:
        rows = self._fetchall(
            """SELECT * FROM conversations
               ORDER BY updated_at DESC, id DESC
               LIMIT ? OFFSET ?""",
            (limit, offset),
        )
        return [_to_conversation(r) for r in rows]

    def set_title(self, conversation_id: int, title: str):
        with self._lock:
            self.conn.execute(
                "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
                (title, _now(), conversation_id),
            )
            self.conn.commit()

    # -- messages ----------------------------------------------------------

    def append(
        self,
        conversation_id: int,
        role: str,
        content: str,
        parent_id: int | None = None,
        tokens: int | None = None,
        finish_reason: str | None = None,
        created_at: str | None = None,
    ) -> Message:
        """Append a message under ``parent_id`` (``None`` starts a new root)."""
        role = _check_role(role)
        if not content or not content.strip():
            raise InvalidArgument("Message content must not be empty")

        with self.conversation_lock(conversation_id):
            self.get_conversation(conversation_id)
            if parent_id is not None:
                parent = self.get(parent_id)
                if parent.conversation_id != conversation_id:
                    raise InvariantViolation(
                        f"Parent message {parent_id} belongs to conversation "
                        f"{parent.conversation_id}, not {conversation_id}"
                    )

            now = created_at or _now()
            with self._lock:
                cur = self.conn.execute(
                    """INSERT INTO messages (conversation_id, role, content, parent_message_id,
                       created_at, tokens, finish_reason)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (conversation_id, role, content, parent_id, now, tokens, finish_reason),
                )
                self.conn.execute(
                    """UPDATE conversations
                       SET message_count = message_count + 1,
                           token_count = token_count + ?,
                           last_message_at = ?,
                           updated_at = ?
                       WHERE id = ?""",
                    (tokens or 0, now, _now(), conversation_id),
                )
                self.conn.commit()

        logger.debug(
            "Appended %s message %d to conversation %d (parent %s)",
            role, cur.lastrowid, conversation_id, parent_id,
        )
        return self.get(cur.lastrowid)

    def get(self, message_id: int) -> Message:
        row = self._fetchone(
            "SELECT * FROM messages WHERE id = ?", (message_id,)
        )
        if not row:
            raise NotFound(f"Message not found: {message_id}")
        return Message.model_validate(dict(row))

    def list_by_conversation(self, conversation_id: int) -> list[Message]:
        """All messages of a conversation, every branch included, in creation order."""
        self.get_conversation(conversation_id)
        rows = self._fetchall(
            """SELECT * FROM messages WHERE conversation_id = ?
               ORDER BY created_at, id""",
            (conversation_id,),
        )
        return [Message.model_validate(dict(r)) for r in rows]

    def children(self, message_id: int) -> list[Message]:
        rows = self._fetchall(
            "SELECT * FROM messages WHERE parent_message_id = ? ORDER BY created_at, id",
            (message_id,),
        )
        return [Message.model_validate(dict(r)) for r in rows]

    def has_children(self, message_id: int) -> bool:
        row = self._fetchone(
            "SELECT 1 FROM messages WHERE parent_message_id = ? LIMIT 1", (message_id,)
        )
        return row is not None

    def latest_message(self, conversation_id: int) -> Message | None:
        row = self._fetchone(
            """SELECT * FROM messages WHERE conversation_id = ?
               ORDER BY created_at DESC, id DESC LIMIT 1""",
            (conversation_id,),
        )
        return Message.model_validate(dict(row)) if row else None

    def ancestors(self, message_id: int) -> list[Message]:
        """Walk from message_id back to its root via parent pointers, return root-first."""
        message = self.get(message_id)
        by_id = {m.id: m for m in self.list_by_conversation(message.conversation_id)}

        path: list[Message] = []
        visited: set[int] = set()
        current: Message | None = message
        while current is not None:
            if current.id in visited:
                logger.warning("Circular reference detected at message %d", current.id)
                break
            visited.add(current.id)
            path.append(current)
            parent_id = current.parent_message_id
            current = by_id.get(parent_id) if parent_id is not None else None

        path.reverse()
        return path

    def replace_leaf(self, message_id: int, content: str) -> Message:
        """Edit a childless message in place."""
        if not content or not content.strip():
            raise InvalidArgument("Message content must not be empty")
        message = self.get(message_id)
        with self.conversation_lock(message.conversation_id):
            if self.has_children(message_id):
                raise InvariantViolation(
                    f"Message {message_id} has replies and cannot be edited in place"
                )
            with self._lock:
                self.conn.execute(
                    "UPDATE messages SET content = ?, edited_at = ? WHERE id = ?",
                    (content, _now(), message_id),
                )
                self.conn.commit()
        return self.get(message_id)

    # -- artifacts ---------------------------------------------------------

    def insert_artifact(
        self,
        conversation_id: int,
        message_id: int,
        type: ArtifactType,
        identifier: str,
        content: str,
        version: int,
        title: str | None = None,
        language: str | None = None,
    ) -> Artifact:
        now = _now()
        with self._lock:
            cur = self.conn.execute(
                """INSERT INTO artifacts (message_id, conversation_id, type, title, identifier,
                   language, content, version, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (message_id, conversation_id, ArtifactType(type).value, title, identifier,
                 language, content, version, now, now),
            )
            self.conn.commit()
        return self.get_artifact(cur.lastrowid)

    def get_artifact(self, artifact_id: int) -> Artifact:
        row = self._fetchone(
            "SELECT * FROM artifacts WHERE id = ?", (artifact_id,)
        )
        if not row:
            raise NotFound(f"Artifact not found: {artifact_id}")
        return Artifact.model_validate(dict(row))

    def latest_artifact(self, conversation_id: int, identifier: str) -> Artifact | None:
        row = self._fetchone(
            """SELECT * FROM artifacts
               WHERE conversation_id = ? AND identifier = ?
               ORDER BY version DESC LIMIT 1""",
            (conversation_id, identifier),
        )
        return Artifact.model_validate(dict(row)) if row else None

    def artifact_versions(self, conversation_id: int, identifier: str) -> list[Artifact]:
        rows = self._fetchall(
            """SELECT * FROM artifacts
               WHERE conversation_id = ? AND identifier = ?
               ORDER BY version ASC""",
            (conversation_id, identifier),
        )
        return [Artifact.model_validate(dict(r)) for r in rows]

    def artifacts_for_message(self, message_id: int) -> list[Artifact]:
        rows = self._fetchall(
            "SELECT * FROM artifacts WHERE message_id = ? ORDER BY id",
            (message_id,),
        )
        return [Artifact.model_validate(dict(r)) for r in rows]

    def artifacts_for_conversation(self, conversation_id: int) -> list[Artifact]:
        rows = self._fetchall(
            "SELECT * FROM artifacts WHERE conversation_id = ? ORDER BY id",
            (conversation_id,),
        )
        return [Artifact.model_validate(dict(r)) for r in rows]

    # -- bookkeeping -------------------------------------------------------

    def get_stats(self) -> dict:
        """Get overall database statistics."""
        conv_count = self._fetchone("SELECT COUNT(*) FROM conversations")[0]
        msg_count = self._fetchone("SELECT COUNT(*) FROM messages")[0]
        artifact_count = self._fetchone("SELECT COUNT(*) FROM artifacts")[0]

        branch_points = self._fetchone(
            """SELECT COUNT(*) FROM (
                   SELECT 1 FROM messages
                   GROUP BY conversation_id, parent_message_id
                   HAVING COUNT(*) > 1
               )"""
        )[0]

        date_range = self._fetchone(
            "SELECT MIN(created_at), MAX(created_at) FROM conversations"
        )

        models = self._fetchall(
            """SELECT model, COUNT(*) as cnt FROM conversations
               GROUP BY model ORDER BY cnt DESC LIMIT 10"""
        )

        return {
            "total_conversations": conv_count,
            "total_messages": msg_count,
            "total_artifacts": artifact_count,
            "branch_points": branch_points,
            "date_range_start": _format_ts(date_range[0]),
            "date_range_end": _format_ts(date_range[1]),
            "top_models": [{"model": r[0], "count": r[1]} for r in models],
            "avg_messages_per_conversation": round(msg_count / conv_count, 1) if conv_count else 0,
        }

    def record_import(self, file_path: str, conversations: int, messages: int):
        with self._lock:
            self.conn.execute(
                "INSERT INTO import_metadata (import_time, file_path, conversations_imported, messages_imported) VALUES (?, ?, ?, ?)",
                (_now(), file_path, conversations, messages),
            )
            self.conn.commit()

    def close(self):
        self.conn.close()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _check_role(role: str) -> str:
    value = getattr(role, "value", role)
    if value not in ROLES:
        raise InvalidArgument(f"Unknown role: {role!r}")
    return value


def _to_conversation(row: sqlite3.Row) -> Conversation:
    data = dict(row)
    data.pop("source_id", None)
    return Conversation.model_validate(data)


def _format_ts(ts: str | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromisoformat(ts).strftime("%Y-%m-%d")
