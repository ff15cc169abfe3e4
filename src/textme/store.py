from __future__ import annotations

import json
import sqlite3
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any

from .models import ConversationTurn, PendingApproval, QueuedRequest, Role, RunningTask
from .utils import iso_now, to_iso, utc_now


class SQLiteStore:
    """Thread-safe SQLite storage with connection caching.

    Every public method is a single statement (or a read followed by a
    conditional write) executed under one lock, so callers can rely on each
    operation being atomic without an application-level transaction.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        """Get or create a cached database connection (thread-safe)."""
        with self._lock:
            if self._conn is not None:
                return self._conn
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._conn = conn
            return conn

    def close(self) -> None:
        """Close the cached database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def bootstrap(self) -> None:
        conn = self._connect()
        with self._lock:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS processed_messages (
                    message_id TEXT PRIMARY KEY,
                    processed_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS conversations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sender TEXT NOT NULL,
                    role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                    content TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS kv_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                -- singleton slot: slot is always 1
                CREATE TABLE IF NOT EXISTS running_task (
                    slot INTEGER PRIMARY KEY CHECK (slot = 1),
                    id TEXT NOT NULL,
                    description TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    pid INTEGER DEFAULT NULL
                );

                CREATE TABLE IF NOT EXISTS message_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id TEXT NOT NULL UNIQUE,
                    sender TEXT NOT NULL,
                    text TEXT NOT NULL,
                    context_json TEXT NOT NULL DEFAULT '{}',
                    queued_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS pending_approvals (
                    id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    command TEXT NOT NULL,
                    allow_rules TEXT NOT NULL DEFAULT '',
                    sender TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_conversations_sender ON conversations(sender, id);
                CREATE INDEX IF NOT EXISTS idx_processed_at ON processed_messages(processed_at);
                CREATE INDEX IF NOT EXISTS idx_queue_order ON message_queue(queued_at, id);
                CREATE INDEX IF NOT EXISTS idx_approvals_sender ON pending_approvals(sender, expires_at);
                """
            )
            conn.commit()

    @staticmethod
    def _row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
        if row is None:
            return None
        return {k: row[k] for k in row.keys()}

    # --- Processed messages (dedup) ---

    def mark_processed(self, message_id: str) -> bool:
        """Record a message id. Returns True if it was not seen before."""
        conn = self._connect()
        with self._lock:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO processed_messages(message_id, processed_at) VALUES(?, ?)",
                (message_id, iso_now()),
            )
            conn.commit()
            return cursor.rowcount == 1

    def is_processed(self, message_id: str) -> bool:
        conn = self._connect()
        with self._lock:
            row = conn.execute(
                "SELECT 1 FROM processed_messages WHERE message_id = ?", (message_id,)
            ).fetchone()
            return row is not None

    def prune_processed(self, older_than_days: int) -> int:
        cutoff = to_iso(utc_now() - timedelta(days=older_than_days))
        conn = self._connect()
        with self._lock:
            cursor = conn.execute("DELETE FROM processed_messages WHERE processed_at < ?", (cutoff,))
            conn.commit()
            return int(cursor.rowcount)

    # --- Conversation log ---

    def append_turn(self, sender: str, role: Role, content: str) -> None:
        conn = self._connect()
        with self._lock:
            conn.execute(
                "INSERT INTO conversations(sender, role, content, timestamp) VALUES(?, ?, ?, ?)",
                (sender, Role(role).value, content, iso_now()),
            )
            conn.commit()

    def recent_turns(self, sender: str, limit: int) -> list[ConversationTurn]:
        """Newest first."""
        conn = self._connect()
        with self._lock:
            rows = conn.execute(
                """
                SELECT sender, role, content, timestamp FROM conversations
                WHERE sender = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (sender, int(limit)),
            ).fetchall()
        return [
            ConversationTurn(
                sender=row["sender"],
                role=Role(row["role"]),
                content=row["content"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    def trim_turns(self, sender: str, keep: int) -> int:
        conn = self._connect()
        with self._lock:
            cursor = conn.execute(
                """
                DELETE FROM conversations
                WHERE sender = ? AND id NOT IN (
                    SELECT id FROM conversations WHERE sender = ? ORDER BY id DESC LIMIT ?
                )
                """,
                (sender, sender, int(keep)),
            )
            conn.commit()
            return int(cursor.rowcount)

    def clear_turns(self, sender: str) -> int:
        conn = self._connect()
        with self._lock:
            cursor = conn.execute("DELETE FROM conversations WHERE sender = ?", (sender,))
            conn.commit()
            return int(cursor.rowcount)

    def latest_turn(self) -> ConversationTurn | None:
        """Most recent turn across all senders."""
        conn = self._connect()
        with self._lock:
            row = conn.execute(
                "SELECT sender, role, content, timestamp FROM conversations ORDER BY id DESC LIMIT 1"
            ).fetchone()
        if row is None:
            return None
        return ConversationTurn(
            sender=row["sender"], role=Role(row["role"]), content=row["content"], timestamp=row["timestamp"]
        )

    # --- Key/value state ---

    def set_state(self, key: str, value: str) -> None:
        conn = self._connect()
        with self._lock:
            conn.execute(
                """
                INSERT INTO kv_state(key, value)
                VALUES(?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value
                """,
                (key, value),
            )
            conn.commit()

    def get_state(self, key: str) -> str | None:
        conn = self._connect()
        with self._lock:
            row = conn.execute(
                "SELECT value FROM kv_state WHERE key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            return str(row["value"])

    # --- Running task slot ---

    def claim_running_task(self, task_id: str, description: str) -> bool:
        """Occupy the slot if it is empty. Returns False when something is already running."""
        conn = self._connect()
        with self._lock:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO running_task(slot, id, description, started_at)
                VALUES(1, ?, ?, ?)
                """,
                (task_id, description, iso_now()),
            )
            conn.commit()
            return cursor.rowcount == 1

    def set_running_task_pid(self, task_id: str, pid: int) -> bool:
        conn = self._connect()
        with self._lock:
            cursor = conn.execute(
                "UPDATE running_task SET pid = ? WHERE slot = 1 AND id = ?", (int(pid), task_id)
            )
            conn.commit()
            return cursor.rowcount > 0

    def get_running_task(self) -> RunningTask | None:
        conn = self._connect()
        with self._lock:
            row = conn.execute("SELECT id, description, started_at, pid FROM running_task WHERE slot = 1").fetchone()
        if row is None:
            return None
        return RunningTask(
            id=row["id"],
            description=row["description"],
            started_at=row["started_at"],
            pid=row["pid"],
        )

    def clear_running_task(self, task_id: str | None = None) -> bool:
        """Empty the slot; with a task id only if that task still owns it."""
        conn = self._connect()
        with self._lock:
            if task_id is None:
                cursor = conn.execute("DELETE FROM running_task")
            else:
                cursor = conn.execute("DELETE FROM running_task WHERE id = ?", (task_id,))
            conn.commit()
            return cursor.rowcount > 0

    # --- FIFO queue ---

    def enqueue_request(
        self, message_id: str, sender: str, text: str, context: dict[str, Any] | None = None
    ) -> bool:
        """Returns False if this message id is already queued."""
        conn = self._connect()
        with self._lock:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO message_queue(message_id, sender, text, context_json, queued_at)
                VALUES(?, ?, ?, ?, ?)
                """,
                (message_id, sender, text, json.dumps(context or {}), iso_now()),
            )
            conn.commit()
            return cursor.rowcount == 1

    @staticmethod
    def _row_to_queued(row: sqlite3.Row) -> QueuedRequest:
        try:
            context = json.loads(row["context_json"] or "{}")
        except json.JSONDecodeError:
            context = {}
        return QueuedRequest(
            id=int(row["id"]),
            message_id=row["message_id"],
            sender=row["sender"],
            text=row["text"],
            queued_at=row["queued_at"],
            context=context,
        )

    def claim_next_queued(self, task_id: str) -> QueuedRequest | None:
        """Pop the oldest queued request into the running-task slot.

        Does nothing (returns None) when the slot is occupied or the queue is
        empty; both checks and writes happen under one lock.
        """
        conn = self._connect()
        with self._lock:
            if conn.execute("SELECT 1 FROM running_task WHERE slot = 1").fetchone() is not None:
                return None
            row = conn.execute(
                "SELECT * FROM message_queue ORDER BY queued_at ASC, id ASC LIMIT 1"
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM message_queue WHERE id = ?", (row["id"],))
            conn.execute(
                "INSERT INTO running_task(slot, id, description, started_at) VALUES(1, ?, ?, ?)",
                (task_id, str(row["text"])[:100], iso_now()),
            )
            conn.commit()
        return self._row_to_queued(row)

    def queue_length(self) -> int:
        conn = self._connect()
        with self._lock:
            row = conn.execute("SELECT COUNT(*) AS n FROM message_queue").fetchone()
            return int(row["n"])

    def list_queued_requests(self) -> list[QueuedRequest]:
        conn = self._connect()
        with self._lock:
            rows = conn.execute("SELECT * FROM message_queue ORDER BY queued_at ASC, id ASC").fetchall()
        return [self._row_to_queued(row) for row in rows]

    # --- Pending approvals ---

    def create_approval(self, approval: PendingApproval) -> None:
        conn = self._connect()
        with self._lock:
            conn.execute(
                """
                INSERT INTO pending_approvals(id, task_id, command, allow_rules, sender, created_at, expires_at)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    approval.id,
                    approval.task_id,
                    approval.command,
                    approval.allow_rules,
                    approval.sender,
                    approval.created_at,
                    approval.expires_at,
                ),
            )
            conn.commit()

    @staticmethod
    def _row_to_approval(row: sqlite3.Row) -> PendingApproval:
        return PendingApproval(
            id=row["id"],
            task_id=row["task_id"],
            command=row["command"],
            sender=row["sender"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            allow_rules=row["allow_rules"],
        )

    def get_active_approval(self, sender: str, now: str) -> PendingApproval | None:
        """Newest non-expired approval for a sender."""
        conn = self._connect()
        with self._lock:
            row = conn.execute(
                """
                SELECT * FROM pending_approvals
                WHERE sender = ? AND expires_at > ?
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (sender, now),
            ).fetchone()
        return self._row_to_approval(row) if row is not None else None

    def list_approvals(self) -> list[PendingApproval]:
        conn = self._connect()
        with self._lock:
            rows = conn.execute("SELECT * FROM pending_approvals ORDER BY created_at ASC").fetchall()
        return [self._row_to_approval(row) for row in rows]

    def delete_approval(self, approval_id: str) -> bool:
        conn = self._connect()
        with self._lock:
            cursor = conn.execute("DELETE FROM pending_approvals WHERE id = ?", (approval_id,))
            conn.commit()
            return cursor.rowcount > 0

    def delete_expired_approvals(self, now: str) -> int:
        conn = self._connect()
        with self._lock:
            cursor = conn.execute("DELETE FROM pending_approvals WHERE expires_at < ?", (now,))
            conn.commit()
            return int(cursor.rowcount)
