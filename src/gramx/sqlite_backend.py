from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns a shared SQLite connection and applies gramX migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()
        logger.info("sqlite backend ready", extra={"db_path": db_path})

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                msg_id TEXT PRIMARY KEY,
                conv_key TEXT NOT NULL,
                seq INTEGER NOT NULL,
                sender_id TEXT NOT NULL,
                receiver_id TEXT NOT NULL,
                body TEXT NOT NULL,
                media_url TEXT,
                created_at_ms INTEGER NOT NULL,
                status INTEGER NOT NULL DEFAULT 0,
                edited INTEGER NOT NULL DEFAULT 0,
                edited_at_ms INTEGER,
                deleted_for_everyone INTEGER NOT NULL DEFAULT 0,
                client_temp_id TEXT,
                UNIQUE (conv_key, seq),
                UNIQUE (conv_key, sender_id, client_temp_id)
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS messages_by_sender ON messages (sender_id)")
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS messages_by_receiver ON messages (receiver_id, status)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conv_seq (
                conv_key TEXT PRIMARY KEY,
                next_seq INTEGER NOT NULL,
                last_created_at_ms INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS message_hidden (
                msg_id TEXT NOT NULL REFERENCES messages (msg_id),
                user_id TEXT NOT NULL,
                PRIMARY KEY (msg_id, user_id)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS message_reactions (
                msg_id TEXT NOT NULL REFERENCES messages (msg_id),
                user_id TEXT NOT NULL,
                emoji TEXT NOT NULL,
                PRIMARY KEY (msg_id, user_id)
            )
            """
        )
