from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Sequence, Set

from .clock import _now_ms
from .errors import NotFound, PersistenceUnavailable, ValidationError
from .keys import ConversationKey
from .messages import (
    DeleteScope,
    MessageStatus,
    NewMessage,
    StoredMessage,
    _new_msg_id,
    check_sender,
    check_visible,
    validate_new_message,
)
from .sqlite_backend import SQLiteBackend


logger = logging.getLogger(__name__)

_COLUMNS = (
    "msg_id, conv_key, seq, sender_id, receiver_id, body, media_url, created_at_ms, "
    "status, edited, edited_at_ms, deleted_for_everyone, client_temp_id"
)
_VISIBLE_TO = (
    "m.deleted_for_everyone=0 AND NOT EXISTS "
    "(SELECT 1 FROM message_hidden h WHERE h.msg_id=m.msg_id AND h.user_id=?)"
)


class SQLiteMessageStore:
    """Durable message store backed by SQLite.

    Every public method runs under the backend lock. Mutations run inside
    ``BEGIN IMMEDIATE`` transactions and roll back on any failure; driver
    errors surface as ``PersistenceUnavailable``.
    """

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                yield cursor
                conn.commit()
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.rollback()
                logger.error("sqlite write failed: %s", exc)
                raise PersistenceUnavailable("message store unavailable") from exc
            except Exception:
                if conn.in_transaction:
                    conn.rollback()
                raise
            finally:
                cursor.close()

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._backend.lock:
            try:
                yield self._backend.connection
            except sqlite3.Error as exc:
                logger.error("sqlite read failed: %s", exc)
                raise PersistenceUnavailable("message store unavailable") from exc

    def append(self, message: NewMessage) -> tuple[StoredMessage, bool]:
        validate_new_message(message)
        conv_key = message.conv_key.storage_key()
        with self._transaction() as cursor:
            if message.client_temp_id is not None:
                row = cursor.execute(
                    f"SELECT {_COLUMNS} FROM messages WHERE conv_key=? AND sender_id=? AND client_temp_id=?",
                    (conv_key, message.sender_id, message.client_temp_id),
                ).fetchone()
                if row is not None:
                    return self._hydrate(cursor, [row])[0], False

            msg_id = message.msg_id or _new_msg_id()
            if cursor.execute("SELECT 1 FROM messages WHERE msg_id=?", (msg_id,)).fetchone():
                raise ValidationError(f"duplicate message id {msg_id}")

            cursor.execute(
                "INSERT OR IGNORE INTO conv_seq (conv_key, next_seq, last_created_at_ms) VALUES (?, 1, 0)",
                (conv_key,),
            )
            seq_row = cursor.execute(
                "SELECT next_seq, last_created_at_ms FROM conv_seq WHERE conv_key=?", (conv_key,)
            ).fetchone()
            seq = int(seq_row[0])
            last_created = int(seq_row[1])
            created_at_ms = message.created_at_ms
            if created_at_ms is None:
                created_at_ms = max(self._now(), last_created)
            cursor.execute(
                "UPDATE conv_seq SET next_seq = next_seq + 1, last_created_at_ms = MAX(last_created_at_ms, ?) "
                "WHERE conv_key=?",
                (created_at_ms, conv_key),
            )
            cursor.execute(
                """
                INSERT INTO messages (msg_id, conv_key, seq, sender_id, receiver_id, body, media_url,
                                      created_at_ms, status, client_temp_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    msg_id,
                    conv_key,
                    seq,
                    message.sender_id,
                    message.receiver_id,
                    message.body,
                    message.media_url,
                    created_at_ms,
                    int(MessageStatus.SENT),
                    message.client_temp_id,
                ),
            )
        stored = StoredMessage(
            msg_id=msg_id,
            conv_key=message.conv_key,
            seq=seq,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            body=message.body,
            media_url=message.media_url,
            created_at_ms=created_at_ms,
            client_temp_id=message.client_temp_id,
        )
        return stored, True

    def get(self, msg_id: str) -> StoredMessage:
        with self._reading() as conn:
            return self._load(conn, msg_id)

    def history(
        self,
        conv_key: ConversationKey,
        viewer_id: str,
        *,
        before_seq: int | None = None,
        limit: int | None = None,
    ) -> list[StoredMessage]:
        query = f"SELECT {_COLUMNS} FROM messages m WHERE m.conv_key=? AND {_VISIBLE_TO}"
        params: list[object] = [conv_key.storage_key(), viewer_id]
        if before_seq is not None:
            query += " AND m.seq < ?"
            params.append(before_seq)
        query += " ORDER BY m.created_at_ms DESC, m.seq DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(limit, 0))
        with self._reading() as conn:
            rows = conn.execute(query, params).fetchall()
            messages = self._hydrate(conn, rows)
        messages.reverse()
        return messages

    def mark_delivered(self, msg_id: str) -> bool:
        with self._transaction() as cursor:
            if cursor.execute("SELECT 1 FROM messages WHERE msg_id=?", (msg_id,)).fetchone() is None:
                raise NotFound(f"message {msg_id} not found")
            cursor.execute(
                "UPDATE messages SET status = MAX(status, ?) WHERE msg_id=? AND status < ?",
                (int(MessageStatus.DELIVERED), msg_id, int(MessageStatus.DELIVERED)),
            )
            return cursor.rowcount > 0

    def mark_read(self, conv_key: ConversationKey, reader_id: str) -> list[str]:
        read = int(MessageStatus.READ)
        with self._transaction() as cursor:
            rows = cursor.execute(
                "SELECT msg_id FROM messages WHERE conv_key=? AND receiver_id=? AND status < ? ORDER BY seq ASC",
                (conv_key.storage_key(), reader_id, read),
            ).fetchall()
            affected = [row[0] for row in rows]
            if affected:
                cursor.execute(
                    "UPDATE messages SET status = MAX(status, ?) WHERE conv_key=? AND receiver_id=? AND status < ?",
                    (read, conv_key.storage_key(), reader_id, read),
                )
        return affected

    def react(self, msg_id: str, user_id: str, emoji: str | None) -> dict[str, str]:
        with self._transaction() as cursor:
            check_visible(self._load(cursor, msg_id), user_id)
            if emoji is None:
                cursor.execute("DELETE FROM message_reactions WHERE msg_id=? AND user_id=?", (msg_id, user_id))
            else:
                cursor.execute(
                    """
                    INSERT INTO message_reactions (msg_id, user_id, emoji) VALUES (?, ?, ?)
                    ON CONFLICT(msg_id, user_id) DO UPDATE SET emoji = excluded.emoji
                    """,
                    (msg_id, user_id, emoji),
                )
            rows = cursor.execute(
                "SELECT user_id, emoji FROM message_reactions WHERE msg_id=?", (msg_id,)
            ).fetchall()
        return {row[0]: row[1] for row in rows}

    def soft_delete(self, msg_id: str, requester_id: str, scope: DeleteScope) -> StoredMessage:
        with self._transaction() as cursor:
            message = self._load(cursor, msg_id)
            if scope is DeleteScope.EVERYONE:
                check_sender(message, requester_id)
                cursor.execute("UPDATE messages SET deleted_for_everyone=1 WHERE msg_id=?", (msg_id,))
            else:
                check_visible(message, requester_id)
                cursor.execute(
                    "INSERT OR IGNORE INTO message_hidden (msg_id, user_id) VALUES (?, ?)",
                    (msg_id, requester_id),
                )
            return self._load(cursor, msg_id)

    def edit(self, msg_id: str, requester_id: str, new_body: str) -> StoredMessage:
        if not isinstance(new_body, str) or not new_body.strip():
            raise ValidationError("body must be a non-empty string")
        with self._transaction() as cursor:
            check_sender(self._load(cursor, msg_id), requester_id)
            cursor.execute(
                "UPDATE messages SET body=?, edited=1, edited_at_ms=? WHERE msg_id=?",
                (new_body, self._now(), msg_id),
            )
            return self._load(cursor, msg_id)

    def conversations_for(self, user_id: str) -> list[ConversationKey]:
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT DISTINCT conv_key FROM messages WHERE sender_id=? OR receiver_id=?",
                (user_id, user_id),
            ).fetchall()
        return sorted(ConversationKey.parse(row[0]) for row in rows)

    def last_visible(self, conv_key: ConversationKey, viewer_id: str) -> StoredMessage | None:
        messages = self.history(conv_key, viewer_id, limit=1)
        return messages[0] if messages else None

    def unread_count(self, conv_key: ConversationKey, reader_id: str) -> int:
        with self._reading() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM messages m WHERE m.conv_key=? AND m.receiver_id=? AND m.status < ? "
                f"AND {_VISIBLE_TO}",
                (conv_key.storage_key(), reader_id, int(MessageStatus.READ), reader_id),
            ).fetchone()
        return int(row[0])

    def _load(self, conn, msg_id: str) -> StoredMessage:
        row = conn.execute(f"SELECT {_COLUMNS} FROM messages WHERE msg_id=?", (msg_id,)).fetchone()
        if row is None:
            raise NotFound(f"message {msg_id} not found")
        return self._hydrate(conn, [row])[0]

    @staticmethod
    def _hydrate(conn, rows: Sequence[sqlite3.Row]) -> list[StoredMessage]:
        if not rows:
            return []
        ids = [row[0] for row in rows]
        placeholders = ",".join("?" for _ in ids)
        hidden: Dict[str, Set[str]] = {}
        for msg_id, user_id in conn.execute(
            f"SELECT msg_id, user_id FROM message_hidden WHERE msg_id IN ({placeholders})", ids
        ).fetchall():
            hidden.setdefault(msg_id, set()).add(user_id)
        reactions: Dict[str, Dict[str, str]] = {}
        for msg_id, user_id, emoji in conn.execute(
            f"SELECT msg_id, user_id, emoji FROM message_reactions WHERE msg_id IN ({placeholders})", ids
        ).fetchall():
            reactions.setdefault(msg_id, {})[user_id] = emoji
        return [
            StoredMessage(
                msg_id=row[0],
                conv_key=ConversationKey.parse(row[1]),
                seq=row[2],
                sender_id=row[3],
                receiver_id=row[4],
                body=row[5],
                media_url=row[6],
                created_at_ms=row[7],
                status=MessageStatus(row[8]),
                edited=bool(row[9]),
                edited_at_ms=row[10],
                deleted_for_everyone=bool(row[11]),
                deleted_for=frozenset(hidden.get(row[0], ())),
                reactions=reactions.get(row[0], {}),
                client_temp_id=row[12],
            )
            for row in rows
        ]
