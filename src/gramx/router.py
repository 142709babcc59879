from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict

from .connection import Connection, ConnectionState, Sender
from .directory import IdentityDirectory
from .errors import GramxError, InvalidState, ValidationError
from .frames import _error_frame, error_frame_for, make_frame
from .keys import ConversationKey, conversation_key
from .messages import DeleteScope, MessageStatus, NewMessage, StoredMessage
from .summaries import SummaryBuilder


logger = logging.getLogger(__name__)

DEFAULT_HISTORY_PAGE_SIZE = 200
DEFAULT_MAX_BODY_CHARS = 4000
MAX_EMOJI_CHARS = 32
AUTO_REPLY_CONTEXT_TURNS = 20

Handler = Callable[[Connection, Dict[str, Any], Any], Awaitable[None]]


def _require_str(body: Dict[str, Any], key: str, *, max_len: int | None = None) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{key} required")
    if max_len is not None and len(value) > max_len:
        raise ValidationError(f"{key} too long")
    return value


def _optional_int(body: Dict[str, Any], key: str, *, minimum: int) -> int | None:
    value = body.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValidationError(f"{key} must be an integer >= {minimum}")
    return value


class EventRouter:
    """Routes inbound events for every connection through the core components.

    Each connection moves ``UNAUTHENTICATED -> AUTHENTICATED -> CLOSED``.
    Failures are reported only to the connection that sent the event.
    """

    def __init__(
        self,
        *,
        store,
        auth,
        directory: IdentityDirectory | None = None,
        blobs=None,
        completion=None,
        bot_user_id: str | None = None,
        history_page_size: int = DEFAULT_HISTORY_PAGE_SIZE,
        max_body_chars: int = DEFAULT_MAX_BODY_CHARS,
    ) -> None:
        self.store = store
        self.auth = auth
        self.directory = directory or IdentityDirectory()
        self.blobs = blobs
        self.completion = completion
        self.bot_user_id = bot_user_id
        self.history_page_size = history_page_size
        self.max_body_chars = max_body_chars
        self.summaries = SummaryBuilder(store, is_online=lambda user_id: self.directory.resolve(user_id) is not None)
        self._handlers: Dict[str, Handler] = {
            "login": self._on_login,
            "join-conversation": self._on_join_conversation,
            "send-message": self._on_send_message,
            "typing-start": self._on_typing_start,
            "typing-stop": self._on_typing_stop,
            "react": self._on_react,
            "edit-message": self._on_edit,
            "delete-message": self._on_delete,
            "list-conversations": self._on_list_conversations,
        }

    def connect(self, send: Sender) -> Connection:
        return Connection(send=send)

    def disconnect(self, connection: Connection) -> None:
        previous = connection.state
        connection.state = ConnectionState.CLOSED
        if previous is ConnectionState.AUTHENTICATED:
            went_offline = self.directory.unbind(connection)
            logger.info(
                "connection closed",
                extra={"user_id": connection.user_id, "went_offline": went_offline},
            )

    async def handle(self, connection: Connection, frame: Dict[str, Any]) -> None:
        request_id = frame.get("id")
        event_type = frame.get("t")
        try:
            await self._dispatch(connection, event_type, frame.get("body"), request_id)
        except GramxError as exc:
            logger.warning(
                "rejected %s: %s",
                event_type,
                exc.message,
                extra={"code": exc.code, "user_id": connection.user_id},
            )
            self._emit(connection, error_frame_for(exc, request_id=request_id))
        except Exception:
            logger.exception("unhandled error in %s", event_type, extra={"user_id": connection.user_id})
            self._emit(connection, _error_frame("internal_error", "internal error", request_id=request_id))

    async def _dispatch(self, connection: Connection, event_type: Any, body: Any, request_id: Any) -> None:
        if connection.state is ConnectionState.CLOSED:
            raise InvalidState("connection closed")
        handler = self._handlers.get(event_type) if isinstance(event_type, str) else None
        if handler is None:
            raise ValidationError("unknown event type")
        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise ValidationError("body must be an object")
        if event_type != "login":
            self._require_current(connection)
        await handler(connection, body, request_id)

    def _require_current(self, connection: Connection) -> str:
        if not connection.authenticated or connection.user_id is None:
            raise InvalidState("login required")
        if self.directory.resolve(connection.user_id) is not connection:
            raise InvalidState("session replaced by a newer connection")
        return connection.user_id

    # -----------------------------
    # fan-out
    # -----------------------------
    @staticmethod
    def _emit(connection: Connection | None, frame: Dict[str, Any]) -> None:
        if connection is None or connection.state is ConnectionState.CLOSED:
            return
        connection.send(frame)

    def _send_to_user(self, user_id: str, frame: Dict[str, Any]) -> bool:
        connection = self.directory.resolve(user_id)
        if connection is None:
            return False
        self._emit(connection, frame)
        return True

    def push_summaries(self, user_id: str, *, request_id: Any = None) -> None:
        """Recompute ``user_id``'s conversation list and push it if they are online."""

        connection = self.directory.resolve(user_id)
        if connection is None:
            return
        rows = self.summaries.summaries(user_id)
        self._emit(
            connection,
            make_frame("user-conversations", {"conversations": [row.to_wire() for row in rows]}, request_id=request_id),
        )

    def _fan_out_to_participants(self, message: StoredMessage, frame: Dict[str, Any]) -> None:
        for user_id in message.conv_key.participants:
            if message.visible_to(user_id):
                self._send_to_user(user_id, frame)

    # -----------------------------
    # handlers
    # -----------------------------
    async def _on_login(self, connection: Connection, body: Dict[str, Any], request_id: Any) -> None:
        if connection.authenticated:
            raise InvalidState("already logged in")
        user_id = await self.auth.verify(body)
        if connection.state is ConnectionState.CLOSED:
            return

        evicted = self.directory.resolve(user_id)
        connection.user_id = user_id
        connection.state = ConnectionState.AUTHENTICATED
        self.directory.bind(user_id, connection)
        if evicted is not None and evicted is not connection:
            self._emit(evicted, make_frame("session-replaced", {"userId": user_id}))
        logger.info("login", extra={"user_id": user_id, "connection_id": connection.connection_id})

        online = sorted(self.directory.online_users())
        self._emit(connection, make_frame("online-users", {"userId": user_id, "users": online}, request_id=request_id))
        self.push_summaries(user_id)

    async def _on_list_conversations(self, connection: Connection, body: Dict[str, Any], request_id: Any) -> None:
        self.push_summaries(connection.user_id, request_id=request_id)

    async def _on_join_conversation(self, connection: Connection, body: Dict[str, Any], request_id: Any) -> None:
        user_id = connection.user_id
        partner_id = _require_str(body, "targetUserId")
        conv_key = conversation_key(user_id, partner_id)
        before_seq = _optional_int(body, "beforeSeq", minimum=1)
        limit = _optional_int(body, "limit", minimum=1) or self.history_page_size

        page = self.store.history(conv_key, user_id, before_seq=before_seq, limit=limit + 1)
        has_more = len(page) > limit
        if has_more:
            page = page[1:]
        read_ids = self.store.mark_read(conv_key, user_id)
        if read_ids:
            just_read = set(read_ids)
            page = [
                replace(message, status=MessageStatus.READ) if message.msg_id in just_read else message
                for message in page
            ]

        self._emit(
            connection,
            make_frame(
                "conversation-history",
                {
                    "conversationId": conv_key.storage_key(),
                    "partnerId": partner_id,
                    "messages": [message.to_wire() for message in page],
                    "hasMore": has_more,
                },
                request_id=request_id,
            ),
        )
        if read_ids:
            self._notify_read(conv_key, user_id, read_ids)

    def _notify_read(self, conv_key: ConversationKey, reader_id: str, read_ids: list[str]) -> None:
        sender_id = conv_key.partner_of(reader_id)
        self._send_to_user(
            sender_id,
            make_frame(
                "messages-read",
                {"conversationId": conv_key.storage_key(), "readerId": reader_id, "messageIds": read_ids},
            ),
        )
        self.push_summaries(reader_id)
        self.push_summaries(sender_id)

    async def _on_send_message(self, connection: Connection, body: Dict[str, Any], request_id: Any) -> None:
        user_id = connection.user_id
        target_id = _require_str(body, "targetUserId")
        conv_key = conversation_key(user_id, target_id)
        text = body.get("body", "")
        if not isinstance(text, str):
            raise ValidationError("body must be a string")
        if len(text) > self.max_body_chars:
            raise ValidationError("body too long")
        client_temp_id = body.get("clientTempId")
        if client_temp_id is not None and (not isinstance(client_temp_id, str) or len(client_temp_id) > 128):
            raise ValidationError("clientTempId must be a short string")

        media_url = None
        if body.get("media") is not None:
            media_url = await self._store_media(body["media"])

        stored, created = self.store.append(
            NewMessage(
                conv_key=conv_key,
                sender_id=user_id,
                receiver_id=target_id,
                body=text,
                media_url=media_url,
                client_temp_id=client_temp_id,
            )
        )
        self._emit(connection, make_frame("new-message", {"message": stored.to_wire()}, request_id=request_id))
        if not created:
            return

        self._deliver(stored, sender_connection=connection)
        self.push_summaries(user_id)
        self.push_summaries(target_id)

        if self.completion is not None and target_id == self.bot_user_id:
            await self._auto_reply(user_id, conv_key, text)

    def _deliver(self, stored: StoredMessage, *, sender_connection: Connection | None) -> None:
        if not self._send_to_user(stored.receiver_id, make_frame("new-message", {"message": stored.to_wire()})):
            return
        if self.store.mark_delivered(stored.msg_id):
            ack = make_frame(
                "message-delivered",
                {"messageId": stored.msg_id, "conversationId": stored.conv_key.storage_key()},
            )
            if sender_connection is not None:
                self._emit(sender_connection, ack)
            else:
                self._send_to_user(stored.sender_id, ack)

    async def _store_media(self, media: Any) -> str:
        if self.blobs is None:
            raise ValidationError("media uploads are not enabled")
        if not isinstance(media, dict):
            raise ValidationError("media must be an object")
        data_b64 = _require_str(media, "data")
        content_type = media.get("contentType") or "application/octet-stream"
        if not isinstance(content_type, str):
            raise ValidationError("contentType must be a string")
        try:
            data = base64.b64decode(data_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError("media data must be base64") from exc
        return await self.blobs.store(data, content_type)

    async def _auto_reply(self, user_id: str, conv_key: ConversationKey, prompt: str) -> None:
        bot_id = self.bot_user_id
        prior = self.store.history(conv_key, bot_id, limit=AUTO_REPLY_CONTEXT_TURNS + 1)[:-1]
        turns = [
            {"role": "assistant" if message.sender_id == bot_id else "user", "content": message.body}
            for message in prior
            if message.body
        ]
        reply_text = await self.completion.complete(turns, prompt)

        read_ids = self.store.mark_read(conv_key, bot_id)
        if read_ids:
            self._notify_read(conv_key, bot_id, read_ids)
        if not reply_text:
            logger.warning("empty completion", extra={"user_id": user_id})
            return
        reply, _ = self.store.append(
            NewMessage(conv_key=conv_key, sender_id=bot_id, receiver_id=user_id, body=reply_text[: self.max_body_chars])
        )
        self._deliver(reply, sender_connection=None)
        self.push_summaries(user_id)

    async def _on_typing_start(self, connection: Connection, body: Dict[str, Any], request_id: Any) -> None:
        self._forward_typing(connection, body, "typing-start")

    async def _on_typing_stop(self, connection: Connection, body: Dict[str, Any], request_id: Any) -> None:
        self._forward_typing(connection, body, "typing-stop")

    def _forward_typing(self, connection: Connection, body: Dict[str, Any], event_type: str) -> None:
        # best effort: nothing is stored and nothing reorders start/stop pairs
        user_id = connection.user_id
        target_id = _require_str(body, "targetUserId")
        conversation_key(user_id, target_id)
        self._send_to_user(target_id, make_frame(event_type, {"senderId": user_id}))

    async def _on_react(self, connection: Connection, body: Dict[str, Any], request_id: Any) -> None:
        user_id = connection.user_id
        msg_id = _require_str(body, "messageId")
        emoji = body.get("emoji")
        if emoji is not None and (not isinstance(emoji, str) or not emoji or len(emoji) > MAX_EMOJI_CHARS):
            raise ValidationError("emoji must be a short string or null")
        reactions = self.store.react(msg_id, user_id, emoji)
        message = self.store.get(msg_id)
        self._fan_out_to_participants(
            message,
            make_frame(
                "message-reaction-update",
                {"messageId": msg_id, "conversationId": message.conv_key.storage_key(), "reactions": reactions},
            ),
        )

    async def _on_edit(self, connection: Connection, body: Dict[str, Any], request_id: Any) -> None:
        user_id = connection.user_id
        msg_id = _require_str(body, "messageId")
        new_body = _require_str(body, "body", max_len=self.max_body_chars)
        updated = self.store.edit(msg_id, user_id, new_body)
        self._fan_out_to_participants(updated, make_frame("message-edited", {"message": updated.to_wire()}))
        for participant in updated.conv_key.participants:
            self.push_summaries(participant)

    async def _on_delete(self, connection: Connection, body: Dict[str, Any], request_id: Any) -> None:
        user_id = connection.user_id
        msg_id = _require_str(body, "messageId")
        try:
            scope = DeleteScope(body.get("scope", DeleteScope.MINE.value))
        except ValueError as exc:
            raise ValidationError("scope must be 'mine' or 'everyone'") from exc
        updated = self.store.soft_delete(msg_id, user_id, scope)
        frame = make_frame(
            "message-deleted",
            {"messageId": msg_id, "conversationId": updated.conv_key.storage_key(), "scope": scope.value},
        )
        if scope is DeleteScope.EVERYONE:
            affected = updated.conv_key.participants
        else:
            affected = (user_id,)
        for participant in affected:
            self._send_to_user(participant, frame)
            self.push_summaries(participant)
