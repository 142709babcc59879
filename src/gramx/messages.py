from __future__ import annotations

import secrets
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, List, Mapping, Set, Tuple

from .clock import _now_ms
from .errors import InvalidParticipants, NotFound, NotOwner, ValidationError
from .keys import ConversationKey


class MessageStatus(IntEnum):
    SENT = 0
    DELIVERED = 1
    READ = 2

    @property
    def label(self) -> str:
        return self.name.lower()


class DeleteScope(str, Enum):
    MINE = "mine"
    EVERYONE = "everyone"


@dataclass(frozen=True)
class NewMessage:
    """A message as submitted for append; the store fills in the rest."""

    conv_key: ConversationKey
    sender_id: str
    receiver_id: str
    body: str = ""
    media_url: str | None = None
    client_temp_id: str | None = None
    msg_id: str | None = None
    created_at_ms: int | None = None


@dataclass(frozen=True)
class StoredMessage:
    msg_id: str
    conv_key: ConversationKey
    seq: int
    sender_id: str
    receiver_id: str
    body: str
    media_url: str | None
    created_at_ms: int
    status: MessageStatus = MessageStatus.SENT
    edited: bool = False
    edited_at_ms: int | None = None
    deleted_for_everyone: bool = False
    deleted_for: frozenset[str] = frozenset()
    reactions: Mapping[str, str] = field(default_factory=dict)
    client_temp_id: str | None = None

    @property
    def order_key(self) -> tuple[int, int]:
        return (self.created_at_ms, self.seq)

    def visible_to(self, viewer_id: str) -> bool:
        return not self.deleted_for_everyone and viewer_id not in self.deleted_for

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.msg_id,
            "conversationId": self.conv_key.storage_key(),
            "seq": self.seq,
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "body": self.body,
            "mediaUrl": self.media_url,
            "createdAt": self.created_at_ms,
            "status": self.status.label,
            "edited": self.edited,
            "editedAt": self.edited_at_ms,
            "reactions": dict(self.reactions),
            "clientTempId": self.client_temp_id,
        }


def _new_msg_id() -> str:
    return f"m_{secrets.token_hex(8)}"


def validate_new_message(message: NewMessage) -> None:
    if message.sender_id == message.receiver_id:
        raise InvalidParticipants("sender and receiver must differ")
    if set(message.conv_key.participants) != {message.sender_id, message.receiver_id}:
        raise InvalidParticipants("sender and receiver must match the conversation")
    if not isinstance(message.body, str):
        raise ValidationError("body must be a string")
    if not message.body.strip() and not message.media_url:
        raise ValidationError("message needs a body or media")


def check_visible(message: StoredMessage, user_id: str) -> None:
    """Raise NotFound unless ``user_id`` participates and can still see ``message``."""

    if not message.conv_key.includes(user_id) or not message.visible_to(user_id):
        raise NotFound(f"message {message.msg_id} not found")


def check_sender(message: StoredMessage, requester_id: str) -> None:
    check_visible(message, requester_id)
    if message.sender_id != requester_id:
        raise NotOwner("only the sender may do that")


def history_page(
    messages: List[StoredMessage],
    viewer_id: str,
    *,
    before_seq: int | None = None,
    limit: int | None = None,
) -> list[StoredMessage]:
    visible = [m for m in messages if m.visible_to(viewer_id)]
    if before_seq is not None:
        visible = [m for m in visible if m.seq < before_seq]
    visible.sort(key=lambda m: m.order_key)
    if limit is not None:
        limit = max(limit, 0)
        visible = visible[len(visible) - limit :] if limit else []
    return visible


class InMemoryMessageStore:
    """Process-local message store; the default when no database is configured."""

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._messages: Dict[str, StoredMessage] = {}
        self._by_conv: Dict[ConversationKey, List[str]] = {}
        self._by_user: Dict[str, Set[ConversationKey]] = {}
        self._last_created: Dict[ConversationKey, int] = {}
        self._idempotency: Dict[Tuple[ConversationKey, str, str], str] = {}

    def append(self, message: NewMessage) -> tuple[StoredMessage, bool]:
        """Append ``message`` or return the record already stored for its client temp id.

        Sequence numbers are monotonic per conversation starting at 1. When
        the store assigns ``created_at_ms`` it never goes backwards within a
        conversation, so sequential appends retrieve in append order.
        """

        validate_new_message(message)
        conv_key = message.conv_key
        if message.client_temp_id is not None:
            idem_key = (conv_key, message.sender_id, message.client_temp_id)
            existing_id = self._idempotency.get(idem_key)
            if existing_id is not None:
                return self._messages[existing_id], False

        msg_id = message.msg_id or _new_msg_id()
        if msg_id in self._messages:
            raise ValidationError(f"duplicate message id {msg_id}")

        created_at_ms = message.created_at_ms
        if created_at_ms is None:
            created_at_ms = max(self._now(), self._last_created.get(conv_key, 0))
        self._last_created[conv_key] = max(created_at_ms, self._last_created.get(conv_key, 0))

        ids = self._by_conv.setdefault(conv_key, [])
        stored = StoredMessage(
            msg_id=msg_id,
            conv_key=conv_key,
            seq=len(ids) + 1,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            body=message.body,
            media_url=message.media_url,
            created_at_ms=created_at_ms,
            client_temp_id=message.client_temp_id,
        )
        ids.append(msg_id)
        self._messages[msg_id] = stored
        for user_id in conv_key.participants:
            self._by_user.setdefault(user_id, set()).add(conv_key)
        if message.client_temp_id is not None:
            self._idempotency[(conv_key, message.sender_id, message.client_temp_id)] = msg_id
        return stored, True

    def get(self, msg_id: str) -> StoredMessage:
        message = self._messages.get(msg_id)
        if message is None:
            raise NotFound(f"message {msg_id} not found")
        return message

    def history(
        self,
        conv_key: ConversationKey,
        viewer_id: str,
        *,
        before_seq: int | None = None,
        limit: int | None = None,
    ) -> list[StoredMessage]:
        messages = [self._messages[msg_id] for msg_id in self._by_conv.get(conv_key, [])]
        return history_page(messages, viewer_id, before_seq=before_seq, limit=limit)

    def mark_delivered(self, msg_id: str) -> bool:
        return self._advance(self.get(msg_id), MessageStatus.DELIVERED)

    def mark_read(self, conv_key: ConversationKey, reader_id: str) -> list[str]:
        affected: list[str] = []
        for msg_id in self._by_conv.get(conv_key, []):
            message = self._messages[msg_id]
            if message.receiver_id != reader_id:
                continue
            if self._advance(message, MessageStatus.READ):
                affected.append(msg_id)
        return affected

    def _advance(self, message: StoredMessage, target: MessageStatus) -> bool:
        if message.status >= target:
            return False
        self._messages[message.msg_id] = replace(message, status=target)
        return True

    def react(self, msg_id: str, user_id: str, emoji: str | None) -> dict[str, str]:
        message = self.get(msg_id)
        check_visible(message, user_id)
        reactions = dict(message.reactions)
        if emoji is None:
            reactions.pop(user_id, None)
        else:
            reactions[user_id] = emoji
        self._messages[msg_id] = replace(message, reactions=reactions)
        return dict(reactions)

    def soft_delete(self, msg_id: str, requester_id: str, scope: DeleteScope) -> StoredMessage:
        message = self.get(msg_id)
        if scope is DeleteScope.EVERYONE:
            check_sender(message, requester_id)
            updated = replace(message, deleted_for_everyone=True)
        else:
            check_visible(message, requester_id)
            updated = replace(message, deleted_for=message.deleted_for | {requester_id})
        self._messages[msg_id] = updated
        return updated

    def edit(self, msg_id: str, requester_id: str, new_body: str) -> StoredMessage:
        message = self.get(msg_id)
        check_sender(message, requester_id)
        if not isinstance(new_body, str) or not new_body.strip():
            raise ValidationError("body must be a non-empty string")
        updated = replace(message, body=new_body, edited=True, edited_at_ms=self._now())
        self._messages[msg_id] = updated
        return updated

    def conversations_for(self, user_id: str) -> list[ConversationKey]:
        return sorted(self._by_user.get(user_id, set()))

    def last_visible(self, conv_key: ConversationKey, viewer_id: str) -> StoredMessage | None:
        visible = [
            self._messages[msg_id]
            for msg_id in self._by_conv.get(conv_key, [])
            if self._messages[msg_id].visible_to(viewer_id)
        ]
        if not visible:
            return None
        return max(visible, key=lambda m: m.order_key)

    def unread_count(self, conv_key: ConversationKey, reader_id: str) -> int:
        count = 0
        for msg_id in self._by_conv.get(conv_key, []):
            message = self._messages[msg_id]
            if (
                message.receiver_id == reader_id
                and message.status < MessageStatus.READ
                and message.visible_to(reader_id)
            ):
                count += 1
        return count
