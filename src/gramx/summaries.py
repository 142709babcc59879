from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List

from .keys import ConversationKey
from .messages import StoredMessage


PREVIEW_CHARS = 80
MEDIA_PREVIEW = "[media]"


@dataclass(frozen=True)
class ConversationSummary:
    """One row of a user's conversation list, derived from the message store."""

    partner_id: str
    conv_key: ConversationKey
    last_message: StoredMessage
    unread_count: int
    partner_online: bool = False

    @property
    def last_message_at_ms(self) -> int:
        return self.last_message.created_at_ms

    @property
    def preview(self) -> str:
        return preview_text(self.last_message)

    def to_wire(self) -> dict[str, Any]:
        return {
            "partnerId": self.partner_id,
            "conversationId": self.conv_key.storage_key(),
            "lastMessage": {
                "id": self.last_message.msg_id,
                "senderId": self.last_message.sender_id,
                "preview": self.preview,
                "createdAt": self.last_message_at_ms,
                "status": self.last_message.status.label,
            },
            "unreadCount": self.unread_count,
            "online": self.partner_online,
        }


def preview_text(message: StoredMessage) -> str:
    text = message.body.strip()
    if not text:
        return MEDIA_PREVIEW
    if len(text) > PREVIEW_CHARS:
        return text[: PREVIEW_CHARS - 1] + "…"
    return text


class SummaryBuilder:
    """Builds a user's conversation list straight from the message store.

    Nothing is cached: every call reads the store, so a summary requested
    right after ``mark_read`` already reports zero unread.
    """

    def __init__(self, store, *, is_online: Callable[[str], bool] | None = None) -> None:
        self._store = store
        self._is_online = is_online or (lambda _user_id: False)

    def summaries(self, user_id: str) -> list[ConversationSummary]:
        rows: List[ConversationSummary] = []
        for conv_key in self._store.conversations_for(user_id):
            last_message = self._store.last_visible(conv_key, user_id)
            if last_message is None:
                continue
            partner_id = conv_key.partner_of(user_id)
            rows.append(
                ConversationSummary(
                    partner_id=partner_id,
                    conv_key=conv_key,
                    last_message=last_message,
                    unread_count=self._store.unread_count(conv_key, user_id),
                    partner_online=self._is_online(partner_id),
                )
            )
        rows.sort(key=lambda row: (-row.last_message.created_at_ms, -row.last_message.seq, row.conv_key))
        return rows

    def summary_for(self, user_id: str, partner_id: str) -> ConversationSummary | None:
        for row in self.summaries(user_id):
            if row.partner_id == partner_id:
                return row
        return None
