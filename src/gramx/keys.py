from __future__ import annotations

from dataclasses import dataclass

from .errors import InvalidParticipants


MAX_USER_ID_LENGTH = 128


def validate_user_id(user_id: object) -> str:
    """Return ``user_id`` if it is a usable identifier, else raise.

    Identifiers are opaque strings; only emptiness, surrounding whitespace and
    control characters are rejected.
    """

    if not isinstance(user_id, str) or not user_id:
        raise InvalidParticipants("user id must be a non-empty string")
    if len(user_id) > MAX_USER_ID_LENGTH:
        raise InvalidParticipants("user id too long")
    if user_id != user_id.strip() or any(ord(ch) < 32 or ord(ch) == 127 for ch in user_id):
        raise InvalidParticipants("user id contains whitespace padding or control characters")
    return user_id


@dataclass(frozen=True, order=True)
class ConversationKey:
    """Canonical identifier of the conversation between two distinct users."""

    low: str
    high: str

    def __post_init__(self) -> None:
        if not self.low < self.high:
            raise InvalidParticipants("conversation key members must be distinct and sorted")

    @property
    def participants(self) -> tuple[str, str]:
        return (self.low, self.high)

    def includes(self, user_id: str) -> bool:
        return user_id == self.low or user_id == self.high

    def partner_of(self, user_id: str) -> str:
        if user_id == self.low:
            return self.high
        if user_id == self.high:
            return self.low
        raise InvalidParticipants(f"{user_id} is not part of this conversation")

    def storage_key(self) -> str:
        """Serialize as ``<len(low)>:<low><high>``, injective for any alphabet."""

        return f"{len(self.low)}:{self.low}{self.high}"

    @classmethod
    def parse(cls, raw: str) -> "ConversationKey":
        length_text, sep, rest = raw.partition(":")
        if not sep or not length_text.isdigit():
            raise InvalidParticipants("malformed conversation key")
        length = int(length_text)
        if length <= 0 or length >= len(rest):
            raise InvalidParticipants("malformed conversation key")
        return cls(rest[:length], rest[length:])

    def __str__(self) -> str:
        return self.storage_key()


def conversation_key(user_a: object, user_b: object) -> ConversationKey:
    a = validate_user_id(user_a)
    b = validate_user_id(user_b)
    if a == b:
        raise InvalidParticipants("self-conversation is not supported")
    low, high = sorted((a, b))
    return ConversationKey(low, high)
