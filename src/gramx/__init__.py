"""gramX presence and conversation routing engine."""

from .directory import IdentityDirectory, UserPresence
from .errors import (
    AuthError,
    GramxError,
    InvalidParticipants,
    InvalidState,
    NotFound,
    NotOwner,
    PersistenceUnavailable,
    ValidationError,
)
from .keys import ConversationKey, conversation_key
from .messages import DeleteScope, InMemoryMessageStore, MessageStatus, NewMessage, StoredMessage
from .router import EventRouter
from .server import main, simulate
from .summaries import ConversationSummary, SummaryBuilder

__all__ = [
    "AuthError",
    "ConversationKey",
    "ConversationSummary",
    "DeleteScope",
    "EventRouter",
    "GramxError",
    "IdentityDirectory",
    "InMemoryMessageStore",
    "InvalidParticipants",
    "InvalidState",
    "MessageStatus",
    "NewMessage",
    "NotFound",
    "NotOwner",
    "PersistenceUnavailable",
    "StoredMessage",
    "SummaryBuilder",
    "UserPresence",
    "ValidationError",
    "conversation_key",
    "main",
    "simulate",
]
