from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict


Frame = Dict[str, Any]
Sender = Callable[[Frame], None]


class ConnectionState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


def _new_connection_id() -> str:
    return f"c_{secrets.token_urlsafe(9)}"


@dataclass(eq=False)
class Connection:
    """One live transport session.

    ``send`` must not block: transports hand it a queue ``put_nowait`` or an
    equivalent. Connections compare by identity, so a reconnect for the same
    user always yields a distinct handle.
    """

    send: Sender
    connection_id: str = field(default_factory=_new_connection_id)
    state: ConnectionState = ConnectionState.UNAUTHENTICATED
    user_id: str | None = None

    @property
    def authenticated(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED

    def __repr__(self) -> str:
        return f"Connection({self.connection_id!r}, state={self.state.value}, user_id={self.user_id!r})"
