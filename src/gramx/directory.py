from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict

from .clock import _now_ms
from .connection import Connection
from .frames import make_frame


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserPresence:
    user_id: str
    online: bool
    last_seen_ms: int | None


class IdentityDirectory:
    """Injective mapping between users and their single live connection.

    ``bind`` and ``unbind`` are the only writers of both maps. A reconnect
    evicts the previous binding without closing it; the old handle simply
    stops resolving.
    """

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._by_user: Dict[str, Connection] = {}
        self._by_connection: Dict[Connection, str] = {}
        self._last_seen: Dict[str, int] = {}

    def bind(self, user_id: str, connection: Connection) -> bool:
        """Bind ``connection`` to ``user_id``; return True on offline->online."""

        current = self._by_user.get(user_id)
        if current is connection:
            return False

        previous_user = self._by_connection.pop(connection, None)
        if previous_user is not None and previous_user != user_id:
            # same socket re-logging as somebody else: release the old identity first
            if self._by_user.get(previous_user) is connection:
                self._set_offline(previous_user)

        if current is not None:
            self._by_connection.pop(current, None)
            logger.info("evicted previous connection", extra={"user_id": user_id, "evicted": current.connection_id})

        self._by_user[user_id] = connection
        self._by_connection[connection] = user_id
        self._last_seen[user_id] = self._now()

        came_online = current is None
        if came_online:
            self._broadcast(make_frame("user-online", {"userId": user_id}), exclude=connection)
        return came_online

    def unbind(self, connection: Connection) -> bool:
        """Release ``connection``; return True if its user went offline."""

        user_id = self._by_connection.pop(connection, None)
        if user_id is None:
            return False
        if self._by_user.get(user_id) is not connection:
            return False
        self._set_offline(user_id)
        return True

    def _set_offline(self, user_id: str) -> None:
        self._by_user.pop(user_id, None)
        last_seen_ms = self._now()
        self._last_seen[user_id] = last_seen_ms
        self._broadcast(make_frame("user-offline", {"userId": user_id, "lastSeen": last_seen_ms}))

    def resolve(self, user_id: str) -> Connection | None:
        return self._by_user.get(user_id)

    def user_for(self, connection: Connection) -> str | None:
        return self._by_connection.get(connection)

    def online_users(self) -> frozenset[str]:
        return frozenset(self._by_user)

    def presence(self, user_id: str) -> UserPresence:
        return UserPresence(
            user_id=user_id,
            online=user_id in self._by_user,
            last_seen_ms=self._last_seen.get(user_id),
        )

    def _broadcast(self, frame: dict, *, exclude: Connection | None = None) -> None:
        for connection in list(self._by_user.values()):
            if connection is exclude:
                continue
            connection.send(frame)
