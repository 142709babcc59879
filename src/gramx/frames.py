from __future__ import annotations

from typing import Any, Dict

from .errors import GramxError


PROTOCOL_VERSION = 1


def make_frame(t: str, body: Dict[str, Any] | None = None, *, request_id: Any = None) -> dict[str, Any]:
    frame: dict[str, Any] = {"v": PROTOCOL_VERSION, "t": t, "body": body or {}}
    if request_id is not None:
        frame["id"] = request_id
    return frame


def _error_frame(code: str, message: str, *, request_id: Any = None) -> dict[str, Any]:
    return {"v": PROTOCOL_VERSION, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def error_frame_for(exc: GramxError, *, request_id: Any = None) -> dict[str, Any]:
    return _error_frame(exc.code, exc.message, request_id=request_id)
