from __future__ import annotations

from typing import Any


class FakeClock:
    def __init__(self, start_ms: int = 1_000) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class Recorder:
    """Collects frames sent to one connection."""

    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []

    def __call__(self, frame: dict[str, Any]) -> None:
        self.frames.append(frame)

    def of_type(self, t: str) -> list[dict[str, Any]]:
        return [frame for frame in self.frames if frame.get("t") == t]

    def last(self, t: str) -> dict[str, Any]:
        matches = self.of_type(t)
        if not matches:
            raise AssertionError(f"no {t!r} frame in {[f.get('t') for f in self.frames]}")
        return matches[-1]

    def clear(self) -> None:
        self.frames.clear()
