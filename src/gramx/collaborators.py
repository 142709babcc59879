"""Default Auth, Blob Store and Completion collaborators.

The router only depends on the call shapes documented on the protocols
below; production deployments are expected to pass their own objects.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import secrets
from typing import Any, Dict, List, Mapping, Protocol

import aiohttp

from .errors import AuthError, CompletionFailed, InvalidParticipants, NotFound, ValidationError
from .keys import validate_user_id


logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 200_000


class Authenticator(Protocol):
    async def verify(self, credentials: Mapping[str, Any]) -> str: ...


class BlobStore(Protocol):
    async def store(self, data: bytes, content_type: str) -> str: ...


class Completion(Protocol):
    async def complete(self, prior_turns: List[Dict[str, str]], new_message: str) -> str: ...


class TrustedAuthenticator:
    """Accepts ``{"userId": ...}`` as already verified upstream."""

    async def verify(self, credentials: Mapping[str, Any]) -> str:
        user_id = credentials.get("userId")
        try:
            return validate_user_id(user_id)
        except InvalidParticipants as exc:
            raise AuthError(f"userId rejected: {exc.message}") from exc


def _pbkdf2_hash(password: str, salt: bytes, iters: int = PBKDF2_ITERATIONS) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iters)


class PasswordAuthenticator:
    """In-memory username/password directory."""

    def __init__(self) -> None:
        self._users: Dict[str, tuple[bytes, bytes]] = {}
        self._dummy_salt = secrets.token_bytes(16)

    def register(self, username: str, password: str) -> str:
        try:
            username = validate_user_id(username)
        except InvalidParticipants as exc:
            raise ValidationError(exc.message) from exc
        if not isinstance(password, str) or not password:
            raise ValidationError("password required")
        if username in self._users:
            raise ValidationError("Username taken")
        salt = secrets.token_bytes(16)
        self._users[username] = (salt, _pbkdf2_hash(password, salt))
        return username

    async def verify(self, credentials: Mapping[str, Any]) -> str:
        username = credentials.get("username")
        password = credentials.get("password")
        if not isinstance(username, str) or not isinstance(password, str):
            raise AuthError("username and password required")
        record = self._users.get(username)
        salt, expected = record if record is not None else (self._dummy_salt, b"")
        # hashing runs even for unknown users so both paths cost the same
        actual = await asyncio.to_thread(_pbkdf2_hash, password, salt)
        if record is None or not hmac.compare_digest(expected, actual):
            raise AuthError("Invalid credentials")
        return username


class InMemoryBlobStore:
    """Content-addressed byte store returning ``blob://<sha256>`` URLs."""

    def __init__(self, max_bytes: int = 10 * 1024 * 1024) -> None:
        self.max_bytes = max_bytes
        self._blobs: Dict[str, tuple[str, bytes]] = {}

    async def store(self, data: bytes, content_type: str) -> str:
        if not data:
            raise ValidationError("media is empty")
        if len(data) > self.max_bytes:
            raise ValidationError("media too large")
        digest = hashlib.sha256(data).hexdigest()
        self._blobs[digest] = (content_type, data)
        return f"blob://{digest}"

    def fetch(self, url: str) -> tuple[str, bytes]:
        digest = url.removeprefix("blob://")
        try:
            return self._blobs[digest]
        except KeyError as exc:
            raise NotFound(f"blob {url} not found") from exc


class EchoCompletion:
    async def complete(self, prior_turns: List[Dict[str, str]], new_message: str) -> str:
        return f"echo: {new_message}"


class HTTPCompletion:
    """OpenAI-compatible ``/chat/completions`` client."""

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        api_key: str | None = None,
        system_prompt: str = "You are a friendly chat assistant.",
        timeout_s: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.system_prompt = system_prompt
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: aiohttp.ClientSession | None = None

    async def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=headers)
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def complete(self, prior_turns: List[Dict[str, str]], new_message: str) -> str:
        messages = [{"role": "system", "content": self.system_prompt}, *prior_turns]
        messages.append({"role": "user", "content": new_message})
        session = await self._client()
        try:
            async with session.post(
                f"{self.base_url}/chat/completions",
                json={"model": self.model, "messages": messages},
            ) as response:
                if response.status != 200:
                    raise CompletionFailed(f"completion backend returned {response.status}")
                payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("completion request failed: %s", exc)
            raise CompletionFailed("completion backend unreachable") from exc
        except ValueError as exc:
            logger.warning("completion response is not json: %s", exc)
            raise CompletionFailed("malformed completion response") from exc
        try:
            return str(payload["choices"][0]["message"]["content"]).strip()
        except (KeyError, IndexError, TypeError) as exc:
            raise CompletionFailed("malformed completion response") from exc
