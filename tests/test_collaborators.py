import asyncio
import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer

from gramx.collaborators import HTTPCompletion, InMemoryBlobStore, PasswordAuthenticator, TrustedAuthenticator
from gramx.errors import AuthError, CompletionFailed, NotFound, ValidationError


class AuthenticatorTests(unittest.IsolatedAsyncioTestCase):
    async def test_trusted_accepts_valid_user_id(self):
        auth = TrustedAuthenticator()
        self.assertEqual(await auth.verify({"userId": "alice"}), "alice")
        for bad in ({}, {"userId": ""}, {"userId": " alice"}, {"userId": 7}):
            with self.subTest(credentials=bad):
                with self.assertRaises(AuthError):
                    await auth.verify(bad)

    async def test_password_register_and_verify(self):
        auth = PasswordAuthenticator()
        auth.register("alice", "hunter2")

        self.assertEqual(await auth.verify({"username": "alice", "password": "hunter2"}), "alice")
        with self.assertRaisesRegex(AuthError, "Invalid credentials"):
            await auth.verify({"username": "alice", "password": "wrong"})
        with self.assertRaisesRegex(AuthError, "Invalid credentials"):
            await auth.verify({"username": "nobody", "password": "hunter2"})
        with self.assertRaises(AuthError):
            await auth.verify({"username": "alice"})

    async def test_verify_does_not_block_the_event_loop(self):
        auth = PasswordAuthenticator()
        auth.register("alice", "pw")
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.001)
                ticks += 1

        task = asyncio.create_task(ticker())
        try:
            await asyncio.sleep(0)
            for credentials in ({"username": "alice", "password": "pw"}, {"username": "ghost", "password": "pw"}):
                before = ticks
                try:
                    await auth.verify(credentials)
                except AuthError:
                    pass
                self.assertGreater(ticks, before + 1)
        finally:
            task.cancel()

    def test_register_rejects_duplicates_and_blank_passwords(self):
        auth = PasswordAuthenticator()
        auth.register("alice", "pw")
        with self.assertRaisesRegex(ValidationError, "Username taken"):
            auth.register("alice", "other")
        with self.assertRaises(ValidationError):
            auth.register("bob", "")
        with self.assertRaises(ValidationError):
            auth.register("", "pw")


class BlobStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_store_is_content_addressed(self):
        blobs = InMemoryBlobStore(max_bytes=16)
        first = await blobs.store(b"abc", "text/plain")
        second = await blobs.store(b"abc", "text/plain")

        self.assertEqual(first, second)
        self.assertTrue(first.startswith("blob://"))
        self.assertEqual(blobs.fetch(first), ("text/plain", b"abc"))

    async def test_rejects_empty_and_oversized(self):
        blobs = InMemoryBlobStore(max_bytes=4)
        with self.assertRaises(ValidationError):
            await blobs.store(b"", "text/plain")
        with self.assertRaises(ValidationError):
            await blobs.store(b"12345", "text/plain")
        with self.assertRaises(NotFound):
            blobs.fetch("blob://missing")


class HTTPCompletionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.requests = []
        self.status = 200
        self.payload = {"choices": [{"message": {"content": "  hello back  "}}]}
        self.raw_body = None

        async def chat(request: web.Request) -> web.Response:
            self.requests.append((request.headers.get("Authorization"), await request.json()))
            if self.raw_body is not None:
                body, content_type = self.raw_body
                return web.Response(text=body, content_type=content_type, status=self.status)
            return web.json_response(self.payload, status=self.status)

        app = web.Application()
        app.router.add_post("/v1/chat/completions", chat)
        self.server = TestServer(app)
        await self.server.start_server()
        self.completion = HTTPCompletion(
            str(self.server.make_url("/v1")),
            "test-model",
            api_key="sk-test",
            system_prompt="be brief",
        )

    async def asyncTearDown(self):
        await self.completion.close()
        await self.server.close()

    async def test_posts_turns_and_returns_content(self):
        reply = await self.completion.complete([{"role": "user", "content": "earlier"}], "hello")

        self.assertEqual(reply, "hello back")
        auth_header, body = self.requests[0]
        self.assertEqual(auth_header, "Bearer sk-test")
        self.assertEqual(body["model"], "test-model")
        self.assertEqual(
            body["messages"],
            [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "earlier"},
                {"role": "user", "content": "hello"},
            ],
        )

    async def test_error_status_raises(self):
        self.status = 503
        with self.assertRaises(CompletionFailed):
            await self.completion.complete([], "hello")

    async def test_malformed_payload_raises(self):
        self.payload = {"choices": []}
        with self.assertRaises(CompletionFailed):
            await self.completion.complete([], "hello")

    async def test_non_json_body_raises(self):
        for content_type in ("text/plain", "application/json"):
            with self.subTest(content_type=content_type):
                self.raw_body = ("<html>upstream exploded</html>", content_type)
                with self.assertRaises(CompletionFailed):
                    await self.completion.complete([], "hello")

    async def test_unreachable_backend_raises(self):
        unreachable = HTTPCompletion("http://127.0.0.1:1", "test-model", timeout_s=2)
        try:
            with self.assertRaises(CompletionFailed):
                await unreachable.complete([], "hello")
        finally:
            await unreachable.close()
