import asyncio
import base64
import os
import tempfile
import unittest
from unittest import mock

from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from gramx import ws_transport
from gramx.collaborators import InMemoryBlobStore
from gramx.keys import conversation_key
from gramx.ws_transport import RUNTIME_KEY, create_app

from tests.ws_receive_util import assert_no_app_messages, of_type, recv_json_until


class WsTransportTests(unittest.IsolatedAsyncioTestCase):
    def make_app(self):
        return create_app(ping_interval_s=3600)

    async def asyncSetUp(self):
        self.app = self.make_app()
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def _login(self, user_id: str):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json({"v": 1, "t": "login", "id": f"login-{user_id}", "body": {"userId": user_id}})
        online = await recv_json_until(ws, of_type("online-users"))
        await recv_json_until(ws, of_type("user-conversations"))
        return ws, online

    async def test_login_returns_online_snapshot(self):
        alice, online = await self._login("alice")
        self.assertEqual(online["v"], 1)
        self.assertEqual(online["id"], "login-alice")
        self.assertEqual(online["body"]["users"], ["alice"])

        bob, online = await self._login("bob")
        self.assertEqual(online["body"]["users"], ["alice", "bob"])
        joined = await recv_json_until(alice, of_type("user-online"))
        self.assertEqual(joined["body"], {"userId": "bob"})

        await alice.close()
        await bob.close()

    async def test_message_between_two_sockets(self):
        alice, _ = await self._login("alice")
        bob, _ = await self._login("bob")

        await alice.send_json(
            {"v": 1, "t": "send-message", "id": "s1", "body": {"targetUserId": "bob", "body": "hi", "clientTempId": "t1"}}
        )
        echo = await recv_json_until(alice, of_type("new-message"))
        self.assertEqual(echo["id"], "s1")
        self.assertEqual(echo["body"]["message"]["clientTempId"], "t1")

        incoming = await recv_json_until(bob, of_type("new-message"))
        self.assertEqual(incoming["body"]["message"]["body"], "hi")
        delivered = await recv_json_until(alice, of_type("message-delivered"))
        self.assertEqual(delivered["body"]["messageId"], incoming["body"]["message"]["id"])

        await bob.send_json({"v": 1, "t": "join-conversation", "id": "j1", "body": {"targetUserId": "alice"}})
        history = await recv_json_until(bob, of_type("conversation-history"))
        self.assertEqual([m["body"] for m in history["body"]["messages"]], ["hi"])
        read = await recv_json_until(alice, of_type("messages-read"))
        self.assertEqual(read["body"]["readerId"], "bob")

        await alice.close()
        await bob.close()

    async def test_rejects_malformed_frames(self):
        ws = await self.client.ws_connect("/v1/ws")

        await ws.send_str("{not json")
        error = await recv_json_until(ws, of_type("error"))
        self.assertEqual(error["body"]["code"], "invalid_request")

        await ws.send_json({"v": 2, "t": "login", "id": "x", "body": {"userId": "alice"}})
        error = await recv_json_until(ws, of_type("error"))
        self.assertEqual(error["id"], "x")
        self.assertEqual(error["body"]["message"], "unsupported version")

        await ws.send_json({"v": 1, "t": "send-message", "id": "y", "body": {"targetUserId": "bob", "body": "hi"}})
        error = await recv_json_until(ws, of_type("error"))
        self.assertEqual(error["body"]["code"], "invalid_state")

        self.assertFalse(ws.closed)
        await ws.close()

    async def test_ping_gets_pong(self):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json({"v": 1, "t": "ping", "id": "p1"})
        pong = await recv_json_until(ws, of_type("pong"))
        self.assertEqual(pong["id"], "p1")

        await ws.send_json({"v": 1, "t": "pong"})
        await assert_no_app_messages(ws, timeout=0.1)
        await ws.close()

    async def test_close_broadcasts_offline(self):
        alice, _ = await self._login("alice")
        bob, _ = await self._login("bob")

        await alice.close()

        offline = await recv_json_until(bob, of_type("user-offline"))
        self.assertEqual(offline["body"]["userId"], "alice")
        self.assertIsInstance(offline["body"]["lastSeen"], int)
        self.assertIsNone(self.app[RUNTIME_KEY].router.directory.resolve("alice"))
        await bob.close()

    async def test_reconnect_replaces_session(self):
        first, _ = await self._login("alice")
        second, _ = await self._login("alice")

        replaced = await recv_json_until(first, of_type("session-replaced"))
        self.assertEqual(replaced["body"]["userId"], "alice")

        await first.close()
        await asyncio.sleep(0.05)
        router = self.app[RUNTIME_KEY].router
        self.assertIsNotNone(router.directory.resolve("alice"))
        await second.close()

    async def test_healthz(self):
        resp = await self.client.get("/healthz")
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_media_is_served_from_blob_endpoint(self):
        alice, _ = await self._login("alice")
        payload = base64.b64encode(b"GIF89a").decode("ascii")
        await alice.send_json(
            {
                "v": 1,
                "t": "send-message",
                "id": "m1",
                "body": {"targetUserId": "bob", "media": {"data": payload, "contentType": "image/gif"}},
            }
        )
        echo = await recv_json_until(alice, of_type("new-message"))
        digest = echo["body"]["message"]["mediaUrl"].removeprefix("blob://")

        resp = await self.client.get(f"/v1/blobs/{digest}")
        self.assertEqual(resp.status, 200)
        self.assertEqual(resp.content_type, "image/gif")
        self.assertEqual(await resp.read(), b"GIF89a")

        missing = await self.client.get("/v1/blobs/deadbeef")
        self.assertEqual(missing.status, 404)
        await alice.close()


class WsTransportSQLiteTests(WsTransportTests):
    def make_app(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        return create_app(ping_interval_s=3600, db_path=os.path.join(self.tmpdir.name, "gramx.db"))

    async def asyncTearDown(self):
        await super().asyncTearDown()
        self.tmpdir.cleanup()

    async def test_history_survives_app_restart(self):
        alice, _ = await self._login("alice")
        await alice.send_json({"v": 1, "t": "send-message", "body": {"targetUserId": "bob", "body": "stored"}})
        await recv_json_until(alice, of_type("new-message"))
        await alice.close()
        await self.client.close()
        await self.server.close()

        self.app = create_app(ping_interval_s=3600, db_path=os.path.join(self.tmpdir.name, "gramx.db"))
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

        bob, _ = await self._login("bob")
        await bob.send_json({"v": 1, "t": "join-conversation", "body": {"targetUserId": "alice"}})
        history = await recv_json_until(bob, of_type("conversation-history"))
        self.assertEqual([m["body"] for m in history["body"]["messages"]], ["stored"])
        await bob.close()


class WsHeartbeatTests(unittest.IsolatedAsyncioTestCase):
    async def test_idle_connection_is_closed(self):
        server = TestServer(create_app(ping_interval_s=1, ping_miss_limit=0))
        await server.start_server()
        client = TestClient(server)
        await client.start_server()
        try:
            ws = await client.ws_connect("/v1/ws")
            loop = asyncio.get_running_loop()
            deadline = loop.time() + 8
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    self.fail("Timed out waiting for server to close idle connection")
                msg = await ws.receive(timeout=remaining)
                if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break
            self.assertTrue(ws.closed)
        finally:
            await client.close()
            await server.close()


class SlowBlobStore(InMemoryBlobStore):
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()

    async def store(self, data: bytes, content_type: str) -> str:
        self.started.set()
        await asyncio.sleep(0.3)
        return await super().store(data, content_type)


class WsDisconnectTests(unittest.IsolatedAsyncioTestCase):
    async def _start(self, app):
        self.app = app
        self.server = TestServer(app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def test_send_in_flight_completes_after_socket_closes(self):
        blobs = SlowBlobStore()
        await self._start(create_app(ping_interval_s=3600, blobs=blobs))
        router = self.app[RUNTIME_KEY].router

        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json({"v": 1, "t": "login", "body": {"userId": "alice"}})
        await recv_json_until(ws, of_type("user-conversations"))
        await ws.send_json(
            {
                "v": 1,
                "t": "send-message",
                "body": {
                    "targetUserId": "bob",
                    "body": "hi",
                    "media": {"data": base64.b64encode(b"img").decode("ascii"), "contentType": "image/png"},
                },
            }
        )
        await asyncio.wait_for(blobs.started.wait(), timeout=5)
        await ws.close()

        conv = conversation_key("alice", "bob")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 5
        while not router.store.history(conv, "bob"):
            if loop.time() > deadline:
                self.fail("message sent before disconnect was never stored")
            await asyncio.sleep(0.02)

        self.assertEqual([m.body for m in router.store.history(conv, "bob")], ["hi"])
        while router.directory.resolve("alice") is not None:
            if loop.time() > deadline:
                self.fail("connection was never released")
            await asyncio.sleep(0.02)

        bob = await self.client.ws_connect("/v1/ws")
        await bob.send_json({"v": 1, "t": "login", "body": {"userId": "bob"}})
        summaries = await recv_json_until(bob, of_type("user-conversations"))
        self.assertEqual(summaries["body"]["conversations"][0]["unreadCount"], 1)
        await bob.close()

    async def test_full_outbound_queue_closes_connection(self):
        await self._start(create_app(ping_interval_s=3600))
        with mock.patch.object(ws_transport, "OUTBOUND_QUEUE_SIZE", 1):
            ws = await self.client.ws_connect("/v1/ws")
            await ws.send_json({"v": 1, "t": "login", "body": {"userId": "alice"}})

            loop = asyncio.get_running_loop()
            deadline = loop.time() + 5
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    self.fail("Timed out waiting for backpressure close")
                msg = await ws.receive(timeout=remaining)
                if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break

        self.assertEqual(ws.close_code, 1011)
