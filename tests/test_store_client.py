# tests/test_store_client.py
import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
from websockets.exceptions import ConnectionClosedError

from canvass.config.settings import StoreSettings
from canvass.data.base_store import SERVER_TIMESTAMP, DocumentSnapshot, QuerySnapshot
from canvass.events.event_interface import EventType
from canvass.services.store_client import WebSocketStoreClient
from canvass.utils.error_handling import NotFoundError, StoreError, SubscriptionInterruptedError, WriteFailedError


class FakeWebSocket:
    """Stand-in for a websockets connection driven by the test"""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def close(self, code=1000, reason=""):
        self.closed = True
        self._incoming.put_nowait(None)

    def push(self, frame):
        self._incoming.put_nowait(json.dumps(frame))

    def drop(self):
        self._incoming.put_nowait(ConnectionClosedError(None, None))

    def frames(self, frame_type):
        return [frame for frame in self.sent if frame["type"] == frame_type]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def store_config():
    return StoreSettings(
        url="ws://test/store",
        token="secret",
        request_timeout=1.0,
        max_reconnect_attempts=2,
        reconnect_delay=0.01,
    )


@pytest.mark.asyncio
async def test_connect_sends_token(store_config):
    fake = FakeWebSocket()
    connect = AsyncMock(return_value=fake)
    with patch('websockets.connect', new=connect):
        client = WebSocketStoreClient(store_config)
        assert await client.connect() is True

        assert client.connected is True
        kwargs = connect.call_args.kwargs
        assert kwargs["additional_headers"] == {"Authorization": "Bearer secret"}
        await client.disconnect()

    assert fake.closed is True
    assert client.connected is False


@pytest.mark.asyncio
async def test_connect_failure_returns_false(store_config):
    with patch('websockets.connect', new=AsyncMock(side_effect=OSError("refused"))):
        client = WebSocketStoreClient(store_config)
        assert await client.connect() is False
        assert client.connected is False


@pytest.mark.asyncio
async def test_subscribe_and_receive_snapshot(store_config):
    fake = FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(return_value=fake)):
        client = WebSocketStoreClient(store_config)
        await client.connect()

        received = []
        client.subscribe("buildings", received.append, order_by=("createdAt", "desc"))
        await settle()

        frame = fake.frames("subscribe")[0]
        assert frame["path"] == "buildings"
        assert frame["order_by"] == ["createdAt", "desc"]

        fake.push({
            "type": "snapshot",
            "subscription_id": frame["subscription_id"],
            "docs": [{"id": "b1", "data": {"address": "1 rue A"}}],
        })
        await settle()

        assert len(received) == 1
        snapshot = received[0]
        assert isinstance(snapshot, QuerySnapshot)
        assert [doc.path for doc in snapshot] == ["buildings/b1"]
        assert snapshot.docs[0].get("address") == "1 rue A"
        await client.disconnect()


@pytest.mark.asyncio
async def test_document_snapshot_for_missing_document(store_config):
    fake = FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(return_value=fake)):
        client = WebSocketStoreClient(store_config)
        await client.connect()

        received = []
        client.subscribe("buildings/b1", received.append)
        await settle()
        subscription_id = fake.frames("subscribe")[0]["subscription_id"]
        fake.push({"type": "snapshot", "subscription_id": subscription_id, "exists": False})
        await settle()

        assert isinstance(received[0], DocumentSnapshot)
        assert received[0].exists is False
        await client.disconnect()


@pytest.mark.asyncio
async def test_unsubscribe_sent_once(store_config):
    fake = FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(return_value=fake)):
        client = WebSocketStoreClient(store_config)
        await client.connect()

        received = []
        subscription = client.subscribe("buildings", received.append)
        await settle()
        subscription_id = fake.frames("subscribe")[0]["subscription_id"]

        subscription.cancel()
        subscription.cancel()
        await settle()

        assert len(fake.frames("unsubscribe")) == 1
        assert subscription_id not in client.watches

        # A push that crossed the unsubscribe is dropped
        fake.push({"type": "snapshot", "subscription_id": subscription_id, "docs": []})
        await settle()
        assert received == []
        await client.disconnect()


@pytest.mark.asyncio
async def test_get_correlates_result(store_config):
    fake = FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(return_value=fake)):
        client = WebSocketStoreClient(store_config)
        await client.connect()

        task = asyncio.ensure_future(client.get("buildings/b1"))
        await settle()
        frame = fake.frames("get")[0]
        assert frame["path"] == "buildings/b1"
        assert frame["request_id"] in client.pending_requests

        fake.push({
            "type": "result",
            "request_id": frame["request_id"],
            "exists": True,
            "data": {"address": "1 rue A"},
        })
        snapshot = await task

        assert snapshot.id == "b1"
        assert snapshot.data == {"address": "1 rue A"}
        assert client.pending_requests == {}
        await client.disconnect()


@pytest.mark.asyncio
async def test_get_missing_document_raises_not_found(store_config):
    fake = FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(return_value=fake)):
        client = WebSocketStoreClient(store_config)
        await client.connect()

        task = asyncio.ensure_future(client.get("buildings/nope"))
        await settle()
        fake.push({"type": "result", "request_id": fake.frames("get")[0]["request_id"], "exists": False})

        with pytest.raises(NotFoundError):
            await task
        await client.disconnect()


@pytest.mark.asyncio
async def test_create_encodes_server_timestamp(store_config):
    fake = FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(return_value=fake)):
        client = WebSocketStoreClient(store_config)
        await client.connect()

        task = asyncio.ensure_future(client.create("buildings", {"address": "1 rue A", "createdAt": SERVER_TIMESTAMP}))
        await settle()
        frame = fake.frames("set")[0]
        assert frame["fields"]["createdAt"] == {"__op__": "serverTimestamp"}
        assert frame["merge"] is False

        fake.push({"type": "result", "request_id": frame["request_id"]})
        building_id = await task

        assert frame["path"] == f"buildings/{building_id}"
        await client.disconnect()


@pytest.mark.asyncio
async def test_error_frame_raises_write_failed(store_config, events):
    fake = FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(return_value=fake)):
        client = WebSocketStoreClient(store_config)
        await client.connect()

        task = asyncio.ensure_future(client.update("buildings/b1", {"floorsCount": 3}))
        await settle()
        frame = fake.frames("update")[0]
        fake.push({
            "type": "error",
            "request_id": frame["request_id"],
            "code": "permission-denied",
            "message": "Missing or insufficient permissions",
            "path": "buildings/b1",
        })

        with pytest.raises(WriteFailedError) as exc_info:
            await task

        assert exc_info.value.code == "permission-denied"
        failures = [e for e in events if e.type == EventType.WRITE_FAILED]
        assert len(failures) == 1
        assert failures[0].operation == "update"
        assert failures[0].path == "buildings/b1"
        await client.disconnect()


@pytest.mark.asyncio
async def test_commit_sends_every_operation(store_config):
    fake = FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(return_value=fake)):
        client = WebSocketStoreClient(store_config)
        await client.connect()

        batch = client.batch()
        batch.update("buildings/b1/apartments/a1", {"visitedBy": "u1"})
        batch.set("users/u1/visits/v1", {"buildingId": "b1"})
        task = asyncio.ensure_future(client.commit(batch))
        await settle()

        frame = fake.frames("commit")[0]
        assert [op["kind"] for op in frame["operations"]] == ["update", "set"]
        assert frame["operations"][1]["path"] == "users/u1/visits/v1"

        fake.push({"type": "result", "request_id": frame["request_id"]})
        await task
        await client.disconnect()


@pytest.mark.asyncio
async def test_write_without_connection_fails(store_config, events):
    with patch('websockets.connect', new=AsyncMock(side_effect=OSError("refused"))):
        client = WebSocketStoreClient(store_config)

        with pytest.raises(WriteFailedError):
            await client.set("users/u1", {"displayName": "A"})

    assert [e.type for e in events] == [EventType.WRITE_FAILED]


@pytest.mark.asyncio
async def test_reconnect_resubscribes(store_config, events):
    """Every live subscription is registered again on the new connection"""
    first, second = FakeWebSocket(), FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(side_effect=[first, second])):
        client = WebSocketStoreClient(store_config)
        await client.connect()

        received = []
        client.subscribe("buildings/b1/apartments", received.append)
        await settle()
        subscription_id = first.frames("subscribe")[0]["subscription_id"]

        first.drop()
        await settle(30)

        assert client.connected is True
        resubscribed = second.frames("subscribe")
        assert [frame["subscription_id"] for frame in resubscribed] == [subscription_id]

        second.push({"type": "snapshot", "subscription_id": subscription_id, "docs": []})
        await settle()
        assert len(received) == 1

        types = [e.type for e in events]
        assert EventType.SUBSCRIPTION_INTERRUPTED in types
        assert EventType.SUBSCRIPTION_RESTORED in types
        await client.disconnect()


@pytest.mark.asyncio
async def test_pending_request_fails_when_connection_drops(store_config):
    first, second = FakeWebSocket(), FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(side_effect=[first, second])):
        client = WebSocketStoreClient(store_config)
        await client.connect()

        task = asyncio.ensure_future(client.list("buildings"))
        await settle()
        first.drop()

        with pytest.raises(SubscriptionInterruptedError):
            await task
        await settle(30)
        await client.disconnect()


@pytest.mark.asyncio
async def test_process_message_ignores_garbage(store_config):
    client = WebSocketStoreClient(store_config)

    await client._process_message("not json")
    await client._process_message(json.dumps({"type": "mystery"}))
    await client._process_message(json.dumps({"type": "result", "request_id": "req_unknown"}))

    assert client.pending_requests == {}


@pytest.mark.asyncio
async def test_health_check(store_config):
    client = WebSocketStoreClient(store_config)
    client.subscribe("buildings", lambda snapshot: None)

    health = await client.health_check()

    assert health["connected"] is False
    assert health["subscriptions"] == 1


@pytest.mark.asyncio
async def test_list_subcollection_builds_document_paths(store_config):
    fake = FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(return_value=fake)):
        client = WebSocketStoreClient(store_config)
        await client.connect()

        task = asyncio.ensure_future(client.list("buildings/b1/apartments"))
        await settle()
        frame = fake.frames("list")[0]
        fake.push({
            "type": "result",
            "request_id": frame["request_id"],
            "docs": [{"id": "a1", "data": {"label": "1A"}}],
        })
        snapshot = await task

        assert [doc.path for doc in snapshot] == ["buildings/b1/apartments/a1"]
        assert snapshot.docs[0].id == "a1"
        await client.disconnect()


@pytest.mark.asyncio
async def test_read_error_raises_store_error(store_config, events):
    fake = FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(return_value=fake)):
        client = WebSocketStoreClient(store_config)
        await client.connect()

        task = asyncio.ensure_future(client.list("users/u1/visits"))
        await settle()
        frame = fake.frames("list")[0]
        fake.push({
            "type": "error",
            "request_id": frame["request_id"],
            "code": "permission-denied",
            "message": "Missing or insufficient permissions",
            "path": "users/u1/visits",
        })

        with pytest.raises(StoreError) as exc_info:
            await task

        assert not isinstance(exc_info.value, WriteFailedError)
        assert exc_info.value.details["code"] == "permission-denied"
        assert client.read_requests == set()
        assert [e for e in events if e.type == EventType.WRITE_FAILED] == []
        await client.disconnect()


@pytest.mark.asyncio
async def test_malformed_snapshot_does_not_stop_receiver(store_config, events):
    """A frame that fails to process is skipped and later frames still arrive"""
    fake = FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(return_value=fake)):
        client = WebSocketStoreClient(store_config)
        await client.connect()

        received = []
        client.subscribe("buildings/b1/apartments", received.append)
        await settle()
        subscription_id = fake.frames("subscribe")[0]["subscription_id"]

        fake.push({"type": "snapshot", "subscription_id": subscription_id, "docs": [{"data": {"label": "1A"}}]})
        fake.push({"type": "snapshot", "subscription_id": subscription_id, "docs": [{"id": "a1", "data": {}}]})
        await settle()

        assert len(received) == 1
        assert [doc.id for doc in received[0]] == ["a1"]
        assert client.connected is True
        assert not client.receiver_task.done()
        assert EventType.SUBSCRIPTION_INTERRUPTED not in [e.type for e in events]
        await client.disconnect()


@pytest.mark.asyncio
async def test_concurrent_sends_share_one_connection(store_config):
    fake = FakeWebSocket()
    connect = AsyncMock(return_value=fake)
    with patch('websockets.connect', new=connect):
        client = WebSocketStoreClient(store_config)
        client.subscribe("buildings", lambda snapshot: None)

        await asyncio.gather(
            client._send_frame({"type": "ping", "path": "a"}),
            client._send_frame({"type": "ping", "path": "b"}),
        )

        assert connect.await_count == 1
        assert len(fake.frames("subscribe")) == 1
        assert [frame["path"] for frame in fake.frames("ping")] == ["a", "b"]
        await client.disconnect()


@pytest.mark.asyncio
async def test_connect_again_closes_previous_socket(store_config, events):
    first, second = FakeWebSocket(), FakeWebSocket()
    with patch('websockets.connect', new=AsyncMock(side_effect=[first, second])):
        client = WebSocketStoreClient(store_config)
        await client.connect()
        await client.connect()
        await settle()

        assert first.closed is True
        assert client.websocket is second
        assert client.connected is True
        assert EventType.SUBSCRIPTION_INTERRUPTED not in [e.type for e in events]
        await client.disconnect()
