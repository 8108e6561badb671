"""
Loopback tests for the WebSocket relay server and transport.
"""

import asyncio
import json

import pytest
import websockets
from websockets.exceptions import InvalidState

from chatcall.call.controller import CallController, ControllerCallbacks
from chatcall.call.membership import StaticMembership
from chatcall.call.session import Phase
from chatcall.errors import SignalingSendFailed
from chatcall.net import protocol
from chatcall.net.relay_client import WebSocketTransport
from chatcall.net.relay_server import RelayServer

from conftest import ALICE, BOB, CHAT_ID, FakeMediaEndpoint


TOPIC = protocol.topic_for(CHAT_ID)


async def wait_for(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
async def relay_server():
    server = RelayServer("127.0.0.1", 0)
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def transports(relay_server):
    url = f"ws://127.0.0.1:{relay_server.bound_port}"
    alice = WebSocketTransport(url, ALICE, ack_timeout=2.0)
    bob = WebSocketTransport(url, BOB, ack_timeout=2.0)
    await alice.connect()
    await bob.connect()
    yield alice, bob
    await alice.close()
    await bob.close()


class TestWebSocketTransport:
    """Tests for publish/subscribe through a real relay."""

    @pytest.mark.asyncio
    async def test_publish_reaches_other_subscriber(self, transports):
        alice, bob = transports
        received = []

        async def on_message(msg):
            received.append(msg)

        await bob.subscribe(TOPIC, on_message)
        delivered = await alice.publish(TOPIC, protocol.make_hangup(ALICE, BOB, "c1", protocol.REASON_DECLINED))
        await wait_for(lambda: received)

        assert delivered == 1
        assert received[0].kind == protocol.HANGUP
        assert received[0].payload == {"reason": "declined"}

    @pytest.mark.asyncio
    async def test_no_subscriber_and_no_self_delivery(self, transports):
        alice, bob = transports
        own = []

        async def on_message(msg):
            own.append(msg)

        await alice.subscribe(TOPIC, on_message)

        assert await alice.publish(TOPIC, protocol.make_hangup(ALICE, BOB, "c1")) == 0
        await asyncio.sleep(0.05)
        assert own == []

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, transports):
        alice, bob = transports
        received = []

        async def on_message(msg):
            received.append(msg)

        sub = await bob.subscribe(TOPIC, on_message)
        await bob.unsubscribe(sub)
        await bob.unsubscribe(sub)
        # Round trip on bob's connection so the relay has processed the unsubscribe.
        await bob.publish("call-other", protocol.make_hangup(BOB, ALICE, "c0"))

        assert await alice.publish(TOPIC, protocol.make_hangup(ALICE, BOB, "c1")) == 0
        assert received == []

    @pytest.mark.asyncio
    async def test_publish_requires_connection(self, relay_server):
        transport = WebSocketTransport(f"ws://127.0.0.1:{relay_server.bound_port}", ALICE)

        with pytest.raises(SignalingSendFailed):
            await transport.publish(TOPIC, protocol.make_hangup(ALICE, BOB, "c1"))

    @pytest.mark.asyncio
    async def test_connect_failure(self, relay_server):
        port = relay_server.bound_port
        await relay_server.stop()
        transport = WebSocketTransport(f"ws://127.0.0.1:{port}", ALICE)

        with pytest.raises(SignalingSendFailed):
            await transport.connect()

    @pytest.mark.asyncio
    async def test_ping_on_closing_socket_does_not_crash_receiver(self):
        transport = WebSocketTransport("ws://relay.invalid", ALICE)
        socket = ClosingSocket(
            [
                json.dumps({"type": "ping", "ts": 1}),
                json.dumps({"type": "error", "error": "late", "id": 7}),
            ]
        )
        pending = asyncio.get_running_loop().create_future()
        transport._pending[7] = pending
        transport._ws = socket
        transport._recv_task = asyncio.create_task(transport._recv_loop())

        await transport._recv_task

        assert transport._recv_task.exception() is None
        assert socket.sends == 1
        assert isinstance(pending.exception(), SignalingSendFailed)
        assert pending.exception().detail == "late"
        assert not transport.is_connected


class ClosingSocket:
    """Socket stand-in that still yields buffered frames but refuses to send."""

    def __init__(self, frames):
        self._frames = list(frames)
        self.sends = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._frames:
            raise StopAsyncIteration
        return self._frames.pop(0)

    async def send(self, raw):
        self.sends += 1
        raise InvalidState("connection is closing")


class TestRelayServer:
    """Tests for relay frame handling."""

    @pytest.mark.asyncio
    async def test_rejects_publish_without_topic(self, relay_server):
        async with websockets.connect(f"ws://127.0.0.1:{relay_server.bound_port}") as ws:
            await ws.send(json.dumps({"type": "publish", "id": 7, "message": {}}))
            reply = json.loads(await ws.recv())

        assert reply == {"type": "error", "error": "missing-topic", "id": 7}

    @pytest.mark.asyncio
    async def test_rejects_unknown_frame(self, relay_server):
        async with websockets.connect(f"ws://127.0.0.1:{relay_server.bound_port}") as ws:
            await ws.send("not json")
            invalid = json.loads(await ws.recv())
            await ws.send(json.dumps({"type": "ring", "id": 3}))
            unknown = json.loads(await ws.recv())

        assert invalid["error"] == "invalid-json"
        assert unknown == {"type": "error", "error": "unknown-type", "id": 3}


@pytest.mark.asyncio
async def test_call_over_websocket_relay(transports, fast_config):
    alice_transport, bob_transport = transports
    membership = StaticMembership({CHAT_ID: (ALICE, BOB)})
    incoming = []

    async def on_incoming(signal):
        incoming.append(signal)

    alice = CallController(
        local_id=ALICE,
        chat_id=CHAT_ID,
        transport=alice_transport,
        membership=membership,
        media_factory=lambda config: FakeMediaEndpoint(),
        config=fast_config,
    )
    bob = CallController(
        local_id=BOB,
        chat_id=CHAT_ID,
        transport=bob_transport,
        membership=membership,
        media_factory=lambda config: FakeMediaEndpoint(),
        config=fast_config,
        callbacks=ControllerCallbacks(on_incoming=on_incoming),
    )
    await alice.watch()
    await bob.watch()

    session = await alice.place_call()
    await wait_for(lambda: incoming)
    answered = await bob.accept_incoming(incoming[0])
    await wait_for(lambda: session.phase is Phase.CONNECTED and answered.phase is Phase.CONNECTED)

    await bob.hang_up()
    await wait_for(lambda: session.phase is Phase.ENDED)

    assert answered.phase is Phase.ENDED
    await alice.close()
    await bob.close()
