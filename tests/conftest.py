"""
Pytest configuration and fixtures for chatcall tests.

Calls run against the in-process relay and a scripted media endpoint, so
no audio device, camera or network is needed.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from chatcall.config import CallConfig
from chatcall.errors import MediaAccessDenied
from chatcall.net.transport import InMemoryRelay
from chatcall.rtc.media import EndpointCallbacks


CHAT_ID = "chat-42"
ALICE = "alice"
BOB = "bob"


class FakeMediaEndpoint:
    """Stands in for AiortcMediaEndpoint.

    With `auto_connect`, connectivity reports "connected" as soon as both
    descriptions are in place, like a peer connection on a LAN would.
    """

    def __init__(self, *, deny: bool = False, auto_connect: bool = True, capture_delay: float = 0.0):
        self.callbacks = EndpointCallbacks()
        self.deny = deny
        self.auto_connect = auto_connect
        self.capture_delay = capture_delay

        self.captured = False
        self.connection_created = False
        self.local_description: Optional[Dict[str, str]] = None
        self.remote_description: Optional[Dict[str, Any]] = None
        self.applied_candidates: List[Dict[str, Any]] = []
        self.offers_created = 0
        self.answers_created = 0
        self.muted = False
        self.close_calls = 0
        self._connected_reported = False

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    async def acquire_capture(self) -> None:
        if self.capture_delay:
            await asyncio.sleep(self.capture_delay)
        if self.deny:
            raise MediaAccessDenied("permission refused")
        self.captured = True

    def create_connection(self, ice_servers) -> None:
        self.connection_created = True
        self.ice_servers = list(ice_servers)

    async def create_offer(self) -> Dict[str, str]:
        self.offers_created += 1
        self.local_description = {"type": "offer", "sdp": f"v=0 offer {self.offers_created}"}
        self._maybe_connect()
        return dict(self.local_description)

    async def create_answer(self) -> Dict[str, str]:
        assert self.remote_description is not None, "answer before remote offer"
        self.answers_created += 1
        self.local_description = {"type": "answer", "sdp": "v=0 answer"}
        self._maybe_connect()
        return dict(self.local_description)

    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        self.remote_description = dict(description)
        self._maybe_connect()

    async def add_remote_candidate(self, candidate: Dict[str, Any]) -> None:
        assert self.remote_description is not None, "candidate applied before remote description"
        self.applied_candidates.append(dict(candidate))

    def set_muted(self, muted: bool) -> None:
        self.muted = muted

    async def close(self) -> None:
        self.close_calls += 1

    async def emit_state(self, state: str) -> None:
        await self.callbacks.on_connectivity_state(state)

    async def emit_candidate(self, candidate: Dict[str, Any]) -> None:
        await self.callbacks.on_local_candidate(candidate)

    def _maybe_connect(self) -> None:
        if not self.auto_connect or self._connected_reported:
            return
        if self.local_description is None or self.remote_description is None:
            return
        self._connected_reported = True
        asyncio.ensure_future(self.callbacks.on_connectivity_state("connected"))


def candidate(n: int) -> Dict[str, Any]:
    return {
        "candidate": f"candidate:{n} 1 udp 2122260223 192.168.1.{n} 5{n:04d} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


async def settle(relay: InMemoryRelay, rounds: int = 5) -> None:
    """Let queued deliveries and scheduled callbacks run to completion."""
    for _ in range(rounds):
        await relay.wait_idle()
        for _ in range(5):
            await asyncio.sleep(0)


@pytest.fixture
def fast_config():
    """Call config with no settle pause and a short retry pause."""
    return CallConfig(offer_settle_sec=0.0, offer_retry_sec=0.01, ice_servers=["stun:stun.example.org:3478"])


@pytest.fixture
def relay():
    return InMemoryRelay()


@pytest.fixture
def alice_transport(relay):
    return relay.transport(ALICE)


@pytest.fixture
def bob_transport(relay):
    return relay.transport(BOB)
