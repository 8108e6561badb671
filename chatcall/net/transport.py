"""Signaling transport adapters.

A transport is bound to one local participant. It publishes to named
topics and delivers messages from *other* participants to subscribers,
best-effort and in per-publisher order. Nothing is persisted: a message
published while nobody is subscribed is gone.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..errors import SignalingSendFailed
from . import protocol


logger = logging.getLogger(__name__)


OnMessage = Callable[[protocol.SignalingMessage], Awaitable[None]]


class Subscription:
    """Handle for one topic subscription.

    Each subscription drains its own queue from a dedicated task, so a
    handler that publishes (and waits for an ack) never stalls delivery to
    anybody else.
    """

    def __init__(self, topic: str, on_message: OnMessage, owner: str):
        self.topic = topic
        self.owner = owner
        self._on_message = on_message
        self._queue: asyncio.Queue[Optional[Dict[str, Any]]] = asyncio.Queue()
        self._active = True
        self._busy = False
        self._task = asyncio.create_task(self._pump(), name=f"signaling-sub-{topic}")

    @property
    def active(self) -> bool:
        return self._active

    @property
    def idle(self) -> bool:
        return not self._busy and self._queue.empty()

    def deliver(self, raw: Dict[str, Any]) -> bool:
        if not self._active:
            return False
        self._queue.put_nowait(raw)
        return True

    def close(self) -> bool:
        """Stop delivery. Returns False if it was already closed."""
        if not self._active:
            return False
        self._active = False
        # A sentinel rather than cancel(): close() is often reached from
        # inside a handler running on this very task.
        self._queue.put_nowait(None)
        return True

    async def wait_idle(self) -> None:
        await self._queue.join()

    async def _pump(self) -> None:
        while True:
            raw = await self._queue.get()
            if raw is None:
                self._queue.task_done()
                break
            self._busy = True
            try:
                if not self._active:
                    continue
                try:
                    msg = protocol.decode_message(raw)
                except protocol.ProtocolError as e:
                    logger.warning("signaling drop malformed topic=%s error=%s", self.topic, e.message)
                    continue
                await self._on_message(msg)
            except Exception:
                logger.exception("signaling handler failed topic=%s", self.topic)
            finally:
                self._busy = False
                self._queue.task_done()


class SignalingTransport:
    """Interface shared by the in-memory and WebSocket adapters."""

    participant_id: str

    async def publish(self, topic: str, message: protocol.SignalingMessage) -> int:
        """Hand `message` to current remote subscribers; return how many."""
        raise NotImplementedError

    async def subscribe(self, topic: str, on_message: OnMessage) -> Subscription:
        """Resolve once the subscription is active on the relay."""
        raise NotImplementedError

    async def unsubscribe(self, subscription: Subscription) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class PublishRecord:
    publisher: str
    topic: str
    kind: str
    delivered: int


class InMemoryRelay:
    """In-process broadcast hub. Used for loopback calls and tests."""

    def __init__(self) -> None:
        self._topics: Dict[str, List[Subscription]] = {}
        self.history: List[PublishRecord] = []

    def transport(self, participant_id: str) -> "InMemoryTransport":
        return InMemoryTransport(self, participant_id)

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, []))

    def _attach(self, sub: Subscription) -> None:
        self._topics.setdefault(sub.topic, []).append(sub)

    def _detach(self, sub: Subscription) -> None:
        subs = self._topics.get(sub.topic)
        if subs and sub in subs:
            subs.remove(sub)
            if not subs:
                self._topics.pop(sub.topic, None)

    def _publish(self, publisher: str, topic: str, raw: Dict[str, Any]) -> int:
        delivered = 0
        for sub in list(self._topics.get(topic, [])):
            if sub.owner == publisher:
                continue
            if sub.deliver(dict(raw)):
                delivered += 1
        self.history.append(PublishRecord(publisher, topic, str(raw.get("kind")), delivered))
        return delivered

    async def wait_idle(self, max_rounds: int = 200) -> None:
        """Wait until every queued message has been handled.

        Handlers may publish more messages, so keep going until a full
        round finds nothing in flight.
        """
        for _ in range(max_rounds):
            subs = [s for subs in self._topics.values() for s in subs]
            await asyncio.gather(*(s.wait_idle() for s in subs))
            await asyncio.sleep(0)
            if all(s.idle for subs in self._topics.values() for s in subs):
                return


class InMemoryTransport(SignalingTransport):
    def __init__(self, relay: InMemoryRelay, participant_id: str):
        self._relay = relay
        self.participant_id = participant_id
        self._subs: List[Subscription] = []
        self.closed = False

    async def publish(self, topic: str, message: protocol.SignalingMessage) -> int:
        if self.closed:
            raise SignalingSendFailed("transport closed")
        delivered = self._relay._publish(self.participant_id, topic, message.to_dict())
        if delivered == 0:
            logger.info("signaling publish no-subscriber topic=%s kind=%s", topic, message.kind)
        else:
            logger.debug("signaling publish topic=%s kind=%s delivered=%s", topic, message.kind, delivered)
        return delivered

    async def subscribe(self, topic: str, on_message: OnMessage) -> Subscription:
        sub = Subscription(topic, on_message, owner=self.participant_id)
        self._subs.append(sub)
        self._relay._attach(sub)
        logger.info("signaling subscribed topic=%s participant=%s", topic, self.participant_id)
        return sub

    async def unsubscribe(self, subscription: Subscription) -> None:
        self._relay._detach(subscription)
        if subscription in self._subs:
            self._subs.remove(subscription)
        if subscription.close():
            logger.info("signaling unsubscribed topic=%s participant=%s", subscription.topic, self.participant_id)

    async def close(self) -> None:
        for sub in list(self._subs):
            await self.unsubscribe(sub)
        self.closed = True
