"""WebSocket relay transport.

Speaks the small topic protocol implemented by `relay_server.py`. It is
unaware of aiortc and of call phases; it only moves signaling messages.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import SignalingSendFailed
from . import protocol
from .transport import OnMessage, SignalingTransport, Subscription


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]

# Relay frame types
SUBSCRIBE = "subscribe"
SUBSCRIBED = "subscribed"
UNSUBSCRIBE = "unsubscribe"
PUBLISH = "publish"
PUBLISHED = "published"
MESSAGE = "message"
PING = "ping"
PONG = "pong"
ERROR = "error"


class WebSocketTransport(SignalingTransport):
	def __init__(
		self,
		url: str,
		participant_id: str,
		*,
		ack_timeout: float = 5.0,
		on_log: Optional[AsyncCallback] = None,
	):
		self.url = url
		self.participant_id = participant_id
		self.ack_timeout = ack_timeout
		self._on_log = on_log

		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._ids = itertools.count(1)
		self._pending: Dict[int, asyncio.Future[Dict[str, Any]]] = {}
		self._subs: Dict[str, List[Subscription]] = {}

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and self._recv_task is not None and not self._recv_task.done()

	async def connect(self) -> None:
		if self.is_connected:
			return

		await self._log(f"Connecting to {self.url}")
		logger.info("relay connect url=%s participant=%s", self.url, self.participant_id)
		try:
			self._ws = await websockets.connect(self.url)
		except (OSError, WebSocketException) as e:
			logger.warning("relay connect failed url=%s error=%s", self.url, e)
			raise SignalingSendFailed(f"connect failed: {e}") from e
		self._recv_task = asyncio.create_task(self._recv_loop(), name="relay-recv")

	async def close(self) -> None:
		await self._log("Disconnecting")
		logger.info("relay disconnect participant=%s", self.participant_id)
		for subs in self._subs.values():
			for sub in subs:
				sub.close()
		self._subs.clear()

		ws = self._ws
		self._ws = None
		if self._recv_task:
			self._recv_task.cancel()
			try:
				await self._recv_task
			except asyncio.CancelledError:
				pass
			self._recv_task = None

		if ws is not None:
			try:
				await ws.close()
			except WebSocketException:
				logger.debug("relay close raised", exc_info=True)
		self._fail_pending("transport closed")

	async def publish(self, topic: str, message: protocol.SignalingMessage) -> int:
		reply = await self._request({"type": PUBLISH, "topic": topic, "message": message.to_dict()})
		delivered = int(reply.get("delivered", 0))
		if delivered == 0:
			logger.info("relay publish no-subscriber topic=%s kind=%s", topic, message.kind)
		elif message.kind == protocol.CANDIDATE:
			logger.debug("relay publish topic=%s kind=candidate delivered=%s", topic, delivered)
		else:
			logger.info("relay publish topic=%s kind=%s delivered=%s", topic, message.kind, delivered)
		return delivered

	async def subscribe(self, topic: str, on_message: OnMessage) -> Subscription:
		if not self._subs.get(topic):
			await self._request({"type": SUBSCRIBE, "topic": topic})
		sub = Subscription(topic, on_message, owner=self.participant_id)
		self._subs.setdefault(topic, []).append(sub)
		logger.info("relay subscribed topic=%s participant=%s", topic, self.participant_id)
		return sub

	async def unsubscribe(self, subscription: Subscription) -> None:
		if not subscription.close():
			return
		subs = self._subs.get(subscription.topic, [])
		if subscription in subs:
			subs.remove(subscription)
		if subs:
			return
		self._subs.pop(subscription.topic, None)
		logger.info("relay unsubscribed topic=%s participant=%s", subscription.topic, self.participant_id)
		if not self.is_connected:
			return
		try:
			await self._send({"type": UNSUBSCRIBE, "topic": subscription.topic})
		except SignalingSendFailed:
			# Relay drops subscriptions with the connection anyway.
			logger.debug("relay unsubscribe not sent topic=%s", subscription.topic)

	async def _request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
		req_id = next(self._ids)
		fut: asyncio.Future[Dict[str, Any]] = asyncio.get_running_loop().create_future()
		self._pending[req_id] = fut
		try:
			await self._send({**payload, "id": req_id})
			return await asyncio.wait_for(fut, timeout=self.ack_timeout)
		except asyncio.TimeoutError as e:
			raise SignalingSendFailed(f"{payload['type']} not acknowledged") from e
		finally:
			self._pending.pop(req_id, None)

	async def _send(self, payload: Dict[str, Any]) -> None:
		if not self.is_connected:
			raise SignalingSendFailed("relay not connected")
		raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
		try:
			async with self._send_lock:
				await self._ws.send(raw)
		except WebSocketException as e:
			raise SignalingSendFailed(f"send failed: {e}") from e

	async def _recv_loop(self) -> None:
		assert self._ws is not None
		ws = self._ws
		logger.debug("relay recv loop started")

		try:
			async for raw in ws:
				try:
					frame = json.loads(raw)
				except json.JSONDecodeError:
					logger.warning("relay invalid json len=%s", len(raw))
					continue

				if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
					logger.warning("relay invalid frame")
					continue

				ftype = frame["type"]

				if ftype == PING:
					try:
						await self._send({"type": PONG, "ts": frame.get("ts")})
					except SignalingSendFailed as e:
						# The socket is closing; the iterator ends on the next read.
						logger.info("relay pong not sent error=%s", e)
					continue

				if ftype in (SUBSCRIBED, PUBLISHED):
					self._resolve(frame)
					continue

				if ftype == MESSAGE:
					topic = str(frame.get("topic", ""))
					message = frame.get("message")
					if not isinstance(message, dict):
						logger.warning("relay drop message without body topic=%s", topic)
						continue
					for sub in list(self._subs.get(topic, [])):
						sub.deliver(message)
					continue

				if ftype == ERROR:
					error = str(frame.get("error", "error"))
					await self._log(f"Relay error: {error}")
					logger.warning("relay error error=%s id=%s", error, frame.get("id"))
					fut = self._pending.get(frame.get("id"))
					if fut and not fut.done():
						fut.set_exception(SignalingSendFailed(error))
					continue

				logger.debug("relay unknown frame type=%s", ftype)

		except asyncio.CancelledError:
			raise
		except ConnectionClosed as e:
			logger.info("relay connection closed code=%s", getattr(e, "code", None))
			await self._log("Relay connection closed")
		finally:
			logger.debug("relay recv loop stopped")
			if self._ws is ws:
				self._ws = None
			self._fail_pending("connection lost")

	def _resolve(self, frame: Dict[str, Any]) -> None:
		fut = self._pending.get(frame.get("id"))
		if fut and not fut.done():
			fut.set_result(frame)

	def _fail_pending(self, reason: str) -> None:
		for fut in self._pending.values():
			if not fut.done():
				fut.set_exception(SignalingSendFailed(reason))

	async def _log(self, message: str) -> None:
		if self._on_log:
			await self._on_log(message)
