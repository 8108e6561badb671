"""Topic broadcast relay for call signaling.

Every connection may subscribe to any number of topics. A published
message is forwarded to every *other* connection subscribed to the topic
and the publisher is told how many received it. Nothing is stored.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

from . import relay_client as frames


logger = logging.getLogger(__name__)


class RelayServer:
	def __init__(self, host: str = "127.0.0.1", port: int = 8766):
		self.host = host
		self.port = port
		self._server: Optional[Any] = None
		self._topics: Dict[str, Set[Any]] = {}

	@property
	def bound_port(self) -> int:
		if self._server is None:
			raise RuntimeError("RelayServer not started")
		return int(list(self._server.sockets)[0].getsockname()[1])

	async def start(self) -> None:
		if self._server is not None:
			return
		self._server = await websockets.serve(self._handle, self.host, self.port)
		logger.info("relay listening host=%s port=%s", self.host, self.bound_port)

	async def stop(self) -> None:
		if self._server is None:
			return
		self._server.close()
		await self._server.wait_closed()
		self._server = None
		self._topics.clear()
		logger.info("relay stopped")

	async def serve_forever(self) -> None:
		await self.start()
		try:
			await asyncio.Future()
		finally:
			await self.stop()

	async def _handle(self, ws: Any) -> None:
		topics: Set[str] = set()
		logger.debug("relay client connected remote=%s", getattr(ws, "remote_address", None))
		try:
			async for raw in ws:
				try:
					frame = json.loads(raw)
				except json.JSONDecodeError:
					await self._reply(ws, {"type": frames.ERROR, "error": "invalid-json"})
					continue
				if not isinstance(frame, dict):
					await self._reply(ws, {"type": frames.ERROR, "error": "invalid-frame"})
					continue
				await self._dispatch(ws, frame, topics)
		except ConnectionClosed:
			pass
		finally:
			for topic in topics:
				self._leave(ws, topic)
			logger.debug("relay client disconnected topics=%s", len(topics))

	async def _dispatch(self, ws: Any, frame: Dict[str, Any], topics: Set[str]) -> None:
		ftype = frame.get("type")
		req_id = frame.get("id")
		topic = frame.get("topic")

		if ftype == frames.PONG:
			return

		if ftype in (frames.SUBSCRIBE, frames.UNSUBSCRIBE, frames.PUBLISH) and not (isinstance(topic, str) and topic):
			await self._reply(ws, {"type": frames.ERROR, "error": "missing-topic", "id": req_id})
			return

		if ftype == frames.SUBSCRIBE:
			self._topics.setdefault(topic, set()).add(ws)
			topics.add(topic)
			logger.info("relay subscribe topic=%s subscribers=%s", topic, len(self._topics[topic]))
			await self._reply(ws, {"type": frames.SUBSCRIBED, "id": req_id, "topic": topic})
			return

		if ftype == frames.UNSUBSCRIBE:
			topics.discard(topic)
			self._leave(ws, topic)
			return

		if ftype == frames.PUBLISH:
			delivered = await self._fan_out(ws, topic, frame.get("message"))
			await self._reply(ws, {"type": frames.PUBLISHED, "id": req_id, "delivered": delivered})
			return

		await self._reply(ws, {"type": frames.ERROR, "error": "unknown-type", "id": req_id})

	async def _fan_out(self, sender: Any, topic: str, message: Any) -> int:
		raw = json.dumps({"type": frames.MESSAGE, "topic": topic, "message": message}, separators=(",", ":"))
		delivered = 0
		for peer in list(self._topics.get(topic, ())):
			if peer is sender:
				continue
			try:
				await peer.send(raw)
				delivered += 1
			except ConnectionClosed:
				self._leave(peer, topic)
		kind = message.get("kind") if isinstance(message, dict) else None
		logger.debug("relay publish topic=%s kind=%s delivered=%s", topic, kind, delivered)
		return delivered

	def _leave(self, ws: Any, topic: str) -> None:
		members = self._topics.get(topic)
		if not members:
			return
		members.discard(ws)
		if not members:
			self._topics.pop(topic, None)

	@staticmethod
	async def _reply(ws: Any, payload: Dict[str, Any]) -> None:
		try:
			await ws.send(json.dumps(payload, separators=(",", ":")))
		except ConnectionClosed:
			pass
