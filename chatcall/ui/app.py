from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Optional

from PySide6 import QtCore, QtWidgets

from ..call.controller import CallController, CallStatus, ControllerCallbacks
from ..call.membership import StaticMembership
from ..call.session import PhaseTransition
from ..config import CallConfig
from ..errors import CallError
from ..net.protocol import SignalingMessage
from ..net.relay_client import WebSocketTransport
from .windows import CallWindow


logger = logging.getLogger(__name__)


class AsyncioThread:
    """Runs an asyncio loop in a background thread and schedules coroutines."""

    def __init__(self):
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if not self._loop:
            raise RuntimeError("AsyncioThread not started")
        return self._loop

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        def _run() -> None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._ready.set()
            self._loop.run_forever()

        self._thread = threading.Thread(target=_run, name="chatcall-loop", daemon=True)
        self._thread.start()
        self._ready.wait(timeout=5)

    def stop(self) -> None:
        if not self._loop:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)

    def submit(self, coro) -> Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)


class UiBridge(QtCore.QObject):
    log = QtCore.Signal(str)
    status = QtCore.Signal(str)
    peer = QtCore.Signal(str)
    muted = QtCore.Signal(bool)
    controls = QtCore.Signal(bool, bool)  # (in_call, ringing)


@dataclass
class AppConfig:
    chat_id: str
    local_id: str
    remote_id: str
    call: CallConfig = field(default_factory=CallConfig.from_env)


class CallClientApp(QtCore.QObject):
    shutdown_timeout = 5.0

    def __init__(self, cfg: AppConfig):
        super().__init__()
        self.cfg = cfg

        self.window = CallWindow()
        self.bridge = UiBridge()
        self.asyncio_thread = AsyncioThread()

        self._ringing: Optional[SignalingMessage] = None
        self._duration_timer = QtCore.QTimer(self)
        self._duration_timer.setInterval(1000)
        self._duration_timer.timeout.connect(self._refresh_status)

        self.transport: Optional[WebSocketTransport] = None
        self.controller: Optional[CallController] = None

        self._wire_ui()
        self._wire_bridge()

    def start(self) -> None:
        self.asyncio_thread.start()
        self.asyncio_thread.submit(self._connect())
        self.bridge.peer.emit(self.cfg.remote_id)
        self.window.show()
        self.window.set_status(f"Chat {self.cfg.chat_id} as {self.cfg.local_id}")
        self._duration_timer.start()
        logger.info("ui started chat=%s participant=%s", self.cfg.chat_id, self.cfg.local_id)

    def shutdown(self) -> None:
        logger.info("ui shutdown")
        self._duration_timer.stop()
        try:
            self.asyncio_thread.submit(self._disconnect()).result(timeout=self.shutdown_timeout)
        except (concurrent.futures.TimeoutError, RuntimeError, CallError) as e:
            logger.warning("ui shutdown incomplete: %s", e)
        self.asyncio_thread.stop()

    async def _connect(self) -> None:
        # Transport and controller are created on the loop thread so their
        # asyncio primitives bind to it.
        self.transport = WebSocketTransport(
            self.cfg.call.relay_url,
            self.cfg.local_id,
            ack_timeout=self.cfg.call.ack_timeout_sec,
            on_log=self._on_async_log,
        )
        self.controller = CallController(
            local_id=self.cfg.local_id,
            chat_id=self.cfg.chat_id,
            transport=self.transport,
            membership=StaticMembership({self.cfg.chat_id: (self.cfg.local_id, self.cfg.remote_id)}),
            config=self.cfg.call,
            callbacks=ControllerCallbacks(
                on_status=self._on_status,
                on_incoming=self._on_incoming,
                on_incoming_cancelled=self._on_incoming_cancelled,
                on_transition=self._on_transition,
            ),
        )
        try:
            await self.transport.connect()
            await self.controller.watch()
        except CallError as e:
            self.bridge.log.emit(f"Relay unavailable: {e}")
            self.bridge.status.emit("Offline")
            return
        self.bridge.log.emit(f"Connected to {self.cfg.call.relay_url}")

    async def _disconnect(self) -> None:
        if self.controller is not None:
            await self.controller.close()
        if self.transport is not None:
            await self.transport.close()

    def _wire_ui(self) -> None:
        self.window.call_clicked.connect(self._on_call_clicked)
        self.window.accept_clicked.connect(self._on_accept_clicked)
        self.window.decline_clicked.connect(self._on_decline_clicked)
        self.window.mute_clicked.connect(self._on_mute_clicked)
        self.window.hangup_clicked.connect(self._on_hangup_clicked)

    def _wire_bridge(self) -> None:
        self.bridge.log.connect(self.window.log_panel.append_log)
        self.bridge.status.connect(self.window.card.set_status)
        self.bridge.peer.connect(self.window.card.set_peer)
        self.bridge.muted.connect(self.window.card.set_muted)
        self.bridge.controls.connect(self.window.set_controls)

    @QtCore.Slot()
    def _on_call_clicked(self) -> None:
        if self.controller is None:
            return
        logger.info("ui call clicked to=%s", self.cfg.remote_id)
        self.bridge.controls.emit(True, False)
        self.asyncio_thread.submit(self.controller.place_call(self.cfg.remote_id))

    @QtCore.Slot()
    def _on_accept_clicked(self) -> None:
        signal, self._ringing = self._ringing, None
        if self.controller is None or signal is None:
            return
        logger.info("ui accept clicked call_id=%s", signal.call_id)
        self.bridge.controls.emit(True, False)
        self.asyncio_thread.submit(self.controller.accept_incoming(signal))

    @QtCore.Slot()
    def _on_decline_clicked(self) -> None:
        signal, self._ringing = self._ringing, None
        if self.controller is None or signal is None:
            return
        logger.info("ui decline clicked call_id=%s", signal.call_id)
        self.bridge.controls.emit(False, False)
        self.bridge.status.emit("Call declined")
        self.asyncio_thread.submit(self.controller.reject_incoming(signal))

    @QtCore.Slot()
    def _on_mute_clicked(self) -> None:
        if self.controller is None:
            return
        self.asyncio_thread.submit(self._toggle_mute())

    @QtCore.Slot()
    def _on_hangup_clicked(self) -> None:
        if self.controller is None:
            return
        logger.info("ui hang up clicked")
        self.asyncio_thread.submit(self.controller.hang_up())

    @QtCore.Slot()
    def _refresh_status(self) -> None:
        if self.controller is None or not self.controller.has_active_call():
            return
        self.window.card.set_status(self.controller.status().text)

    # ----------------------
    # Async callbacks (run in asyncio thread)
    # ----------------------
    async def _toggle_mute(self) -> None:
        assert self.controller is not None
        self.bridge.muted.emit(self.controller.toggle_mute())

    async def _on_async_log(self, message: str) -> None:
        self.bridge.log.emit(message)

    async def _on_status(self, event: str, status: CallStatus) -> None:
        self.bridge.status.emit(status.text)
        if event in ("ended", "error"):
            self.bridge.controls.emit(False, self._ringing is not None)
            self.bridge.muted.emit(False)

    async def _on_transition(self, event: PhaseTransition) -> None:
        self.bridge.log.emit(f"{event.old.value} -> {event.new.value} ({event.reason})")

    async def _on_incoming(self, signal: SignalingMessage) -> None:
        self._ringing = signal
        self.bridge.log.emit(f"Incoming call from {signal.sender}")
        self.bridge.status.emit("Incoming call...")
        self.bridge.controls.emit(False, True)

    async def _on_incoming_cancelled(self, call_id: str) -> None:
        if self._ringing is not None and self._ringing.call_id == call_id:
            self._ringing = None
            self.bridge.status.emit("Missed call")
            self.bridge.controls.emit(False, False)


def create_qt_app() -> QtWidgets.QApplication:
    app = QtWidgets.QApplication.instance()
    if app is None:
        app = QtWidgets.QApplication([])
    return app  # type: ignore
