"""Call controller.

Maps user intent (place, accept, decline, mute, hang up) onto call
sessions and turns session transitions into short status updates for
whatever presents them. One controller serves one participant in one chat,
so it holds at most one live session.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import CallConfig
from ..errors import CallError, user_facing_status
from ..net import protocol
from ..net.transport import SignalingTransport, Subscription
from ..rtc.audio import AudioDevice, CaptureConstraints
from ..rtc.media import AiortcMediaEndpoint
from .membership import ChatMembership
from .session import CallSession, Phase, PhaseTransition, Role, SessionCallbacks


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
MediaFactory = Callable[[CallConfig], Any]

# Notification events
STATUS_CONNECTING = "connecting"
STATUS_CONNECTED = "connected"
STATUS_ENDED = "ended"
STATUS_ERROR = "error"

_PHASE_EVENTS = {
    Phase.ACQUIRING_MEDIA: STATUS_CONNECTING,
    Phase.CONNECTED: STATUS_CONNECTED,
    Phase.ENDED: STATUS_ENDED,
    Phase.FAILED: STATUS_ERROR,
}

_END_REASONS = {
    protocol.REASON_BUSY: "Line busy",
    protocol.REASON_DECLINED: "Call declined",
}


def format_duration(seconds: float) -> str:
    total = int(max(0, seconds))
    mins, secs = divmod(total, 60)
    return f"{mins}:{secs:02d}"


def default_media_factory(config: CallConfig) -> AiortcMediaEndpoint:
    preferred = None
    if config.audio_backend:
        preferred = AudioDevice(backend=config.audio_backend, device=config.audio_device or "default")
    return AiortcMediaEndpoint(CaptureConstraints.for_call_type(config.call_type), preferred_input=preferred)


@dataclass(frozen=True)
class CallStatus:
    phase: Phase
    muted: bool
    duration: float
    text: str
    remote_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def duration_text(self) -> str:
        return format_duration(self.duration)


@dataclass
class IncomingCall:
    offer: protocol.SignalingMessage
    buffered: List[protocol.SignalingMessage] = field(default_factory=list)


@dataclass
class ControllerCallbacks:
    on_status: Optional[AsyncCallback] = None  # (event: str, status: CallStatus)
    on_incoming: Optional[AsyncCallback] = None  # (signal: SignalingMessage)
    on_incoming_cancelled: Optional[AsyncCallback] = None  # (call_id: str)
    on_transition: Optional[AsyncCallback] = None  # (transition: PhaseTransition)
    on_remote_track: Optional[AsyncCallback] = None  # (track)


class CallController:
    def __init__(
        self,
        *,
        local_id: str,
        chat_id: str,
        transport: SignalingTransport,
        membership: ChatMembership,
        media_factory: MediaFactory = default_media_factory,
        config: Optional[CallConfig] = None,
        callbacks: Optional[ControllerCallbacks] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.local_id = local_id
        self.chat_id = chat_id
        self.transport = transport
        self.membership = membership
        self.config = config or CallConfig()
        self.callbacks = callbacks or ControllerCallbacks()
        self._media_factory = media_factory
        self._clock = clock

        self._session: Optional[CallSession] = None
        self._incoming: Dict[str, IncomingCall] = {}
        self._watch: Optional[Subscription] = None

    @property
    def topic(self) -> str:
        return protocol.topic_for(self.chat_id)

    @property
    def session(self) -> Optional[CallSession]:
        return self._session

    @property
    def incoming(self) -> List[protocol.SignalingMessage]:
        return [call.offer for call in self._incoming.values()]

    def has_active_call(self) -> bool:
        return self._session is not None and self._session.is_active

    async def watch(self) -> None:
        """Listen on the chat's call topic for incoming offers."""
        if self._watch is not None:
            return
        self._watch = await self.transport.subscribe(self.topic, self._on_topic_message)
        logger.info("controller watching topic=%s participant=%s", self.topic, self.local_id)

    async def close(self) -> None:
        await self.hang_up()
        watch, self._watch = self._watch, None
        if watch is not None:
            await self.transport.unsubscribe(watch)
        self._incoming.clear()

    # ----------------------
    # User intent
    # ----------------------
    async def place_call(self, remote_id: Optional[str] = None) -> Optional[CallSession]:
        if self.has_active_call():
            logger.warning("controller place_call rejected: call already active call_id=%s", self._session.call_id)
            return None
        if remote_id is None:
            try:
                remote_id = await self.membership.remote_participant(self.chat_id, self.local_id)
            except LookupError as e:
                logger.warning("controller place_call no remote chat=%s error=%s", self.chat_id, e)
                return None

        session = self._new_session(remote_id, Role.INITIATOR)
        logger.info("controller placing call call_id=%s to=%s", session.call_id, remote_id)
        await session.start()
        return session

    async def accept_incoming(self, signal: protocol.SignalingMessage) -> Optional[CallSession]:
        if signal.kind != protocol.OFFER or signal.recipient != self.local_id:
            logger.warning("controller accept ignored kind=%s to=%s", signal.kind, signal.recipient)
            return None
        if self.has_active_call():
            logger.warning("controller accept rejected: call already active call_id=%s", self._session.call_id)
            return None

        incoming = self._incoming.get(signal.call_id)
        if incoming is None:
            logger.warning("controller accept ignored: call no longer ringing call_id=%s", signal.call_id)
            return None
        session = self._new_session(signal.sender, Role.RESPONDER, call_id=signal.call_id)
        logger.info("controller accepting call call_id=%s from=%s", session.call_id, signal.sender)
        await session.start()

        # The offer (and whatever followed it) reached the watcher before the
        # session had its own subscription.
        await session.receive(incoming.offer)
        while incoming.buffered:
            await session.receive(incoming.buffered.pop(0))
        self._incoming.pop(signal.call_id, None)
        return session

    async def reject_incoming(self, signal: protocol.SignalingMessage) -> None:
        self._incoming.pop(signal.call_id, None)
        logger.info("controller declining call call_id=%s from=%s", signal.call_id, signal.sender)
        await self._publish(protocol.make_hangup(self.local_id, signal.sender, signal.call_id, protocol.REASON_DECLINED))

    def toggle_mute(self) -> bool:
        session = self._session
        if session is None or not session.is_active:
            return False
        session.set_muted(not session.muted)
        return session.muted

    async def hang_up(self) -> None:
        if self._session is not None:
            await self._session.hangup()

    def status(self) -> CallStatus:
        session = self._session
        if session is None:
            return CallStatus(phase=Phase.IDLE, muted=False, duration=0.0, text="")

        error = session.last_error
        if session.phase is Phase.CONNECTED:
            text = format_duration(session.duration())
        elif session.phase is Phase.FAILED:
            text = user_facing_status(error)
        elif session.phase in (Phase.ENDING, Phase.ENDED):
            reason = session.history[-1].reason if session.history else ""
            text = _END_REASONS.get(reason, "Call ended")
        else:
            text = "Connecting..."
        return CallStatus(
            phase=session.phase,
            muted=session.muted,
            duration=session.duration(),
            text=text,
            remote_id=session.remote_id,
            error=error.user_message if error else None,
        )

    # ----------------------
    # Internals
    # ----------------------
    def _new_session(self, remote_id: str, role: Role, call_id: Optional[str] = None) -> CallSession:
        self._session = CallSession(
            chat_id=self.chat_id,
            local_id=self.local_id,
            remote_id=remote_id,
            role=role,
            transport=self.transport,
            media=self._media_factory(self.config),
            config=self.config,
            call_id=call_id,
            callbacks=SessionCallbacks(
                on_transition=self._on_transition,
                on_remote_track=self._on_remote_track,
            ),
            clock=self._clock,
        )
        return self._session

    async def _on_topic_message(self, msg: protocol.SignalingMessage) -> None:
        if msg.recipient != self.local_id:
            return

        pending = self._incoming.get(msg.call_id)
        session = self._session
        if pending is None and session is not None and msg.call_id == session.call_id:
            # The session's own subscription handles it.
            return

        if msg.kind == protocol.OFFER:
            if pending is not None:
                return
            if self.has_active_call():
                logger.info("controller busy; declining call_id=%s from=%s", msg.call_id, msg.sender)
                await self._publish(protocol.make_hangup(self.local_id, msg.sender, msg.call_id, protocol.REASON_BUSY))
                return
            self._incoming[msg.call_id] = IncomingCall(msg)
            logger.info("controller incoming call call_id=%s from=%s", msg.call_id, msg.sender)
            if self.callbacks.on_incoming:
                await self.callbacks.on_incoming(msg)
            return

        if pending is None:
            logger.debug("controller drop stale kind=%s call_id=%s", msg.kind, msg.call_id)
            return

        accepting = session is not None and session.call_id == msg.call_id
        if accepting:
            pending.buffered.append(msg)
            return

        if msg.kind == protocol.CANDIDATE:
            pending.buffered.append(msg)
        elif msg.kind == protocol.HANGUP:
            self._incoming.pop(msg.call_id, None)
            logger.info("controller incoming call cancelled call_id=%s", msg.call_id)
            if self.callbacks.on_incoming_cancelled:
                await self.callbacks.on_incoming_cancelled(msg.call_id)

    async def _on_transition(self, event: PhaseTransition) -> None:
        if self.callbacks.on_transition:
            await self.callbacks.on_transition(event)
        status_event = _PHASE_EVENTS.get(event.new)
        if status_event and self.callbacks.on_status:
            await self.callbacks.on_status(status_event, self.status())

    async def _on_remote_track(self, track: Any) -> None:
        if self.callbacks.on_remote_track:
            await self.callbacks.on_remote_track(track)

    async def _publish(self, message: protocol.SignalingMessage) -> None:
        try:
            await self.transport.publish(self.topic, message)
        except CallError as e:
            logger.warning("controller send failed kind=%s call_id=%s error=%s", message.kind, message.call_id, e)
