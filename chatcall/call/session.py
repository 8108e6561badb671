"""Call session state machine.

One `CallSession` drives one call between two chat participants: it owns
the media endpoint and the signaling subscription, and releases both
together when it reaches Ended or Failed.

Every state mutation happens under `_lock`. Signaling deliveries,
connectivity callbacks and user actions arrive concurrently, but the
session handles them one at a time. Waits on the outside world (capture
acquisition, the settle delay before the Offer) run without the lock and
re-check the phase afterwards, so a hang up is never blocked behind them.
Transition observers are called after the lock is released, in order, so
an observer may call back into the session.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..config import CallConfig
from ..errors import CallError, ConnectivityLost, ErrorKind, InternalError, SignalingSendFailed
from ..net import protocol
from ..net.transport import SignalingTransport, Subscription


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class Phase(str, Enum):
    IDLE = "idle"
    ACQUIRING_MEDIA = "acquiring-media"
    AWAITING_ANSWER = "awaiting-answer"
    AWAITING_OFFER = "awaiting-offer"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    ENDING = "ending"
    ENDED = "ended"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({Phase.ENDED, Phase.FAILED})
CANDIDATE_PHASES = frozenset({Phase.AWAITING_OFFER, Phase.AWAITING_ANSWER, Phase.NEGOTIATING, Phase.CONNECTED})


@dataclass(frozen=True)
class PhaseTransition:
    call_id: str
    old: Phase
    new: Phase
    at: float
    reason: str = ""


@dataclass
class SessionCallbacks:
    """Observers, awaited outside the session lock."""

    on_transition: Optional[AsyncCallback] = None  # (transition: PhaseTransition)
    on_remote_track: Optional[AsyncCallback] = None  # (track)


class CallSession:
    """Lifecycle of one call.

    `media` is the session's own media endpoint (see
    `chatcall.rtc.media.AiortcMediaEndpoint` for the expected surface).
    Public operations never raise; outcomes show up as `phase` and
    `last_error`.
    """

    def __init__(
        self,
        *,
        chat_id: str,
        local_id: str,
        remote_id: str,
        role: Role,
        transport: SignalingTransport,
        media: Any,
        config: Optional[CallConfig] = None,
        call_id: Optional[str] = None,
        callbacks: Optional[SessionCallbacks] = None,
        clock: Callable[[], float] = time.time,
    ):
        if role is Role.RESPONDER and not call_id:
            raise ValueError("a responder session needs the call_id of the incoming offer")

        self.chat_id = chat_id
        self.call_id = call_id or uuid.uuid4().hex
        self.local_id = local_id
        self.remote_id = remote_id
        self._role = role
        self.transport = transport
        self.media = media
        self.config = config or CallConfig()
        self.callbacks = callbacks or SessionCallbacks()
        self._clock = clock

        self.phase = Phase.IDLE
        self.pending_remote_candidates: List[Dict[str, Any]] = []
        self.muted = False
        self.started_at: Optional[float] = None
        self.connected_at: Optional[float] = None
        self.ended_at: Optional[float] = None
        self.last_error: Optional[CallError] = None
        self.history: List[PhaseTransition] = []

        self._remote_description_applied = False
        # Early candidates can reach us twice: via the incoming-call watcher and our own subscription.
        self._seen_candidates: Set[Tuple[Any, Any, Any]] = set()
        self._subscription: Optional[Subscription] = None
        self._released = False
        self._lock = asyncio.Lock()
        self._pending_events: List[PhaseTransition] = []
        self._dispatching = False

        media.callbacks.on_local_candidate = self._on_local_candidate
        media.callbacks.on_connectivity_state = self._on_connectivity_state
        media.callbacks.on_remote_track = self._on_remote_track

    @property
    def role(self) -> Role:
        return self._role

    @property
    def topic(self) -> str:
        return protocol.topic_for(self.chat_id)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def is_active(self) -> bool:
        return not self.is_terminal

    def duration(self) -> float:
        """Seconds spent Connected; frozen once the call is over."""
        if self.connected_at is None:
            return 0.0
        end = self.ended_at if self.ended_at is not None else self._clock()
        return max(0.0, end - self.connected_at)

    # ----------------------
    # Public operations
    # ----------------------
    async def start(self) -> None:
        async with self._locked():
            if self.phase is not Phase.IDLE:
                logger.debug("call start ignored call_id=%s phase=%s", self.call_id, self.phase.value)
                return
            self.started_at = self._clock()
            await self._transition(Phase.ACQUIRING_MEDIA, "start")

        try:
            await self.media.acquire_capture()
        except CallError as e:
            await self._fail(e)
            return
        except Exception as e:
            logger.exception("call capture failed call_id=%s", self.call_id)
            await self._fail(InternalError(str(e)))
            return

        async with self._locked():
            if self.phase is not Phase.ACQUIRING_MEDIA:
                # Hung up while capture was opening; the endpoint releases late tracks itself.
                logger.info("call start abandoned call_id=%s phase=%s", self.call_id, self.phase.value)
                return
            try:
                self.media.create_connection(self.config.ice_servers)
                self._subscription = await self.transport.subscribe(self.topic, self.receive)
            except CallError as e:
                await self._fail_locked(e)
                return
            except Exception as e:
                logger.exception("call setup failed call_id=%s", self.call_id)
                await self._fail_locked(InternalError(str(e)))
                return
            waiting = Phase.AWAITING_ANSWER if self._role is Role.INITIATOR else Phase.AWAITING_OFFER
            await self._transition(waiting, "media acquired")

        if self._role is Role.INITIATOR:
            await self._send_initial_offer()

    async def receive(self, msg: protocol.SignalingMessage) -> None:
        """Entry point for every signaling message seen on the call topic."""
        if msg.recipient != self.local_id:
            return
        if msg.sender != self.remote_id or msg.call_id != self.call_id:
            logger.debug("call drop %s kind=%s call_id=%s expected=%s", ErrorKind.STALE_SIGNAL.value, msg.kind, msg.call_id, self.call_id)
            return

        async with self._locked():
            if self.is_terminal or self.phase is Phase.ENDING:
                logger.debug("call ignore kind=%s call_id=%s phase=%s", msg.kind, self.call_id, self.phase.value)
                return
            try:
                await self._handle_signal(msg)
            except Exception as e:
                logger.exception("call signal handling failed kind=%s call_id=%s", msg.kind, self.call_id)
                await self._fail_locked(InternalError(str(e)))

    async def hangup(self) -> None:
        async with self._locked():
            if self.is_terminal or self.phase is Phase.ENDING:
                logger.debug("call hangup ignored %s call_id=%s phase=%s", ErrorKind.DOUBLE_INVOCATION.value, self.call_id, self.phase.value)
                return
            await self._end_locked(local=True, reason="local hangup")

    def set_muted(self, muted: bool) -> None:
        if self.is_terminal:
            return
        self.muted = muted
        self.media.set_muted(muted)
        logger.info("call mute call_id=%s muted=%s", self.call_id, muted)

    # ----------------------
    # Negotiation
    # ----------------------
    async def _send_initial_offer(self) -> None:
        await asyncio.sleep(self.config.offer_settle_sec)

        description: Optional[protocol.DescriptionDict] = None
        for attempt in (1, 2):
            async with self._locked():
                if self.phase is not Phase.AWAITING_ANSWER:
                    return
                if description is None:
                    try:
                        description = await self.media.create_offer()
                    except Exception as e:
                        logger.exception("call offer creation failed call_id=%s", self.call_id)
                        await self._fail_locked(InternalError(str(e)))
                        return
                delivered = await self._publish(
                    protocol.make_offer(self.local_id, self.remote_id, self.call_id, description)
                )
                if delivered:
                    logger.info("call offer sent call_id=%s attempt=%s", self.call_id, attempt)
                    return
            if attempt == 1:
                logger.warning("call offer unheard call_id=%s; retrying in %ss", self.call_id, self.config.offer_retry_sec)
                await asyncio.sleep(self.config.offer_retry_sec)

        async with self._locked():
            if self.phase is Phase.AWAITING_ANSWER:
                await self._fail_locked(SignalingSendFailed("offer not delivered"))

    async def _handle_signal(self, msg: protocol.SignalingMessage) -> None:
        if msg.kind == protocol.HANGUP:
            await self._end_locked(local=False, reason=msg.payload.get("reason") or "remote hangup")
            return

        if msg.kind == protocol.OFFER:
            if self._role is not Role.RESPONDER or self.phase is not Phase.AWAITING_OFFER:
                logger.warning("call unexpected offer call_id=%s role=%s phase=%s", self.call_id, self._role.value, self.phase.value)
                return
            await self._apply_remote_description(msg.payload)
            answer = await self.media.create_answer()
            await self._publish(protocol.make_answer(self.local_id, self.remote_id, self.call_id, answer))
            await self._transition(Phase.NEGOTIATING, "offer received")
            return

        if msg.kind == protocol.ANSWER:
            if self._role is not Role.INITIATOR or self.phase is not Phase.AWAITING_ANSWER:
                logger.warning("call unexpected answer call_id=%s role=%s phase=%s", self.call_id, self._role.value, self.phase.value)
                return
            await self._apply_remote_description(msg.payload)
            await self._transition(Phase.NEGOTIATING, "answer received")
            return

        if msg.kind == protocol.CANDIDATE:
            if self.phase not in CANDIDATE_PHASES:
                return
            key = (msg.payload.get("candidate"), msg.payload.get("sdpMid"), msg.payload.get("sdpMLineIndex"))
            if key in self._seen_candidates:
                return
            self._seen_candidates.add(key)
            if self._remote_description_applied:
                await self.media.add_remote_candidate(msg.payload)
            else:
                self.pending_remote_candidates.append(dict(msg.payload))
                logger.debug("call candidate buffered call_id=%s pending=%s", self.call_id, len(self.pending_remote_candidates))

    async def _apply_remote_description(self, description: Dict[str, Any]) -> None:
        await self.media.set_remote_description(description)
        self._remote_description_applied = True
        await self._drain_pending_candidates()

    async def _drain_pending_candidates(self) -> None:
        pending, self.pending_remote_candidates = self.pending_remote_candidates, []
        for candidate in pending:
            await self.media.add_remote_candidate(candidate)
        if pending:
            logger.info("call applied buffered candidates call_id=%s count=%s", self.call_id, len(pending))

    async def _publish(self, message: protocol.SignalingMessage) -> Optional[int]:
        """Send on the call topic; None means the transport failed."""
        try:
            return await self.transport.publish(self.topic, message)
        except CallError as e:
            logger.warning("call send failed kind=%s call_id=%s error=%s", message.kind, self.call_id, e)
            return None

    # ----------------------
    # Media endpoint events
    # ----------------------
    async def _on_local_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.is_terminal or self.phase is Phase.ENDING:
            return
        await self._publish(protocol.make_candidate(self.local_id, self.remote_id, self.call_id, candidate))

    async def _on_connectivity_state(self, state: str) -> None:
        async with self._locked():
            if self.is_terminal or self.phase is Phase.ENDING:
                return
            if state == "connected" and self.phase is Phase.NEGOTIATING:
                self.connected_at = self._clock()
                await self._transition(Phase.CONNECTED, "connectivity connected")
                try:
                    await self._drain_pending_candidates()
                except Exception as e:
                    logger.exception("call candidate drain failed call_id=%s", self.call_id)
                    await self._fail_locked(InternalError(str(e)))
            elif state in ("failed", "disconnected") and self.phase in (Phase.NEGOTIATING, Phase.CONNECTED):
                await self._fail_locked(ConnectivityLost(state))

    async def _on_remote_track(self, track: Any) -> None:
        if self.callbacks.on_remote_track:
            await self.callbacks.on_remote_track(track)

    # ----------------------
    # Teardown
    # ----------------------
    async def _end_locked(self, *, local: bool, reason: str) -> None:
        notify_peer = local and self.phase is not Phase.IDLE
        await self._transition(Phase.ENDING, reason)
        if notify_peer:
            await self._publish(protocol.make_hangup(self.local_id, self.remote_id, self.call_id))
        await self._release()
        self.ended_at = self._clock()
        await self._transition(Phase.ENDED, reason)

    async def _fail(self, error: CallError) -> None:
        async with self._locked():
            if self.is_terminal:
                return
            await self._fail_locked(error)

    async def _fail_locked(self, error: CallError) -> None:
        self.last_error = error
        logger.warning("call failed call_id=%s error=%s", self.call_id, error)
        await self._release()
        self.ended_at = self._clock()
        await self._transition(Phase.FAILED, error.kind.value)

    async def _release(self) -> None:
        """Stop capture, close the connection, drop the subscription. Runs once."""
        if self._released:
            return
        self._released = True
        subscription, self._subscription = self._subscription, None
        try:
            await self.media.close()
        except Exception:
            logger.exception("call media release failed call_id=%s", self.call_id)
        if subscription is not None:
            try:
                await self.transport.unsubscribe(subscription)
            except CallError as e:
                logger.warning("call unsubscribe failed call_id=%s error=%s", self.call_id, e)
        logger.info("call released call_id=%s", self.call_id)

    async def _transition(self, new: Phase, reason: str) -> None:
        event = PhaseTransition(self.call_id, self.phase, new, self._clock(), reason)
        self.phase = new
        self.history.append(event)
        logger.info(
            "call phase call_id=%s role=%s %s->%s reason=%s",
            self.call_id,
            self._role.value,
            event.old.value,
            event.new.value,
            reason,
        )
        self._pending_events.append(event)

    @asynccontextmanager
    async def _locked(self):
        async with self._lock:
            yield
        await self._dispatch_events()

    async def _dispatch_events(self) -> None:
        # A nested dispatch (an observer calling back in) leaves its events to the outer loop.
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._pending_events:
                event = self._pending_events.pop(0)
                if not self.callbacks.on_transition:
                    continue
                try:
                    await self.callbacks.on_transition(event)
                except Exception:
                    # Observers never break the state machine.
                    logger.exception("call transition observer failed call_id=%s", self.call_id)
        finally:
            self._dispatching = False
