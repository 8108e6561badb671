"""Media endpoint: local capture plus one negotiable aiortc connection.

One endpoint belongs to exactly one call session and is never shared.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..errors import MediaAccessDenied
from ..net.protocol import DescriptionDict, IceCandidateDict
from .audio import AudioDevice, CaptureConstraints, LocalMedia, RemoteAudioSink


logger = logging.getLogger(__name__)


AsyncEndpointCallback = Callable[..., Awaitable[None]]
CaptureOpener = Callable[[CaptureConstraints, Optional[AudioDevice]], LocalMedia]


def candidate_to_json(candidate: RTCIceCandidate) -> IceCandidateDict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def candidate_from_json(obj: Dict[str, Any]) -> RTCIceCandidate:
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:"):]
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


@dataclass
class EndpointCallbacks:
    on_local_candidate: Optional[AsyncEndpointCallback] = None  # (candidate: dict)
    on_connectivity_state: Optional[AsyncEndpointCallback] = None  # (state: str)
    on_remote_track: Optional[AsyncEndpointCallback] = None  # (track)


class AiortcMediaEndpoint:
    """Capture, connection and remote playback for one call.

    `close()` may run while `acquire_capture()` is still opening devices;
    whatever is opened afterwards is released on the spot.
    """

    def __init__(
        self,
        constraints: Optional[CaptureConstraints] = None,
        *,
        preferred_input: Optional[AudioDevice] = None,
        preferred_output: Optional[AudioDevice] = None,
        capture_opener: Optional[CaptureOpener] = None,
    ):
        self.constraints = constraints or CaptureConstraints()
        self.callbacks = EndpointCallbacks()
        self._preferred_input = preferred_input
        self._preferred_output = preferred_output
        self._open_capture = capture_opener or LocalMedia.open

        self._local: Optional[LocalMedia] = None
        self._pc: Optional[RTCPeerConnection] = None
        self._remote_sink: Optional[RemoteAudioSink] = None
        self._closed = False
        self._muted = False

    @property
    def local_tracks(self) -> List[Any]:
        return self._local.tracks if self._local else []

    async def acquire_capture(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            local = await loop.run_in_executor(None, self._open_capture, self.constraints, self._preferred_input)
        except OSError as e:
            raise MediaAccessDenied(str(e)) from e
        if self._closed:
            logger.info("rtc capture acquired after close; releasing")
            local.close()
            return
        self._local = local
        if self._muted:
            # Mute pressed while the device was opening.
            local.set_muted(True)

    def create_connection(self, ice_servers: List[str]) -> None:
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        pc = RTCPeerConnection(configuration=config)
        self._pc = pc

        for track in self.local_tracks:
            pc.addTrack(track)

        # aiortc bundles its candidates into the SDP; the event only fires for
        # late candidates, which still have to be trickled to the peer.
        @pc.on("icecandidate")
        async def on_icecandidate(candidate) -> None:
            candidate = getattr(candidate, "candidate", candidate)
            if candidate is None or self.callbacks.on_local_candidate is None:
                return
            await self.callbacks.on_local_candidate(candidate_to_json(candidate))

        @pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = pc.connectionState
            logger.info("rtc connectionState=%s", state)
            if self.callbacks.on_connectivity_state:
                await self.callbacks.on_connectivity_state(state)

        @pc.on("track")
        async def on_track(track) -> None:
            logger.info("rtc remote track kind=%s", track.kind)
            if track.kind == "audio":
                self._remote_sink = RemoteAudioSink(output=self._preferred_output)
                await self._remote_sink.start(track)
            if self.callbacks.on_remote_track:
                await self.callbacks.on_remote_track(track)

    async def create_offer(self) -> DescriptionDict:
        pc = self._require_pc()
        await pc.setLocalDescription(await pc.createOffer())
        return self._local_description()

    async def create_answer(self) -> DescriptionDict:
        pc = self._require_pc()
        await pc.setLocalDescription(await pc.createAnswer())
        return self._local_description()

    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        pc = self._require_pc()
        await pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def add_remote_candidate(self, candidate: Dict[str, Any]) -> None:
        pc = self._require_pc()
        try:
            cand = candidate_from_json(candidate)
        except ValueError as e:
            logger.warning("rtc drop malformed candidate error=%s", e)
            return
        await pc.addIceCandidate(cand)

    def set_muted(self, muted: bool) -> None:
        self._muted = muted
        if self._local is not None:
            self._local.set_muted(muted)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        local, self._local = self._local, None
        sink, self._remote_sink = self._remote_sink, None
        pc, self._pc = self._pc, None
        try:
            if local is not None:
                local.close()
            if sink is not None:
                await sink.stop()
        finally:
            if pc is not None:
                await pc.close()
        logger.debug("rtc endpoint closed")

    def _require_pc(self) -> RTCPeerConnection:
        if self._pc is None:
            raise RuntimeError("connection not created")
        return self._pc

    def _local_description(self) -> DescriptionDict:
        pc = self._require_pc()
        assert pc.localDescription is not None
        return {"type": pc.localDescription.type, "sdp": pc.localDescription.sdp}
