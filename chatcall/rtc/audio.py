"""Local capture and remote playback for aiortc.

- Open local capture (microphone, optionally camera) for one call.
- Let outbound audio be muted without renegotiation.
- Play the peer's audio locally, or drain it when no output opens.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass, field
from fractions import Fraction
from queue import Empty, Queue
from typing import Any, List, Optional, Tuple, cast

import av
import numpy as np
from av.error import FFmpegError
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

from ..config import VIDEO
from ..errors import MediaAccessDenied

try:
	import sounddevice as sd  # type: ignore
except OSError:  # pragma: no cover
	# PortAudio shared library missing; ffmpeg capture still works.
	sd = None  # type: ignore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioDevice:
	"""A selectable audio device.

	`backend` matches the ffmpeg/aiortc format string (e.g. "pulse", "alsa"),
	or "sounddevice" for PortAudio capture.
	`device` is the device name passed to MediaPlayer/MediaRecorder.
	"""

	backend: str
	device: Any
	label: str = ""


@dataclass(frozen=True)
class CaptureConstraints:
	"""Fixed capture settings for one call type."""

	audio: bool = True
	video: bool = False
	sample_rate: int = 48000
	channels: int = 1
	video_size: str = "640x480"
	framerate: int = 30

	@classmethod
	def for_call_type(cls, call_type: str) -> "CaptureConstraints":
		return cls(video=call_type == VIDEO)


def _is_windows() -> bool:
	return sys.platform.startswith("win")


class PortAudioCaptureTrack(MediaStreamTrack):
	"""Microphone capture through sounddevice (PortAudio).

	Used on Windows, where ffmpeg's dshow input cannot pick devices by the
	names sounddevice reports.
	"""

	kind = "audio"

	def __init__(self, constraints: CaptureConstraints, device: Any = None, block: int = 960):
		super().__init__()
		if sd is None:
			raise RuntimeError("PortAudio library not found")
		self._rate = constraints.sample_rate
		self._layout = "mono" if constraints.channels == 1 else "stereo"
		self._block_shape = (block, constraints.channels)
		self._blocks: Queue[np.ndarray] = Queue(maxsize=50)
		self._pts = 0
		self._stream = sd.InputStream(
			samplerate=self._rate,
			channels=constraints.channels,
			dtype="int16",
			blocksize=block,
			device=device,
			callback=self._on_block,
		)
		self._stream.start()
		logger.info("capture portaudio device=%s rate=%s layout=%s", device, self._rate, self._layout)

	def _on_block(self, indata, frames, time, status) -> None:  # noqa: ANN001
		# Runs on the PortAudio thread; a full queue means the call fell behind.
		if not self._blocks.full():
			self._blocks.put_nowait(indata.copy())

	async def recv(self):  # type: ignore[override]
		if self.readyState != "live":
			raise MediaStreamError

		block = await asyncio.get_running_loop().run_in_executor(None, self._next_block)
		# Packed s16 wants one row of interleaved samples.
		frame = av.AudioFrame.from_ndarray(block.reshape(1, -1), format="s16", layout=self._layout)
		frame.sample_rate = self._rate
		frame.time_base = Fraction(1, self._rate)
		frame.pts = self._pts
		self._pts += block.shape[0]
		return frame

	def _next_block(self) -> np.ndarray:
		try:
			return self._blocks.get(timeout=1.0)
		except Empty:
			return np.zeros(self._block_shape, dtype=np.int16)

	def stop(self) -> None:  # type: ignore[override]
		stream, self._stream = self._stream, None
		try:
			if stream is not None:
				stream.stop()
				stream.close()
		except sd.PortAudioError as e:
			logger.debug("capture portaudio close failed: %s", e)
		finally:
			super().stop()


class MuteableAudioTrack(MediaStreamTrack):
	"""Pass-through audio track that sends silence while muted.

	aiortc tracks have no `enabled` flag, so muting swaps each frame for a
	zeroed frame of the same shape. The peer hears silence; nothing is
	renegotiated and nothing is signaled.
	"""

	kind = "audio"

	def __init__(self, source: MediaStreamTrack):
		super().__init__()
		self._source = source
		self.muted = False

	async def recv(self):  # type: ignore[override]
		frame = await self._source.recv()
		if not self.muted or not isinstance(frame, av.AudioFrame):
			return frame
		return self._silence_like(cast(av.AudioFrame, frame))

	def stop(self) -> None:  # type: ignore[override]
		try:
			self._source.stop()
		finally:
			super().stop()

	@staticmethod
	def _silence_like(frame: av.AudioFrame) -> av.AudioFrame:
		silent = av.AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
		for plane in silent.planes:
			plane.update(bytes(plane.buffer_size))
		silent.sample_rate = frame.sample_rate
		silent.pts = frame.pts
		silent.time_base = frame.time_base
		return silent


def _ffmpeg_audio_devices(preferred: Optional[AudioDevice], capture: bool) -> List[Tuple[Any, str]]:
	"""(device, format) pairs to try, preferred first."""
	devices: List[Tuple[Any, str]] = []
	if preferred is not None and preferred.backend != "sounddevice":
		devices.append((preferred.device, preferred.backend))
	if sys.platform == "darwin":
		if capture:
			devices.append((":default", "avfoundation"))
	elif not _is_windows():
		devices += [("default", "pulse"), ("default", "alsa")]
	return devices


def _open_microphone(preferred: Optional[AudioDevice]) -> Tuple[Optional[MediaPlayer], Optional[str]]:
	for device, fmt in _ffmpeg_audio_devices(preferred, capture=True):
		try:
			return MediaPlayer(device, format=fmt), fmt
		except (FFmpegError, OSError) as e:
			logger.debug("capture microphone unavailable format=%s device=%s error=%s", fmt, device, e)
	return None, None


def _open_camera(constraints: CaptureConstraints) -> Optional[MediaPlayer]:
	if sys.platform == "darwin":
		device, fmt = "default:none", "avfoundation"
	elif _is_windows():
		device, fmt = "video=Integrated Camera", "dshow"
	else:
		device, fmt = "/dev/video0", "v4l2"
	options = {"video_size": constraints.video_size, "framerate": str(constraints.framerate)}
	try:
		return MediaPlayer(device, format=fmt, options=options)
	except (FFmpegError, OSError) as e:
		logger.info("capture camera unavailable format=%s device=%s error=%s", fmt, device, e)
		return None


@dataclass
class LocalMedia:
	"""Owns the capture players so their tracks stay alive."""

	audio: Optional[MuteableAudioTrack] = None
	video: Optional[MediaStreamTrack] = None
	players: List[MediaPlayer] = field(default_factory=list)
	backend: Optional[str] = None

	@property
	def tracks(self) -> List[MediaStreamTrack]:
		return [t for t in (self.audio, self.video) if t is not None]

	@classmethod
	def open(cls, constraints: CaptureConstraints, preferred_input: Optional[AudioDevice] = None) -> "LocalMedia":
		"""Blocking; opens every track `constraints` asks for or none at all."""
		media = cls()
		try:
			media._open_audio(constraints, preferred_input)
			if constraints.video:
				player = _open_camera(constraints)
				if player is None or player.video is None:
					raise MediaAccessDenied("camera unavailable")
				media.players.append(player)
				media.video = player.video
		except BaseException:
			media.close()
			raise
		logger.info("local media backend=%s tracks=%s", media.backend, [t.kind for t in media.tracks])
		return media

	def _open_audio(self, constraints: CaptureConstraints, preferred: Optional[AudioDevice]) -> None:
		if _is_windows() and sd is not None:
			device = None
			if preferred is not None and preferred.backend == "sounddevice" and preferred.device != "default":
				device = preferred.device
			try:
				self.audio = MuteableAudioTrack(PortAudioCaptureTrack(constraints, device))
				self.backend = "sounddevice"
				return
			except (RuntimeError, sd.PortAudioError) as e:
				logger.warning("capture portaudio unavailable, trying ffmpeg: %s", e)

		player, fmt = _open_microphone(preferred)
		if player is None or player.audio is None:
			raise MediaAccessDenied("microphone unavailable")
		self.players.append(player)
		self.audio = MuteableAudioTrack(player.audio)
		self.backend = fmt

	def set_muted(self, muted: bool) -> None:
		if self.audio is not None:
			self.audio.muted = muted

	def close(self) -> None:
		"""Stop every capture track and the ffmpeg players behind them."""
		tracks = self.tracks
		players = self.players
		self.audio = None
		self.video = None
		self.players = []
		# A player track stop() also shuts the ffmpeg worker once its last track is gone.
		for t in tracks:
			t.stop()
		if players:
			logger.debug("local media released players=%s", len(players))


class RemoteAudioSink:
	"""Plays the peer's audio on a local output, or drains it when none opens."""

	def __init__(self, output: Optional[AudioDevice] = None):
		self.output = output
		self._recorder: Optional[Any] = None

	async def start(self, track: MediaStreamTrack) -> None:
		if self._recorder is not None:
			return
		recorder, where = self._open_output()
		recorder.addTrack(track)
		await recorder.start()
		self._recorder = recorder
		logger.info("playback remote %s on %s", track.kind, where)

	async def stop(self) -> None:
		recorder, self._recorder = self._recorder, None
		if recorder is not None:
			await recorder.stop()

	def _open_output(self) -> Tuple[Any, str]:
		for device, fmt in _ffmpeg_audio_devices(self.output, capture=False):
			try:
				return MediaRecorder(device, format=fmt), f"{fmt}:{device}"
			except (FFmpegError, OSError, ValueError) as e:
				logger.debug("playback output unavailable format=%s error=%s", fmt, e)
		# Without a consumer the remote track would never be read.
		return MediaBlackhole(), "blackhole"
