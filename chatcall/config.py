from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional


DEFAULT_ICE_SERVERS = (
	"stun:stun.l.google.com:19302",
	"stun:stun1.l.google.com:19302",
	"stun:stun2.l.google.com:19302",
)

AUDIO = "audio"
VIDEO = "video"


def _env_float(name: str, default: float) -> float:
	v = os.environ.get(name)
	if v is None:
		return default
	try:
		return float(v)
	except ValueError:
		return default


def _env_list(name: str, default: tuple[str, ...]) -> list[str]:
	v = os.environ.get(name, "").strip()
	if not v:
		return list(default)
	return [item.strip() for item in v.split(",") if item.strip()]


@dataclass
class CallConfig:
	"""Tunables for call setup.

	`offer_settle_sec` is the pause between subscription confirmation and
	the Initiator's Offer; `offer_retry_sec` is the pause before the single
	Offer retry when nobody was listening.
	"""

	relay_url: str = "ws://127.0.0.1:8766/ws"
	ice_servers: list[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
	call_type: str = AUDIO
	offer_settle_sec: float = 1.0
	offer_retry_sec: float = 1.0
	ack_timeout_sec: float = 5.0
	audio_backend: Optional[str] = None
	audio_device: Optional[str] = None

	@classmethod
	def from_env(cls) -> "CallConfig":
		call_type = os.environ.get("CHATCALL_CALL_TYPE", AUDIO).strip().casefold()
		return cls(
			relay_url=os.environ.get("CHATCALL_RELAY_URL", cls.relay_url),
			ice_servers=_env_list("CHATCALL_ICE_SERVERS", DEFAULT_ICE_SERVERS),
			call_type=VIDEO if call_type == VIDEO else AUDIO,
			offer_settle_sec=_env_float("CHATCALL_OFFER_SETTLE_SEC", cls.offer_settle_sec),
			offer_retry_sec=_env_float("CHATCALL_OFFER_RETRY_SEC", cls.offer_retry_sec),
			ack_timeout_sec=_env_float("CHATCALL_ACK_TIMEOUT_SEC", cls.ack_timeout_sec),
			audio_backend=os.environ.get("CHATCALL_AUDIO_BACKEND") or None,
			audio_device=os.environ.get("CHATCALL_AUDIO_DEVICE") or None,
		)
