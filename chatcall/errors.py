"""Call error taxonomy.

Adapters translate aiortc / websockets failures into these; the session
state machine records them as `last_error` instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ErrorKind(str, Enum):
	MEDIA_ACCESS_DENIED = "media-access-denied"
	SIGNALING_SEND_FAILED = "signaling-send-failed"
	CONNECTIVITY_LOST = "connectivity-lost"
	STALE_SIGNAL = "stale-signal"
	DOUBLE_INVOCATION = "double-invocation"
	INTERNAL = "internal"


_USER_MESSAGES = {
	ErrorKind.MEDIA_ACCESS_DENIED: "Microphone access denied",
	ErrorKind.SIGNALING_SEND_FAILED: "Could not reach the other side",
	ErrorKind.CONNECTIVITY_LOST: "Connection lost",
	ErrorKind.INTERNAL: "Call failed",
}


@dataclass(frozen=True)
class CallError(Exception):
	kind: ErrorKind
	detail: str = ""

	def __str__(self) -> str:
		return f"{self.kind.value}: {self.detail}" if self.detail else self.kind.value

	@property
	def fatal(self) -> bool:
		return self.kind in (ErrorKind.MEDIA_ACCESS_DENIED, ErrorKind.CONNECTIVITY_LOST, ErrorKind.INTERNAL)

	@property
	def user_message(self) -> str:
		"""Short text safe to show; never includes `detail`."""
		return _USER_MESSAGES.get(self.kind, "Call failed")


@dataclass(frozen=True)
class MediaAccessDenied(CallError):
	kind: ErrorKind = field(default=ErrorKind.MEDIA_ACCESS_DENIED, init=False)


@dataclass(frozen=True)
class SignalingSendFailed(CallError):
	kind: ErrorKind = field(default=ErrorKind.SIGNALING_SEND_FAILED, init=False)


@dataclass(frozen=True)
class ConnectivityLost(CallError):
	kind: ErrorKind = field(default=ErrorKind.CONNECTIVITY_LOST, init=False)


@dataclass(frozen=True)
class InternalError(CallError):
	kind: ErrorKind = field(default=ErrorKind.INTERNAL, init=False)


def user_facing_status(error: CallError | None) -> str:
	if error is None:
		return "Call ended"
	return f"{error.user_message}. Call again to retry."
