"""Call signaling protocol.

Both participants of a chat share one topic (`call-<chat_id>`), so every
message names its sender, its recipient and the call it belongs to.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TypedDict


# Message kinds
OFFER = "offer"
ANSWER = "answer"
CANDIDATE = "candidate"
HANGUP = "hangup"

KINDS = frozenset({OFFER, ANSWER, CANDIDATE, HANGUP})

# Hangup reasons
REASON_BUSY = "busy"
REASON_DECLINED = "declined"


class DescriptionDict(TypedDict):
	type: str
	sdp: str


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


@dataclass(frozen=True)
class ProtocolError(Exception):
	message: str


@dataclass(frozen=True)
class SignalingMessage:
	kind: str
	sender: str
	recipient: str
	call_id: str
	payload: Dict[str, Any] = field(default_factory=dict)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"from": self.sender,
			"to": self.recipient,
			"call_id": self.call_id,
			"kind": self.kind,
			"payload": dict(self.payload),
		}


def topic_for(chat_id: str) -> str:
	return f"call-{chat_id}"


def make_offer(sender: str, recipient: str, call_id: str, description: DescriptionDict) -> SignalingMessage:
	return SignalingMessage(OFFER, sender, recipient, call_id, dict(description))


def make_answer(sender: str, recipient: str, call_id: str, description: DescriptionDict) -> SignalingMessage:
	return SignalingMessage(ANSWER, sender, recipient, call_id, dict(description))


def make_candidate(sender: str, recipient: str, call_id: str, candidate: IceCandidateDict) -> SignalingMessage:
	return SignalingMessage(CANDIDATE, sender, recipient, call_id, dict(candidate))


def make_hangup(sender: str, recipient: str, call_id: str, reason: Optional[str] = None) -> SignalingMessage:
	payload: Dict[str, Any] = {}
	if reason:
		payload["reason"] = reason
	return SignalingMessage(HANGUP, sender, recipient, call_id, payload)


def decode_message(raw: Any) -> SignalingMessage:
	"""Validate a wire dict and turn it into a SignalingMessage."""
	if not isinstance(raw, dict):
		raise ProtocolError("message is not an object")

	kind = raw.get("kind")
	if kind not in KINDS:
		raise ProtocolError(f"unknown kind {kind!r}")

	parts = {}
	for key in ("from", "to", "call_id"):
		value = raw.get(key)
		if not isinstance(value, str) or not value:
			raise ProtocolError(f"missing {key}")
		parts[key] = value

	payload = raw.get("payload") or {}
	if not isinstance(payload, dict):
		raise ProtocolError("payload is not an object")

	if kind in (OFFER, ANSWER):
		if not isinstance(payload.get("sdp"), str) or payload.get("type") != kind:
			raise ProtocolError(f"{kind} without session description")
	elif kind == CANDIDATE:
		if not isinstance(payload.get("candidate"), str):
			raise ProtocolError("candidate without candidate line")

	return SignalingMessage(kind, parts["from"], parts["to"], parts["call_id"], payload)
