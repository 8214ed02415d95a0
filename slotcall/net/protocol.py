"""Signal protocol helpers.

Every signal is one JSON object stored in the shared mailbox slot:

	{"type": "offer", "from": "X", "to": "Y", "data": {...}, "id": 17}

The empty object `{}` is the "clear" signal: nothing is pending.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, TypedDict


# Signal kinds
OFFER = "offer"
ANSWER = "answer"
CANDIDATE = "candidate"
HANGUP = "hangup"
CLEAR = "clear"

SIGNAL_KINDS = frozenset({OFFER, ANSWER, CANDIDATE, HANGUP})


class SessionDescriptionDict(TypedDict):
	type: str
	sdp: str


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


class SignalDecodeError(ValueError):
	"""Mailbox content is not a valid signal."""


@dataclass(frozen=True)
class Signal:
	kind: str
	from_peer: str = ""
	to_peer: str = ""
	payload: Any = None
	sequence: int = 0

	@property
	def is_clear(self) -> bool:
		return self.kind == CLEAR

	def describe(self) -> str:
		if self.is_clear:
			return "clear"
		return f"{self.kind} from={self.from_peer} to={self.to_peer} seq={self.sequence}"


CLEAR_SIGNAL = Signal(kind=CLEAR)


def make_offer(from_peer: str, to_peer: str, sdp: str, sequence: int) -> Signal:
	return Signal(OFFER, from_peer, to_peer, {"type": OFFER, "sdp": sdp}, sequence)


def make_answer(from_peer: str, to_peer: str, sdp: str, sequence: int) -> Signal:
	return Signal(ANSWER, from_peer, to_peer, {"type": ANSWER, "sdp": sdp}, sequence)


def make_candidate(from_peer: str, to_peer: str, candidate: IceCandidateDict, sequence: int) -> Signal:
	return Signal(CANDIDATE, from_peer, to_peer, dict(candidate), sequence)


def make_hangup(from_peer: str, to_peer: str, sequence: int) -> Signal:
	return Signal(HANGUP, from_peer, to_peer, None, sequence)


def encode_signal(signal: Signal) -> str:
	if signal.is_clear:
		return "{}"
	msg: Dict[str, Any] = {
		"type": signal.kind,
		"from": signal.from_peer,
		"to": signal.to_peer,
		"data": signal.payload,
		"id": signal.sequence,
	}
	return json.dumps(msg, separators=(",", ":"), ensure_ascii=False)


def decode_signal(raw: str) -> Signal:
	try:
		msg = json.loads(raw)
	# Deeply nested input exhausts the parser's recursion limit.
	except (TypeError, ValueError, RecursionError) as e:
		raise SignalDecodeError(f"invalid json: {e}") from e

	if not isinstance(msg, dict):
		raise SignalDecodeError("signal is not an object")
	if not msg:
		return CLEAR_SIGNAL

	kind = msg.get("type")
	if kind not in SIGNAL_KINDS:
		raise SignalDecodeError(f"unknown type: {kind!r}")

	from_peer = msg.get("from")
	to_peer = msg.get("to")
	if not isinstance(from_peer, str) or not from_peer:
		raise SignalDecodeError("missing from")
	if not isinstance(to_peer, str) or not to_peer:
		raise SignalDecodeError("missing to")

	sequence = msg.get("id")
	# bool is an int subclass; reject it explicitly.
	if not isinstance(sequence, int) or isinstance(sequence, bool) or sequence <= 0:
		raise SignalDecodeError(f"invalid id: {sequence!r}")

	payload = msg.get("data")
	_check_payload(kind, payload)
	return Signal(kind, from_peer, to_peer, payload, sequence)


def _check_payload(kind: str, payload: Any) -> None:
	if kind in (OFFER, ANSWER):
		if not isinstance(payload, dict):
			raise SignalDecodeError(f"{kind} without session description")
		if payload.get("type") != kind or not isinstance(payload.get("sdp"), str):
			raise SignalDecodeError(f"{kind} with malformed session description")
		return

	if kind == CANDIDATE:
		if not isinstance(payload, dict) or not isinstance(payload.get("candidate"), str):
			raise SignalDecodeError("candidate without candidate line")
		mline = payload.get("sdpMLineIndex")
		if mline is not None and (not isinstance(mline, int) or isinstance(mline, bool)):
			raise SignalDecodeError("candidate with invalid sdpMLineIndex")
		return

	if payload is not None:
		raise SignalDecodeError("hangup carries no data")
