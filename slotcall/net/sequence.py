"""Signal sequencing and stale-signal filtering."""

from __future__ import annotations

import time
from typing import Dict

from . import protocol


class SequenceCounter:
	"""Strictly increasing per-process sequence source.

	`from_clock()` seeds the counter from wall-clock milliseconds so a restarted
	process still emits numbers above the ones it sent before; after that the
	counter only ever increments, so clock adjustments cannot make it repeat.
	"""

	def __init__(self, start: int = 0):
		self._last = int(start)

	@classmethod
	def from_clock(cls) -> "SequenceCounter":
		return cls(time.time_ns() // 1_000_000)

	@property
	def last(self) -> int:
		return self._last

	def next(self) -> int:
		self._last += 1
		return self._last


class SequenceGate:
	"""Highest processed sequence per sender for the current call lifetime.

	`end_lifetime()` resets the marks to zero. The highest number seen from
	each sender is kept as a floor for offers, so a stale offer from an ended
	call that shows up again cannot start a new one.
	"""

	def __init__(self) -> None:
		self._marks: Dict[str, int] = {}
		self._offer_floor: Dict[str, int] = {}

	def mark(self, sender: str) -> int:
		return self._marks.get(sender, 0)

	def offer_floor(self, sender: str) -> int:
		return self._offer_floor.get(sender, 0)

	def admits(self, signal: protocol.Signal) -> bool:
		if signal.sequence <= self.mark(signal.from_peer):
			return False
		if signal.kind == protocol.OFFER and signal.sequence <= self.offer_floor(signal.from_peer):
			return False
		return True

	def record(self, signal: protocol.Signal) -> None:
		if signal.sequence > self.mark(signal.from_peer):
			self._marks[signal.from_peer] = signal.sequence

	def end_lifetime(self) -> None:
		for sender, seq in self._marks.items():
			if seq > self._offer_floor.get(sender, 0):
				self._offer_floor[sender] = seq
		self._marks.clear()
