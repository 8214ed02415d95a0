"""Periodic mailbox reader.

Each tick is a bounded read-decide-dispatch step: read the slot, decode it,
drop anything foreign or stale, hand the rest to `dispatch`. The dispatch
target is expected to enqueue and return; the poller never waits on a call
transition.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from . import protocol
from .mailbox import Mailbox, MailboxError
from .sequence import SequenceGate


logger = logging.getLogger(__name__)


Dispatch = Callable[[protocol.Signal], Awaitable[None]]


def is_addressed_to(signal: protocol.Signal, peer_id: str) -> bool:
	if signal.to_peer == peer_id:
		return True
	# A hangup written under our own identity (e.g. from another client of the
	# same user) ends our call too.
	return signal.kind == protocol.HANGUP and signal.from_peer == peer_id


class SignalPoller:
	def __init__(
		self,
		mailbox: Mailbox,
		peer_id: str,
		dispatch: Dispatch,
		*,
		gate: Optional[SequenceGate] = None,
		interval: float = 1.0,
	):
		self._mailbox = mailbox
		self.peer_id = peer_id
		self._dispatch = dispatch
		self.gate = gate or SequenceGate()
		self.interval = interval

		self._task: Optional[asyncio.Task[None]] = None
		self._last_bad: Optional[str] = None

	@property
	def running(self) -> bool:
		return self._task is not None and not self._task.done()

	def start(self) -> None:
		if self.running:
			return
		logger.info("poller start peer=%s interval=%.3f", self.peer_id, self.interval)
		self._task = asyncio.create_task(self._loop(), name=f"signal-poller-{self.peer_id}")

	async def stop(self) -> None:
		task, self._task = self._task, None
		if task is None:
			return
		task.cancel()
		try:
			await task
		except asyncio.CancelledError:
			pass
		logger.info("poller stopped peer=%s", self.peer_id)

	async def tick(self) -> bool:
		"""Poll once. Returns True if a signal was dispatched."""

		try:
			raw = await self._mailbox.read()
		except MailboxError as e:
			logger.warning("poller read failed: %s", e)
			return False
		if raw is None:
			return False

		try:
			signal = protocol.decode_signal(raw)
		except protocol.SignalDecodeError as e:
			# The slot keeps the same garbage until someone writes; say it once.
			if raw != self._last_bad:
				self._last_bad = raw
				logger.warning("poller ignoring undecodable signal: %s", e)
			return False
		self._last_bad = None

		if signal.is_clear:
			return False
		if not is_addressed_to(signal, self.peer_id):
			return False
		if not self.gate.admits(signal):
			return False

		self.gate.record(signal)
		logger.debug("poller dispatch %s", signal.describe())
		try:
			await self._dispatch(signal)
		except Exception:
			logger.exception("poller dispatch failed signal=%s", signal.describe())
		return True

	async def _loop(self) -> None:
		while True:
			try:
				await self.tick()
			except Exception:
				logger.exception("poller tick failed peer=%s", self.peer_id)
			await asyncio.sleep(self.interval)
