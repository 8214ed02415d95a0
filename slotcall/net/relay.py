"""WebSocket relay hosting one mailbox slot.

Lets peers on different machines share a slot without a shared filesystem or
Redis. The relay keeps the slot semantics: `put` overwrites, `get` returns the
latest value, nothing is queued or pushed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed


logger = logging.getLogger(__name__)


class MailboxRelay:
	def __init__(self) -> None:
		self._slot: Optional[str] = None
		self.clients = 0

	@property
	def slot(self) -> Optional[str]:
		return self._slot

	def apply(self, raw: Any) -> Dict[str, Any]:
		try:
			msg = json.loads(raw)
		except (TypeError, json.JSONDecodeError):
			return {"op": "error", "error": "invalid-json"}
		if not isinstance(msg, dict):
			return {"op": "error", "error": "invalid-message"}

		op = msg.get("op")
		if op == "get":
			return {"op": "value", "value": self._slot}
		if op == "put":
			value = msg.get("value")
			if value is not None and not isinstance(value, str):
				return {"op": "error", "error": "invalid-value"}
			self._slot = value
			logger.debug("relay put len=%s", len(value or ""))
			return {"op": "ok"}
		return {"op": "error", "error": "unknown-op"}

	async def handle(self, ws) -> None:
		self.clients += 1
		logger.info("relay client connected clients=%s", self.clients)
		try:
			async for raw in ws:
				await ws.send(json.dumps(self.apply(raw), separators=(",", ":")))
		except ConnectionClosed:
			logger.debug("relay client dropped")
		finally:
			self.clients -= 1
			logger.info("relay client disconnected clients=%s", self.clients)


async def serve_relay(host: str, port: int, stop: Optional[asyncio.Event] = None) -> None:
	relay = MailboxRelay()
	stop = stop or asyncio.Event()
	async with websockets.serve(relay.handle, host, port):
		logger.info("relay listening host=%s port=%s", host, port)
		await stop.wait()
	logger.info("relay stopped")
