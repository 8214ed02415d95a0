"""Single-slot, last-write-wins mailbox backends.

A mailbox holds at most one raw signal. `write()` replaces whatever is stored
and the new value is what every reader (the writer included) sees on its next
`read()`. There is no queue: two writes before a read lose the first one.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable
from urllib.parse import urlparse

import redis.asyncio as aioredis
import websockets
from redis.exceptions import RedisError
from websockets.exceptions import WebSocketException


logger = logging.getLogger(__name__)


DEFAULT_REDIS_KEY = "slotcall:signal"


class MailboxError(Exception):
	"""The backing store could not be read or written."""


@runtime_checkable
class Mailbox(Protocol):
	"""What peers need from the shared slot.

	Any object with these coroutines works; the backends below also inherit
	the no-op `close()`.
	"""

	async def write(self, raw: str) -> None:
		...

	async def read(self) -> Optional[str]:
		...

	async def close(self) -> None:
		return None


class MemoryMailbox(Mailbox):
	"""In-process cell, shared by handing the same instance to several peers."""

	def __init__(self, value: Optional[str] = None):
		self._value = value
		self.history: List[str] = []

	@property
	def value(self) -> Optional[str]:
		return self._value

	async def write(self, raw: str) -> None:
		self._value = raw
		self.history.append(raw)

	async def read(self) -> Optional[str]:
		return self._value


_memory_slots: Dict[str, MemoryMailbox] = {}


class FileMailbox(Mailbox):
	"""A file on a shared filesystem; writes are atomic renames."""

	def __init__(self, path: os.PathLike | str):
		self.path = Path(path)

	async def write(self, raw: str) -> None:
		await asyncio.to_thread(self._write_sync, raw)

	async def read(self) -> Optional[str]:
		return await asyncio.to_thread(self._read_sync)

	def _write_sync(self, raw: str) -> None:
		try:
			self.path.parent.mkdir(parents=True, exist_ok=True)
			fd, tmp = tempfile.mkstemp(prefix=".slot-", dir=str(self.path.parent))
			try:
				with os.fdopen(fd, "w", encoding="utf-8") as f:
					f.write(raw)
				os.replace(tmp, self.path)
			except BaseException:
				try:
					os.unlink(tmp)
				except OSError:
					pass
				raise
		except OSError as e:
			raise MailboxError(f"write {self.path} failed: {e}") from e

	def _read_sync(self) -> Optional[str]:
		try:
			raw = self.path.read_text(encoding="utf-8")
		except FileNotFoundError:
			return None
		except (OSError, UnicodeDecodeError) as e:
			raise MailboxError(f"read {self.path} failed: {e}") from e
		return raw if raw.strip() else None


class RedisMailbox(Mailbox):
	"""One key in a Redis instance."""

	def __init__(self, client: Any, key: str = DEFAULT_REDIS_KEY):
		self._client = client
		self.key = key

	@classmethod
	def from_url(cls, url: str, key: str = DEFAULT_REDIS_KEY) -> "RedisMailbox":
		return cls(aioredis.from_url(url), key=key)

	async def write(self, raw: str) -> None:
		try:
			await self._client.set(self.key, raw)
		except RedisError as e:
			raise MailboxError(f"redis set {self.key} failed: {e}") from e

	async def read(self) -> Optional[str]:
		try:
			value = await self._client.get(self.key)
		except RedisError as e:
			raise MailboxError(f"redis get {self.key} failed: {e}") from e
		if value is None:
			return None
		if isinstance(value, bytes):
			try:
				value = value.decode("utf-8")
			except UnicodeDecodeError as e:
				raise MailboxError(f"redis key {self.key} is not utf-8") from e
		return value or None

	async def close(self) -> None:
		await self._client.aclose()


class WebSocketMailbox(Mailbox):
	"""Client for the slot hosted by `slotcall relay`.

	Requests are `{"op": "get"}` and `{"op": "put", "value": ...}`; the relay
	answers each with exactly one message, so one request is in flight at a
	time.
	"""

	def __init__(self, url: str):
		self.url = url
		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._lock = asyncio.Lock()

	async def write(self, raw: str) -> None:
		await self._request({"op": "put", "value": raw})

	async def read(self) -> Optional[str]:
		reply = await self._request({"op": "get"})
		value = reply.get("value")
		if value is not None and not isinstance(value, str):
			raise MailboxError("relay returned a non-string value")
		return value or None

	async def close(self) -> None:
		async with self._lock:
			await self._drop()

	async def _request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
		async with self._lock:
			try:
				if self._ws is None:
					logger.info("mailbox relay connect url=%s", self.url)
					self._ws = await websockets.connect(self.url)
				await self._ws.send(json.dumps(payload, separators=(",", ":")))
				raw = await self._ws.recv()
			except (OSError, WebSocketException) as e:
				await self._drop()
				raise MailboxError(f"relay {self.url} unavailable: {e}") from e

		try:
			reply = json.loads(raw)
		except json.JSONDecodeError as e:
			raise MailboxError("relay sent invalid json") from e
		if not isinstance(reply, dict) or reply.get("op") == "error":
			raise MailboxError(f"relay error: {reply!r}")
		return reply

	async def _drop(self) -> None:
		ws, self._ws = self._ws, None
		if ws is not None:
			try:
				await ws.close()
			except (OSError, WebSocketException):
				pass


def open_mailbox(url: str) -> Mailbox:
	"""Build a mailbox from a URL.

	- `memory://name`: process-local slot, shared by name
	- `file:///path/to/slot.json` or a plain path
	- `redis://host:6379/0` (key from the `key` query parameter, if any)
	- `ws://host:port/` for a `slotcall relay`
	"""

	parsed = urlparse(url)
	scheme = parsed.scheme.casefold()

	if scheme == "memory":
		name = parsed.netloc or parsed.path or "default"
		return _memory_slots.setdefault(name, MemoryMailbox())

	if scheme in ("redis", "rediss", "unix"):
		# redis passes unknown query parameters to the connection, so take ours out.
		key = DEFAULT_REDIS_KEY
		rest = []
		for part in parsed.query.split("&"):
			k, _, v = part.partition("=")
			if k == "key" and v:
				key = v
			elif part:
				rest.append(part)
		return RedisMailbox.from_url(parsed._replace(query="&".join(rest)).geturl(), key=key)

	if scheme in ("ws", "wss"):
		return WebSocketMailbox(url)

	if scheme == "file":
		return FileMailbox(parsed.path)

	if scheme == "" or len(scheme) == 1:
		# Plain path (a single letter is a Windows drive).
		return FileMailbox(url)

	raise ValueError(f"unsupported mailbox url: {url}")
