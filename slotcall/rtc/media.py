"""Local capture and remote playback helpers for aiortc.

- Open camera and microphone (best-effort per platform) as a `LocalMedia`.
- Wrap each local track so it can be muted / blanked without renegotiation.
- Consume remote tracks into a recorder or a blackhole.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from av.error import FFmpegError

from ..config import MediaConfig


logger = logging.getLogger(__name__)


class MediaAcquisitionError(Exception):
	"""Camera and microphone are unavailable or access was denied."""


_OPEN_ERRORS = (FFmpegError, OSError, ValueError)


def _default_video_sources() -> List[Tuple[str, str]]:
	if sys.platform.startswith("linux"):
		return [("/dev/video0", "v4l2")]
	if sys.platform == "darwin":
		return [("default:none", "avfoundation")]
	return []


def _default_audio_sources() -> List[Tuple[str, str]]:
	if sys.platform.startswith("linux"):
		# PulseAudio is typical on desktop Linux, ALSA is the fallback.
		return [("default", "pulse"), ("default", "alsa")]
	if sys.platform == "darwin":
		return [("none:default", "avfoundation")]
	return []


def _try_open(candidates: List[Tuple[str, str]], options: Optional[dict] = None) -> Tuple[Optional[MediaPlayer], Optional[str]]:
	for device, fmt in candidates:
		try:
			return MediaPlayer(device, format=fmt, options=options or {}), f"{fmt}:{device}"
		except _OPEN_ERRORS as e:
			logger.debug("media open failed device=%s format=%s: %s", device, fmt, e)
	return None, None


def _blank_like(frame: Any) -> Any:
	if isinstance(frame, av.AudioFrame):
		silent = av.AudioFrame.from_ndarray(
			np.zeros_like(frame.to_ndarray()),
			format=frame.format.name,
			layout=frame.layout.name,
		)
		silent.sample_rate = frame.sample_rate
	elif isinstance(frame, av.VideoFrame):
		silent = av.VideoFrame.from_ndarray(np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24")
	else:
		return frame
	silent.pts = frame.pts
	silent.time_base = frame.time_base
	return silent


class SwitchableTrack(MediaStreamTrack):
	"""Pass-through track that sends silence / black frames while disabled."""

	def __init__(self, source: MediaStreamTrack):
		super().__init__()
		self.kind = source.kind
		self._source = source
		self.enabled = True

	async def recv(self):  # type: ignore[override]
		frame = await self._source.recv()
		if self.enabled:
			return frame
		return _blank_like(frame)

	def stop(self) -> None:  # type: ignore[override]
		try:
			self._source.stop()
		finally:
			super().stop()


@dataclass
class LocalMedia:
	"""Owns the capture players so their tracks stay alive."""

	players: List[MediaPlayer] = field(default_factory=list)
	audio: Optional[SwitchableTrack] = None
	video: Optional[SwitchableTrack] = None
	label: str = ""

	@property
	def tracks(self) -> List[SwitchableTrack]:
		return [t for t in (self.audio, self.video) if t is not None]

	@classmethod
	def open(cls, config: MediaConfig) -> "LocalMedia":
		"""Open capture devices. Blocking; run it off the event loop."""

		if config.media_file:
			try:
				player = MediaPlayer(config.media_file, loop=True)
			except _OPEN_ERRORS as e:
				raise MediaAcquisitionError(f"cannot open media file {config.media_file}: {e}") from e
			return cls._from_players([player], player.audio, player.video, f"file:{config.media_file}")

		players: List[MediaPlayer] = []
		labels: List[str] = []
		audio_track = video_track = None

		if config.video:
			candidates = _default_video_sources()
			if config.video_device:
				candidates.insert(0, (config.video_device, config.video_format or "v4l2"))
			player, label = _try_open(candidates, {"video_size": config.video_size})
			if player is not None and player.video is not None:
				players.append(player)
				labels.append(label or "")
				video_track = player.video

		if config.audio:
			candidates = _default_audio_sources()
			if config.audio_device:
				candidates.insert(0, (config.audio_device, config.audio_format or "pulse"))
			player, label = _try_open(candidates)
			if player is not None and player.audio is not None:
				players.append(player)
				labels.append(label or "")
				audio_track = player.audio

		if not players:
			raise MediaAcquisitionError("no camera or microphone available")
		return cls._from_players(players, audio_track, video_track, ",".join(labels))

	@classmethod
	def _from_players(cls, players, audio_track, video_track, label: str) -> "LocalMedia":
		media = cls(
			players=list(players),
			audio=SwitchableTrack(audio_track) if audio_track is not None else None,
			video=SwitchableTrack(video_track) if video_track is not None else None,
			label=label,
		)
		logger.info("local media opened source=%s audio=%s video=%s", label, bool(media.audio), bool(media.video))
		return media

	def set_enabled(self, *, audio: bool, video: bool) -> None:
		if self.audio is not None:
			self.audio.enabled = audio
		if self.video is not None:
			self.video.enabled = video

	def close(self) -> None:
		"""Stop tracks; the players' ffmpeg workers exit once their tracks stop."""
		tracks, self.audio, self.video = self.tracks, None, None
		self.players = []
		for t in tracks:
			t.stop()


async def acquire_local_media(config: MediaConfig) -> LocalMedia:
	# Opening a device can block for a while (permission prompts, slow drivers).
	return await asyncio.to_thread(LocalMedia.open, config)


@dataclass
class RemoteMediaSink:
	"""Consumes remote tracks.

	Records to `record_to` when given (any container ffmpeg can write), else
	discards frames so the receive pipeline keeps flowing.
	"""

	record_to: Optional[str] = None
	_recorder: Optional[Any] = None
	_kinds: List[str] = field(default_factory=list)
	_started: bool = False

	async def add(self, track: MediaStreamTrack) -> None:
		if self._recorder is None:
			self._recorder = MediaRecorder(self.record_to) if self.record_to else MediaBlackhole()
			logger.info("remote media sink=%s", self.record_to or "blackhole")
		self._recorder.addTrack(track)
		self._kinds.append(track.kind)
		logger.info("remote media track kind=%s", track.kind)
		if self._started:
			await self._recorder.start()

	async def start(self) -> None:
		"""Start consuming. The recorder needs every stream before it writes a header."""
		if self._started or self._recorder is None:
			return
		self._started = True
		await self._recorder.start()

	@property
	def kinds(self) -> List[str]:
		return list(self._kinds)

	async def stop(self) -> None:
		recorder, self._recorder = self._recorder, None
		self._kinds = []
		self._started = False
		if recorder is not None:
			await recorder.stop()
