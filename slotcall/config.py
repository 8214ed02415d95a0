from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer


DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]


def _env_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_truthy(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.strip().casefold() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: List[str]) -> List[str]:
    v = os.environ.get(name)
    if v is None:
        return list(default)
    return [s.strip() for s in v.split(",") if s.strip()]


def default_mailbox_url() -> str:
    return str(Path(tempfile.gettempdir()) / "slotcall-signal.json")


@dataclass
class MediaConfig:
    """Which capture devices to open.

    `*_format` is the ffmpeg input format (e.g. "v4l2", "pulse", "alsa",
    "avfoundation"); `*_device` the device name passed to MediaPlayer.
    `media_file` replaces both devices with a looping file.
    """

    audio: bool = True
    video: bool = True
    audio_device: Optional[str] = None
    audio_format: Optional[str] = None
    video_device: Optional[str] = None
    video_format: Optional[str] = None
    video_size: str = "640x480"
    media_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "MediaConfig":
        return cls(
            audio=_env_truthy("SLOTCALL_AUDIO", True),
            video=_env_truthy("SLOTCALL_VIDEO", True),
            audio_device=os.environ.get("SLOTCALL_AUDIO_DEVICE") or None,
            audio_format=os.environ.get("SLOTCALL_AUDIO_FORMAT") or None,
            video_device=os.environ.get("SLOTCALL_VIDEO_DEVICE") or None,
            video_format=os.environ.get("SLOTCALL_VIDEO_FORMAT") or None,
            video_size=os.environ.get("SLOTCALL_VIDEO_SIZE") or cls.video_size,
            media_file=os.environ.get("SLOTCALL_MEDIA_FILE") or None,
        )


@dataclass
class CallConfig:
    peer_id: str
    mailbox_url: str = field(default_factory=default_mailbox_url)
    # Signaling latency vs. mailbox read volume.
    poll_interval: float = 1.0
    # Delay between a hangup and the clear that follows it.
    clear_delay: float = 0.5
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    media: MediaConfig = field(default_factory=MediaConfig)
    record_to: Optional[str] = None

    @classmethod
    def from_env(cls, peer_id: str) -> "CallConfig":
        return cls(
            peer_id=peer_id,
            mailbox_url=os.environ.get("SLOTCALL_MAILBOX") or default_mailbox_url(),
            poll_interval=_env_float("SLOTCALL_POLL_INTERVAL", cls.poll_interval),
            clear_delay=_env_float("SLOTCALL_CLEAR_DELAY", cls.clear_delay),
            ice_servers=_env_list("SLOTCALL_ICE_SERVERS", DEFAULT_ICE_SERVERS),
            media=MediaConfig.from_env(),
            record_to=os.environ.get("SLOTCALL_RECORD") or None,
        )

    def rtc_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])
