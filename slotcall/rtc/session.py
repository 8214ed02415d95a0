"""One WebRTC connection to the remote peer of the current call."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from aiortc import (
    RTCIceCandidate,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..net.protocol import IceCandidateDict, SessionDescriptionDict
from .media import LocalMedia


logger = logging.getLogger(__name__)


AsyncSessionCallback = Callable[..., Awaitable[None]]


def candidate_to_json(candidate: RTCIceCandidate) -> IceCandidateDict:
    return {
        "candidate": candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def candidate_from_json(obj: Dict[str, Any]) -> RTCIceCandidate:
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    # Browsers prefix the attribute name; aiortc wants the bare value.
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:"):]
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


def _description(desc: RTCSessionDescription) -> SessionDescriptionDict:
    return {"type": desc.type, "sdp": desc.sdp}


@dataclass
class SessionCallbacks:
    on_local_ice: Optional[AsyncSessionCallback] = None  # (peer_id: str, candidate: dict)
    on_track: Optional[AsyncSessionCallback] = None  # (peer_id: str, track)
    on_connection_state: Optional[AsyncSessionCallback] = None  # (peer_id: str, state: str)


class MediaSession:
    """Media session adapter over `RTCPeerConnection`.

    aiortc gathers candidates before `setLocalDescription` returns, so the
    offer and answer already carry them; trickled candidates are extra paths
    and losing some of them is harmless.
    """

    def __init__(
        self,
        peer_id: str,
        callbacks: Optional[SessionCallbacks] = None,
        rtc_config: Optional[RTCConfiguration] = None,
    ):
        self.peer_id = peer_id
        self._callbacks = callbacks or SessionCallbacks()
        self._pc = RTCPeerConnection(configuration=rtc_config)
        self._closed = False

        @self._pc.on("icecandidate")
        async def on_icecandidate(event) -> None:
            candidate = getattr(event, "candidate", event)
            if candidate is None:
                return
            if self._callbacks.on_local_ice:
                await self._callbacks.on_local_ice(self.peer_id, candidate_to_json(candidate))

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = self._pc.connectionState
            logger.info("session peer=%s connectionState=%s", self.peer_id, state)
            if self._callbacks.on_connection_state:
                await self._callbacks.on_connection_state(self.peer_id, state)

        @self._pc.on("track")
        async def on_track(track) -> None:
            logger.info("session peer=%s remote track kind=%s", self.peer_id, track.kind)
            if self._callbacks.on_track:
                await self._callbacks.on_track(self.peer_id, track)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def add_local_media(self, media: LocalMedia) -> None:
        for track in media.tracks:
            self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescriptionDict:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        assert self._pc.localDescription is not None
        return _description(self._pc.localDescription)

    async def accept_offer(self, offer: SessionDescriptionDict) -> SessionDescriptionDict:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type="offer"))
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        assert self._pc.localDescription is not None
        return _description(self._pc.localDescription)

    async def apply_answer(self, answer: SessionDescriptionDict) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type="answer"))

    async def add_ice_candidate(self, candidate_obj: Any) -> None:
        if not isinstance(candidate_obj, dict) or not candidate_obj.get("candidate"):
            return
        if self._pc.remoteDescription is None:
            logger.debug("session peer=%s candidate before remote description dropped", self.peer_id)
            return
        try:
            cand = candidate_from_json(candidate_obj)
        except (ValueError, IndexError) as e:
            logger.debug("session peer=%s bad candidate: %s", self.peer_id, e)
            return
        try:
            await self._pc.addIceCandidate(cand)
        except ValueError as e:
            logger.debug("session peer=%s candidate rejected: %s", self.peer_id, e)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pc.close()
