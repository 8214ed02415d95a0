from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pytest

from slotcall.config import CallConfig
from slotcall.net.mailbox import Mailbox
from slotcall.net.sequence import SequenceCounter
from slotcall.peer import CallPeer
from slotcall.rtc.call_manager import CallCallbacks, CallPhase
from slotcall.rtc.media import LocalMedia, MediaAcquisitionError
from slotcall.rtc.session import SessionCallbacks


class FakeLocalMedia(LocalMedia):
    def __init__(self) -> None:
        super().__init__(label="fake")
        self.closed = False
        self.switches: List[Dict[str, bool]] = []

    def set_enabled(self, *, audio: bool, video: bool) -> None:
        self.switches.append({"audio": audio, "video": video})

    def close(self) -> None:
        self.closed = True


class FakeMediaSession:
    """Stands in for the aiortc-backed MediaSession."""

    def __init__(self, peer_id: str, callbacks: SessionCallbacks):
        self.peer_id = peer_id
        self.callbacks = callbacks
        self.local_media: Optional[LocalMedia] = None
        self.remote_description: Optional[Dict[str, Any]] = None
        self.candidates: List[Dict[str, Any]] = []
        self.closed = False

    def add_local_media(self, media: LocalMedia) -> None:
        self.local_media = media

    async def create_offer(self) -> Dict[str, Any]:
        return {"type": "offer", "sdp": f"v=0 offer for {self.peer_id}"}

    async def accept_offer(self, offer: Dict[str, Any]) -> Dict[str, Any]:
        self.remote_description = offer
        return {"type": "answer", "sdp": f"v=0 answer for {self.peer_id}"}

    async def apply_answer(self, answer: Dict[str, Any]) -> None:
        self.remote_description = answer

    async def add_ice_candidate(self, candidate: Any) -> None:
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True


class MediaStub:
    """Media acquirer: hands out FakeLocalMedia, or fails like a denied prompt."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.acquired: List[FakeLocalMedia] = []
        # When set, acquisition blocks until the event fires.
        self.release: Optional[asyncio.Event] = None

    async def __call__(self) -> LocalMedia:
        if self.release is not None:
            await self.release.wait()
        if self.fail:
            raise MediaAcquisitionError("permission denied")
        media = FakeLocalMedia()
        self.acquired.append(media)
        return media


@dataclass
class PeerHarness:
    peer: CallPeer
    media: MediaStub
    sessions: List[FakeMediaSession]
    phases: List[CallPhase] = field(default_factory=list)
    incoming: List[str] = field(default_factory=list)

    @property
    def manager(self):
        return self.peer.manager

    @property
    def phase(self) -> CallPhase:
        return self.peer.phase

    @property
    def session(self) -> FakeMediaSession:
        return self.sessions[-1]

    async def start(self) -> None:
        # The poller is ticked by hand so tests stay deterministic.
        await self.manager.start()

    async def stop(self) -> None:
        await self.manager.stop()

    async def poll(self) -> bool:
        dispatched = await self.peer.poller.tick()
        await self.manager.settle()
        return dispatched


@pytest.fixture()
def make_peer() -> Callable[..., PeerHarness]:
    def _make(
        peer_id: str,
        mailbox: Mailbox,
        *,
        start: int = 0,
        fail_media: bool = False,
        clear_delay: float = 0.05,
    ) -> PeerHarness:
        sessions: List[FakeMediaSession] = []
        media = MediaStub(fail=fail_media)

        def factory(remote: str, callbacks: SessionCallbacks) -> FakeMediaSession:
            s = FakeMediaSession(remote, callbacks)
            sessions.append(s)
            return s

        harness: Optional[PeerHarness] = None

        async def on_phase(phase: CallPhase, remote: Optional[str]) -> None:
            assert harness is not None
            harness.phases.append(phase)

        async def on_incoming_call(remote: str) -> None:
            assert harness is not None
            harness.incoming.append(remote)

        cfg = CallConfig(peer_id=peer_id, mailbox_url="memory://tests", poll_interval=0.01, clear_delay=clear_delay)
        peer = CallPeer(
            cfg,
            mailbox=mailbox,
            acquire_media=media,
            session_factory=factory,
            counter=SequenceCounter(start),
            callbacks=CallCallbacks(on_phase=on_phase, on_incoming_call=on_incoming_call),
        )
        harness = PeerHarness(peer=peer, media=media, sessions=sessions)
        return harness

    return _make
