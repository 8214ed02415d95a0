from __future__ import annotations

import asyncio
import logging

import pytest

from slotcall.net import protocol
from slotcall.net.mailbox import MemoryMailbox
from slotcall.net.protocol import decode_signal
from slotcall.net.sequence import SequenceCounter
from slotcall.rtc.call_manager import (
    CallCallbacks,
    CallManager,
    CallPhase,
    CallRole,
    CallStateError,
)
from slotcall.rtc.media import MediaAcquisitionError

from conftest import FakeMediaSession, MediaStub


def _last(box: MemoryMailbox) -> protocol.Signal:
    assert box.value is not None
    return decode_signal(box.value)


def _kinds(box: MemoryMailbox) -> list[str]:
    return [decode_signal(raw).kind for raw in box.history]


async def _connect(make_peer, box: MemoryMailbox):
    x = make_peer("X", box)
    y = make_peer("Y", box, start=1)
    await x.start()
    await y.start()
    await x.peer.start_call("Y")
    await y.poll()
    await y.peer.answer_call()
    await x.poll()
    assert x.phase is CallPhase.IN_CALL
    assert y.phase is CallPhase.IN_CALL
    return x, y


@pytest.mark.asyncio
async def test_offer_rings_the_callee(make_peer) -> None:
    box = MemoryMailbox()
    x = make_peer("X", box)
    y = make_peer("Y", box)
    await x.start()
    await y.start()

    await x.peer.start_call("Y")

    signal = _last(box)
    assert (signal.kind, signal.from_peer, signal.to_peer, signal.sequence) == (protocol.OFFER, "X", "Y", 1)
    assert x.phase is CallPhase.CALLING
    assert x.manager.session.role is CallRole.CALLER

    assert await y.poll()
    assert y.phase is CallPhase.RINGING
    assert y.manager.remote_peer == "X"
    assert y.incoming == ["X"]
    # Ringing does not open devices yet.
    assert y.media.acquired == []

    await x.stop()
    await y.stop()


@pytest.mark.asyncio
async def test_answer_connects_the_caller(make_peer) -> None:
    box = MemoryMailbox()
    x = make_peer("X", box)
    y = make_peer("Y", box, start=1)
    await x.start()
    await y.start()
    await x.peer.start_call("Y")
    await y.poll()

    await y.peer.answer_call()

    signal = _last(box)
    assert (signal.kind, signal.from_peer, signal.to_peer, signal.sequence) == (protocol.ANSWER, "Y", "X", 2)
    assert y.phase is CallPhase.IN_CALL
    assert y.session.remote_description == {"type": "offer", "sdp": "v=0 offer for Y"}

    assert await x.poll()
    assert x.phase is CallPhase.IN_CALL
    assert x.session.remote_description == {"type": "answer", "sdp": "v=0 answer for X"}
    assert x.phases == [CallPhase.CALLING, CallPhase.IN_CALL]

    await x.stop()
    await y.stop()


@pytest.mark.asyncio
async def test_overwritten_candidate_is_silently_lost(make_peer) -> None:
    box = MemoryMailbox()
    x, y = await _connect(make_peer, box)

    first = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
    second = {"candidate": "candidate:2 1 udp 1 10.0.0.1 5001 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
    await x.session.callbacks.on_local_ice("Y", first)
    await x.manager.settle()
    lost = _last(box)
    assert (lost.kind, lost.from_peer, lost.to_peer) == (protocol.CANDIDATE, "X", "Y")

    # Y misses this tick; the next candidate overwrites the slot.
    await x.session.callbacks.on_local_ice("Y", second)
    await x.manager.settle()
    assert _last(box).sequence > lost.sequence

    assert await y.poll()
    assert y.session.candidates == [second]
    assert y.phase is CallPhase.IN_CALL

    await x.stop()
    await y.stop()


@pytest.mark.asyncio
async def test_cancelled_call_cannot_ring_again(make_peer) -> None:
    box = MemoryMailbox()
    x = make_peer("X", box)
    y = make_peer("Y", box)
    await x.start()
    await y.start()
    await x.peer.start_call("Y")
    offer_raw = box.value
    await y.poll()
    assert y.phase is CallPhase.RINGING

    await x.peer.hang_up()

    assert x.phase is CallPhase.IDLE
    assert x.media.acquired[0].closed
    assert x.session.closed
    assert _last(box).kind == protocol.HANGUP

    assert await y.poll()
    assert y.phase is CallPhase.IDLE

    # Stopping flushes the clear that follows the hangup.
    await x.stop()
    assert _kinds(box)[-2:] == [protocol.HANGUP, protocol.CLEAR]

    # The old offer shows up again.
    await box.write(offer_raw)
    assert not await y.poll()
    assert y.phase is CallPhase.IDLE

    await y.stop()


@pytest.mark.asyncio
async def test_replayed_signals_change_nothing(make_peer) -> None:
    box = MemoryMailbox()
    x = make_peer("X", box)
    y = make_peer("Y", box)
    await x.start()
    await y.start()
    await x.peer.start_call("Y")
    offer_raw = box.value
    await y.poll()

    await box.write(offer_raw)
    assert not await y.poll()
    assert y.phase is CallPhase.RINGING
    assert y.manager.session.pending_offer == {"type": "offer", "sdp": "v=0 offer for Y"}

    await x.stop()
    await y.stop()


@pytest.mark.asyncio
async def test_start_call_without_devices_reverts_to_idle(make_peer) -> None:
    box = MemoryMailbox()
    x = make_peer("X", box, fail_media=True)
    await x.start()

    with pytest.raises(MediaAcquisitionError):
        await x.peer.start_call("Y")

    assert x.phase is CallPhase.IDLE
    assert x.manager.remote_peer is None
    assert box.history == []
    assert x.phases == [CallPhase.CALLING, CallPhase.IDLE]

    await x.stop()


@pytest.mark.asyncio
async def test_answer_without_devices_declines(make_peer) -> None:
    box = MemoryMailbox()
    x = make_peer("X", box)
    y = make_peer("Y", box, fail_media=True)
    await x.start()
    await y.start()
    await x.peer.start_call("Y")
    await y.poll()

    with pytest.raises(MediaAcquisitionError):
        await y.peer.answer_call()

    assert y.phase is CallPhase.IDLE
    decline = _last(box)
    assert (decline.kind, decline.from_peer, decline.to_peer) == (protocol.HANGUP, "Y", "X")

    assert await x.poll()
    assert x.phase is CallPhase.IDLE

    await x.stop()
    await y.stop()


@pytest.mark.asyncio
async def test_hang_up_reaches_idle_from_every_phase(make_peer) -> None:
    box = MemoryMailbox()

    # calling
    x = make_peer("X", box)
    await x.start()
    await x.peer.start_call("Y")
    await x.peer.hang_up()
    assert x.phase is CallPhase.IDLE
    await x.stop()

    # ringing (decline)
    y = make_peer("Y", box)
    await y.start()
    await box.write(protocol.encode_signal(protocol.make_offer("Z", "Y", "v=0", 10)))
    await y.poll()
    assert y.phase is CallPhase.RINGING
    await y.peer.hang_up()
    assert y.phase is CallPhase.IDLE
    assert (_last(box).kind, _last(box).to_peer) == (protocol.HANGUP, "Z")
    await y.stop()

    # in call
    box2 = MemoryMailbox()
    a, b = await _connect(make_peer, box2)
    await b.peer.hang_up()
    assert b.phase is CallPhase.IDLE
    assert b.session.closed
    assert await a.poll()
    assert a.phase is CallPhase.IDLE
    assert a.session.closed
    assert a.media.acquired[0].closed
    await a.stop()
    await b.stop()


@pytest.mark.asyncio
async def test_hang_up_while_acquiring_media(make_peer) -> None:
    box = MemoryMailbox()
    x = make_peer("X", box)
    x.media.release = asyncio.Event()
    await x.start()

    calling = asyncio.create_task(x.peer.start_call("Y"))
    for _ in range(5):
        await asyncio.sleep(0)
    assert x.phase is CallPhase.CALLING

    await x.peer.hang_up()
    assert x.phase is CallPhase.IDLE

    x.media.release.set()
    with pytest.raises(CallStateError):
        await calling
    await x.manager.settle()

    assert x.media.acquired[0].closed
    assert x.sessions == []
    assert x.phase is CallPhase.IDLE

    await x.stop()


@pytest.mark.asyncio
async def test_only_call_and_offer_leave_idle(make_peer) -> None:
    box = MemoryMailbox()
    y = make_peer("Y", box)
    await y.start()

    await y.peer.hang_up()
    for signal in (
        protocol.make_answer("X", "Y", "v=0", 1),
        protocol.make_candidate("X", "Y", {"candidate": "c"}, 2),
        protocol.make_hangup("X", "Y", 3),
    ):
        await y.manager.deliver(signal)
        await y.manager.settle()
        assert y.phase is CallPhase.IDLE

    with pytest.raises(CallStateError):
        await y.peer.answer_call()
    assert y.phase is CallPhase.IDLE
    assert box.history == []

    await y.stop()


@pytest.mark.asyncio
async def test_unexpected_answer_is_logged_not_fatal(make_peer, caplog: pytest.LogCaptureFixture) -> None:
    box = MemoryMailbox()
    y = make_peer("Y", box)
    await y.start()

    with caplog.at_level(logging.WARNING, logger="slotcall.rtc.call_manager"):
        await y.manager.deliver(protocol.make_answer("X", "Y", "v=0", 1))
        await y.manager.settle()

    assert y.phase is CallPhase.IDLE
    assert any("protocol violation" in r.getMessage() for r in caplog.records)
    await y.stop()


@pytest.mark.asyncio
async def test_invalid_local_actions(make_peer) -> None:
    box = MemoryMailbox()
    x = make_peer("X", box)
    await x.start()

    with pytest.raises(CallStateError):
        await x.peer.start_call("X")
    with pytest.raises(CallStateError):
        await x.peer.start_call("")

    await x.peer.start_call("Y")
    with pytest.raises(CallStateError):
        await x.peer.start_call("Z")
    with pytest.raises(CallStateError):
        await x.peer.answer_call()
    assert x.phase is CallPhase.CALLING
    assert x.manager.remote_peer == "Y"

    await x.stop()


@pytest.mark.asyncio
async def test_candidate_before_answering_is_ignored(make_peer) -> None:
    box = MemoryMailbox()
    y = make_peer("Y", box)
    await y.start()
    await y.manager.deliver(protocol.make_offer("X", "Y", "v=0", 1))
    await y.manager.deliver(protocol.make_candidate("X", "Y", {"candidate": "c"}, 2))
    await y.manager.settle()

    assert y.phase is CallPhase.RINGING
    assert y.sessions == []

    await y.stop()


@pytest.mark.asyncio
async def test_busy_peer_rejects_second_caller(make_peer) -> None:
    box = MemoryMailbox()
    x, y = await _connect(make_peer, box)
    z = make_peer("Z", box)
    await z.start()

    await z.peer.start_call("X")
    assert await x.poll()

    assert x.phase is CallPhase.IN_CALL
    assert x.manager.remote_peer == "Y"
    busy = _last(box)
    assert (busy.kind, busy.from_peer, busy.to_peer) == (protocol.HANGUP, "X", "Z")

    assert await z.poll()
    assert z.phase is CallPhase.IDLE
    # Y is not bothered by a hangup between X and Z.
    assert not await y.poll()
    assert y.phase is CallPhase.IN_CALL

    for h in (x, y, z):
        await h.stop()


@pytest.mark.asyncio
async def test_glare_smaller_id_stays_caller(make_peer) -> None:
    box = MemoryMailbox()
    a = make_peer("A", box)
    b = make_peer("B", box, start=100)
    await a.start()
    await b.start()

    await a.peer.start_call("B")
    await b.peer.start_call("A")

    # A sees B's offer: it keeps its own call and writes its offer again.
    assert await a.poll()
    assert a.phase is CallPhase.CALLING
    resent = _last(box)
    assert (resent.kind, resent.from_peer, resent.to_peer, resent.sequence) == (protocol.OFFER, "A", "B", 2)

    # B yields and answers with the media it already holds.
    assert await b.poll()
    assert b.phase is CallPhase.IN_CALL
    assert b.manager.session.role is CallRole.CALLEE
    assert b.sessions[0].closed
    assert len(b.media.acquired) == 1
    assert _last(box).kind == protocol.ANSWER

    assert await a.poll()
    assert a.phase is CallPhase.IN_CALL

    await a.stop()
    await b.stop()


@pytest.mark.asyncio
async def test_connection_failure_ends_call(make_peer) -> None:
    box = MemoryMailbox()
    x, y = await _connect(make_peer, box)

    await x.session.callbacks.on_connection_state("Y", "failed")
    await x.manager.settle()

    assert x.phase is CallPhase.IDLE
    assert _last(box).kind == protocol.HANGUP
    assert await y.poll()
    assert y.phase is CallPhase.IDLE

    await x.stop()
    await y.stop()


@pytest.mark.asyncio
async def test_events_from_a_closed_session_are_dropped(make_peer) -> None:
    box = MemoryMailbox()
    x, y = await _connect(make_peer, box)
    old = x.session
    await x.peer.hang_up()
    await x.manager.settle()
    await old.callbacks.on_local_ice("Y", {"candidate": "c"})
    await old.callbacks.on_connection_state("Y", "failed")
    await x.manager.settle()

    kinds = _kinds(box)
    assert protocol.CANDIDATE not in kinds
    assert kinds.count(protocol.HANGUP) == 1
    await x.stop()
    await y.stop()


@pytest.mark.asyncio
async def test_own_hangup_echo_does_not_end_next_call(make_peer) -> None:
    box = MemoryMailbox()
    x = make_peer("X", box)
    await x.start()
    await x.peer.start_call("Y")
    await x.peer.hang_up()
    echo = next(decode_signal(raw) for raw in box.history if decode_signal(raw).kind == protocol.HANGUP)

    await x.peer.start_call("Y")
    await x.manager.deliver(echo)
    await x.manager.settle()

    assert x.phase is CallPhase.CALLING
    await x.stop()


@pytest.mark.asyncio
async def test_toggles_apply_to_local_media(make_peer) -> None:
    box = MemoryMailbox()
    x, y = await _connect(make_peer, box)
    media = x.media.acquired[0]

    assert await x.peer.toggle_mute() is True
    assert await x.peer.toggle_video() is False
    assert await x.peer.toggle_mute() is False

    assert media.switches[-3:] == [
        {"audio": False, "video": True},
        {"audio": False, "video": False},
        {"audio": True, "video": False},
    ]

    await x.stop()
    await y.stop()


class FakeSink:
    def __init__(self) -> None:
        self.tracks = []
        self.started = False
        self.stopped = False

    async def add(self, track) -> None:
        self.tracks.append(track)

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True


@pytest.mark.asyncio
async def test_remote_track_goes_to_sink() -> None:
    box = MemoryMailbox()
    sessions: list[FakeMediaSession] = []
    sinks: list[FakeSink] = []
    tracks = []

    def factory(remote, callbacks):
        sessions.append(FakeMediaSession(remote, callbacks))
        return sessions[-1]

    def sink_factory():
        sinks.append(FakeSink())
        return sinks[-1]

    async def on_remote_track(peer_id, track):
        tracks.append((peer_id, track))

    manager = CallManager(
        "X",
        box,
        acquire_media=MediaStub(),
        session_factory=factory,
        counter=SequenceCounter(),
        sink_factory=sink_factory,
        clear_delay=0.0,
        callbacks=CallCallbacks(on_remote_track=on_remote_track),
    )
    await manager.start()
    await manager.start_call("Y")

    track = object()
    await sessions[0].callbacks.on_track("Y", track)
    await manager.settle()
    assert sinks[0].tracks == [track]
    assert tracks == [("Y", track)]
    # Frames are consumed once the connection is up.
    assert not sinks[0].started
    await sessions[0].callbacks.on_connection_state("Y", "connected")
    await manager.settle()
    assert sinks[0].started

    await manager.hang_up()
    assert sinks[0].stopped
    await manager.stop()
