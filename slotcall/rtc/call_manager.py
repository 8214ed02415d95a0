"""Call state machine (one call at a time).

`CallManager` owns the `CallSession`. User actions, inbound signals, media
acquisition results and media session events are all queued as events and
handled one at a time by a single task, so no two transitions ever overlap.

    idle --start_call--> calling --answer--> in_call
    idle --offer-------> ringing --answer_call--> in_call
    any  --hang_up / hangup / connection failed--> idle
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, Tuple

from ..net import protocol
from ..net.mailbox import Mailbox, MailboxError
from ..net.sequence import SequenceCounter, SequenceGate
from .media import LocalMedia, MediaAcquisitionError, RemoteMediaSink
from .session import SessionCallbacks


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
MediaAcquirer = Callable[[], Awaitable[LocalMedia]]
SessionFactory = Callable[[str, SessionCallbacks], Any]


class CallPhase(str, enum.Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    IN_CALL = "in_call"


class CallRole(str, enum.Enum):
    NONE = "none"
    CALLER = "caller"
    CALLEE = "callee"


class CallStateError(Exception):
    """A local action that the current phase does not allow."""


class ProtocolViolation(Exception):
    """An inbound signal that the current phase does not expect."""


@dataclass
class CallSession:
    local_peer: str
    phase: CallPhase = CallPhase.IDLE
    role: CallRole = CallRole.NONE
    remote_peer: Optional[str] = None
    pending_offer: Optional[Dict[str, Any]] = None
    local_offer: Optional[Dict[str, Any]] = None
    media: Optional[Any] = None
    media_token: Optional[object] = None
    local_media: Optional[LocalMedia] = None
    sink: Optional[RemoteMediaSink] = None
    acquiring: bool = False
    connected: bool = False
    audio_enabled: bool = True
    video_enabled: bool = True
    generation: int = 0

    @property
    def active(self) -> bool:
        return self.phase is not CallPhase.IDLE

    def reset(self) -> None:
        self.phase = CallPhase.IDLE
        self.role = CallRole.NONE
        self.remote_peer = None
        self.pending_offer = None
        self.local_offer = None
        self.media = None
        self.media_token = None
        self.local_media = None
        self.sink = None
        self.acquiring = False
        self.connected = False
        self.audio_enabled = True
        self.video_enabled = True
        self.generation += 1


@dataclass
class CallCallbacks:
    on_log: Optional[AsyncCallback] = None  # (message: str)
    on_phase: Optional[AsyncCallback] = None  # (phase: CallPhase, remote_peer: str | None)
    on_incoming_call: Optional[AsyncCallback] = None  # (peer_id: str)
    on_remote_track: Optional[AsyncCallback] = None  # (peer_id: str, track)
    on_error: Optional[AsyncCallback] = None  # (error: str)


@dataclass
class _Event:
    kind: str
    args: Tuple[Any, ...] = ()
    future: Optional["asyncio.Future[Any]"] = field(default=None, repr=False)


# Returned by handlers whose caller is answered by a later event.
_DEFERRED = object()


class CallManager:
    def __init__(
        self,
        peer_id: str,
        mailbox: Mailbox,
        *,
        acquire_media: MediaAcquirer,
        session_factory: SessionFactory,
        gate: Optional[SequenceGate] = None,
        counter: Optional[SequenceCounter] = None,
        sink_factory: Optional[Callable[[], RemoteMediaSink]] = None,
        clear_delay: float = 0.5,
        callbacks: Optional[CallCallbacks] = None,
    ):
        self.session = CallSession(local_peer=peer_id)
        self._mailbox = mailbox
        self._acquire_media = acquire_media
        self._session_factory = session_factory
        self.gate = gate or SequenceGate()
        self._counter = counter or SequenceCounter.from_clock()
        self._sink_factory = sink_factory or RemoteMediaSink
        self._clear_delay = clear_delay
        self._callbacks = callbacks or CallCallbacks()

        self._queue: "asyncio.Queue[_Event]" = asyncio.Queue()
        self._runner: Optional[asyncio.Task[None]] = None
        self._background: Set[asyncio.Task[Any]] = set()
        self._clears: Set[asyncio.Task[None]] = set()
        self._sent: Deque[int] = deque(maxlen=64)

        self._handlers = {
            "start_call": self._do_start_call,
            "answer_call": self._do_answer_call,
            "hang_up": self._do_hang_up,
            "toggle_mute": self._do_toggle_mute,
            "toggle_video": self._do_toggle_video,
            "signal": self._on_signal,
            "media_ready": self._on_media_ready,
            "media_failed": self._on_media_failed,
            "local_ice": self._on_local_ice,
            "remote_track": self._on_remote_track,
            "connection_state": self._on_connection_state,
        }

    @property
    def peer_id(self) -> str:
        return self.session.local_peer

    @property
    def phase(self) -> CallPhase:
        return self.session.phase

    @property
    def remote_peer(self) -> Optional[str]:
        return self.session.remote_peer

    async def start(self) -> None:
        if self._runner and not self._runner.done():
            return
        self._runner = asyncio.create_task(self._run(), name=f"call-manager-{self.peer_id}")

    async def stop(self) -> None:
        if self._runner and not self._runner.done():
            if self.session.active:
                await self.hang_up()
            await self.settle()
            if self._clears:
                await asyncio.wait(list(self._clears))
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
        self._runner = None
        for task in list(self._background) + list(self._clears):
            task.cancel()

    async def settle(self) -> None:
        """Wait until queued events and media acquisitions are done.

        Pending clear writes are not waited for; `stop()` flushes them.
        """
        while True:
            await self._queue.join()
            pending = [t for t in self._background if not t.done()]
            if not pending and self._queue.empty():
                return
            if pending:
                await asyncio.wait(pending)

    # User actions

    async def start_call(self, peer_id: str) -> None:
        """Call `peer_id`. Returns once the offer is written."""
        await self._submit("start_call", peer_id)

    async def answer_call(self) -> None:
        """Accept the ringing call. Returns once the answer is written."""
        await self._submit("answer_call")

    async def hang_up(self) -> None:
        """End, cancel or decline the current call."""
        await self._submit("hang_up")

    async def toggle_mute(self) -> bool:
        """Returns True if the microphone is now muted."""
        return await self._submit("toggle_mute")

    async def toggle_video(self) -> bool:
        """Returns True if the camera is now sending."""
        return await self._submit("toggle_video")

    async def deliver(self, signal: protocol.Signal) -> None:
        """Poller entry point; only enqueues."""
        self._post(_Event("signal", (signal,)))

    # Event loop

    async def _submit(self, kind: str, *args: Any) -> Any:
        future = asyncio.get_running_loop().create_future()
        self._post(_Event(kind, args, future))
        return await future

    def _post(self, event: _Event) -> None:
        self._queue.put_nowait(event)

    def _spawn(self, coro: Awaitable[Any], name: str, into: Optional[Set[asyncio.Task[Any]]] = None) -> None:
        tasks = self._background if into is None else into
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
            finally:
                self._queue.task_done()

    async def _handle(self, event: _Event) -> None:
        handler = self._handlers[event.kind]
        try:
            result = await handler(event, *event.args)
        except CallStateError as e:
            logger.info("call %s rejected: %s", event.kind, e)
            self._fail(event, e)
        except MediaAcquisitionError as e:
            await self._emit_error(f"media unavailable: {e}")
            self._fail(event, e)
        except ProtocolViolation as e:
            logger.warning("call protocol violation: %s", e)
            await self._log(f"Ignored signal: {e}")
            self._fail(event, e)
        except Exception as e:
            logger.exception("call transition failed event=%s phase=%s", event.kind, self.phase.value)
            await self._emit_error(f"{event.kind} failed: {e}")
            if self.session.active:
                await self._end_call(notify_remote=True)
            self._fail(event, e)
        else:
            if result is not _DEFERRED and event.future is not None and not event.future.done():
                event.future.set_result(result)

    @staticmethod
    def _fail(event: _Event, error: BaseException) -> None:
        if event.future is not None and not event.future.done():
            event.future.set_exception(error)

    # Local transitions

    async def _do_start_call(self, event: _Event, peer_id: str) -> Any:
        s = self.session
        if s.active:
            raise CallStateError(f"cannot start a call while {s.phase.value}")
        if not peer_id or peer_id == s.local_peer:
            raise CallStateError(f"invalid peer: {peer_id!r}")

        s.phase = CallPhase.CALLING
        s.role = CallRole.CALLER
        s.remote_peer = peer_id
        logger.info("call start to=%s", peer_id)
        await self._log(f"Calling {peer_id}")
        await self._notify_phase()
        self._acquire(event.future)
        return _DEFERRED

    async def _do_answer_call(self, event: _Event) -> Any:
        s = self.session
        if s.phase is not CallPhase.RINGING:
            raise CallStateError(f"no incoming call to answer ({s.phase.value})")
        if s.acquiring:
            raise CallStateError("already answering")
        logger.info("call answer from=%s", s.remote_peer)
        self._acquire(event.future)
        return _DEFERRED

    async def _do_hang_up(self, event: _Event) -> None:
        s = self.session
        if not s.active:
            return
        logger.info("call hangup local remote=%s phase=%s", s.remote_peer, s.phase.value)
        await self._log(f"Hanging up {s.remote_peer}")
        await self._end_call(notify_remote=True)

    async def _do_toggle_mute(self, event: _Event) -> bool:
        s = self.session
        s.audio_enabled = not s.audio_enabled
        self._apply_switches()
        logger.info("call audio enabled=%s", s.audio_enabled)
        return not s.audio_enabled

    async def _do_toggle_video(self, event: _Event) -> bool:
        s = self.session
        s.video_enabled = not s.video_enabled
        self._apply_switches()
        logger.info("call video enabled=%s", s.video_enabled)
        return s.video_enabled

    def _apply_switches(self) -> None:
        s = self.session
        if s.local_media is not None:
            s.local_media.set_enabled(audio=s.audio_enabled, video=s.video_enabled)

    # Media acquisition

    def _acquire(self, future: Optional["asyncio.Future[Any]"]) -> None:
        s = self.session
        s.acquiring = True
        generation = s.generation

        async def _run() -> None:
            try:
                media = await self._acquire_media()
            except Exception as e:
                error = e if isinstance(e, MediaAcquisitionError) else MediaAcquisitionError(str(e) or type(e).__name__)
                self._post(_Event("media_failed", (generation, error), future))
            else:
                self._post(_Event("media_ready", (generation, media), future))

        self._spawn(_run(), name=f"media-acquire-{self.peer_id}")

    async def _on_media_ready(self, event: _Event, generation: int, media: LocalMedia) -> None:
        s = self.session
        if generation != s.generation or not s.acquiring:
            media.close()
            raise CallStateError("call ended while acquiring media")

        s.acquiring = False
        s.local_media = media
        self._apply_switches()
        if s.phase is CallPhase.CALLING:
            await self._send_offer()
        else:
            await self._send_answer()

    async def _on_media_failed(self, event: _Event, generation: int, error: MediaAcquisitionError) -> None:
        s = self.session
        if generation != s.generation or not s.acquiring:
            raise CallStateError("call ended while acquiring media")

        logger.warning("call media acquisition failed role=%s: %s", s.role.value, error)
        # A callee that cannot answer declines, so the caller stops waiting.
        await self._end_call(notify_remote=s.role is CallRole.CALLEE)
        raise error

    def _open_session(self) -> Any:
        s = self.session
        assert s.remote_peer is not None and s.local_media is not None
        token = object()

        async def on_local_ice(peer_id: str, candidate: protocol.IceCandidateDict) -> None:
            self._post(_Event("local_ice", (token, candidate)))

        async def on_track(peer_id: str, track: Any) -> None:
            self._post(_Event("remote_track", (token, track)))

        async def on_connection_state(peer_id: str, state: str) -> None:
            self._post(_Event("connection_state", (token, state)))

        media_session = self._session_factory(
            s.remote_peer,
            SessionCallbacks(
                on_local_ice=on_local_ice,
                on_track=on_track,
                on_connection_state=on_connection_state,
            ),
        )
        media_session.add_local_media(s.local_media)
        s.media = media_session
        s.media_token = token
        logger.debug("call created media session remote=%s", s.remote_peer)
        return media_session

    async def _send_offer(self) -> None:
        s = self.session
        media_session = self._open_session()
        offer = await media_session.create_offer()
        s.local_offer = offer
        await self._send(protocol.make_offer(s.local_peer, s.remote_peer, offer["sdp"], self._counter.next()))

    async def _send_answer(self) -> None:
        s = self.session
        if s.pending_offer is None:
            raise ProtocolViolation("answering without an offer")
        media_session = self._open_session()
        answer = await media_session.accept_offer(s.pending_offer)
        s.pending_offer = None
        await self._send(protocol.make_answer(s.local_peer, s.remote_peer, answer["sdp"], self._counter.next()))
        s.phase = CallPhase.IN_CALL
        await self._log(f"In call with {s.remote_peer}")
        await self._notify_phase()

    # Inbound signals

    async def _on_signal(self, event: _Event, signal: protocol.Signal) -> None:
        if signal.kind == protocol.OFFER:
            await self._on_offer(signal)
        elif signal.kind == protocol.ANSWER:
            await self._on_answer(signal)
        elif signal.kind == protocol.CANDIDATE:
            await self._on_candidate(signal)
        elif signal.kind == protocol.HANGUP:
            await self._on_hangup(signal)

    async def _on_offer(self, signal: protocol.Signal) -> None:
        s = self.session
        peer = signal.from_peer
        logger.info("call offer received from=%s seq=%s phase=%s", peer, signal.sequence, s.phase.value)

        if s.phase is CallPhase.IDLE:
            s.phase = CallPhase.RINGING
            s.role = CallRole.CALLEE
            s.remote_peer = peer
            s.pending_offer = signal.payload
            await self._log(f"Incoming call from {peer}")
            await self._notify_phase()
            if self._callbacks.on_incoming_call:
                await self._emit(self._callbacks.on_incoming_call, peer)
            return

        if peer != s.remote_peer:
            logger.info("call busy, rejecting offer from=%s", peer)
            await self._send_hangup(peer)
            return

        if s.phase is CallPhase.RINGING:
            # The caller sent a fresher offer; answer that one.
            s.pending_offer = signal.payload
            return

        if s.phase is CallPhase.CALLING:
            await self._resolve_glare(signal)
            return

        raise ProtocolViolation(f"offer from {peer} during call (renegotiation unsupported)")

    async def _resolve_glare(self, signal: protocol.Signal) -> None:
        """Both sides called each other: the smaller peer id stays the caller."""
        s = self.session
        if s.local_peer < signal.from_peer:
            logger.info("call glare with=%s keeping own offer", signal.from_peer)
            # Our offer may have been overwritten before the other side read it.
            if s.local_offer is not None:
                await self._send(protocol.make_offer(s.local_peer, s.remote_peer, s.local_offer["sdp"], self._counter.next()))
            return

        logger.info("call glare with=%s answering their offer", signal.from_peer)
        s.role = CallRole.CALLEE
        s.pending_offer = signal.payload
        s.local_offer = None
        old, s.media, s.media_token = s.media, None, None
        if old is not None:
            await old.close()
        s.phase = CallPhase.RINGING
        if s.acquiring or s.local_media is None:
            # The pending acquisition answers once media is ready.
            await self._notify_phase()
            return
        await self._send_answer()

    async def _on_answer(self, signal: protocol.Signal) -> None:
        s = self.session
        if s.phase is not CallPhase.CALLING or signal.from_peer != s.remote_peer:
            raise ProtocolViolation(f"answer from {signal.from_peer} while {s.phase.value}")
        if s.media is None or s.local_offer is None:
            raise ProtocolViolation("answer before our offer was sent")

        logger.info("call answer received from=%s sdp_len=%s", signal.from_peer, len(signal.payload.get("sdp", "")))
        await s.media.apply_answer(signal.payload)
        s.phase = CallPhase.IN_CALL
        await self._log(f"In call with {s.remote_peer}")
        await self._notify_phase()

    async def _on_candidate(self, signal: protocol.Signal) -> None:
        s = self.session
        if not s.active or signal.from_peer != s.remote_peer:
            raise ProtocolViolation(f"candidate from {signal.from_peer} while {s.phase.value}")
        if s.media is None:
            logger.debug("call candidate before media session, ignored")
            return
        logger.debug("call candidate received from=%s", signal.from_peer)
        await s.media.add_ice_candidate(signal.payload)

    async def _on_hangup(self, signal: protocol.Signal) -> None:
        s = self.session
        if signal.from_peer == s.local_peer and signal.sequence in self._sent:
            return
        if not s.active:
            logger.debug("call hangup while idle ignored from=%s", signal.from_peer)
            return
        if s.remote_peer not in (signal.from_peer, signal.to_peer):
            logger.debug("call hangup for another call ignored from=%s to=%s", signal.from_peer, signal.to_peer)
            return

        logger.info("call hangup received from=%s phase=%s", signal.from_peer, s.phase.value)
        await self._log(f"{s.remote_peer} hung up")
        await self._end_call(notify_remote=False)

    # Media session events

    async def _on_local_ice(self, event: _Event, token: object, candidate: protocol.IceCandidateDict) -> None:
        s = self.session
        if token is not s.media_token or not s.active:
            return
        logger.debug("call local ice to=%s", s.remote_peer)
        await self._send(protocol.make_candidate(s.local_peer, s.remote_peer, candidate, self._counter.next()))

    async def _on_remote_track(self, event: _Event, token: object, track: Any) -> None:
        s = self.session
        if token is not s.media_token:
            return
        if s.sink is None:
            s.sink = self._sink_factory()
        await s.sink.add(track)
        if s.connected:
            await s.sink.start()
        if self._callbacks.on_remote_track:
            await self._emit(self._callbacks.on_remote_track, s.remote_peer, track)

    async def _on_connection_state(self, event: _Event, token: object, state: str) -> None:
        s = self.session
        if token is not s.media_token:
            return
        logger.info("call connection state=%s remote=%s", state, s.remote_peer)
        s.connected = state == "connected"
        if s.connected and s.sink is not None:
            await s.sink.start()
        elif state == "failed":
            await self._log(f"Connection to {s.remote_peer} failed")
            await self._end_call(notify_remote=True)

    # Helpers

    async def _end_call(self, *, notify_remote: bool) -> None:
        s = self.session
        remote = s.remote_peer
        media_session, local_media, sink = s.media, s.local_media, s.sink
        s.reset()
        self.gate.end_lifetime()

        if sink is not None:
            try:
                await sink.stop()
            except Exception:
                logger.warning("call remote sink stop failed", exc_info=True)
        if media_session is not None:
            try:
                await media_session.close()
            except Exception:
                logger.warning("call media session close failed", exc_info=True)
        if local_media is not None:
            local_media.close()

        if notify_remote and remote:
            await self._send_hangup(remote)
        logger.info("call ended remote=%s", remote)
        await self._notify_phase()

    async def _send_hangup(self, to_peer: str) -> None:
        raw = await self._send(protocol.make_hangup(self.peer_id, to_peer, self._counter.next()))
        if raw is not None:
            self._spawn(self._clear_after_hangup(raw), name=f"mailbox-clear-{self.peer_id}", into=self._clears)

    async def _clear_after_hangup(self, raw: str) -> None:
        # A late poller would otherwise read the hangup as a fresh event.
        await asyncio.sleep(self._clear_delay)
        try:
            # Only clear our own hangup, never a signal written after it.
            if await self._mailbox.read() == raw:
                await self._mailbox.write(protocol.encode_signal(protocol.CLEAR_SIGNAL))
        except MailboxError as e:
            logger.warning("mailbox clear failed: %s", e)

    async def _send(self, signal: protocol.Signal) -> Optional[str]:
        raw = protocol.encode_signal(signal)
        if signal.kind in (protocol.OFFER, protocol.ANSWER):
            logger.info("signal send %s sdp_len=%s", signal.describe(), len(signal.payload.get("sdp", "")))
        elif signal.kind == protocol.CANDIDATE:
            logger.debug("signal send %s", signal.describe())
        else:
            logger.info("signal send %s", signal.describe())
        self._sent.append(signal.sequence)
        try:
            await self._mailbox.write(raw)
        except MailboxError as e:
            logger.error("signal send failed %s: %s", signal.describe(), e)
            await self._emit_error(f"mailbox write failed: {e}")
            return None
        return raw

    async def _notify_phase(self) -> None:
        if self._callbacks.on_phase:
            await self._emit(self._callbacks.on_phase, self.session.phase, self.session.remote_peer)

    async def _emit_error(self, error: str) -> None:
        await self._log(f"Call error: {error}")
        if self._callbacks.on_error:
            await self._emit(self._callbacks.on_error, error)

    async def _log(self, message: str) -> None:
        if self._callbacks.on_log:
            await self._emit(self._callbacks.on_log, message)

    @staticmethod
    async def _emit(callback: AsyncCallback, *args: Any) -> None:
        try:
            await callback(*args)
        except Exception:
            # Observer failures must not leave the session half-transitioned.
            logger.exception("call callback failed")
