"""One signaling identity: mailbox + poller + call manager."""

from __future__ import annotations

import functools
import logging
from typing import Optional

from .config import CallConfig
from .net.mailbox import Mailbox, open_mailbox
from .net.poller import SignalPoller
from .net.sequence import SequenceCounter, SequenceGate
from .rtc.call_manager import CallCallbacks, CallManager, CallPhase, MediaAcquirer, SessionFactory
from .rtc.media import RemoteMediaSink, acquire_local_media
from .rtc.session import MediaSession, SessionCallbacks


logger = logging.getLogger(__name__)


class CallPeer:
    def __init__(
        self,
        config: CallConfig,
        *,
        mailbox: Optional[Mailbox] = None,
        acquire_media: Optional[MediaAcquirer] = None,
        session_factory: Optional[SessionFactory] = None,
        counter: Optional[SequenceCounter] = None,
        callbacks: Optional[CallCallbacks] = None,
    ):
        self.config = config
        self._owns_mailbox = mailbox is None
        self.mailbox = mailbox if mailbox is not None else open_mailbox(config.mailbox_url)

        gate = SequenceGate()
        self.manager = CallManager(
            config.peer_id,
            self.mailbox,
            acquire_media=acquire_media or functools.partial(acquire_local_media, config.media),
            session_factory=session_factory or self._create_session,
            gate=gate,
            counter=counter,
            sink_factory=lambda: RemoteMediaSink(record_to=config.record_to),
            clear_delay=config.clear_delay,
            callbacks=callbacks,
        )
        self.poller = SignalPoller(
            self.mailbox,
            config.peer_id,
            self.manager.deliver,
            gate=gate,
            interval=config.poll_interval,
        )

    @property
    def peer_id(self) -> str:
        return self.config.peer_id

    @property
    def phase(self) -> CallPhase:
        return self.manager.phase

    def _create_session(self, peer_id: str, callbacks: SessionCallbacks) -> MediaSession:
        return MediaSession(peer_id, callbacks, rtc_config=self.config.rtc_configuration())

    async def start(self) -> None:
        logger.info("peer start id=%s mailbox=%s", self.peer_id, self.config.mailbox_url)
        await self.manager.start()
        self.poller.start()

    async def stop(self) -> None:
        logger.info("peer stop id=%s", self.peer_id)
        await self.poller.stop()
        await self.manager.stop()
        if self._owns_mailbox:
            await self.mailbox.close()

    async def start_call(self, peer_id: str) -> None:
        await self.manager.start_call(peer_id)

    async def answer_call(self) -> None:
        await self.manager.answer_call()

    async def hang_up(self) -> None:
        await self.manager.hang_up()

    async def toggle_mute(self) -> bool:
        return await self.manager.toggle_mute()

    async def toggle_video(self) -> bool:
        return await self.manager.toggle_video()
