"""
Per-request lifecycle.

Resolving -> Selecting -> Remuxing | Transcoding -> Completed
Destroyed is reachable from every non-terminal state; Failed from every
non-terminal state on an unrecovered error. All transitions go through
``LifecycleSupervisor.transition`` so the stream, the task and the relay
always agree on where a request stands.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from opus_relay.core.stream import AudioStream
from opus_relay.models.internal import (
    ContentDescriptor,
    DownloadOptions,
    FormatSelection,
    RelayMode,
)
from opus_relay.services.format import FormatDecision

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    RESOLVING = "resolving"
    SELECTING = "selecting"
    REMUXING = "remuxing"
    TRANSCODING = "transcoding"
    COMPLETED = "completed"
    DESTROYED = "destroyed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestState.COMPLETED, RequestState.DESTROYED, RequestState.FAILED)


_ACTIVE = (RequestState.REMUXING, RequestState.TRANSCODING)

TRANSITIONS = {
    RequestState.RESOLVING: {RequestState.SELECTING},
    RequestState.SELECTING: set(_ACTIVE),
    RequestState.REMUXING: {RequestState.COMPLETED},
    RequestState.TRANSCODING: {RequestState.COMPLETED},
}


class Relay(Protocol):
    async def run(self, stream: AudioStream) -> None: ...


Resolver = Callable[[str], Awaitable[ContentDescriptor]]
RelayFactory = Callable[[FormatSelection, ContentDescriptor, DownloadOptions], Relay]


def build_relay(selection: FormatSelection, descriptor: ContentDescriptor, options: DownloadOptions) -> Relay:
    # Imported here so the relays' codec/process dependencies load on first use
    from opus_relay.relay.demux import DemuxRelay
    from opus_relay.relay.transcode import TranscodeRelay

    if selection.mode is RelayMode.REMUX:
        return DemuxRelay(descriptor, selection.format, options)
    return TranscodeRelay(descriptor, selection.format, options)


class LifecycleSupervisor:
    """Owns one request: its state, its task and whichever relay is active"""

    def __init__(
        self,
        stream: AudioStream,
        options: DownloadOptions,
        *,
        url: Optional[str] = None,
        descriptor: Optional[ContentDescriptor] = None,
        resolver: Optional[Resolver] = None,
        relay_factory: Optional[RelayFactory] = None,
    ) -> None:
        if url is None and descriptor is None:
            raise ValueError("url or descriptor is required")
        self._stream = stream
        self._options = options
        self._url = url
        self._descriptor = descriptor
        self._resolver = resolver
        self._relay_factory = relay_factory
        self._task: Optional[asyncio.Task] = None
        self._state = RequestState.RESOLVING
        self.mode: Optional[RelayMode] = None
        stream.attach(self)

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def transition(self, new_state: RequestState) -> bool:
        """
        Move to new_state. Returns False if the request already reached a
        terminal state, raises on a transition the lifecycle does not allow.
        """
        if self._state.is_terminal:
            return False
        if new_state not in (RequestState.DESTROYED, RequestState.FAILED) \
                and new_state not in TRANSITIONS[self._state]:
            raise RuntimeError(f"Invalid transition {self._state.value} -> {new_state.value}")
        logger.debug(f"Request {self._state.value} -> {new_state.value}")
        self._state = new_state
        return True

    def start(self) -> asyncio.Task:
        if self._task is not None:
            raise RuntimeError("Request already started")
        self._task = asyncio.create_task(self._run())
        return self._task

    def destroy(self) -> None:
        if not self.transition(RequestState.DESTROYED):
            return
        self._stream.destroy()
        # The running task checks state itself after emitting info
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()

    async def _run(self) -> None:
        try:
            descriptor = self._descriptor
            if descriptor is None:
                descriptor = await self._resolver(self._url)
            if not self.transition(RequestState.SELECTING):
                return

            if self._options.format_filter is not None:
                descriptor = descriptor.with_formats(
                    f for f in descriptor.formats if self._options.format_filter(f)
                )
            selection = FormatDecision.decide(descriptor)
            relay = (self._relay_factory or build_relay)(selection, descriptor, self._options)
            self.mode = selection.mode

            active = RequestState.REMUXING if selection.mode is RelayMode.REMUX else RequestState.TRANSCODING
            if not self.transition(active):
                return
            logger.info(f"Relaying format {selection.format.format_id} via {selection.mode.value}")

            self._stream.emit_info(descriptor, selection.format)
            if self._state.is_terminal:
                return

            await relay.run(self._stream)

            if self.transition(RequestState.COMPLETED):
                self._stream.end()
                logger.info("Relay completed")
        except asyncio.CancelledError:
            logger.info(f"Relay torn down in state {self._state.value}")
            if self.transition(RequestState.DESTROYED):
                self._stream.destroy()
            raise
        except Exception as e:
            if self.transition(RequestState.FAILED):
                logger.error(f"Relay failed: {e}")
                self._stream.fail(e)
