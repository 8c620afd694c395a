"""
Output stream handed to the caller of a download.

Single producer (the active relay) and single consumer (the caller). The
producer awaits ``write`` which applies backpressure once more than
``high_water_mark`` bytes are buffered. The consumer iterates the stream.

Terminal outcomes are mutually exclusive: end-of-stream, an error, or
``destroy()``. After destroy every write is dropped and buffered chunks
are discarded.
"""

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple

from opus_relay.core.errors import StreamClosedError
from opus_relay.models.internal import CandidateFormat, ContentDescriptor, RelayMode

if TYPE_CHECKING:
    from opus_relay.core.lifecycle import LifecycleSupervisor, RequestState

logger = logging.getLogger(__name__)

DEFAULT_HIGH_WATER_MARK = 512 * 1024

InfoListener = Callable[[ContentDescriptor, CandidateFormat], None]


class AudioStream:
    """Backpressure-aware byte channel between a relay and its caller"""

    def __init__(self, high_water_mark: int = DEFAULT_HIGH_WATER_MARK) -> None:
        if high_water_mark < 1:
            raise ValueError("high_water_mark must be positive")
        self.high_water_mark = high_water_mark
        self.destroyed = False
        self.error: Optional[BaseException] = None

        self._chunks: deque = deque()
        self._buffered = 0
        self._ended = False
        self._info: Optional[Tuple[ContentDescriptor, CandidateFormat]] = None
        self._info_listeners: List[InfoListener] = []
        self._supervisor: Optional["LifecycleSupervisor"] = None

        # Set whenever the consumer has something to react to
        self._readable = asyncio.Event()
        # Set while the buffer is at or below high_water_mark
        self._drained = asyncio.Event()
        self._drained.set()
        self._info_ready = asyncio.Event()

    # -- producer side -----------------------------------------------------

    @property
    def closed(self) -> bool:
        return self.destroyed or self._ended or self.error is not None

    @property
    def buffered(self) -> int:
        return self._buffered

    @property
    def state(self) -> Optional["RequestState"]:
        return self._supervisor.state if self._supervisor else None

    @property
    def mode(self) -> Optional[RelayMode]:
        """Relay path chosen for this stream, once selection is done"""
        return self._supervisor.mode if self._supervisor else None

    def attach(self, supervisor: "LifecycleSupervisor") -> None:
        self._supervisor = supervisor

    def emit_info(self, descriptor: ContentDescriptor, fmt: CandidateFormat) -> None:
        """Announce the chosen format once, before any data"""
        if self._info is not None:
            raise RuntimeError("info already emitted")
        if self.closed:
            return
        self._info = (descriptor, fmt)
        self._info_ready.set()
        for listener in self._info_listeners:
            listener(descriptor, fmt)

    async def write(self, data: bytes) -> bool:
        """
        Queue a chunk for the consumer. Returns False when the chunk was
        dropped because the stream is closed.
        """
        if self.closed:
            return False
        if self._info is None:
            raise RuntimeError("write before info")
        if not data:
            return True

        self._chunks.append(bytes(data))
        self._buffered += len(data)
        self._readable.set()

        while self._buffered > self.high_water_mark and not self.closed:
            self._drained.clear()
            await self._drained.wait()

        return not self.destroyed

    def end(self) -> None:
        if self.closed:
            return
        self._ended = True
        self._wake()

    def fail(self, error: BaseException) -> None:
        if self.closed:
            return
        self.error = error
        self._chunks.clear()
        self._buffered = 0
        self._wake()

    def destroy(self) -> None:
        """Stop accepting data and tear down the relay. Safe to call repeatedly."""
        if self.destroyed:
            return
        self.destroyed = True
        self._chunks.clear()
        self._buffered = 0
        self._wake()
        if self._supervisor is not None:
            self._supervisor.destroy()

    def _wake(self) -> None:
        self._readable.set()
        self._drained.set()
        self._info_ready.set()

    # -- consumer side -----------------------------------------------------

    def on_info(self, listener: InfoListener) -> None:
        self._info_listeners.append(listener)

    async def info(self) -> Tuple[ContentDescriptor, CandidateFormat]:
        await self._info_ready.wait()
        if self._info is not None and not self.destroyed:
            return self._info
        if self.error is not None:
            raise self.error
        raise StreamClosedError("Stream destroyed before format selection")

    async def read(self) -> bytes:
        """Next chunk, or b"" once the stream has ended or was destroyed"""
        while True:
            if self.destroyed:
                return b""
            if self._chunks:
                chunk = self._chunks.popleft()
                self._buffered -= len(chunk)
                if self._buffered <= self.high_water_mark:
                    self._drained.set()
                return chunk
            if self.error is not None:
                raise self.error
            if self._ended:
                return b""
            self._readable.clear()
            await self._readable.wait()

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read()
        if not chunk:
            raise StopAsyncIteration
        return chunk

    async def __aenter__(self) -> "AudioStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.destroy()
