"""
Streaming WebM demuxer that extracts Opus packets.

Reads a WebM byte stream from an async iterator and yields the raw Opus
packets of the first Opus audio track, without buffering the whole file.

Master elements (Segment, Cluster, Tracks, BlockGroup) are entered by
consuming only their header, so unknown-size Segments and Clusters as
produced by live encoders are handled the same as sized ones. Everything
else is either read whole (EBML header, TrackEntry, blocks) or skipped.

Usage:
    demuxer = WebmDemuxer()
    async for packet in demuxer.iter_packets(source):
        handle(packet)
"""

import logging
from typing import AsyncIterator, Optional, Tuple

from opus_relay.core.errors import DemuxError
from opus_relay.relay.ebml import (
    BLOCK,
    EBML_HEADER,
    MASTER_IDS,
    OPUS_HEAD,
    SIMPLE_BLOCK,
    TRACK_ENTRY,
    UNKNOWN_SIZE,
    NeedMoreData,
    WebmTrack,
    extract_block_frames,
    parse_doc_type,
    parse_track_entry,
    read_element_header,
)

logger = logging.getLogger(__name__)

SUPPORTED_DOC_TYPES = ("webm", "matroska")

# Largest element read into memory at once
MAX_ELEMENT_SIZE = 32 * 1024 * 1024

_READ_WHOLE = frozenset({EBML_HEADER, TRACK_ENTRY, SIMPLE_BLOCK, BLOCK})


class WebmDemuxer:
    """Opus packet extractor for WebM byte streams"""

    def __init__(self) -> None:
        self._buf = bytearray()
        self._eof = False
        self.doc_type = ""
        self.track: Optional[WebmTrack] = None
        self.packets = 0

    @property
    def opus_head(self) -> Optional[bytes]:
        """OpusHead identification header from the track's CodecPrivate"""
        return self.track.codec_private if self.track else None

    async def iter_packets(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        seen_header = False

        while True:
            header = await self._next_header(source)
            if header is None:
                break
            eid, size, offset = header

            if not seen_header:
                if eid != EBML_HEADER:
                    raise DemuxError(f"Not a WebM stream: expected EBML header, got 0x{eid:X}")
                seen_header = True

            if eid in MASTER_IDS:
                del self._buf[:offset]
                continue

            if size == UNKNOWN_SIZE:
                raise DemuxError(f"Unknown-size element 0x{eid:X}")

            if eid not in _READ_WHOLE:
                del self._buf[:offset]
                await self._skip(source, size)
                continue

            if size > MAX_ELEMENT_SIZE:
                raise DemuxError(f"Element 0x{eid:X} too large ({size} bytes)")

            body = await self._take(source, offset, size)
            try:
                if eid == EBML_HEADER:
                    self._check_doc_type(body)
                elif eid == TRACK_ENTRY:
                    self._add_track(body)
                else:
                    for packet in self._block_packets(body):
                        self.packets += 1
                        yield packet
            except (ValueError, IndexError, NeedMoreData) as e:
                raise DemuxError(f"Malformed element 0x{eid:X}: {e}")

        if not seen_header:
            raise DemuxError("Source ended before EBML header")
        if self.track is None:
            raise DemuxError("No Opus audio track found")
        logger.debug(f"Demuxed {self.packets} Opus packets")

    def _check_doc_type(self, body: bytes) -> None:
        self.doc_type = parse_doc_type(body, 0, len(body))
        if self.doc_type not in SUPPORTED_DOC_TYPES:
            raise DemuxError(f"Unsupported DocType {self.doc_type!r}")

    def _add_track(self, body: bytes) -> None:
        track = parse_track_entry(body, 0, len(body))
        if self.track is not None or not track.is_opus:
            return
        if not track.codec_private.startswith(OPUS_HEAD):
            raise DemuxError("Opus track without OpusHead")
        self.track = track
        logger.debug(
            f"Opus track #{track.track_number}: {track.sample_rate:.0f} Hz, {track.channels} ch"
        )

    def _block_packets(self, body: bytes):
        if self.track is None:
            raise DemuxError("Block before any Opus track")
        track_number, frames = extract_block_frames(body, 0, len(body))
        if track_number != self.track.track_number:
            return []
        return frames

    async def _pull(self, source: AsyncIterator[bytes]) -> bool:
        """Append the next source chunk. False once the source is exhausted."""
        if self._eof:
            return False
        try:
            chunk = await source.__anext__()
        except StopAsyncIteration:
            self._eof = True
            return False
        self._buf.extend(chunk)
        return True

    async def _next_header(self, source: AsyncIterator[bytes]) -> Optional[Tuple[int, int, int]]:
        while True:
            try:
                return read_element_header(self._buf, 0)
            except NeedMoreData:
                pass
            except ValueError as e:
                raise DemuxError(str(e))
            if not await self._pull(source):
                if self._buf:
                    raise DemuxError("Source ended inside an element header")
                return None

    async def _take(self, source: AsyncIterator[bytes], offset: int, size: int) -> bytes:
        end = offset + size
        while len(self._buf) < end:
            if not await self._pull(source):
                raise DemuxError("Source ended inside an element")
        body = bytes(self._buf[offset:end])
        del self._buf[:end]
        return body

    async def _skip(self, source: AsyncIterator[bytes], count: int) -> None:
        while True:
            take = min(count, len(self._buf))
            del self._buf[:take]
            count -= take
            if count == 0:
                return
            if not await self._pull(source):
                raise DemuxError("Source ended inside an element")
