"""
EBML primitives for WebM demuxing.

Only what the Opus demuxer needs: variable-length integers, element
headers, TrackEntry parsing and Block frame extraction (all lacing modes).
"""

import struct
from dataclasses import dataclass
from typing import List, Tuple

# Top-level
EBML_HEADER = 0x1A45DFA3
DOC_TYPE = 0x4282
SEGMENT = 0x18538067

# Tracks
TRACKS = 0x1654AE6B
TRACK_ENTRY = 0xAE
TRACK_NUMBER = 0xD7
TRACK_TYPE = 0x83
CODEC_ID = 0x86
CODEC_PRIVATE = 0x63A2
AUDIO = 0xE1
SAMPLING_FREQUENCY = 0xB5
CHANNELS = 0x9F

# Cluster
CLUSTER = 0x1F43B675
SIMPLE_BLOCK = 0xA3
BLOCK_GROUP = 0xA0
BLOCK = 0xA1

# Elements whose children are parsed in-stream instead of being read whole
MASTER_IDS = frozenset({SEGMENT, CLUSTER, TRACKS, BLOCK_GROUP})

TRACK_TYPE_AUDIO = 2
CODEC_ID_OPUS = "A_OPUS"
OPUS_HEAD = b"OpusHead"

# Unknown/indeterminate size sentinel
UNKNOWN_SIZE = -1


class NeedMoreData(Exception):
    """Buffer ends inside the structure being read"""


def read_vint(data: bytes, pos: int) -> Tuple[int, int, int]:
    """
    Read a variable-length integer.

    Returns (raw_value, value_without_marker, new_pos). raw_value keeps the
    marker bit (element IDs), value_without_marker drops it (sizes).
    """
    if pos >= len(data):
        raise NeedMoreData(pos)

    first = data[pos]
    if first == 0:
        raise ValueError(f"EBML VINT: invalid leading byte 0x00 at pos {pos}")

    length = 1
    mask = 0x80
    while not (first & mask):
        length += 1
        mask >>= 1

    if pos + length > len(data):
        raise NeedMoreData(pos + length)

    raw = int.from_bytes(data[pos:pos + length], "big")
    value = raw & ~(1 << (7 * length))

    # All value bits set marks an unknown size
    if value == (1 << (7 * length)) - 1:
        value = UNKNOWN_SIZE

    return raw, value, pos + length


def read_element_header(data: bytes, pos: int = 0) -> Tuple[int, int, int]:
    """Returns (element_id, size, data_offset)."""
    eid, _, pos = read_vint(data, pos)
    _, size, pos = read_vint(data, pos)
    return eid, size, pos


def read_uint(data: bytes, pos: int, length: int) -> int:
    return int.from_bytes(data[pos:pos + length], "big") if length else 0


def read_float(data: bytes, pos: int, length: int) -> float:
    if length == 4:
        return struct.unpack(">f", data[pos:pos + 4])[0]
    if length == 8:
        return struct.unpack(">d", data[pos:pos + 8])[0]
    raise ValueError(f"EBML float must be 4 or 8 bytes, got {length}")


def read_string(data: bytes, pos: int, length: int) -> str:
    return data[pos:pos + length].rstrip(b"\x00").decode("utf-8", errors="replace")


def iter_elements(data: bytes, start: int, end: int):
    """Yields (element_id, data_offset, data_size) for children in [start, end)."""
    pos = start
    while pos < end:
        eid, size, data_off = read_element_header(data, pos)
        if size == UNKNOWN_SIZE or data_off + size > end:
            raise ValueError(f"EBML element 0x{eid:X} overruns its parent")
        yield eid, data_off, size
        pos = data_off + size


@dataclass
class WebmTrack:
    track_number: int = 0
    track_type: int = 0
    codec_id: str = ""
    codec_private: bytes = b""
    sample_rate: float = 0.0
    channels: int = 0

    @property
    def is_opus(self) -> bool:
        return self.track_type == TRACK_TYPE_AUDIO and self.codec_id == CODEC_ID_OPUS


def parse_track_entry(data: bytes, start: int, end: int) -> WebmTrack:
    track = WebmTrack()
    for eid, off, size in iter_elements(data, start, end):
        if eid == TRACK_NUMBER:
            track.track_number = read_uint(data, off, size)
        elif eid == TRACK_TYPE:
            track.track_type = read_uint(data, off, size)
        elif eid == CODEC_ID:
            track.codec_id = read_string(data, off, size)
        elif eid == CODEC_PRIVATE:
            track.codec_private = bytes(data[off:off + size])
        elif eid == AUDIO:
            for child, coff, csize in iter_elements(data, off, off + size):
                if child == SAMPLING_FREQUENCY:
                    track.sample_rate = read_float(data, coff, csize)
                elif child == CHANNELS:
                    track.channels = read_uint(data, coff, csize)
    return track


def parse_doc_type(data: bytes, start: int, end: int) -> str:
    for eid, off, size in iter_elements(data, start, end):
        if eid == DOC_TYPE:
            return read_string(data, off, size)
    return ""


def extract_block_frames(data: bytes, pos: int, block_size: int) -> Tuple[int, List[bytes]]:
    """
    Split a SimpleBlock/Block body into frames.

    Returns (track_number, [frame_bytes, ...]).
    """
    end = pos + block_size
    _, track_number, pos = read_vint(data, pos)
    # Relative timecode (int16) is not needed for relaying
    flags = data[pos + 2]
    pos += 3
    lacing = (flags >> 1) & 0x03

    if lacing == 0:
        return track_number, [bytes(data[pos:end])]

    count = data[pos] + 1
    pos += 1

    if lacing == 2:
        # Fixed-size lacing
        frame_size = (end - pos) // count
        return track_number, [
            bytes(data[pos + i * frame_size:pos + (i + 1) * frame_size]) for i in range(count)
        ]

    sizes = []
    if lacing == 1:
        # Xiph lacing: runs of 255 plus a final byte
        for _ in range(count - 1):
            size = 0
            while True:
                value = data[pos]
                pos += 1
                size += value
                if value < 255:
                    break
            sizes.append(size)
    else:
        # EBML lacing: first size is a VINT, the rest are signed deltas
        _, first, new_pos = read_vint(data, pos)
        sizes.append(first)
        pos = new_pos
        for _ in range(count - 2):
            _, value, new_pos = read_vint(data, pos)
            length = new_pos - pos
            pos = new_pos
            sizes.append(sizes[-1] + value - ((1 << (7 * length - 1)) - 1))

    frames = []
    for size in sizes:
        if size < 0 or pos + size > end:
            raise ValueError("Laced frame sizes overrun block")
        frames.append(bytes(data[pos:pos + size]))
        pos += size
    frames.append(bytes(data[pos:end]))
    return track_number, frames
