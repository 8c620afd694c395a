import struct

import pytest

from opus_relay.models.internal import CandidateFormat, ContentDescriptor
from opus_relay.relay import ebml

UNKNOWN = b"\x01\xff\xff\xff\xff\xff\xff\xff"


def element(eid: int, payload: bytes = b"", unknown_size: bool = False) -> bytes:
    """Encode one EBML element; sizes always use the 8-byte VINT form"""
    header = eid.to_bytes((eid.bit_length() + 7) // 8, "big")
    if unknown_size:
        return header + UNKNOWN + payload
    return header + b"\x01" + len(payload).to_bytes(7, "big") + payload


def track_entry(number: int = 1, codec_id: str = "A_OPUS", codec_private: bytes = b"OpusHead" + bytes(11)) -> bytes:
    return element(ebml.TRACK_ENTRY, b"".join([
        element(ebml.TRACK_NUMBER, bytes([number])),
        element(ebml.TRACK_TYPE, bytes([ebml.TRACK_TYPE_AUDIO])),
        element(ebml.CODEC_ID, codec_id.encode()),
        element(ebml.CODEC_PRIVATE, codec_private),
        element(ebml.AUDIO, element(ebml.SAMPLING_FREQUENCY, struct.pack(">d", 48000.0))
                + element(ebml.CHANNELS, b"\x02")),
    ]))


def simple_block(payload: bytes, track: int = 1, flags: int = 0x80) -> bytes:
    return element(ebml.SIMPLE_BLOCK, bytes([0x80 | track]) + b"\x00\x00" + bytes([flags]) + payload)


def webm_file(frames, doc_type: bytes = b"webm", tracks: bytes = None, cluster_blocks: bytes = None) -> bytes:
    """Live-style WebM: unknown-size Segment and Cluster holding one block per frame"""
    if tracks is None:
        tracks = track_entry()
    if cluster_blocks is None:
        cluster_blocks = b"".join(simple_block(f) for f in frames)
    return b"".join([
        element(ebml.EBML_HEADER, element(ebml.DOC_TYPE, doc_type)),
        element(ebml.SEGMENT, unknown_size=True),
        # SeekHead-like element the demuxer has to skip
        element(0x114D9B74, b"\x00" * 20),
        element(ebml.TRACKS, tracks),
        element(ebml.CLUSTER, unknown_size=True),
        element(0xE7, b"\x00"),
        cluster_blocks,
    ])


async def chunked(data: bytes, size: int = 7):
    for i in range(0, len(data), size):
        yield data[i:i + size]


def make_format(format_id: str = "251", **kwargs) -> CandidateFormat:
    defaults = dict(
        url=f"https://media.example.com/{format_id}",
        codec="opus",
        container="webm",
        audio_sample_rate=48000,
        audio_bitrate=160,
    )
    defaults.update(kwargs)
    return CandidateFormat(format_id=format_id, **defaults)


def make_descriptor(formats, duration: int = 212, is_live: bool = False) -> ContentDescriptor:
    return ContentDescriptor(
        id="abc123",
        title="Test Track",
        webpage_url="https://www.example.com/watch?v=abc123",
        duration=duration,
        is_live=is_live,
        formats=tuple(formats),
    )


@pytest.fixture
def anyio_backend():
    return 'asyncio'


@pytest.fixture(autouse=True)
def no_redis():
    """Run every test with Redis disabled; limiters and caches fail open"""
    from opus_relay.core.state import state
    previous = state.redis
    state.redis = None
    yield
    state.redis = previous
