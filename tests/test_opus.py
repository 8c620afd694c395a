import pytest

from opus_relay.core.errors import EncodeError
from opus_relay.relay.ffmpeg import FRAME_BYTES
from opus_relay.relay.opus import OpusEncoder

SILENCE = bytes(FRAME_BYTES)


def test_encodes_pcm_frames_to_opus_packets():
    encoder = OpusEncoder()
    packets = []
    for _ in range(10):
        packets.extend(encoder.encode(SILENCE))
    packets.extend(encoder.end())

    assert packets
    assert all(isinstance(p, bytes) and p for p in packets)
    assert encoder.packets == len(packets)
    assert encoder.closed


def test_rejects_partial_frames():
    encoder = OpusEncoder()
    with pytest.raises(EncodeError):
        encoder.encode(SILENCE[:100])
    encoder.close()


def test_end_is_idempotent():
    encoder = OpusEncoder()
    encoder.encode(SILENCE)
    encoder.end()

    assert encoder.end() == []
    with pytest.raises(EncodeError):
        encoder.encode(SILENCE)


def test_rejects_unsupported_channel_count():
    with pytest.raises(ValueError):
        OpusEncoder(channels=6)
