import asyncio
import threading

import pytest

from opus_relay.core.errors import DemuxError, EncodeError, TransportError
from opus_relay.core.stream import AudioStream
from opus_relay.models.internal import DownloadOptions
from opus_relay.relay.demux import DemuxRelay
from opus_relay.relay.ffmpeg import FRAME_BYTES, FFmpegCommandBuilder
from opus_relay.relay.transcode import TranscodeRelay

from conftest import chunked, make_descriptor, make_format, webm_file

FRAMES = [b"\xfc" + bytes([i]) * 20 for i in range(6)]


def ready_stream(high_water_mark=512 * 1024) -> AudioStream:
    stream = AudioStream(high_water_mark=high_water_mark)
    fmt = make_format()
    stream.emit_info(make_descriptor([fmt]), fmt)
    return stream


class FakeSource:
    def __init__(self, data: bytes, chunk_size: int = 16, endless: bool = False):
        self.data = data
        self.chunk_size = chunk_size
        self.endless = endless
        self.closed = False

    async def iter_bytes(self):
        async for chunk in chunked(self.data, self.chunk_size):
            yield chunk
        while self.endless:
            await asyncio.sleep(0)

    async def aclose(self):
        self.closed = True


class FakeDecoder:
    def __init__(self, frames=3, endless=False, returncode=0):
        self.frames = frames
        self.endless = endless
        self.returncode = returncode
        self.started = False
        self.killed = False

    async def start(self):
        self.started = True

    async def iter_frames(self):
        sent = 0
        while self.endless or sent < self.frames:
            await asyncio.sleep(0)
            sent += 1
            yield bytes([sent % 256]) * FRAME_BYTES

    async def wait(self):
        if self.returncode:
            raise TransportError(f"ffmpeg exited with {self.returncode}")
        return 0

    async def kill(self):
        self.killed = True


class FakeEncoder:
    def __init__(self):
        self.encoded = 0
        self.end_calls = 0
        self.closed = False

    def encode(self, pcm):
        if self.closed:
            raise EncodeError("Encoder already closed")
        self.encoded += 1
        return [b"opus-%d" % self.encoded]

    def end(self):
        self.end_calls += 1
        if self.closed:
            return []
        self.closed = True
        return [b"flush"]


@pytest.mark.asyncio
async def test_demux_relay_forwards_packets_and_closes_source():
    source = FakeSource(webm_file(FRAMES))
    fmt = make_format()
    relay = DemuxRelay(make_descriptor([fmt]), fmt, source_factory=lambda f, h: source)
    stream = ready_stream()

    await relay.run(stream)
    stream.end()

    assert [p async for p in stream] == FRAMES
    assert source.closed


@pytest.mark.asyncio
async def test_demux_relay_passes_request_headers():
    seen = {}
    source = FakeSource(webm_file(FRAMES))

    def factory(fmt, headers):
        seen.update(headers)
        return source

    fmt = make_format()
    options = DownloadOptions(request_headers={"Cookie": "a=b"})
    await DemuxRelay(make_descriptor([fmt]), fmt, options, source_factory=factory).run(ready_stream())

    assert seen == {"Cookie": "a=b"}


@pytest.mark.asyncio
async def test_demux_relay_stops_writing_after_destroy():
    source = FakeSource(webm_file(FRAMES), endless=True)
    fmt = make_format()
    relay = DemuxRelay(make_descriptor([fmt]), fmt, source_factory=lambda f, h: source)
    stream = ready_stream(high_water_mark=1)

    task = asyncio.create_task(relay.run(stream))
    first = await stream.read()
    stream.destroy()
    await asyncio.wait_for(task, timeout=1)

    assert first == FRAMES[0]
    assert await stream.read() == b""
    assert source.closed
    assert relay.demuxer.packets < len(FRAMES)


@pytest.mark.asyncio
async def test_demux_relay_skips_destroyed_stream():
    source = FakeSource(webm_file(FRAMES))
    fmt = make_format()
    created = []
    stream = ready_stream()
    stream.destroy()

    await DemuxRelay(make_descriptor([fmt]), fmt, source_factory=lambda f, h: created.append(1) or source).run(stream)

    assert created == []


@pytest.mark.asyncio
async def test_demux_relay_surfaces_demux_errors_and_tears_down():
    source = FakeSource(b"not a webm file at all")
    fmt = make_format()
    relay = DemuxRelay(make_descriptor([fmt]), fmt, source_factory=lambda f, h: source)

    with pytest.raises(DemuxError):
        await relay.run(ready_stream())
    assert source.closed


@pytest.mark.asyncio
async def test_transcode_relay_encodes_every_frame_then_flushes():
    decoder, encoder = FakeDecoder(frames=3), FakeEncoder()
    fmt = make_format("140", codec="mp4a", container="m4a", http_headers={"Referer": "https://www.example.com/"})
    seen = {}

    def decoder_factory(url, headers):
        seen["url"] = url
        seen["headers"] = headers
        return decoder

    options = DownloadOptions(request_headers={"Cookie": "a=b"})
    relay = TranscodeRelay(make_descriptor([fmt]), fmt, options,
                           decoder_factory=decoder_factory, encoder_factory=lambda: encoder)
    stream = ready_stream()

    await relay.run(stream)
    stream.end()

    assert [p async for p in stream] == [b"opus-1", b"opus-2", b"opus-3", b"flush"]
    assert seen["url"] == fmt.url
    assert seen["headers"] == {"Referer": "https://www.example.com/", "Cookie": "a=b"}
    assert decoder.started and decoder.killed
    assert encoder.end_calls == 2


@pytest.mark.asyncio
async def test_transcode_relay_destroy_kills_decoder_and_ends_encoder():
    decoder, encoder = FakeDecoder(endless=True), FakeEncoder()
    fmt = make_format("140", codec="mp4a", container="m4a")
    relay = TranscodeRelay(make_descriptor([fmt]), fmt,
                           decoder_factory=lambda u, h: decoder, encoder_factory=lambda: encoder)
    stream = ready_stream(high_water_mark=1)

    task = asyncio.create_task(relay.run(stream))
    assert await stream.read() == b"opus-1"
    stream.destroy()
    await asyncio.wait_for(task, timeout=1)

    assert decoder.killed
    assert encoder.closed
    assert encoder.end_calls == 1
    assert await stream.read() == b""


@pytest.mark.asyncio
async def test_transcode_relay_cancellation_still_tears_down():
    decoder, encoder = FakeDecoder(endless=True), FakeEncoder()
    fmt = make_format("140", codec="mp4a", container="m4a")
    relay = TranscodeRelay(make_descriptor([fmt]), fmt,
                           decoder_factory=lambda u, h: decoder, encoder_factory=lambda: encoder)
    stream = ready_stream(high_water_mark=1)

    task = asyncio.create_task(relay.run(stream))
    await stream.read()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert decoder.killed
    assert encoder.closed


@pytest.mark.asyncio
async def test_transcode_relay_decoder_failure_is_fatal():
    decoder, encoder = FakeDecoder(frames=2, returncode=1), FakeEncoder()
    fmt = make_format("140", codec="mp4a", container="m4a")
    relay = TranscodeRelay(make_descriptor([fmt]), fmt,
                           decoder_factory=lambda u, h: decoder, encoder_factory=lambda: encoder)

    with pytest.raises(TransportError):
        await relay.run(ready_stream())

    assert decoder.killed
    assert encoder.closed


@pytest.mark.asyncio
async def test_transcode_relay_encodes_on_one_worker_thread():
    threads = []

    class ThreadRecordingEncoder(FakeEncoder):
        def encode(self, pcm):
            threads.append(threading.get_ident())
            return super().encode(pcm)

        def end(self):
            threads.append(threading.get_ident())
            return super().end()

    fmt = make_format("140", codec="mp4a", container="m4a")
    relay = TranscodeRelay(make_descriptor([fmt]), fmt,
                           decoder_factory=lambda u, h: FakeDecoder(frames=3),
                           encoder_factory=ThreadRecordingEncoder)

    await relay.run(ready_stream())

    assert len(threads) == 5
    assert threading.get_ident() not in threads
    assert len(set(threads)) == 1


def test_decode_command_arguments():
    cmd = FFmpegCommandBuilder.build_decode_command("https://media.example.com/a", {"Referer": "https://x/"})

    assert cmd[0] == "ffmpeg"
    for flag, value in [
        ("-reconnect", "1"),
        ("-reconnect_streamed", "1"),
        ("-reconnect_delay_max", "5"),
        ("-analyzeduration", "0"),
        ("-loglevel", "0"),
        ("-f", "s16le"),
        ("-ar", "48000"),
        ("-ac", "2"),
    ]:
        assert cmd[cmd.index(flag) + 1] == value
    assert cmd[cmd.index("-headers") + 1] == "Referer: https://x/\r\n"
    assert cmd.index("-headers") < cmd.index("-i") < cmd.index("-f")
    assert cmd[-1] == "pipe:1"


def test_decode_command_without_headers():
    cmd = FFmpegCommandBuilder.build_decode_command("https://media.example.com/a")

    assert "-headers" not in cmd
    assert cmd[cmd.index("-i") + 1] == "https://media.example.com/a"
