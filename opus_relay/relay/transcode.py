import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Optional

from opus_relay.core.errors import EncodeError
from opus_relay.core.stream import AudioStream
from opus_relay.models.internal import CandidateFormat, ContentDescriptor, DownloadOptions
from opus_relay.relay.ffmpeg import FRAME_SAMPLES, PCM_CHANNELS, PCM_RATE, FFmpegDecoder
from opus_relay.relay.opus import OpusEncoder

logger = logging.getLogger(__name__)

DecoderFactory = Callable[[str, Dict[str, str]], FFmpegDecoder]
EncoderFactory = Callable[[], OpusEncoder]


def spawn_decoder(url: str, headers: Dict[str, str]) -> FFmpegDecoder:
    return FFmpegDecoder(url, headers)


def create_encoder() -> OpusEncoder:
    return OpusEncoder(rate=PCM_RATE, channels=PCM_CHANNELS, frame_size=FRAME_SAMPLES)


class TranscodeRelay:
    """Decode any format to PCM with ffmpeg, then re-encode to Opus"""

    def __init__(
        self,
        descriptor: ContentDescriptor,
        fmt: CandidateFormat,
        options: Optional[DownloadOptions] = None,
        decoder_factory: DecoderFactory = spawn_decoder,
        encoder_factory: EncoderFactory = create_encoder,
    ):
        self.descriptor = descriptor
        self.fmt = fmt
        self.options = options or DownloadOptions()
        self.decoder_factory = decoder_factory
        self.encoder_factory = encoder_factory

    async def run(self, stream: AudioStream) -> None:
        """
        Pipe decoder output through the encoder into the stream.

        Encoding runs on a dedicated worker thread so libopus never blocks
        the event loop.

        Teardown is asymmetric: the decoder is killed outright, while the
        encoder is always ended (flushed) before release. Packets flushed
        after the stream was destroyed are dropped by the stream.
        """
        if stream.destroyed:
            return

        headers = {**self.fmt.http_headers, **self.options.request_headers}
        decoder = self.decoder_factory(self.fmt.url, headers)
        encoder = self.encoder_factory()
        logger.info(f"Transcoding format {self.fmt.format_id} ({self.fmt.codec}, {self.fmt.audio_bitrate} kbps)")
        frames = decoder.iter_frames()
        loop = asyncio.get_running_loop()
        # One worker keeps encoder calls ordered and never concurrent
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="opus-encode")
        try:
            await decoder.start()
            async for pcm in frames:
                if stream.destroyed:
                    break
                for packet in await loop.run_in_executor(executor, encoder.encode, pcm):
                    await stream.write(packet)
            else:
                await decoder.wait()
                for packet in await loop.run_in_executor(executor, encoder.end):
                    await stream.write(packet)
        finally:
            await frames.aclose()
            await decoder.kill()
            try:
                await loop.run_in_executor(executor, encoder.end)
            except EncodeError as e:
                logger.debug(f"Encoder flush during teardown failed: {e}")
            finally:
                executor.shutdown(wait=False)
