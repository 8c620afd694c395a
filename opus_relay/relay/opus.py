"""
PyAV-based Opus encoder for raw PCM.

Encodes interleaved s16le PCM at 48 kHz stereo into Opus packets with a
fixed 960-sample (20 ms) frame size, using PyAV's CodecContext API
(libopus through FFmpeg's libavcodec). In-process, no container.

Usage:
    encoder = OpusEncoder()
    for pcm in frames:
        for packet in encoder.encode(pcm):
            write(packet)
    for packet in encoder.end():
        write(packet)
"""

import logging
from typing import List, Optional

import av
from av.error import FFmpegError

from opus_relay.config.settings import config
from opus_relay.core.errors import EncodeError

logger = logging.getLogger(__name__)

_CODEC = "libopus"
_SAMPLE_FORMAT = "s16"
_LAYOUTS = {1: "mono", 2: "stereo"}


class OpusEncoder:
    """Fixed-format PCM to Opus encoder"""

    def __init__(
        self,
        rate: int = 48000,
        channels: int = 2,
        frame_size: int = 960,
        bitrate: Optional[int] = None,
    ) -> None:
        if channels not in _LAYOUTS:
            raise ValueError(f"Unsupported channel count {channels}")
        self.rate = rate
        self.channels = channels
        self.frame_size = frame_size
        self._frame_bytes = frame_size * channels * 2
        self._pts = 0
        self.closed = False
        self.packets = 0

        try:
            self._encoder = av.CodecContext.create(_CODEC, "w")
            self._encoder.sample_rate = rate
            self._encoder.layout = _LAYOUTS[channels]
            self._encoder.format = _SAMPLE_FORMAT
            self._encoder.bit_rate = bitrate or config.relay.opus_bitrate
            # libopus takes its frame size as a duration in ms
            self._encoder.options = {"frame_duration": str(frame_size * 1000 // rate)}
            self._encoder.open()
        except (FFmpegError, ValueError) as e:
            raise EncodeError(f"Failed to open Opus encoder: {e}")

        logger.debug(
            f"Opus encoder ready: {rate} Hz, {channels} ch, {frame_size} samples, "
            f"{self._encoder.bit_rate // 1000} kbps"
        )

    def encode(self, pcm: bytes) -> List[bytes]:
        """Encode exactly one frame of interleaved s16le PCM"""
        if self.closed:
            raise EncodeError("Encoder already closed")
        if len(pcm) != self._frame_bytes:
            raise EncodeError(f"Expected {self._frame_bytes} PCM bytes, got {len(pcm)}")

        frame = av.AudioFrame(
            format=_SAMPLE_FORMAT,
            layout=_LAYOUTS[self.channels],
            samples=self.frame_size,
        )
        frame.sample_rate = self.rate
        frame.pts = self._pts
        frame.planes[0].update(pcm)
        self._pts += self.frame_size

        return self._collect(frame)

    def end(self) -> List[bytes]:
        """Flush buffered packets and close. Returns [] if already closed."""
        if self.closed:
            return []
        try:
            return self._collect(None)
        finally:
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Older PyAV releases have no CodecContext.close
        if hasattr(self._encoder, "close"):
            self._encoder.close()
        logger.debug(f"Opus encoder closed after {self.packets} packets")

    def _collect(self, frame) -> List[bytes]:
        try:
            packets = [bytes(packet) for packet in self._encoder.encode(frame)]
        except FFmpegError as e:
            raise EncodeError(f"Opus encode failed: {e}")
        self.packets += len(packets)
        return packets
