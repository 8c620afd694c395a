import logging
from typing import Callable, Dict, Optional

from opus_relay.core.stream import AudioStream
from opus_relay.models.internal import CandidateFormat, ContentDescriptor, DownloadOptions
from opus_relay.relay.webm import WebmDemuxer
from opus_relay.services.source import ByteSource

logger = logging.getLogger(__name__)

SourceFactory = Callable[[CandidateFormat, Dict[str, str]], ByteSource]


def open_source(fmt: CandidateFormat, headers: Dict[str, str]) -> ByteSource:
    return ByteSource(fmt, headers=headers)


class DemuxRelay:
    """Unwrap Opus packets from a WebM source without re-encoding"""

    def __init__(
        self,
        descriptor: ContentDescriptor,
        fmt: CandidateFormat,
        options: Optional[DownloadOptions] = None,
        source_factory: SourceFactory = open_source,
    ):
        self.descriptor = descriptor
        self.fmt = fmt
        self.options = options or DownloadOptions()
        self.source_factory = source_factory
        self.demuxer = WebmDemuxer()

    async def run(self, stream: AudioStream) -> None:
        """
        Forward demuxed packets until the source ends or the stream is
        destroyed. Source and demuxer are torn down on every exit path,
        cancellation included.
        """
        if stream.destroyed:
            return

        source = self.source_factory(self.fmt, self.options.request_headers)
        chunks = source.iter_bytes()
        packets = self.demuxer.iter_packets(chunks)
        logger.info(f"Demuxing format {self.fmt.format_id}")
        try:
            async for packet in packets:
                if stream.destroyed:
                    break
                await stream.write(packet)
        finally:
            await packets.aclose()
            await chunks.aclose()
            await source.aclose()
