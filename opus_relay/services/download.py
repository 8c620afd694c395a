from typing import Optional

from opus_relay.core.lifecycle import LifecycleSupervisor, RelayFactory, Resolver
from opus_relay.core.stream import AudioStream
from opus_relay.models.internal import ContentDescriptor, DownloadOptions
from opus_relay.services.info import ResolutionService


def download(
    url: str,
    options: Optional[DownloadOptions] = None,
    *,
    resolver: Optional[Resolver] = None,
    relay_factory: Optional[RelayFactory] = None,
) -> AudioStream:
    """
    Start relaying the audio of url as Opus packets.

    Returns immediately; resolution, selection and relaying run in a task
    on the current event loop. Failures surface through the stream.
    """
    options = options or DownloadOptions()
    stream = AudioStream(high_water_mark=options.high_water_mark)
    LifecycleSupervisor(
        stream,
        options,
        url=url,
        resolver=resolver or ResolutionService.resolve,
        relay_factory=relay_factory,
    ).start()
    return stream


def download_from_info(
    descriptor: ContentDescriptor,
    options: Optional[DownloadOptions] = None,
    *,
    relay_factory: Optional[RelayFactory] = None,
) -> AudioStream:
    """Like download() for an already resolved descriptor"""
    options = options or DownloadOptions()
    stream = AudioStream(high_water_mark=options.high_water_mark)
    LifecycleSupervisor(
        stream,
        options,
        descriptor=descriptor,
        relay_factory=relay_factory,
    ).start()
    return stream


async def get_info(url: str) -> ContentDescriptor:
    return await ResolutionService.resolve(url)
