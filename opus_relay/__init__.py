from .core.errors import (
    DemuxError,
    EncodeError,
    RelayError,
    ResolutionError,
    SelectionError,
    StreamClosedError,
    TransportError,
)
from .core.lifecycle import RequestState
from .core.stream import AudioStream
from .models.internal import CandidateFormat, ContentDescriptor, DownloadOptions, RelayMode
from .services.download import download, download_from_info, get_info

__all__ = [
    "AudioStream",
    "CandidateFormat",
    "ContentDescriptor",
    "DemuxError",
    "DownloadOptions",
    "EncodeError",
    "RelayError",
    "RelayMode",
    "RequestState",
    "ResolutionError",
    "SelectionError",
    "StreamClosedError",
    "TransportError",
    "download",
    "download_from_info",
    "get_info",
]
