from .internal import CandidateFormat, ContentDescriptor, DownloadOptions, FormatSelection, RelayMode
from .request import AudioRequest, InfoRequest
from .response import FormatInfo, RelayInfo

__all__ = [
    "AudioRequest",
    "CandidateFormat",
    "ContentDescriptor",
    "DownloadOptions",
    "FormatInfo",
    "FormatSelection",
    "InfoRequest",
    "RelayInfo",
    "RelayMode",
]
