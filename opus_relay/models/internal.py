from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from opus_relay.config.settings import config


class CandidateFormat(BaseModel):
    """One encoding of a piece of content, validated once at resolution time"""
    model_config = ConfigDict(frozen=True)

    format_id: str
    url: str
    codec: Optional[str] = None
    container: Optional[str] = None
    audio_sample_rate: Optional[int] = None
    audio_bitrate: Optional[int] = None
    has_video: bool = False
    # Combined audio+video bitrate, only set for formats carrying video
    bitrate: Optional[int] = None
    is_hls: bool = False
    content_length: Optional[int] = None
    http_headers: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_audio_only(self) -> bool:
        return not self.has_video


class ContentDescriptor(BaseModel):
    """Resolved metadata for one download request"""
    model_config = ConfigDict(frozen=True)

    id: str = ""
    title: str = "Unknown"
    webpage_url: Optional[str] = None
    # 0 means live or indeterminate length
    duration: int = 0
    is_live: bool = False
    formats: Tuple[CandidateFormat, ...] = ()

    def with_formats(self, formats) -> "ContentDescriptor":
        return self.model_copy(update={"formats": tuple(formats)})


class RelayMode(str, Enum):
    REMUX = "remux"
    TRANSCODE = "transcode"


class FormatSelection(BaseModel):
    """Format decision: remux the candidate as-is or transcode it"""
    model_config = ConfigDict(frozen=True)

    mode: RelayMode
    format: CandidateFormat


class DownloadOptions(BaseModel):
    """Per-request options"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    high_water_mark: int = Field(default_factory=lambda: config.relay.high_water_mark, ge=1)
    format_filter: Optional[Callable[[CandidateFormat], bool]] = None
    request_headers: Dict[str, str] = Field(default_factory=dict)
