from typing import Optional

from pydantic import BaseModel

from opus_relay.models.internal import CandidateFormat, ContentDescriptor, RelayMode


class FormatInfo(BaseModel):
    """Public view of a candidate format (no URL or headers)"""
    format_id: str
    codec: Optional[str] = None
    container: Optional[str] = None
    audio_sample_rate: Optional[int] = None
    audio_bitrate: Optional[int] = None
    is_audio_only: bool = True
    is_hls: bool = False

    @classmethod
    def from_candidate(cls, fmt: CandidateFormat) -> "FormatInfo":
        return cls(
            format_id=fmt.format_id,
            codec=fmt.codec,
            container=fmt.container,
            audio_sample_rate=fmt.audio_sample_rate,
            audio_bitrate=fmt.audio_bitrate,
            is_audio_only=fmt.is_audio_only,
            is_hls=fmt.is_hls,
        )


class RelayInfo(BaseModel):
    """Content summary plus the relay decision"""
    id: str
    title: str
    webpage_url: Optional[str] = None
    duration: int
    is_live: bool
    format_count: int
    mode: RelayMode
    format: FormatInfo

    @classmethod
    def build(cls, descriptor: ContentDescriptor, mode: RelayMode, fmt: CandidateFormat) -> "RelayInfo":
        return cls(
            id=descriptor.id,
            title=descriptor.title,
            webpage_url=descriptor.webpage_url,
            duration=descriptor.duration,
            is_live=descriptor.is_live,
            format_count=len(descriptor.formats),
            mode=mode,
            format=FormatInfo.from_candidate(fmt),
        )
