from typing import Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, HttpUrl, field_validator

from opus_relay.models.internal import DownloadOptions

class InfoRequest(BaseModel):
    url: HttpUrl = Field(..., description="Content URL")

    @field_validator('url')
    @classmethod
    def validate_url_syntax(cls, v):
        """Validate URL syntax only (SSRF check done at endpoint)"""
        parsed = urlparse(str(v))
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("Invalid URL format")
        return v

class AudioRequest(InfoRequest):
    format_id: Optional[str] = Field(None, description="Restrict selection to this format id")
    high_water_mark: Optional[int] = Field(None, ge=1024, description="Output buffer capacity in bytes")
    framing: Literal["length_prefixed", "raw"] = Field(
        "length_prefixed",
        description="length_prefixed: u16 little-endian size before each Opus packet; raw: packets back to back"
    )

    def to_options(self) -> DownloadOptions:
        """Convert to relay options"""
        options = {}
        if self.high_water_mark:
            options["high_water_mark"] = self.high_water_mark
        if self.format_id:
            format_id = self.format_id
            options["format_filter"] = lambda f: f.format_id == format_id
        return DownloadOptions(**options)
