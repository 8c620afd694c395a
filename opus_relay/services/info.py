import asyncio
import json
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from opus_relay.config.settings import config
from opus_relay.core.errors import ResolutionError
from opus_relay.models.internal import CandidateFormat, ContentDescriptor
from opus_relay.services.ytdlp import YTDLPCommandBuilder, SubprocessExecutor
from opus_relay.infra.redis import get_redis
from opus_relay.utils.hash import cache_key as make_cache_key
from opus_relay.utils.urls import safe_url_for_log

logger = logging.getLogger(__name__)


def _has_stream(codec: Optional[str]) -> bool:
    return bool(codec) and codec != "none"


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def parse_candidate(raw: Dict[str, Any]) -> Optional[CandidateFormat]:
    """Build a CandidateFormat from one yt-dlp format dict, None if unusable"""
    url = raw.get("url")
    if not url:
        return None

    acodec = raw.get("acodec")
    codec = acodec.split(".")[0].lower() if _has_stream(acodec) else None
    has_video = _has_stream(raw.get("vcodec"))

    bitrate = None
    if has_video:
        bitrate = _as_int(raw.get("tbr") or raw.get("vbr")) or 0

    return CandidateFormat(
        format_id=str(raw.get("format_id", "")),
        url=url,
        codec=codec,
        container=raw.get("ext"),
        audio_sample_rate=_as_int(raw.get("asr")),
        audio_bitrate=_as_int(raw.get("abr")) if codec else None,
        has_video=has_video,
        bitrate=bitrate,
        is_hls=str(raw.get("protocol") or "").startswith("m3u8"),
        content_length=_as_int(raw.get("filesize")),
        http_headers=raw.get("http_headers") or {},
    )


def parse_descriptor(info: Dict[str, Any]) -> ContentDescriptor:
    """Build a ContentDescriptor from yt-dlp's --dump-json output"""
    formats = []
    # Single-format extractors put the format fields on the info dict itself
    raw_formats = info.get("formats") or ([info] if info.get("url") else [])
    for raw in raw_formats:
        try:
            candidate = parse_candidate(raw)
        except ValidationError as e:
            logger.debug(f"Skipping malformed format {raw.get('format_id')}: {e}")
            continue
        if candidate is not None:
            formats.append(candidate)

    is_live = bool(info.get("is_live"))
    return ContentDescriptor(
        id=str(info.get("id") or ""),
        title=info.get("title") or "Unknown",
        webpage_url=info.get("webpage_url"),
        # Live streams report elapsed time as duration; they have no fixed length
        duration=0 if is_live else (_as_int(info.get("duration")) or 0),
        is_live=is_live,
        formats=tuple(formats),
    )


class ResolutionService:
    """Resolve a content URL into a ContentDescriptor via yt-dlp"""

    @staticmethod
    async def resolve(url: str) -> ContentDescriptor:
        """
        Fetch content metadata with Redis caching.
        Live content is never cached since its format URLs rotate.
        """
        cache_key = make_cache_key("descriptor", url)
        redis = get_redis()

        if redis:
            try:
                cached = await redis.get(cache_key)
                if cached:
                    return ContentDescriptor.model_validate_json(cached)
            except Exception as e:
                logger.debug(f"Descriptor cache read failed: {e}")

        cmd = YTDLPCommandBuilder.build_info_command(url)
        logger.info(f"Resolving {safe_url_for_log(url)}")

        try:
            result = await SubprocessExecutor.run(cmd, timeout=config.ytdlp.info_timeout)
        except asyncio.TimeoutError:
            raise ResolutionError("Timed out resolving content metadata")
        except OSError as e:
            raise ResolutionError(f"Failed to run yt-dlp: {e}")

        if result.returncode != 0:
            error_msg = result.stderr.decode(errors="replace").strip()
            raise ResolutionError(f"Failed to fetch info: {error_msg[:200]}")

        try:
            info = json.loads(result.stdout.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ResolutionError("Failed to parse yt-dlp output")

        if not isinstance(info, dict):
            raise ResolutionError("No content metadata returned")

        descriptor = parse_descriptor(info)

        if descriptor.is_live and not config.ytdlp.enable_live_streams:
            raise ResolutionError("Live content is not supported")

        logger.info(
            f"Resolved {descriptor.id or safe_url_for_log(url)}: "
            f"{len(descriptor.formats)} formats, duration={descriptor.duration}, live={descriptor.is_live}"
        )

        if redis and not descriptor.is_live and config.ytdlp.info_cache_ttl:
            try:
                await redis.setex(cache_key, config.ytdlp.info_cache_ttl, descriptor.model_dump_json())
            except Exception as e:
                logger.debug(f"Descriptor cache write failed: {e}")

        return descriptor
