import asyncio
import json

import pytest

from opus_relay.config.settings import config
from opus_relay.core.errors import ResolutionError
from opus_relay.services.info import ResolutionService, parse_candidate, parse_descriptor
from opus_relay.services.ytdlp import CompletedProcess, SubprocessExecutor, YTDLPCommandBuilder

YTDLP_INFO = {
    "id": "abc123",
    "title": "Test Track",
    "webpage_url": "https://www.example.com/watch?v=abc123",
    "duration": 212.4,
    "is_live": False,
    "formats": [
        {
            "format_id": "251",
            "url": "https://media.example.com/251",
            "ext": "webm",
            "acodec": "opus",
            "vcodec": "none",
            "asr": 48000,
            "abr": 129.5,
            "protocol": "https",
            "filesize": 3456789,
            "http_headers": {"User-Agent": "yt-dlp"},
        },
        {
            "format_id": "140",
            "url": "https://media.example.com/140",
            "ext": "m4a",
            "acodec": "mp4a.40.2",
            "vcodec": "none",
            "asr": 44100,
            "abr": 129.478,
            "protocol": "https",
        },
        {
            "format_id": "137",
            "url": "https://media.example.com/137",
            "ext": "mp4",
            "acodec": "none",
            "vcodec": "avc1.640028",
            "tbr": 4000,
        },
        {
            "format_id": "18",
            "url": "https://media.example.com/18",
            "ext": "mp4",
            "acodec": "mp4a.40.2",
            "vcodec": "avc1.42001E",
            "asr": 44100,
            "abr": 96,
            "tbr": 500.3,
        },
        {"format_id": "sb0", "ext": "mhtml", "acodec": "none", "vcodec": "none"},
    ],
}


def fake_run(returncode=0, stdout=b"", stderr=b"", calls=None):
    async def run(cmd, timeout, capture_stderr=True):
        if calls is not None:
            calls.append(cmd)
        return CompletedProcess(returncode=returncode, stdout=stdout, stderr=stderr)
    return run


def test_parse_audio_only_candidate():
    fmt = parse_candidate(YTDLP_INFO["formats"][0])

    assert fmt.format_id == "251"
    assert fmt.codec == "opus"
    assert fmt.container == "webm"
    assert fmt.audio_sample_rate == 48000
    assert fmt.audio_bitrate == 130
    assert fmt.is_audio_only
    assert fmt.bitrate is None
    assert fmt.content_length == 3456789
    assert fmt.http_headers == {"User-Agent": "yt-dlp"}


def test_parse_strips_codec_profile():
    assert parse_candidate(YTDLP_INFO["formats"][1]).codec == "mp4a"


def test_parse_video_only_has_no_audio_bitrate():
    fmt = parse_candidate(YTDLP_INFO["formats"][2])

    assert fmt.codec is None
    assert fmt.audio_bitrate is None
    assert fmt.has_video
    assert fmt.bitrate == 4000


def test_parse_muxed_candidate():
    fmt = parse_candidate(YTDLP_INFO["formats"][3])

    assert not fmt.is_audio_only
    assert fmt.audio_bitrate == 96
    assert fmt.bitrate == 500


def test_parse_hls_candidate():
    fmt = parse_candidate({"format_id": "hls-96", "url": "https://x/m.m3u8", "acodec": "mp4a.40.5",
                           "vcodec": "none", "abr": 96, "protocol": "m3u8_native"})

    assert fmt.is_hls


def test_parse_descriptor_drops_formats_without_url():
    descriptor = parse_descriptor(YTDLP_INFO)

    assert descriptor.id == "abc123"
    assert descriptor.duration == 212
    assert not descriptor.is_live
    assert [f.format_id for f in descriptor.formats] == ["251", "140", "137", "18"]


def test_parse_live_descriptor_has_zero_duration():
    descriptor = parse_descriptor({"id": "live1", "title": "Live", "is_live": True, "formats": []})

    assert descriptor.duration == 0
    assert descriptor.is_live


def test_parse_single_format_info():
    descriptor = parse_descriptor({
        "id": "track", "title": "Track", "duration": 30, "url": "https://cdn.example.com/t.mp3",
        "format_id": "mp3", "ext": "mp3", "acodec": "mp3", "vcodec": "none", "abr": 128,
    })

    assert len(descriptor.formats) == 1
    assert descriptor.formats[0].codec == "mp3"


def test_info_command():
    cmd = YTDLPCommandBuilder.build_info_command("https://www.example.com/watch?v=abc123")

    assert cmd[0] == config.ytdlp.binary
    assert "--dump-json" in cmd
    assert "--no-playlist" in cmd
    assert cmd[-1] == "https://www.example.com/watch?v=abc123"


@pytest.mark.asyncio
async def test_resolve_success(monkeypatch):
    calls = []
    monkeypatch.setattr(SubprocessExecutor, "run", staticmethod(
        fake_run(stdout=json.dumps(YTDLP_INFO).encode(), calls=calls)))

    descriptor = await ResolutionService.resolve("https://www.example.com/watch?v=abc123")

    assert descriptor.title == "Test Track"
    assert len(descriptor.formats) == 4
    assert "--dump-json" in calls[0]


@pytest.mark.asyncio
async def test_resolve_nonzero_exit(monkeypatch):
    monkeypatch.setattr(SubprocessExecutor, "run", staticmethod(
        fake_run(returncode=1, stderr=b"ERROR: Video unavailable")))

    with pytest.raises(ResolutionError, match="Video unavailable"):
        await ResolutionService.resolve("https://www.example.com/watch?v=gone")


@pytest.mark.asyncio
async def test_resolve_bad_json(monkeypatch):
    monkeypatch.setattr(SubprocessExecutor, "run", staticmethod(fake_run(stdout=b"not json")))

    with pytest.raises(ResolutionError):
        await ResolutionService.resolve("https://www.example.com/watch?v=abc123")


@pytest.mark.asyncio
async def test_resolve_timeout(monkeypatch):
    async def slow(cmd, timeout, capture_stderr=True):
        raise asyncio.TimeoutError()

    monkeypatch.setattr(SubprocessExecutor, "run", staticmethod(slow))

    with pytest.raises(ResolutionError, match="Timed out"):
        await ResolutionService.resolve("https://www.example.com/watch?v=abc123")


@pytest.mark.asyncio
async def test_resolve_rejects_live_when_disabled(monkeypatch):
    live = {"id": "live1", "title": "Live", "is_live": True, "formats": []}
    monkeypatch.setattr(SubprocessExecutor, "run", staticmethod(fake_run(stdout=json.dumps(live).encode())))
    monkeypatch.setattr(config.ytdlp, "enable_live_streams", False)

    with pytest.raises(ResolutionError, match="Live"):
        await ResolutionService.resolve("https://www.example.com/live")


def test_live_duration_is_forced_to_zero():
    descriptor = parse_descriptor({"id": "live2", "title": "Live", "is_live": True, "duration": 3600, "formats": []})

    assert descriptor.duration == 0
