import asyncio
import struct
from typing import AsyncIterator

from fastapi import APIRouter, Request, Depends, HTTPException
from fastapi.responses import StreamingResponse

from opus_relay.models.request import AudioRequest
from opus_relay.core.errors import EncodeError, RelayError
from opus_relay.core.security import SecurityValidator, UrlValidationResult
from opus_relay.core.logging import log_info, log_error
from opus_relay.core.stream import AudioStream
from opus_relay.infra.rate_limit import rate_limiter
from opus_relay.infra.concurrency import concurrency_limiter, release_relay_slot
from opus_relay.services.download import download
from opus_relay.utils.urls import safe_url_for_log

MAX_PACKET_SIZE = 0xFFFF

router = APIRouter()


def frame_packet(packet: bytes, framing: str) -> bytes:
    """Prefix a packet with its u16 little-endian length unless framing is raw"""
    if framing == "raw":
        return packet
    if len(packet) > MAX_PACKET_SIZE:
        raise EncodeError(f"Opus packet too large to frame ({len(packet)} bytes)")
    return struct.pack("<H", len(packet)) + packet


async def relay_body(request: Request, stream: AudioStream, framing: str) -> AsyncIterator[bytes]:
    """
    Stream framed packets to the client.
    The stream is destroyed and the slot released however the response ends,
    including client disconnects.
    """
    sent = 0
    try:
        async for packet in stream:
            sent += 1
            yield frame_packet(packet, framing)
        log_info(request, f"Relay finished ({sent} packets)")
    except RelayError as e:
        log_error(request, f"Relay failed after {sent} packets: {e.message}")
        raise
    finally:
        stream.destroy()
        await release_relay_slot(request)


@router.post("/audio", dependencies=[Depends(rate_limiter), Depends(concurrency_limiter)])
async def relay_audio(request: Request, audio_request: AudioRequest):
    """Relay the audio of a URL as a stream of Opus packets"""
    url = str(audio_request.url)

    try:
        validation_result = await SecurityValidator.validate_url(url)
        if validation_result == UrlValidationResult.BLOCKED:
            raise HTTPException(status_code=403, detail="Access to private or reserved addresses is not allowed")
        if validation_result == UrlValidationResult.INVALID:
            raise HTTPException(status_code=400, detail="Invalid URL")
    except HTTPException:
        await release_relay_slot(request)
        raise

    log_info(request, f"Starting relay for {safe_url_for_log(url)}")
    stream = download(url, audio_request.to_options())

    try:
        descriptor, fmt = await stream.info()
    except RelayError as e:
        stream.destroy()
        await release_relay_slot(request)
        log_error(request, f"Relay setup failed: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except asyncio.CancelledError:
        stream.destroy()
        await release_relay_slot(request)
        raise
    except Exception as e:
        stream.destroy()
        await release_relay_slot(request)
        log_error(request, f"Relay setup error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    mode = stream.mode.value
    log_info(request, f"Relaying '{descriptor.title}' format {fmt.format_id} via {mode}")

    headers = {
        "X-Relay-Mode": mode,
        "X-Format-Id": fmt.format_id,
        "X-Framing": audio_request.framing,
        "Cache-Control": "no-store",
    }
    return StreamingResponse(
        relay_body(request, stream, audio_request.framing),
        media_type="application/octet-stream",
        headers=headers,
    )
