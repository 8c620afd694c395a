import logging
from typing import AsyncIterator, Dict, Optional, Tuple

import httpx

from opus_relay.config.settings import config
from opus_relay.core.errors import TransportError
from opus_relay.models.internal import CandidateFormat
from opus_relay.utils.urls import safe_url_for_log

logger = logging.getLogger(__name__)

UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)


def parse_content_range(value: str) -> Optional[Tuple[int, int, Optional[int]]]:
    """Parse "bytes start-end/total" into (start, end, total); total is None for "*"."""
    try:
        range_info = value.split()[-1]
        span, total = range_info.split("/")
        start, end = map(int, span.split("-"))
        return start, end, None if total == "*" else int(total)
    except (IndexError, ValueError):
        return None


class ByteSource:
    """
    Readable byte source bound to one candidate format.

    Downloads in sequential Range requests when the content length is
    known, which keeps media servers from throttling one long response.
    Each 206 must continue exactly where the previous one stopped; a
    server that answers the first range with 200 is streamed in one go.
    Errors are raised as TransportError and never retried.
    """

    def __init__(
        self,
        fmt: CandidateFormat,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        chunk_size: Optional[int] = None,
    ):
        self.fmt = fmt
        self.chunk_size = config.relay.download_chunk_size if chunk_size is None else chunk_size
        self.headers = {
            "User-Agent": UA,
            "Accept": "*/*",
            "Accept-Encoding": "identity",
            **fmt.http_headers,
            **(headers or {}),
        }
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            follow_redirects=True,
            timeout=config.relay.http_timeout
        )
        self._response: Optional[httpx.Response] = None
        self._closed = False
        self.bytes_read = 0
        self._received = 0
        self._range_ignored = False

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        total = self.fmt.content_length
        try:
            if total and self.chunk_size:
                start = 0
                while start < total and not self._closed:
                    end = min(start + self.chunk_size, total) - 1
                    async for chunk in self._get({"Range": f"bytes={start}-{end}"}, range_start=start):
                        yield chunk
                    if self._range_ignored:
                        # The whole resource came back in one 200 response
                        return
                    if not self._received:
                        raise TransportError(f"Empty range response at byte {start} of {total}")
                    # Short 206 responses resume where the data stopped
                    start += self._received
            else:
                async for chunk in self._get({}):
                    yield chunk
        except httpx.HTTPError as e:
            raise TransportError(f"Fetch failed for {safe_url_for_log(self.fmt.url)}: {e}")

    async def _get(self, extra: Dict[str, str], range_start: Optional[int] = None) -> AsyncIterator[bytes]:
        self._received = 0
        if self._closed:
            return
        request = self._client.build_request("GET", self.fmt.url, headers={**self.headers, **extra})
        self._response = await self._client.send(request, stream=True)
        try:
            if not self._response.is_success:
                raise TransportError(
                    f"Upstream returned {self._response.status_code} for {safe_url_for_log(self.fmt.url)}"
                )
            if range_start is not None:
                self._check_range(self._response, range_start)
            async for chunk in self._response.aiter_bytes():
                self._received += len(chunk)
                self.bytes_read += len(chunk)
                yield chunk
        finally:
            await self._response.aclose()
            self._response = None

    def _check_range(self, response: httpx.Response, start: int) -> None:
        """Make sure a ranged response continues exactly at start"""
        if response.status_code == 200:
            if start != 0:
                raise TransportError(f"Server ignored Range at byte {start}")
            logger.debug("Server ignored Range, streaming the full response")
            self._range_ignored = True
            return
        if response.status_code != 206:
            raise TransportError(f"Unexpected status {response.status_code} for a range request")

        content_range = parse_content_range(response.headers.get("Content-Range", ""))
        if content_range is None:
            raise TransportError("Range response without a valid Content-Range")
        if content_range[0] != start:
            raise TransportError(f"Range response starts at byte {content_range[0]}, expected {start}")

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._response is not None:
            await self._response.aclose()
            self._response = None
        if self._owns_client:
            await self._client.aclose()
        logger.debug(f"Byte source closed after {self.bytes_read} bytes")
