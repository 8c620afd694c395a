import asyncio
import logging
from collections import deque
from contextlib import suppress
from typing import AsyncIterator, Dict, List, Optional

from opus_relay.config.settings import config
from opus_relay.core.errors import TransportError
from opus_relay.utils.urls import safe_url_for_log

logger = logging.getLogger(__name__)

PCM_RATE = 48000
PCM_CHANNELS = 2
FRAME_SAMPLES = 960
# s16le interleaved: 2 bytes per sample per channel
FRAME_BYTES = FRAME_SAMPLES * PCM_CHANNELS * 2
STDERR_MAX_LINES = 50


class FFmpegCommandBuilder:
    """Build ffmpeg commands"""

    @staticmethod
    def build_decode_command(url: str, headers: Optional[Dict[str, str]] = None) -> List[str]:
        """Decode any input into raw 48 kHz stereo s16le PCM on stdout"""
        cmd = [
            config.ffmpeg.binary,
            '-reconnect', '1',
            '-reconnect_streamed', '1',
            '-reconnect_delay_max', str(config.relay.reconnect_delay_max),
            '-analyzeduration', '0',
            '-loglevel', '0',
            '-nostdin',
        ]

        if headers:
            cmd.extend(['-headers', ''.join(f"{k}: {v}\r\n" for k, v in headers.items())])

        cmd.extend([
            '-i', url,
            '-f', 's16le',
            '-ar', str(PCM_RATE),
            '-ac', str(PCM_CHANNELS),
            'pipe:1',
        ])
        return cmd

    @staticmethod
    def build_version_command() -> List[str]:
        return [config.ffmpeg.binary, '-version']


class FFmpegDecoder:
    """ffmpeg decode process producing PCM frames"""

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.cmd = FFmpegCommandBuilder.build_decode_command(url, headers)
        self.process: Optional[asyncio.subprocess.Process] = None
        self.stderr_lines: deque = deque(maxlen=STDERR_MAX_LINES)
        self._stderr_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL
            )
        except OSError as e:
            raise TransportError(f"Failed to start ffmpeg: {e}")

        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.debug(f"ffmpeg started (pid {self.process.pid}) for {safe_url_for_log(self.url)}")

    async def _drain_stderr(self) -> None:
        """Drain stderr to prevent buffer deadlock"""
        while True:
            line = await self.process.stderr.readline()
            if not line:
                break
            self.stderr_lines.append(line.decode(errors="replace").strip())

    async def iter_frames(self, frame_bytes: int = FRAME_BYTES) -> AsyncIterator[bytes]:
        """Whole PCM frames from stdout; a trailing partial frame is dropped"""
        while True:
            try:
                yield await self.process.stdout.readexactly(frame_bytes)
            except asyncio.IncompleteReadError as e:
                if e.partial:
                    logger.debug(f"Dropping {len(e.partial)} trailing PCM bytes")
                return

    async def wait(self) -> int:
        """Wait for a normal exit, raising TransportError on failure"""
        returncode = await self.process.wait()
        if self._stderr_task is not None:
            # stderr hits EOF once the process is gone; let the tail land
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
        await self._stop_stderr()
        if returncode != 0:
            error_summary = '\n'.join(self.stderr_lines)
            raise TransportError(f"ffmpeg exited with {returncode}: {error_summary[:200]}")
        return returncode

    async def kill(self) -> None:
        """Hard stop; no-op once the process has exited"""
        if self.process is None:
            return
        if self.process.returncode is None:
            with suppress(ProcessLookupError):
                self.process.kill()
            try:
                await asyncio.wait_for(self.process.wait(), timeout=config.relay.teardown_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"ffmpeg (pid {self.process.pid}) did not exit after kill")
        await self._stop_stderr()

    async def _stop_stderr(self) -> None:
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None
