import logging
from typing import Iterable, Optional

from opus_relay.core.errors import SelectionError
from opus_relay.models.internal import (
    CandidateFormat,
    ContentDescriptor,
    FormatSelection,
    RelayMode,
)

logger = logging.getLogger(__name__)

TARGET_CODEC = "opus"
TARGET_CONTAINER = "webm"
TARGET_SAMPLE_RATE = 48000

class FormatDecision:
    """Make format decisions"""

    @staticmethod
    def is_remux_candidate(fmt: CandidateFormat) -> bool:
        """Opus in WebM at 48 kHz can be demuxed without re-encoding"""
        return (
            fmt.codec == TARGET_CODEC
            and fmt.container == TARGET_CONTAINER
            and fmt.audio_sample_rate == TARGET_SAMPLE_RATE
        )

    @staticmethod
    def find_remux_candidate(descriptor: ContentDescriptor) -> Optional[CandidateFormat]:
        """First remux-eligible format in list order, never for live/indeterminate content"""
        if descriptor.duration == 0:
            return None
        return next(
            (f for f in descriptor.formats if FormatDecision.is_remux_candidate(f)),
            None
        )

    @staticmethod
    def best_audio_format(formats: Iterable[CandidateFormat], is_live: bool) -> Optional[CandidateFormat]:
        """
        Highest bitrate audio-only format, falling back to the highest
        audio bitrate of any format carrying audio.
        """
        candidates = [
            f for f in formats
            if f.audio_bitrate and (f.is_hls or not is_live)
        ]
        # sorted() is stable, so equal bitrates keep list order
        candidates = sorted(candidates, key=lambda f: f.audio_bitrate, reverse=True)
        if not candidates:
            return None
        return next((f for f in candidates if f.is_audio_only), candidates[0])

    @staticmethod
    def decide(descriptor: ContentDescriptor) -> FormatSelection:
        """Pick the relay path for a descriptor, raising SelectionError if nothing fits"""
        remux = FormatDecision.find_remux_candidate(descriptor)
        if remux is not None:
            logger.debug(f"Remux candidate {remux.format_id} for {descriptor.id or 'content'}")
            return FormatSelection(mode=RelayMode.REMUX, format=remux)

        best = FormatDecision.best_audio_format(descriptor.formats, descriptor.is_live)
        if best is None:
            raise SelectionError("No suitable format found")

        logger.debug(f"Transcode candidate {best.format_id} ({best.audio_bitrate} kbps)")
        return FormatSelection(mode=RelayMode.TRANSCODE, format=best)
