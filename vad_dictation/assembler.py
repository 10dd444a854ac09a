"""Reassembly of streamed chunks into standalone segments."""

import itertools
import logging
from typing import Sequence

from vad_dictation._types import EncodedChunk, Segment

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TYPE = "audio/wav"


class SegmentAssembler:
    """Builds independently decodable segments from chunk lists.

    The stream header only exists in the first chunk of a session, so it is
    captured once and prefixed to every segment that does not already
    start with it. The header lives for the whole session; chunk lists
    passed to ``assemble`` are never retained.
    """

    def __init__(self, media_type: str = DEFAULT_MEDIA_TYPE):
        self.media_type = media_type
        self._header: EncodedChunk | None = None
        self._sequence = itertools.count()

    @property
    def header(self) -> EncodedChunk | None:
        return self._header

    def capture_header(self, chunk: EncodedChunk) -> bool:
        """Keep ``chunk`` as the session header if none is held yet.

        Returns:
            True if the chunk became the header
        """
        if self._header is not None:
            return False
        self._header = chunk
        logger.debug("Captured stream header chunk: %d bytes", len(chunk.data))
        return True

    def assemble(self, chunks: Sequence[EncodedChunk]) -> Segment | None:
        """Concatenate ``chunks`` into a segment prefixed with the header.

        Returns:
            Segment, or None when there is nothing buffered
        """
        if not chunks:
            logger.debug("No chunks buffered, no segment emitted")
            return None

        ordered = list(chunks)
        if self._header is None:
            logger.warning(
                "Assembling segment without a captured header; it may not decode"
            )
        elif ordered[0].sequence != self._header.sequence:
            ordered.insert(0, self._header)

        segment = Segment(
            data=b"".join(chunk.data for chunk in ordered),
            media_type=self.media_type,
            sequence=next(self._sequence),
            chunk_count=len(ordered),
        )
        logger.debug(
            "Assembled segment #%d: %d chunks, %d bytes",
            segment.sequence,
            segment.chunk_count,
            len(segment.data),
        )
        return segment

    def reset(self) -> None:
        """Forget the header and restart numbering for a new session."""
        self._header = None
        self._sequence = itertools.count()
