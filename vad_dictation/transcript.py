"""Accumulation of per-segment text into one readable transcript."""

import logging

logger = logging.getLogger(__name__)

NEWLINE_MARKER = "\n"


class TranscriptBuffer:
    """Ordered transcript text built from settled segment results."""

    def __init__(self, text: str = ""):
        self._text = text

    @property
    def text(self) -> str:
        return self._text

    def append(self, fragment: str) -> str:
        """Merge ``fragment`` into the buffer and return the new content.

        The newline marker replaces trailing whitespace with one line break.
        Any other fragment loses its trailing whitespace and is joined to
        the previous text with a single space unless a line was just broken.
        Empty or whitespace-only fragments are skipped, so a segment that
        transcribed to nothing adds no stray space.
        """
        if fragment == NEWLINE_MARKER:
            self._text = self._text.rstrip() + NEWLINE_MARKER
            return self._text

        clean = fragment.rstrip()
        if not clean:
            return self._text

        if self._text and not self._text.endswith(NEWLINE_MARKER):
            self._text += " "
        self._text += clean
        logger.debug("Transcript now %d characters", len(self._text))
        return self._text

    def add_newline(self) -> str:
        return self.append(NEWLINE_MARKER)

    def final_text(self) -> str:
        """Trimmed content handed to cleanup and insertion."""
        return self._text.strip()

    def is_empty(self) -> bool:
        return not self.final_text()

    def clear(self) -> None:
        self._text = ""

    def __str__(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)
