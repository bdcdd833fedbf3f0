"""Running transcript buffer shared between the transcription session and the controller."""

import logging
from typing import TYPE_CHECKING, Tuple

if TYPE_CHECKING:
    from .models import TranscriptSegment

logger = logging.getLogger(__name__)


class TranscriptFrozenError(RuntimeError):
    """Raised when text arrives after the transcript has been frozen."""
    pass


class TranscriptAccumulator:
    """
    Append-only, single-writer transcript buffer.

    Only the transcription session's delivery callback appends. The joined
    text is rebuilt and published with one reference assignment, so a
    concurrent ``snapshot()`` always returns a complete prefix.
    """

    separator = " "

    def __init__(self):
        self._segments: Tuple["TranscriptSegment", ...] = ()
        self._text = ""
        self._frozen = False

    def append(self, segment: "TranscriptSegment") -> None:
        """Append one segment's text in arrival order."""
        if self._frozen:
            raise TranscriptFrozenError("Transcript is frozen; no more segments can be appended")

        text = segment.text.strip()
        if not text:
            return

        text = f"{self._text}{self.separator}{text}" if self._text else text
        self._segments = self._segments + (segment,)
        self._text = text

    def snapshot(self) -> str:
        """Return the full transcript text."""
        return self._text

    @property
    def segments(self) -> Tuple["TranscriptSegment", ...]:
        return self._segments

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        """Stop accepting segments; called when processing begins."""
        self._frozen = True

    def clear(self) -> None:
        """Reset to empty and accept segments again."""
        self._segments = ()
        self._text = ""
        self._frozen = False
        logger.debug("Transcript cleared")

    def __len__(self) -> int:
        return len(self._text)
