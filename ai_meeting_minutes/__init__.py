"""AI Meeting Minutes - Live meeting transcription with AI-generated minutes."""

__version__ = "0.1.0"

from .models import (
    ActionItem,
    AudioFrame,
    AudioSourceType,
    EncodedAudioChunk,
    MeetingMinutes,
    MeetingSession,
    MeetingStatus,
    TranscriptSegment,
    TranscriptionMode
)
from .transcript import TranscriptAccumulator

__all__ = [
    "ActionItem",
    "AudioFrame",
    "AudioSourceType",
    "EncodedAudioChunk",
    "MeetingMinutes",
    "MeetingSession",
    "MeetingStatus",
    "TranscriptAccumulator",
    "TranscriptSegment",
    "TranscriptionMode"
]
