import base64
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, List, Optional, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from .error_handling import ProcessingError
from .transcript import TranscriptAccumulator


class MeetingStatus(str, Enum):
    """Lifecycle states of a meeting session."""
    IDLE = "IDLE"
    RECORDING = "RECORDING"
    PROCESSING = "PROCESSING"
    REVIEWING = "REVIEWING"


class AudioSourceType(str, Enum):
    """Where meeting audio is captured from."""
    MICROPHONE = "MICROPHONE"
    SYSTEM_AUDIO = "SYSTEM_AUDIO"


class TranscriptionMode(str, Enum):
    """Transcription strategy selected when a session starts."""
    STREAMING = "streaming"
    BATCH = "batch"


@dataclass(frozen=True)
class AudioFrame:
    """Fixed-length block of mono float samples in [-1, 1] as captured."""
    samples: np.ndarray
    sample_rate: int
    sequence: int

    def __post_init__(self):
        samples = np.asarray(self.samples, dtype=np.float32)
        if samples.ndim != 1:
            raise ValueError(f"Audio frame must be mono, got shape {samples.shape}")
        samples.setflags(write=False)
        object.__setattr__(self, "samples", samples)

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def duration(self) -> float:
        return len(self.samples) / float(self.sample_rate)


@dataclass(frozen=True)
class EncodedAudioChunk:
    """PCM16 little-endian audio ready for transport."""
    data: bytes
    sample_rate: int
    sequence: int = 0

    @property
    def mime_type(self) -> str:
        return f"audio/pcm;rate={self.sample_rate}"

    @property
    def sample_count(self) -> int:
        return len(self.data) // 2

    @property
    def duration(self) -> float:
        return self.sample_count / float(self.sample_rate)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @classmethod
    def concatenate(cls, chunks: Sequence["EncodedAudioChunk"]) -> "EncodedAudioChunk":
        """Join a run of chunks (same sample rate) into one payload."""
        if not chunks:
            raise ValueError("Cannot concatenate an empty list of chunks")
        rates = {chunk.sample_rate for chunk in chunks}
        if len(rates) > 1:
            raise ValueError(f"Cannot concatenate chunks with different sample rates: {sorted(rates)}")
        return cls(
            data=b"".join(chunk.data for chunk in chunks),
            sample_rate=chunks[0].sample_rate,
            sequence=chunks[0].sequence
        )


class TranscriptSegment(BaseModel):
    """One unit of recognized speech returned by the transcription service."""
    model_config = ConfigDict(frozen=True)

    text: str
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())
    is_final: bool = True


class ActionItem(BaseModel):
    """Action item identified during the meeting."""
    model_config = ConfigDict(populate_by_name=True)

    task: str
    assignee: str = ""
    deadline: Optional[str] = None


class MeetingMinutes(BaseModel):
    """
    Structured minutes produced by the summarization service.

    Serialized with ``by_alias=True`` the keys match what export consumers
    expect (``discussionPoints``, ``actionItems``).
    """
    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    date: str = Field(default_factory=lambda: date.today().isoformat())
    attendees: List[str] = Field(default_factory=list)
    agenda: List[str] = Field(default_factory=list)
    discussion_points: List[str] = Field(default_factory=list, alias="discussionPoints")
    decisions: List[str] = Field(default_factory=list)
    action_items: List[ActionItem] = Field(default_factory=list, alias="actionItems")

    def to_export_dict(self) -> dict:
        return self.model_dump(by_alias=True)


class VolumeMeter:
    """Exponential moving average of per-frame RMS levels."""

    def __init__(self, decay: float = 0.8):
        self.decay = decay
        self.level = 0.0
        self.frames = 0

    def update(self, rms: float) -> float:
        self.level = self.level * self.decay + rms * (1.0 - self.decay)
        self.frames += 1
        return self.level

    def reset(self) -> None:
        self.level = 0.0
        self.frames = 0


class MeetingSession(BaseModel):
    """The single live meeting session and the resources it owns while recording."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    start_time: datetime = Field(default_factory=datetime.now)
    status: MeetingStatus = MeetingStatus.IDLE
    source_type: Optional[AudioSourceType] = None
    mode: TranscriptionMode = TranscriptionMode.BATCH
    transcript: TranscriptAccumulator = Field(default_factory=TranscriptAccumulator, exclude=True)
    volume: VolumeMeter = Field(default_factory=VolumeMeter, exclude=True)
    minutes: Optional[MeetingMinutes] = None
    last_error: Optional[ProcessingError] = Field(default=None, exclude=True)
    failed_batches: int = 0
    stop_reason: Optional[str] = None

    # Owned only while RECORDING
    audio_source: Optional[Any] = Field(default=None, exclude=True)
    pipeline: Optional[Any] = Field(default=None, exclude=True)
    transcription: Optional[Any] = Field(default=None, exclude=True)

    def has_recording_resources(self) -> bool:
        return any(
            resource is not None
            for resource in (self.audio_source, self.pipeline, self.transcription)
        )

    def get_status_display(self) -> str:
        """Get user-friendly status display."""
        if self.status == MeetingStatus.IDLE and self.last_error is not None:
            return f"Error: {self.last_error.user_message}"

        status_map = {
            MeetingStatus.IDLE: "Ready to start recording",
            MeetingStatus.RECORDING: "Recording in progress...",
            MeetingStatus.PROCESSING: "Generating meeting minutes...",
            MeetingStatus.REVIEWING: "Meeting minutes ready"
        }
        return status_map[self.status]
