"""
Audio source acquisition.

Defines the media capability the core consumes (``MediaDevices`` producing
``MediaStream`` objects made of tracks) and the ``AudioSourceManager`` that
acquires and validates a stream for one recording session.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, List, Optional

import numpy as np
from pydantic import BaseModel

from .config import AudioConfig, config as app_config
from .error_handling import AcquisitionError, ErrorContext
from .models import AudioSourceType

logger = logging.getLogger(__name__)

SampleSink = Callable[[np.ndarray], None]


class AudioConstraints(BaseModel):
    """Processing constraints requested from the capture device."""
    echo_cancellation: bool
    noise_suppression: bool
    auto_gain_control: bool = False


# System audio must reach the transcriber unmodified.
SYSTEM_AUDIO_CONSTRAINTS = AudioConstraints(
    echo_cancellation=False,
    noise_suppression=False,
    auto_gain_control=False
)

# Voice-optimized capture for a local microphone.
MICROPHONE_CONSTRAINTS = AudioConstraints(
    echo_cancellation=True,
    noise_suppression=True
)


class MediaTrack:
    """A single captured track (audio or video) of a media stream."""

    def __init__(self, kind: str, label: str = ""):
        self.kind = kind
        self.label = label
        self._ended = False
        self._ended_listeners: List[Callable[["MediaTrack"], None]] = []
        self._lock = threading.Lock()

    @property
    def ended(self) -> bool:
        return self._ended

    def add_ended_listener(self, listener: Callable[["MediaTrack"], None]) -> None:
        self._ended_listeners.append(listener)

    def stop(self) -> None:
        """Stop the track deliberately. Listeners are not notified."""
        with self._lock:
            self._ended = True

    def _notify_ended(self) -> None:
        """Called when the device or OS ends the track (user stopped sharing)."""
        with self._lock:
            if self._ended:
                return
            self._ended = True
        for listener in list(self._ended_listeners):
            listener(self)


class AudioTrack(MediaTrack):
    """An audio track delivering blocks of mono float32 samples to one sink."""

    def __init__(self, sample_rate: int, label: str = "", settings: Optional[AudioConstraints] = None):
        super().__init__("audio", label)
        self.sample_rate = sample_rate
        self.settings = settings
        self._sink: Optional[SampleSink] = None

    def connect(self, sink: SampleSink) -> None:
        self._sink = sink

    def disconnect(self) -> None:
        self._sink = None

    def _deliver(self, samples: np.ndarray) -> None:
        sink = self._sink
        if sink is not None and not self._ended:
            sink(samples)

    def stop(self) -> None:
        super().stop()
        self._sink = None


class MediaStream:
    """A set of tracks returned by one acquisition request."""

    def __init__(self, tracks: Optional[List[MediaTrack]] = None):
        self._tracks = list(tracks or [])

    def get_tracks(self) -> List[MediaTrack]:
        return list(self._tracks)

    def get_audio_tracks(self) -> List[AudioTrack]:
        return [track for track in self._tracks if track.kind == "audio"]

    def get_video_tracks(self) -> List[MediaTrack]:
        return [track for track in self._tracks if track.kind == "video"]

    def stop(self) -> None:
        for track in self._tracks:
            try:
                track.stop()
            except Exception as e:
                logger.error(f"Failed to stop {track.kind} track '{track.label}': {e}")


class MediaDevices(ABC):
    """
    Media acquisition capability.

    Implementations raise ``PermissionError`` when the user cancels the
    request or the operating system denies access.
    """

    @abstractmethod
    async def request_display_audio(self, constraints: AudioConstraints) -> MediaStream:
        """Request screen/tab capture with system audio."""

    @abstractmethod
    async def request_microphone_audio(self, constraints: AudioConstraints) -> MediaStream:
        """Request microphone capture."""


class AudioSourceManager:
    """Acquires and validates the raw media stream for one recording session."""

    def __init__(self, media_devices: MediaDevices, audio_config: Optional[AudioConfig] = None):
        self.media_devices = media_devices
        self.config = audio_config or app_config.audio
        self.stream: Optional[MediaStream] = None
        self.source_type: Optional[AudioSourceType] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._track_ended_callback: Optional[Callable[[], None]] = None
        self._track_ended_fired = False
        self._released = False

    async def acquire(self, source_type: AudioSourceType) -> MediaStream:
        """
        Acquire a stream for the given source type.

        Raises:
            AcquisitionError: permission denied, or the stream has no audio track
        """
        source_type = AudioSourceType(source_type)
        context = ErrorContext(
            timestamp=datetime.now(),
            component="audio_source",
            operation="acquire",
            additional_data={"source_type": source_type.value}
        )
        self._loop = asyncio.get_running_loop()

        try:
            if source_type == AudioSourceType.SYSTEM_AUDIO:
                stream = await self.media_devices.request_display_audio(SYSTEM_AUDIO_CONSTRAINTS)
            else:
                stream = await self.media_devices.request_microphone_audio(MICROPHONE_CONSTRAINTS)
        except PermissionError as e:
            raise AcquisitionError.permission_denied(source_type.value, e, context) from e

        if not stream.get_audio_tracks():
            # Release the video track the user shared before failing
            stream.stop()
            raise AcquisitionError.no_audio_track(context)

        self.stream = stream
        self.source_type = source_type
        self._released = False
        for track in stream.get_tracks():
            track.add_ended_listener(self._on_track_ended)

        audio_track = stream.get_audio_tracks()[0]
        logger.info(
            f"Acquired {source_type.value} stream: '{audio_track.label}' "
            f"at {audio_track.sample_rate} Hz ({len(stream.get_tracks())} tracks)"
        )
        return stream

    @property
    def audio_track(self) -> Optional[AudioTrack]:
        if self.stream is None:
            return None
        tracks = self.stream.get_audio_tracks()
        return tracks[0] if tracks else None

    @property
    def track_ended(self) -> bool:
        """True when the source ended a track; a deliberate release does not count."""
        if self._released or self.stream is None:
            return False
        return any(track.ended for track in self.stream.get_tracks())

    def on_track_ended(self, callback: Callable[[], None]) -> None:
        """Register the single callback fired when the user stops sharing."""
        self._track_ended_callback = callback

    def _on_track_ended(self, track: MediaTrack) -> None:
        # May run on the audio thread; hop to the event loop.
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._fire_track_ended, track)

    def _fire_track_ended(self, track: MediaTrack) -> None:
        if self._track_ended_fired or self._released:
            return
        if self._track_ended_callback is None:
            logger.info(f"{track.kind.capitalize()} track '{track.label}' ended before a listener was registered")
            return
        self._track_ended_fired = True
        logger.info(f"{track.kind.capitalize()} track '{track.label}' ended by the source")
        self._track_ended_callback()

    def release(self) -> None:
        """Stop every track of the acquired stream."""
        if self._released:
            return
        self._released = True
        if self.stream is not None:
            self.stream.stop()
            logger.info("Released media tracks")
