"""
Shared fixtures: in-memory media devices and transcription services that let
the pipeline and the lifecycle controller run without hardware or network.
"""

import asyncio
from typing import List, Optional
from unittest.mock import Mock

import numpy as np
import pytest

from ai_meeting_minutes.audio_source import AudioConstraints, AudioTrack, MediaDevices, MediaStream, MediaTrack
from ai_meeting_minutes.config import AppConfig, AudioConfig, LLMConfig, TranscriptionConfig
from ai_meeting_minutes.error_handling import TranscriptionConnectionError, error_recovery_manager
from ai_meeting_minutes.models import ActionItem, EncodedAudioChunk, MeetingMinutes, TranscriptSegment
from ai_meeting_minutes.transcription_client import (
    BatchTranscriptionService, StreamingConnection, StreamingTranscriptionService
)


class FakeAudioTrack(AudioTrack):
    """Audio track fed by the test instead of a device."""

    def push(self, samples) -> None:
        self._deliver(np.asarray(samples, dtype=np.float32))

    def end(self) -> None:
        """Simulate the user stopping the share from the OS/browser."""
        self._notify_ended()


class FakeMediaDevices(MediaDevices):
    def __init__(self, sample_rate: int = 16000, with_audio: bool = True, deny: bool = False):
        self.sample_rate = sample_rate
        self.with_audio = with_audio
        self.deny = deny
        self.requests: List[tuple] = []
        self.streams: List[MediaStream] = []

    def _stream(self, constraints: AudioConstraints, with_video: bool) -> MediaStream:
        tracks: List[MediaTrack] = []
        if with_video:
            tracks.append(MediaTrack("video", "Screen 1"))
        if self.with_audio:
            tracks.append(FakeAudioTrack(self.sample_rate, label="Fake input", settings=constraints))
        stream = MediaStream(tracks)
        self.streams.append(stream)
        return stream

    async def request_display_audio(self, constraints: AudioConstraints) -> MediaStream:
        self.requests.append(("display", constraints))
        if self.deny:
            raise PermissionError("Permission denied by user")
        return self._stream(constraints, with_video=True)

    async def request_microphone_audio(self, constraints: AudioConstraints) -> MediaStream:
        self.requests.append(("microphone", constraints))
        if self.deny:
            raise PermissionError("Microphone access denied")
        return self._stream(constraints, with_video=False)

    @property
    def last_stream(self) -> Optional[MediaStream]:
        return self.streams[-1] if self.streams else None


class FakeBatchService(BatchTranscriptionService):
    """Returns queued texts in order; raises for responses that are exceptions."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls: List[tuple] = []
        self.closed = False

    async def transcribe(self, audio_base64: str, mime_type: str) -> str:
        self.calls.append((audio_base64, mime_type))
        await asyncio.sleep(0)
        response = self.responses.pop(0) if self.responses else ""
        if isinstance(response, Exception):
            raise response
        return response

    def close(self) -> None:
        self.closed = True


class FakeStreamingConnection(StreamingConnection):
    def __init__(self, on_segment, on_error, fail_sends: bool = False):
        self.on_segment = on_segment
        self.on_error = on_error
        self.fail_sends = fail_sends
        self.sent: List[EncodedAudioChunk] = []
        self.closed = False
        self.aborted = False

    async def send(self, chunk: EncodedAudioChunk) -> None:
        await asyncio.sleep(0)
        if self.fail_sends:
            raise TranscriptionConnectionError("Connection reset by peer")
        self.sent.append(chunk)

    async def close(self) -> None:
        self.closed = True

    def abort(self) -> None:
        self.aborted = True

    def emit(self, text: str, is_final: bool = True) -> None:
        self.on_segment(TranscriptSegment(text=text, is_final=is_final))

    def drop(self) -> None:
        self.on_error(TranscriptionConnectionError("Transcript event stream ended unexpectedly"))


class FakeStreamingService(StreamingTranscriptionService):
    def __init__(self, refuse: bool = False, fail_sends: bool = False):
        self.refuse = refuse
        self.fail_sends = fail_sends
        self.connections: List[FakeStreamingConnection] = []

    async def open(self, sample_rate, on_segment, on_error) -> FakeStreamingConnection:
        if self.refuse:
            raise TranscriptionConnectionError(
                "Cannot connect to transcription service",
                user_message="The transcription service is unreachable."
            )
        connection = FakeStreamingConnection(on_segment, on_error, self.fail_sends)
        self.connections.append(connection)
        return connection

    @property
    def connection(self) -> Optional[FakeStreamingConnection]:
        return self.connections[-1] if self.connections else None


@pytest.fixture(autouse=True)
def clear_error_history():
    yield
    error_recovery_manager.clear_error_history()


@pytest.fixture
def app_config():
    """Configuration with short timings for tests."""
    return AppConfig(
        audio=AudioConfig(frame_size=1024, max_pending_frames=64),
        transcription=TranscriptionConfig(
            mode="batch",
            batch_interval_seconds=60.0,
            stop_timeout_seconds=1.0
        ),
        llm=LLMConfig(max_retries=1, retry_delay=0.01, min_transcript_chars=10)
    )


@pytest.fixture
def media_devices():
    return FakeMediaDevices()


@pytest.fixture
def batch_service():
    return FakeBatchService()


@pytest.fixture
def streaming_service():
    return FakeStreamingService()


@pytest.fixture
def sample_minutes():
    return MeetingMinutes(
        title="Weekly Sync",
        date="2024-05-01",
        attendees=["Alice", "Bob"],
        agenda=["Release plan"],
        discussion_points=["Release moved to Friday"],
        decisions=["Ship on Friday"],
        action_items=[ActionItem(task="Update changelog", assignee="Bob", deadline="Thursday")]
    )


@pytest.fixture
def minutes_generator(sample_minutes):
    generator = Mock()
    generator.generate_minutes.return_value = sample_minutes
    return generator