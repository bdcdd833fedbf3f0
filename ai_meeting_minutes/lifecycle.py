"""
Meeting lifecycle controller.

Owns the single live ``MeetingSession`` and drives it through
IDLE -> RECORDING -> PROCESSING -> REVIEWING. Recording resources (media
source, audio pipeline, transcription session) belong to the session only
while it is RECORDING and are released, in order, before PROCESSING begins.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .audio_processing import AudioProcessingPipeline
from .audio_source import AudioSourceManager, MediaDevices
from .config import AppConfig, config as default_config
from .error_handling import (
    AcquisitionError, ErrorContext, GenerationError, InvalidStateError, ProcessingError,
    RetryConfig, TranscriptValidationError, error_recovery_manager, handle_processing_error
)
from .minutes_generator import MinutesGenerator
from .models import (
    AudioSourceType, MeetingMinutes, MeetingSession, MeetingStatus, TranscriptSegment,
    TranscriptionMode, VolumeMeter
)
from .transcription import create_transcription_session
from .transcription_client import BatchTranscriptionService, StreamingTranscriptionService

logger = logging.getLogger(__name__)

StatusCallback = Callable[[MeetingStatus, str], None]


class MeetingLifecycleController:
    """
    Coordinates audio capture, transcription and minutes generation for one
    meeting at a time.
    """

    def __init__(
        self,
        media_devices: MediaDevices,
        minutes_generator: MinutesGenerator,
        batch_service: Optional[BatchTranscriptionService] = None,
        streaming_service: Optional[StreamingTranscriptionService] = None,
        app_config: Optional[AppConfig] = None,
        status_callback: Optional[StatusCallback] = None
    ):
        """
        Initialize the controller.

        Args:
            media_devices: Media acquisition capability
            minutes_generator: Summarization client (blocking, run in a worker thread)
            batch_service: Transcription service used in batch mode
            streaming_service: Transcription service used in streaming mode
            app_config: Application configuration (module default if None)
            status_callback: Optional callback for state changes (status, message)
        """
        self.media_devices = media_devices
        self.minutes_generator = minutes_generator
        self.batch_service = batch_service
        self.streaming_service = streaming_service
        self.config = app_config or default_config
        self.status_callback = status_callback

        self.session = self._new_session()
        self._starting = False
        self._stop_task: Optional[asyncio.Task] = None

    def _new_session(self, **kwargs) -> MeetingSession:
        kwargs.setdefault("mode", TranscriptionMode(self.config.transcription.mode))
        return MeetingSession(volume=VolumeMeter(self.config.audio.volume_decay), **kwargs)

    @property
    def status(self) -> MeetingStatus:
        return self.session.status

    def _update_status(self, message: Optional[str] = None) -> None:
        """Notify the status callback of the current state."""
        message = message or self.session.get_status_display()
        logger.info(f"Meeting {self.session.session_id}: {self.session.status.value} - {message}")
        if self.status_callback:
            self.status_callback(self.session.status, message)

    def _context(self, operation: str, session: Optional[MeetingSession] = None) -> ErrorContext:
        return ErrorContext(
            timestamp=datetime.now(),
            component="lifecycle",
            operation=operation,
            session_id=(session or self.session).session_id
        )

    async def start(
        self,
        source_type: AudioSourceType,
        mode: Optional[TranscriptionMode] = None
    ) -> MeetingSession:
        """
        Start recording a new meeting.

        Raises:
            InvalidStateError: If a meeting is not IDLE
            AcquisitionError: If the audio source cannot be used
            TranscriptionConnectionError: If the streaming service cannot be reached
        """
        if self.session.status != MeetingStatus.IDLE or self._starting:
            raise InvalidStateError(
                f"Cannot start a meeting while {self.session.status.value}",
                context=self._context("start"),
                user_message="A meeting is already in progress. Stop or reset it before starting a new one."
            )

        source_type = AudioSourceType(source_type)
        mode = TranscriptionMode(mode or self.config.transcription.mode)

        self._starting = True
        try:
            session = self._new_session(source_type=source_type, mode=mode)
            self.session = session
            self._stop_task = None

            transcription = create_transcription_session(
                mode,
                self.config.transcription,
                batch_service=self.batch_service,
                streaming_service=self.streaming_service,
                sample_rate=self.config.audio.target_sample_rate
            )
            pipeline = AudioProcessingPipeline.from_config(self.config.audio)
            source = AudioSourceManager(self.media_devices, self.config.audio)

            try:
                await source.acquire(source_type)
            except AcquisitionError as e:
                session.last_error = handle_processing_error(e, "lifecycle", "start", session.session_id)
                self._update_status(e.user_message)
                raise
            source.on_track_ended(lambda: self._request_stop(session, "track_ended"))

            transcription.on_transcript(lambda segment: self._on_transcript(session, segment))
            transcription.on_batch_error(lambda error: self._on_batch_error(session, error))
            transcription.on_error(lambda error: self._on_fatal_error(session, error))

            try:
                # The service must be listening before the first frame is produced
                await transcription.start(pipeline)
                await pipeline.start(source.audio_track, on_volume=session.volume.update)
            except Exception as e:
                await self._release(source, pipeline, transcription)
                error = handle_processing_error(e, "lifecycle", "start", session.session_id)
                session.last_error = error
                self._update_status(error.user_message)
                if error is e:
                    raise
                raise error from e

            session.audio_source = source
            session.pipeline = pipeline
            session.transcription = transcription
            session.status = MeetingStatus.RECORDING
            session.start_time = datetime.now()
            self._update_status()

            if source.track_ended:
                # The user stopped sharing while the session was starting
                self._request_stop(session, "track_ended")

            logger.info(f"Recording {source_type.value} audio with {mode.value} transcription")
            return session
        finally:
            self._starting = False

    def _on_transcript(self, session: MeetingSession, segment: TranscriptSegment) -> None:
        if session.transcript.is_frozen:
            logger.debug(f"Dropping segment delivered after recording ended: {segment.text[:40]!r}")
            return
        session.transcript.append(segment)

    def _on_batch_error(self, session: MeetingSession, error: ProcessingError) -> None:
        session.failed_batches += 1

    def _on_fatal_error(self, session: MeetingSession, error: ProcessingError) -> None:
        if session is not self.session or session.status != MeetingStatus.RECORDING:
            return
        session.last_error = error
        self._update_status(error.user_message)
        self._request_stop(session, "transcription_error")

    def _request_stop(self, session: MeetingSession, reason: str) -> None:
        """Implicit stop (track ended or fatal error); ignored once the session left RECORDING."""
        if session is not self.session or session.status != MeetingStatus.RECORDING:
            return
        self.request_stop(reason)

    def request_stop(self, reason: str = "user") -> asyncio.Task:
        """
        Begin stopping the recording and return the task that completes when
        the session has left PROCESSING. Every trigger shares the same task.

        Raises:
            InvalidStateError: If no meeting is recording
        """
        if self._stop_task is not None and not self._stop_task.done():
            return self._stop_task
        if self.session.status != MeetingStatus.RECORDING:
            raise InvalidStateError(
                f"Cannot stop a meeting while {self.session.status.value}",
                context=self._context("stop"),
                user_message="No recording is in progress."
            )

        self._stop_task = asyncio.ensure_future(self._stop_session(self.session, reason))
        return self._stop_task

    async def stop(self, reason: str = "user") -> MeetingSession:
        """
        Stop recording, release resources and summarize the transcript.

        Errors from summarization are reported on ``session.last_error`` rather
        than raised.
        """
        await asyncio.shield(self.request_stop(reason))
        return self.session

    async def _stop_session(self, session: MeetingSession, reason: str) -> None:
        session.stop_reason = reason
        logger.info(f"Stopping meeting {session.session_id} ({reason})")

        try:
            await self._release_recording_resources(session)
        except Exception as e:
            handle_processing_error(e, "lifecycle", "release_resources", session.session_id)

        session.transcript.freeze()
        session.status = MeetingStatus.PROCESSING
        self._update_status()

        await self._process_transcript(session)

    async def _release_recording_resources(self, session: MeetingSession) -> None:
        source, pipeline, transcription = session.audio_source, session.pipeline, session.transcription
        session.audio_source = session.pipeline = session.transcription = None
        await self._release(source, pipeline, transcription)

    async def _release(
        self,
        source: Optional[AudioSourceManager],
        pipeline: Optional[AudioProcessingPipeline],
        transcription: Optional[Any]
    ) -> None:
        # Order: stop accepting frames, flush and close transcription, then
        # release the audio graph and the media tracks no matter what failed.
        try:
            if pipeline is not None:
                await pipeline.stop()
            if transcription is not None:
                await transcription.stop()
        finally:
            if pipeline is not None:
                pipeline.close()
            if source is not None:
                source.release()

    async def _process_transcript(self, session: MeetingSession) -> None:
        transcript = session.transcript.snapshot().strip()
        min_chars = self.config.llm.min_transcript_chars

        if len(transcript) < min_chars:
            error = TranscriptValidationError(
                f"Transcript too short to summarize ({len(transcript)} < {min_chars} characters)",
                context=self._context("validate_transcript", session),
                user_message=(
                    "Transcript is too short to generate minutes. Record a longer meeting "
                    "and make sure audio is being captured."
                )
            )
            handle_processing_error(error, "lifecycle", "validate_transcript", session.session_id)
            self.session = self._new_session(mode=session.mode, last_error=error)
            self._update_status(error.user_message)
            return

        try:
            minutes = await self._generate_minutes(session, transcript)
        except Exception as e:
            if isinstance(e, GenerationError):
                error = e
            else:
                error = GenerationError(
                    f"Minutes generation failed: {e}",
                    context=self._context("generate_minutes", session),
                    user_message=getattr(e, "user_message", None) or "Failed to generate meeting minutes.",
                    original_exception=e
                )
            session.last_error = error
            session.status = MeetingStatus.IDLE
            self._update_status(error.user_message)
            return

        session.minutes = minutes
        session.status = MeetingStatus.REVIEWING
        self._update_status()

    async def _generate_minutes(self, session: MeetingSession, transcript: str) -> MeetingMinutes:
        loop = asyncio.get_event_loop()

        async def generate_operation():
            return await loop.run_in_executor(None, self.minutes_generator.generate_minutes, transcript)

        return await error_recovery_manager.retry_with_backoff(
            generate_operation,
            "minutes_generation",
            RetryConfig(max_attempts=self.config.llm.max_retries, base_delay=self.config.llm.retry_delay),
            self._context("generate_minutes", session)
        )

    def reset(self) -> MeetingSession:
        """
        Discard the transcript and minutes and return to a fresh IDLE session.

        Raises:
            InvalidStateError: While RECORDING or PROCESSING
        """
        if self.session.status in (MeetingStatus.RECORDING, MeetingStatus.PROCESSING):
            raise InvalidStateError(
                f"Cannot reset a meeting while {self.session.status.value}",
                context=self._context("reset"),
                user_message="Stop the meeting and wait for processing to finish before resetting."
            )

        self.session.transcript.clear()
        self.session.minutes = None
        self.session = self._new_session()
        self._stop_task = None
        self._update_status()
        return self.session

    async def shutdown(self) -> None:
        """Release any recording resources without summarizing."""
        session = self.session
        if self._stop_task is not None and not self._stop_task.done():
            self._stop_task.cancel()
            try:
                await self._stop_task
            except asyncio.CancelledError:
                pass

        if session.has_recording_resources():
            logger.info(f"Shutting down active meeting {session.session_id}")
            try:
                await self._release_recording_resources(session)
            except Exception as e:
                handle_processing_error(e, "lifecycle", "shutdown", session.session_id)
            session.transcript.freeze()

        self.session = self._new_session()
        self._stop_task = None

        for service in (self.batch_service, self.streaming_service):
            close = getattr(service, "close", None)
            if close is not None:
                close()

    def get_status(self) -> Dict[str, Any]:
        """Current state for display."""
        session = self.session
        return {
            "session_id": session.session_id,
            "status": session.status.value,
            "message": session.get_status_display(),
            "source_type": session.source_type.value if session.source_type else None,
            "mode": session.mode.value,
            "start_time": session.start_time.isoformat(),
            "volume_level": session.volume.level,
            "transcript_length": len(session.transcript),
            "segment_count": len(session.transcript.segments),
            "failed_batches": session.failed_batches,
            "stop_reason": session.stop_reason,
            "has_minutes": session.minutes is not None,
            "last_error": session.last_error.to_dict() if session.last_error else None
        }
