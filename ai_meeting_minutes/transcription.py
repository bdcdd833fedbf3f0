"""
Transcription sessions.

A ``TranscriptionSession`` owns the conversation with the transcription
service for one recording. Two strategies share the same contract:

* ``StreamingTranscriptionSession`` pushes every chunk as it is produced and
  receives segments asynchronously.
* ``BatchTranscriptionSession`` buffers chunks and sends one clip per batch
  window.

``stop()`` is the single cancellation point: it is idempotent, accepts no
chunk once it has begun, drains pending work within a bounded time and then
always releases the network session and detaches from the pipeline.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Set

from .audio_processing import AudioProcessingPipeline
from .config import TranscriptionConfig, config as app_config
from .error_handling import (
    BatchTranscriptionError, ProcessingError, TranscriptionConnectionError,
    handle_processing_error
)
from .models import EncodedAudioChunk, TranscriptSegment, TranscriptionMode
from .transcription_client import (
    BatchTranscriptionService, StreamingConnection, StreamingTranscriptionService
)

logger = logging.getLogger(__name__)

TranscriptCallback = Callable[[TranscriptSegment], None]
ErrorCallback = Callable[[ProcessingError], None]


class TranscriptionSession(ABC):
    """Common lifecycle of both transcription strategies."""

    def __init__(self, transcription_config: Optional[TranscriptionConfig] = None):
        self.config = transcription_config or app_config.transcription
        self._pipeline: Optional[AudioProcessingPipeline] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._transcript_callbacks: List[TranscriptCallback] = []
        self._error_callbacks: List[ErrorCallback] = []
        self._batch_error_callbacks: List[ErrorCallback] = []
        self._started = False
        self._stopping = False
        self._stop_task: Optional[asyncio.Task] = None
        self.chunks_received = 0

    @property
    def is_stopping(self) -> bool:
        return self._stopping

    def on_transcript(self, callback: TranscriptCallback) -> None:
        self._transcript_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        """Register a callback for errors that end the session."""
        self._error_callbacks.append(callback)

    def on_batch_error(self, callback: ErrorCallback) -> None:
        """Register a callback for recoverable per-batch failures."""
        self._batch_error_callbacks.append(callback)

    async def start(self, pipeline: AudioProcessingPipeline) -> None:
        """Open the service conversation and attach to the pipeline's output."""
        if self._started:
            raise RuntimeError("Transcription session already started")
        self._loop = asyncio.get_running_loop()
        await self._open()
        self._started = True
        self._pipeline = pipeline
        pipeline.connect(self._handle_chunk)

    def _handle_chunk(self, chunk: EncodedAudioChunk) -> None:
        if self._stopping:
            return
        self.chunks_received += 1
        self._accept_chunk(chunk)

    def _deliver(self, segment: TranscriptSegment) -> None:
        for callback in self._transcript_callbacks:
            callback(segment)

    def _report_fatal(self, error: ProcessingError) -> None:
        if self._stopping:
            logger.debug(f"Ignoring transcription error during stop: {error}")
            return
        handle_processing_error(error, "transcription_session", "receive")
        for callback in self._error_callbacks:
            callback(error)

    async def stop(self) -> None:
        """Drain pending work, then release the network session and the audio graph."""
        if self._stop_task is None:
            self._stopping = True
            self._stop_task = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._stop_task)

    async def _shutdown(self) -> None:
        try:
            if self._started:
                await asyncio.wait_for(self._drain(), timeout=self.config.stop_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                f"Transcription drain timed out after {self.config.stop_timeout_seconds:.1f}s; "
                "closing without waiting further"
            )
        except Exception as e:
            handle_processing_error(e, "transcription_session", "stop")
        finally:
            try:
                self._close()
            finally:
                if self._pipeline is not None:
                    self._pipeline.disconnect()
                    self._pipeline = None
                logger.info(f"{type(self).__name__} stopped after {self.chunks_received} chunks")

    @abstractmethod
    async def _open(self) -> None:
        """Open the conversation with the service."""

    @abstractmethod
    def _accept_chunk(self, chunk: EncodedAudioChunk) -> None:
        """Take one chunk from the pipeline. Must not block."""

    @abstractmethod
    async def _drain(self) -> None:
        """Finish pending work before the session is closed."""

    @abstractmethod
    def _close(self) -> None:
        """Release the per-recording network session. Runs even when draining failed."""


class StreamingTranscriptionSession(TranscriptionSession):
    """Pushes each chunk to a persistent service session as it is produced."""

    def __init__(
        self,
        service: StreamingTranscriptionService,
        sample_rate: int = 16000,
        transcription_config: Optional[TranscriptionConfig] = None
    ):
        super().__init__(transcription_config)
        self.service = service
        self.sample_rate = sample_rate
        self._connection: Optional[StreamingConnection] = None
        self._in_flight: Set[asyncio.Task] = set()
        self.chunks_sent = 0

    async def _open(self) -> None:
        try:
            self._connection = await self.service.open(
                self.sample_rate,
                on_segment=self._on_segment,
                on_error=self._on_service_error
            )
        except TranscriptionConnectionError:
            raise
        except Exception as e:
            raise TranscriptionConnectionError(
                f"Failed to open streaming transcription session: {e}",
                original_exception=e
            ) from e

    def _on_segment(self, segment: TranscriptSegment) -> None:
        # Service callbacks may come from a reader thread
        self._loop.call_soon_threadsafe(self._deliver, segment)

    def _on_service_error(self, error: Exception) -> None:
        if not isinstance(error, TranscriptionConnectionError):
            error = TranscriptionConnectionError(str(error), original_exception=error)
        self._loop.call_soon_threadsafe(self._report_fatal, error)

    def _accept_chunk(self, chunk: EncodedAudioChunk) -> None:
        task = self._loop.create_task(self._send(chunk))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _send(self, chunk: EncodedAudioChunk) -> None:
        try:
            await self._connection.send(chunk)
            self.chunks_sent += 1
        except Exception as e:
            if not isinstance(e, TranscriptionConnectionError):
                e = TranscriptionConnectionError(
                    f"Failed to send audio chunk {chunk.sequence}: {e}",
                    original_exception=e
                )
            self._report_fatal(e)

    async def _drain(self) -> None:
        if self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} in-flight audio chunks")
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
        if self._connection is not None:
            await self._connection.close()

    def _close(self) -> None:
        for task in list(self._in_flight):
            task.cancel()
        if self._connection is not None:
            self._connection.abort()


class BatchTranscriptionSession(TranscriptionSession):
    """Buffers chunks and transcribes one clip per batch window."""

    def __init__(
        self,
        service: BatchTranscriptionService,
        transcription_config: Optional[TranscriptionConfig] = None
    ):
        super().__init__(transcription_config)
        self.service = service
        self.batch_interval = self.config.batch_interval_seconds
        self._pending: List[EncodedAudioChunk] = []
        self._batch_lock = asyncio.Lock()
        self._timer_stop = asyncio.Event()
        self._timer: Optional[asyncio.Task] = None
        self.batches_sent = 0
        self.batches_failed = 0

    @property
    def pending_chunks(self) -> int:
        return len(self._pending)

    async def _open(self) -> None:
        self._timer = self._loop.create_task(self._batch_timer())
        logger.info(f"Batch transcription started ({self.batch_interval:.1f}s windows)")

    def _accept_chunk(self, chunk: EncodedAudioChunk) -> None:
        self._pending.append(chunk)

    def _take_pending(self) -> List[EncodedAudioChunk]:
        # Runs on the event loop with no await, so the swap is atomic with
        # respect to chunks arriving from the pipeline.
        chunks, self._pending = self._pending, []
        return chunks

    async def _batch_timer(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._timer_stop.wait(), timeout=self.batch_interval)
                return
            except asyncio.TimeoutError:
                pass
            await self.transcribe_pending()

    async def transcribe_pending(self) -> bool:
        """
        Send everything buffered so far as one clip.

        Returns:
            True if a request was made, False if there was nothing to send
        """
        async with self._batch_lock:
            chunks = self._take_pending()
            if not chunks:
                return False

            payload = EncodedAudioChunk.concatenate(chunks)
            self.batches_sent += 1
            try:
                text = await self.service.transcribe(payload.to_base64(), payload.mime_type)
            except Exception as e:
                self.batches_failed += 1
                error = BatchTranscriptionError(
                    f"Batch transcription failed for {payload.duration:.1f}s of audio: {e}",
                    user_message="Part of the recording could not be transcribed; recording continues.",
                    technical_details=f"{type(e).__name__}: {e}",
                    original_exception=e
                )
                handle_processing_error(error, "batch_transcription", "transcribe_pending")
                for callback in self._batch_error_callbacks:
                    callback(error)
                return True

            text = (text or "").strip()
            if text:
                self._deliver(TranscriptSegment(text=text, is_final=True))
            return True

    async def _drain(self) -> None:
        self._timer_stop.set()
        if self._timer is not None:
            # Lets an in-flight batch complete
            await self._timer
        await self.transcribe_pending()

    def _close(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        if self._pending:
            logger.warning(f"Discarding {len(self._pending)} untranscribed chunks")
            self._pending = []


def create_transcription_session(
    mode: TranscriptionMode,
    transcription_config: Optional[TranscriptionConfig] = None,
    batch_service: Optional[BatchTranscriptionService] = None,
    streaming_service: Optional[StreamingTranscriptionService] = None,
    sample_rate: int = 16000
) -> TranscriptionSession:
    """Build the session strategy for ``mode``."""
    mode = TranscriptionMode(mode)
    if mode == TranscriptionMode.STREAMING:
        if streaming_service is None:
            raise ValueError("Streaming transcription requires a streaming service")
        return StreamingTranscriptionSession(streaming_service, sample_rate, transcription_config)

    if batch_service is None:
        raise ValueError("Batch transcription requires a batch service")
    return BatchTranscriptionSession(batch_service, transcription_config)
