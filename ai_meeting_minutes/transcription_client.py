"""
Transcription service clients.

Two protocol shapes are supported:

* batch: one request per clip, ``transcribe(audio_base64, mime_type) -> text``
* streaming: a long-lived session; audio chunks are posted as they are
  produced and transcript segments arrive on a server-sent event stream

The HTTP implementations use blocking ``requests`` calls executed in the
default thread pool so the event loop and the audio path never wait on the
network.
"""

import asyncio
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

import requests

from .config import TranscriptionConfig, config as app_config
from .error_handling import TranscriptionConnectionError
from .models import EncodedAudioChunk, TranscriptSegment

logger = logging.getLogger(__name__)

SegmentCallback = Callable[[TranscriptSegment], None]
ErrorCallback = Callable[[Exception], None]


class TranscriptionServiceError(Exception):
    """The transcription service rejected or failed a request."""
    pass


def _validate_service_url(url: str) -> str:
    """Validate service URL has valid scheme and host.

    Raises:
        ValueError: If URL is malformed
    """
    parsed = urlparse(url)

    if parsed.scheme not in ("http", "https"):
        raise ValueError(f"Invalid transcription service URL: must start with http:// or https:// (got '{url}')")

    if not parsed.netloc or not parsed.hostname:
        raise ValueError(f"Invalid transcription service URL: missing host (got '{url}')")

    return url.rstrip("/")


class BatchTranscriptionService(ABC):
    """Transcribes one clip per call."""

    @abstractmethod
    async def transcribe(self, audio_base64: str, mime_type: str) -> str:
        """Return the text spoken in the clip."""

    def close(self) -> None:
        """Release client resources."""


class StreamingConnection(ABC):
    """Handle to an open streaming transcription session."""

    @abstractmethod
    async def send(self, chunk: EncodedAudioChunk) -> None:
        """Push one chunk of audio."""

    @abstractmethod
    async def close(self) -> None:
        """Flush pending recognition and terminate the session."""

    def abort(self) -> None:
        """Tear the session down immediately without flushing."""


class StreamingTranscriptionService(ABC):
    """Opens streaming transcription sessions."""

    @abstractmethod
    async def open(
        self,
        sample_rate: int,
        on_segment: SegmentCallback,
        on_error: ErrorCallback
    ) -> StreamingConnection:
        """
        Open a session. ``on_segment`` and ``on_error`` may be called from a
        background thread.

        Raises:
            TranscriptionConnectionError: If the service is unreachable
        """


class _HttpClient:
    """Shared HTTP plumbing for the transcription service."""

    def __init__(self, transcription_config: Optional[TranscriptionConfig] = None):
        self.config = transcription_config or app_config.transcription
        self.service_url = _validate_service_url(self.config.service_url)
        self.timeout = (self.config.connect_timeout_seconds, self.config.request_timeout_seconds)
        self._http = requests.Session()
        self._http.headers.update(self._get_headers())

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for requests, including API token if configured."""
        headers = {}
        if self.config.api_token:
            headers["X-API-Token"] = self.config.api_token
        return headers

    def close(self) -> None:
        self._http.close()


class HttpBatchTranscriptionService(_HttpClient, BatchTranscriptionService):
    """``POST /transcribe`` with a base64 PCM payload."""

    async def transcribe(self, audio_base64: str, mime_type: str) -> str:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._post_transcribe, audio_base64, mime_type)

    def _post_transcribe(self, audio_base64: str, mime_type: str) -> str:
        payload = {
            "audio_base64": audio_base64,
            "mime_type": mime_type
        }
        if self.config.language:
            payload["language"] = self.config.language

        logger.debug(f"POST {self.service_url}/transcribe ({len(audio_base64)} base64 chars, {mime_type})")
        try:
            response = self._http.post(
                f"{self.service_url}/transcribe",
                json=payload,
                timeout=self.timeout
            )
        except requests.Timeout as e:
            raise TranscriptionServiceError(f"Transcription request timed out: {e}") from e
        except requests.RequestException as e:
            raise TranscriptionServiceError(f"Connection error: {e}") from e

        if response.status_code == 401:
            raise TranscriptionServiceError("Authentication failed: invalid or missing API token")
        if response.status_code != 200:
            raise TranscriptionServiceError(f"Server error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise TranscriptionServiceError(f"Invalid JSON response from transcription service: {e}") from e

        return data.get("text", "")


class HttpStreamingConnection(StreamingConnection):
    """One streaming session: audio goes up as POSTs, segments come down as SSE."""

    def __init__(
        self,
        client: "HttpStreamingTranscriptionService",
        session_id: str,
        on_segment: SegmentCallback,
        on_error: ErrorCallback
    ):
        self.client = client
        self.session_id = session_id
        self.session_url = f"{client.service_url}/sessions/{session_id}"
        self._on_segment = on_segment
        self._on_error = on_error
        self._closing = False
        self._closed = False
        self._response: Optional[requests.Response] = None
        self._reader = threading.Thread(
            target=self._read_events,
            name=f"TranscriptEvents-{session_id}",
            daemon=True
        )

    def start(self) -> None:
        self._reader.start()

    def _read_events(self) -> None:
        """Read server-sent events until ``done``, an error, or close."""
        try:
            response = self.client._http.get(
                f"{self.session_url}/events",
                stream=True,
                timeout=(self.client.config.connect_timeout_seconds, None)
            )
            self._response = response
            if response.status_code != 200:
                raise TranscriptionConnectionError(f"Event stream rejected: {response.status_code}")

            for line in response.iter_lines(decode_unicode=True):
                if not line or not line.startswith("data: "):
                    continue

                try:
                    data = json.loads(line[6:])
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring malformed transcript event: {line[:80]}")
                    continue

                if data.get("done"):
                    logger.debug(f"Transcript event stream for {self.session_id} finished")
                    return
                if data.get("error"):
                    raise TranscriptionConnectionError(f"Transcription service error: {data['error']}")
                if "text" not in data:
                    continue

                self._on_segment(TranscriptSegment(
                    text=data["text"],
                    timestamp=data.get("timestamp") or datetime.now().isoformat(),
                    is_final=bool(data.get("is_final", True))
                ))

            if not self._closing:
                raise TranscriptionConnectionError("Transcript event stream ended unexpectedly")

        except TranscriptionConnectionError as e:
            if not self._closing:
                self._on_error(e)
        except Exception as e:
            if not self._closing:
                self._on_error(TranscriptionConnectionError(
                    f"Lost connection to transcription service: {e}",
                    original_exception=e
                ))
        finally:
            if self._response is not None:
                self._response.close()

    async def send(self, chunk: EncodedAudioChunk) -> None:
        if self._closing:
            return
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._post_audio, chunk)

    def _post_audio(self, chunk: EncodedAudioChunk) -> None:
        payload = {
            "audio_base64": chunk.to_base64(),
            "mime_type": chunk.mime_type,
            "sequence": chunk.sequence
        }
        try:
            response = self.client._http.post(
                f"{self.session_url}/audio",
                json=payload,
                timeout=self.client.timeout
            )
        except requests.RequestException as e:
            raise TranscriptionConnectionError(f"Failed to send audio chunk {chunk.sequence}: {e}", original_exception=e) from e

        if response.status_code not in (200, 202, 204):
            raise TranscriptionConnectionError(f"Audio chunk {chunk.sequence} rejected: {response.status_code}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closing = True
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, self._post_close)
            # The service emits the remaining final segments, then "done"
            if self._reader.is_alive():
                await loop.run_in_executor(None, self._reader.join, self.client.config.stop_timeout_seconds)
        finally:
            self.abort()

    def _post_close(self) -> None:
        response = self.client._http.post(f"{self.session_url}/close", timeout=self.client.timeout)
        if response.status_code not in (200, 202, 204):
            logger.warning(f"Closing transcription session {self.session_id} returned {response.status_code}")

    def abort(self) -> None:
        if self._closed:
            return
        self._closing = True
        self._closed = True
        if self._response is not None:
            self._response.close()
        logger.info(f"Streaming transcription session {self.session_id} closed")


class HttpStreamingTranscriptionService(_HttpClient, StreamingTranscriptionService):
    """Opens sessions with ``POST /sessions``."""

    async def open(
        self,
        sample_rate: int,
        on_segment: SegmentCallback,
        on_error: ErrorCallback
    ) -> HttpStreamingConnection:
        loop = asyncio.get_event_loop()
        session_id = await loop.run_in_executor(None, self._create_session, sample_rate)

        connection = HttpStreamingConnection(self, session_id, on_segment, on_error)
        connection.start()
        logger.info(f"Opened streaming transcription session {session_id} at {sample_rate} Hz")
        return connection

    def _create_session(self, sample_rate: int) -> str:
        payload = {
            "sample_rate": sample_rate,
            "mime_type": f"audio/pcm;rate={sample_rate}"
        }
        if self.config.language:
            payload["language"] = self.config.language

        try:
            response = self._http.post(f"{self.service_url}/sessions", json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise TranscriptionConnectionError(
                f"Cannot connect to transcription service at {self.service_url}: {e}",
                user_message=(
                    "The transcription service is unreachable. Please check that it is "
                    "running and accessible, then start the meeting again."
                ),
                original_exception=e
            ) from e

        if response.status_code != 200:
            raise TranscriptionConnectionError(
                f"Transcription service refused the session: {response.status_code}"
            )

        try:
            return response.json()["session_id"]
        except (ValueError, KeyError) as e:
            raise TranscriptionConnectionError(f"Invalid session response from transcription service: {e}") from e
