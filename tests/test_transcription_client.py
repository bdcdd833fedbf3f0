"""
Tests for the HTTP transcription service clients.
"""

import base64
import json
from unittest.mock import Mock

import pytest
import requests

from ai_meeting_minutes.config import TranscriptionConfig
from ai_meeting_minutes.error_handling import TranscriptionConnectionError
from ai_meeting_minutes.models import EncodedAudioChunk
from ai_meeting_minutes.transcription_client import (
    HttpBatchTranscriptionService, HttpStreamingConnection, HttpStreamingTranscriptionService,
    TranscriptionServiceError
)


def http_response(status_code=200, body=None, lines=None):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {}
    response.iter_lines.return_value = lines or []
    return response


def sse(data: dict) -> str:
    return f"data: {json.dumps(data)}"


@pytest.fixture
def transcription_config():
    return TranscriptionConfig(
        service_url="http://transcriber.local:9876/",
        api_token="secret",
        language="en",
        connect_timeout_seconds=2.0,
        request_timeout_seconds=15.0
    )


class TestHttpBatchTranscriptionService:
    """Test cases for the batch HTTP client."""

    @pytest.fixture
    def service(self, transcription_config):
        service = HttpBatchTranscriptionService(transcription_config)
        service._http = Mock()
        return service

    def test_init(self, transcription_config):
        service = HttpBatchTranscriptionService(transcription_config)

        assert service.service_url == "http://transcriber.local:9876"
        assert service._http.headers["X-API-Token"] == "secret"
        assert service.timeout == (2.0, 15.0)
        service.close()

    def test_no_token_header_without_token(self):
        service = HttpBatchTranscriptionService(TranscriptionConfig(service_url="http://localhost:9876"))

        assert "X-API-Token" not in service._http.headers
        service.close()

    @pytest.mark.parametrize("url", ["ftp://transcriber.local", "transcriber.local:9876", "http://"])
    def test_invalid_url(self, url):
        with pytest.raises(ValueError, match="Invalid transcription service URL"):
            HttpBatchTranscriptionService(TranscriptionConfig(service_url=url))

    @pytest.mark.asyncio
    async def test_transcribe_posts_base64_payload(self, service):
        service._http.post.return_value = http_response(body={"text": "hello team"})
        audio = base64.b64encode(b"\x01\x00" * 160).decode("ascii")

        text = await service.transcribe(audio, "audio/pcm;rate=16000")

        assert text == "hello team"
        args, kwargs = service._http.post.call_args
        assert args[0] == "http://transcriber.local:9876/transcribe"
        assert kwargs["json"] == {
            "audio_base64": audio,
            "mime_type": "audio/pcm;rate=16000",
            "language": "en"
        }
        assert kwargs["timeout"] == (2.0, 15.0)

    def test_missing_text_is_empty(self, service):
        service._http.post.return_value = http_response(body={})

        assert service._post_transcribe("AAAA", "audio/pcm;rate=16000") == ""

    def test_authentication_failure(self, service):
        service._http.post.return_value = http_response(status_code=401)

        with pytest.raises(TranscriptionServiceError, match="Authentication failed"):
            service._post_transcribe("AAAA", "audio/pcm;rate=16000")

    def test_server_error(self, service):
        service._http.post.return_value = http_response(status_code=503)

        with pytest.raises(TranscriptionServiceError, match="Server error: 503"):
            service._post_transcribe("AAAA", "audio/pcm;rate=16000")

    def test_timeout(self, service):
        service._http.post.side_effect = requests.Timeout("read timed out")

        with pytest.raises(TranscriptionServiceError, match="timed out"):
            service._post_transcribe("AAAA", "audio/pcm;rate=16000")


class TestHttpStreamingTranscriptionService:
    """Test cases for opening streaming sessions."""

    @pytest.fixture
    def service(self, transcription_config):
        service = HttpStreamingTranscriptionService(transcription_config)
        service._http = Mock()
        return service

    def test_create_session(self, service):
        service._http.post.return_value = http_response(body={"session_id": "s-42"})

        assert service._create_session(24000) == "s-42"
        args, kwargs = service._http.post.call_args
        assert args[0] == "http://transcriber.local:9876/sessions"
        assert kwargs["json"] == {
            "sample_rate": 24000,
            "mime_type": "audio/pcm;rate=24000",
            "language": "en"
        }

    def test_create_session_unreachable(self, service):
        service._http.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(TranscriptionConnectionError) as exc_info:
            service._create_session(16000)

        assert "unreachable" in exc_info.value.user_message

    def test_create_session_refused(self, service):
        service._http.post.return_value = http_response(status_code=500)

        with pytest.raises(TranscriptionConnectionError, match="refused the session: 500"):
            service._create_session(16000)

    def test_create_session_bad_body(self, service):
        service._http.post.return_value = http_response(body={"id": "wrong-key"})

        with pytest.raises(TranscriptionConnectionError, match="Invalid session response"):
            service._create_session(16000)


class TestHttpStreamingConnection:
    """Test the audio upload and the transcript event reader."""

    @pytest.fixture
    def service(self, transcription_config):
        service = HttpStreamingTranscriptionService(transcription_config)
        service._http = Mock()
        return service

    @pytest.fixture
    def callbacks(self):
        return Mock(), Mock()

    @pytest.fixture
    def connection(self, service, callbacks):
        on_segment, on_error = callbacks
        return HttpStreamingConnection(service, "s-1", on_segment, on_error)

    def test_read_events_delivers_segments_until_done(self, connection, service, callbacks):
        on_segment, on_error = callbacks
        service._http.get.return_value = http_response(lines=[
            ": keep-alive",
            "",
            sse({"text": "hello every", "is_final": False}),
            "data: {not json",
            sse({"text": "hello everyone", "is_final": True, "timestamp": "2024-05-01T10:00:00"}),
            sse({"done": True}),
            sse({"text": "after done"}),
        ])

        connection._read_events()

        segments = [call.args[0] for call in on_segment.call_args_list]
        assert [(s.text, s.is_final) for s in segments] == [("hello every", False), ("hello everyone", True)]
        assert segments[1].timestamp == "2024-05-01T10:00:00"
        on_error.assert_not_called()
        assert service._http.get.call_args[0][0] == "http://transcriber.local:9876/sessions/s-1/events"
        service._http.get.return_value.close.assert_called_once()

    def test_unexpected_end_of_stream_is_reported(self, connection, service, callbacks):
        on_segment, on_error = callbacks
        service._http.get.return_value = http_response(lines=[sse({"text": "partial"})])

        connection._read_events()

        error = on_error.call_args[0][0]
        assert isinstance(error, TranscriptionConnectionError)
        assert "ended unexpectedly" in error.message

    def test_service_error_event_is_reported(self, connection, service, callbacks):
        _, on_error = callbacks
        service._http.get.return_value = http_response(lines=[sse({"error": "model crashed"})])

        connection._read_events()

        assert "model crashed" in on_error.call_args[0][0].message

    def test_dropped_connection_is_reported(self, connection, service, callbacks):
        _, on_error = callbacks
        service._http.get.side_effect = requests.ConnectionError("reset by peer")

        connection._read_events()

        error = on_error.call_args[0][0]
        assert isinstance(error, TranscriptionConnectionError)
        assert isinstance(error.original_exception, requests.ConnectionError)

    def test_errors_after_close_are_silent(self, connection, service, callbacks):
        _, on_error = callbacks
        service._http.get.return_value = http_response(lines=[])
        connection.abort()

        connection._read_events()

        on_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_send_posts_chunk(self, connection, service):
        service._http.post.return_value = http_response(status_code=202)
        chunk = EncodedAudioChunk(data=b"\x10\x00" * 4, sample_rate=16000, sequence=7)

        await connection.send(chunk)

        args, kwargs = service._http.post.call_args
        assert args[0] == "http://transcriber.local:9876/sessions/s-1/audio"
        assert kwargs["json"] == {
            "audio_base64": chunk.to_base64(),
            "mime_type": "audio/pcm;rate=16000",
            "sequence": 7
        }

    @pytest.mark.asyncio
    async def test_send_rejected(self, connection, service):
        service._http.post.return_value = http_response(status_code=410)

        with pytest.raises(TranscriptionConnectionError, match="rejected: 410"):
            await connection.send(EncodedAudioChunk(data=b"\x00\x00", sample_rate=16000))

    @pytest.mark.asyncio
    async def test_send_after_close_is_dropped(self, connection, service):
        connection.abort()

        await connection.send(EncodedAudioChunk(data=b"\x00\x00", sample_rate=16000))

        service._http.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_posts_close_once(self, connection, service):
        service._http.post.return_value = http_response(status_code=204)

        await connection.close()
        await connection.close()

        service._http.post.assert_called_once()
        assert service._http.post.call_args[0][0] == "http://transcriber.local:9876/sessions/s-1/close"
