"""
Tests for FastAPI endpoints in AI Meeting Minutes application.

Tests meeting control, status monitoring and result retrieval, including
the error responses for rejected transitions and failed acquisition.
"""

import pytest
from unittest.mock import AsyncMock, Mock, patch
from fastapi.testclient import TestClient

from ai_meeting_minutes.error_handling import (
    AcquisitionError, GenerationError, InvalidStateError, TranscriptionConnectionError,
    handle_processing_error
)
from ai_meeting_minutes.lifecycle import MeetingLifecycleController
from ai_meeting_minutes.main import app
from ai_meeting_minutes.models import AudioSourceType, MeetingStatus, TranscriptSegment, TranscriptionMode


@pytest.fixture
def client():
    """Create test client for FastAPI app."""
    return TestClient(app)


@pytest.fixture
def real_controller(media_devices, minutes_generator, batch_service, streaming_service, app_config):
    return MeetingLifecycleController(
        media_devices=media_devices,
        minutes_generator=minutes_generator,
        batch_service=batch_service,
        streaming_service=streaming_service,
        app_config=app_config
    )


@pytest.fixture
def mock_controller(real_controller):
    """Controller double for the endpoints that drive recording."""
    controller = Mock()
    controller.start = AsyncMock()
    controller.get_status.side_effect = real_controller.get_status
    return controller


class TestStatusEndpoints:
    """Read-only endpoints backed by a real controller."""

    def test_uninitialized_controller(self, client):
        with patch('ai_meeting_minutes.main.controller', None):
            response = client.get("/api/status")

        assert response.status_code == 500

    def test_status_idle(self, client, real_controller):
        with patch('ai_meeting_minutes.main.controller', real_controller):
            response = client.get("/api/status")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "IDLE"
        assert data["mode"] == "batch"
        assert data["message"] == "Ready to start recording"
        assert data["transcript_length"] == 0
        assert data["has_minutes"] is False
        assert data["last_error"] is None

    def test_status_reports_last_error(self, client, real_controller):
        real_controller.session.last_error = handle_processing_error(
            AcquisitionError.no_audio_track(), "lifecycle", "start"
        )

        with patch('ai_meeting_minutes.main.controller', real_controller):
            data = client.get("/api/status").json()

        assert data["last_error"]["error_type"] == "AcquisitionError"
        assert data["message"].startswith("Error: No audio was captured")

    def test_transcript(self, client, real_controller):
        transcript = real_controller.session.transcript
        transcript.append(TranscriptSegment(text="Good morning."))
        transcript.append(TranscriptSegment(text="Let's begin."))
        transcript.freeze()

        with patch('ai_meeting_minutes.main.controller', real_controller):
            response = client.get("/api/transcript")

        assert response.json() == {
            "transcript": "Good morning. Let's begin.",
            "segment_count": 2,
            "frozen": True,
            "status": "IDLE"
        }

    def test_minutes_available_uses_export_keys(self, client, real_controller, sample_minutes):
        real_controller.session.minutes = sample_minutes
        real_controller.session.status = MeetingStatus.REVIEWING

        with patch('ai_meeting_minutes.main.controller', real_controller):
            response = client.get("/api/minutes")

        data = response.json()
        assert data["available"] is True
        assert data["minutes"]["title"] == sample_minutes.title
        assert "discussionPoints" in data["minutes"]
        assert "actionItems" in data["minutes"]
        assert "action_items" not in data["minutes"]

    def test_minutes_not_available(self, client, real_controller):
        real_controller.session.status = MeetingStatus.PROCESSING

        with patch('ai_meeting_minutes.main.controller', real_controller):
            data = client.get("/api/minutes").json()

        assert data["available"] is False
        assert data["minutes"] is None
        assert data["message"] == "Generating meeting minutes..."

    def test_minutes_after_generation_failure(self, client, real_controller):
        real_controller.session.last_error = GenerationError(
            "Model missing", user_message="Install the model"
        )

        with patch('ai_meeting_minutes.main.controller', real_controller):
            data = client.get("/api/minutes").json()

        assert data["message"] == "Error: Install the model"

    def test_errors_summary(self, client):
        handle_processing_error(GenerationError("no model"), "lifecycle", "generate_minutes")

        data = client.get("/api/errors").json()

        assert data["total_errors"] == 1
        assert data["category_breakdown"] == {"summarization": 1}


class TestMeetingControlEndpoints:
    """Start, stop and reset."""

    def test_start_meeting(self, client, mock_controller):
        with patch('ai_meeting_minutes.main.controller', mock_controller):
            response = client.post(
                "/api/meeting/start", json={"source_type": "SYSTEM_AUDIO", "mode": "streaming"}
            )

        assert response.status_code == 200
        mock_controller.start.assert_awaited_once_with(
            AudioSourceType.SYSTEM_AUDIO, TranscriptionMode.STREAMING
        )

    def test_start_meeting_default_mode(self, client, mock_controller):
        with patch('ai_meeting_minutes.main.controller', mock_controller):
            client.post("/api/meeting/start", json={"source_type": "MICROPHONE"})

        mock_controller.start.assert_awaited_once_with(AudioSourceType.MICROPHONE, None)

    def test_start_meeting_invalid_source(self, client, mock_controller):
        with patch('ai_meeting_minutes.main.controller', mock_controller):
            response = client.post("/api/meeting/start", json={"source_type": "CAMERA"})

        assert response.status_code == 422
        mock_controller.start.assert_not_awaited()

    def test_start_meeting_already_recording(self, client, mock_controller):
        mock_controller.start.side_effect = InvalidStateError("Cannot start a meeting while RECORDING")

        with patch('ai_meeting_minutes.main.controller', mock_controller):
            response = client.post("/api/meeting/start", json={"source_type": "MICROPHONE"})

        assert response.status_code == 409
        assert response.json()["detail"]["error_type"] == "InvalidStateError"

    def test_start_meeting_no_audio_track(self, client, mock_controller):
        mock_controller.start.side_effect = AcquisitionError.no_audio_track()

        with patch('ai_meeting_minutes.main.controller', mock_controller):
            response = client.post("/api/meeting/start", json={"source_type": "SYSTEM_AUDIO"})

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["category"] == "audio_source"
        assert "entire screen" in detail["user_message"]

    def test_start_meeting_transcription_unreachable(self, client, mock_controller):
        mock_controller.start.side_effect = TranscriptionConnectionError("refused")

        with patch('ai_meeting_minutes.main.controller', mock_controller):
            response = client.post(
                "/api/meeting/start", json={"source_type": "MICROPHONE", "mode": "streaming"}
            )

        assert response.status_code == 400

    def test_stop_meeting(self, client, mock_controller):
        with patch('ai_meeting_minutes.main.controller', mock_controller):
            response = client.post("/api/meeting/stop")

        assert response.status_code == 200
        mock_controller.request_stop.assert_called_once_with("user")

    def test_stop_meeting_when_idle(self, client, real_controller):
        with patch('ai_meeting_minutes.main.controller', real_controller):
            response = client.post("/api/meeting/stop")

        assert response.status_code == 409

    def test_stop_meeting_after_reviewing(self, client, real_controller, sample_minutes):
        real_controller.session.minutes = sample_minutes
        real_controller.session.status = MeetingStatus.REVIEWING
        real_controller._stop_task = Mock(done=Mock(return_value=True))

        with patch('ai_meeting_minutes.main.controller', real_controller):
            response = client.post("/api/meeting/stop")

        assert response.status_code == 409
        assert response.json()["detail"]["error_type"] == "InvalidStateError"
        assert real_controller.session.status == MeetingStatus.REVIEWING
        assert real_controller.session.minutes == sample_minutes

    def test_reset_from_reviewing(self, client, real_controller, sample_minutes):
        real_controller.session.transcript.append(TranscriptSegment(text="old meeting"))
        real_controller.session.minutes = sample_minutes
        real_controller.session.status = MeetingStatus.REVIEWING
        old_session_id = real_controller.session.session_id

        with patch('ai_meeting_minutes.main.controller', real_controller):
            response = client.post("/api/meeting/reset")

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "IDLE"
        assert data["session_id"] != old_session_id
        assert data["has_minutes"] is False
        assert data["transcript_length"] == 0

    def test_reset_while_processing(self, client, real_controller):
        real_controller.session.status = MeetingStatus.PROCESSING

        with patch('ai_meeting_minutes.main.controller', real_controller):
            response = client.post("/api/meeting/reset")

        assert response.status_code == 409


class TestServiceEndpoints:
    """Health and device listing."""

    def test_health_check_healthy(self, client, real_controller):
        devices = Mock()
        devices.get_available_devices.return_value = [{"id": 0, "name": "BlackHole 2ch"}]
        generator = Mock()
        generator.check_ollama_available.return_value = True

        with patch('ai_meeting_minutes.main.controller', real_controller), \
             patch('ai_meeting_minutes.main.media_devices', devices), \
             patch('ai_meeting_minutes.main.minutes_generator', generator):
            response = client.get("/api/health")

        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"] == {
            "controller": True,
            "ollama_available": True,
            "audio_input_available": True
        }

    def test_health_check_degraded(self, client, real_controller):
        devices = Mock()
        devices.get_available_devices.side_effect = RuntimeError("PortAudio not initialized")
        generator = Mock()
        generator.check_ollama_available.return_value = False

        with patch('ai_meeting_minutes.main.controller', real_controller), \
             patch('ai_meeting_minutes.main.media_devices', devices), \
             patch('ai_meeting_minutes.main.minutes_generator', generator):
            data = client.get("/api/health").json()

        assert data["status"] == "degraded"
        assert data["services"]["ollama_available"] is False
        assert data["services"]["audio_input_available"] is False

    def test_audio_devices(self, client):
        devices = Mock()
        devices.get_available_devices.return_value = [
            {"id": 1, "name": "MacBook Pro Microphone", "channels": 1, "sample_rate": 48000.0}
        ]

        with patch('ai_meeting_minutes.main.media_devices', devices):
            response = client.get("/api/audio-devices")

        assert response.status_code == 200
        assert response.json()["devices"][0]["name"] == "MacBook Pro Microphone"

    def test_audio_devices_uninitialized(self, client):
        with patch('ai_meeting_minutes.main.media_devices', None):
            response = client.get("/api/audio-devices")

        assert response.status_code == 500
