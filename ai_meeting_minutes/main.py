"""
FastAPI server for AI Meeting Minutes application.

Provides REST API endpoints for starting and stopping a meeting, status
monitoring, and retrieving the live transcript and the generated minutes.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .audio_devices import SoundDeviceMediaDevices
from .config import config
from .error_handling import (
    AcquisitionError, InvalidStateError, ProcessingError, TranscriptionConnectionError,
    error_recovery_manager
)
from .lifecycle import MeetingLifecycleController
from .minutes_generator import MinutesGenerator
from .models import AudioSourceType, MeetingMinutes, TranscriptionMode
from .transcription_client import HttpBatchTranscriptionService, HttpStreamingTranscriptionService

# Configure logging
logging.basicConfig(level=logging.DEBUG if config.server.debug else logging.INFO)
logger = logging.getLogger(__name__)

# Global state
controller: Optional[MeetingLifecycleController] = None
media_devices: Optional[SoundDeviceMediaDevices] = None
minutes_generator: Optional[MinutesGenerator] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown."""
    global controller, media_devices, minutes_generator

    logger.info("Starting AI Meeting Minutes server...")

    try:
        media_devices = SoundDeviceMediaDevices(config.audio)
        minutes_generator = MinutesGenerator(config.llm)
        controller = MeetingLifecycleController(
            media_devices=media_devices,
            minutes_generator=minutes_generator,
            batch_service=HttpBatchTranscriptionService(config.transcription),
            streaming_service=HttpStreamingTranscriptionService(config.transcription),
            app_config=config
        )
        logger.info("Meeting controller initialized")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        raise

    yield

    logger.info("Shutting down AI Meeting Minutes server...")
    if controller:
        try:
            await controller.shutdown()
        except Exception as e:
            logger.error(f"Error shutting down meeting controller: {e}")


app = FastAPI(
    title="AI Meeting Minutes API",
    description="REST API for live meeting transcription and minutes generation",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.server.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request / response models
class StartMeetingRequest(BaseModel):
    """Request body for the start endpoint."""
    source_type: AudioSourceType
    mode: Optional[TranscriptionMode] = None


class StatusResponse(BaseModel):
    """Response model for status endpoint."""
    session_id: str
    status: str
    message: str
    source_type: Optional[str] = None
    mode: str
    start_time: str
    volume_level: float
    transcript_length: int
    segment_count: int
    failed_batches: int
    stop_reason: Optional[str] = None
    has_minutes: bool
    last_error: Optional[Dict[str, Any]] = None


class TranscriptResponse(BaseModel):
    """Response model for transcript endpoint."""
    transcript: str
    segment_count: int
    frozen: bool
    status: str


class MinutesResponse(BaseModel):
    """Response model for minutes endpoint; ``minutes`` uses the export keys."""
    minutes: Optional[Dict[str, Any]] = None
    available: bool
    message: str


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    services: Dict[str, bool]
    message: str


def get_controller() -> MeetingLifecycleController:
    if not controller:
        raise HTTPException(status_code=500, detail="Meeting controller not initialized")
    return controller


# API Routes

@app.get("/api/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint to verify collaborators are available."""
    services = {"controller": controller is not None}

    try:
        services["ollama_available"] = bool(minutes_generator and minutes_generator.check_ollama_available())
    except Exception:
        services["ollama_available"] = False

    try:
        services["audio_input_available"] = bool(media_devices and media_devices.get_available_devices())
    except Exception:
        services["audio_input_available"] = False

    all_healthy = all(services.values())
    return HealthResponse(
        status="healthy" if all_healthy else "degraded",
        services=services,
        message="All services operational" if all_healthy else "Some services unavailable"
    )


@app.get("/api/status", response_model=StatusResponse)
async def get_status():
    """Get current meeting session status."""
    return StatusResponse(**get_controller().get_status())


@app.post("/api/meeting/start", response_model=StatusResponse)
async def start_meeting(request: StartMeetingRequest):
    """Acquire the audio source and start recording."""
    meeting = get_controller()

    try:
        await meeting.start(request.source_type, request.mode)
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=e.to_dict())
    except (AcquisitionError, TranscriptionConnectionError) as e:
        raise HTTPException(status_code=400, detail=e.to_dict())
    except ProcessingError as e:
        raise HTTPException(status_code=500, detail=e.to_dict())

    return StatusResponse(**meeting.get_status())


@app.post("/api/meeting/stop", response_model=StatusResponse)
async def stop_meeting():
    """Stop recording; minutes are generated in the background."""
    meeting = get_controller()

    try:
        meeting.request_stop("user")
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=e.to_dict())

    return StatusResponse(**meeting.get_status())


@app.post("/api/meeting/reset", response_model=StatusResponse)
async def reset_meeting():
    """Discard the transcript and minutes and return to IDLE."""
    meeting = get_controller()

    try:
        meeting.reset()
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=e.to_dict())

    return StatusResponse(**meeting.get_status())


@app.get("/api/transcript", response_model=TranscriptResponse)
async def get_transcript():
    """Get the running (or frozen) transcript of the current session."""
    session = get_controller().session
    return TranscriptResponse(
        transcript=session.transcript.snapshot(),
        segment_count=len(session.transcript.segments),
        frozen=session.transcript.is_frozen,
        status=session.status.value
    )


@app.get("/api/minutes", response_model=MinutesResponse)
async def get_minutes():
    """Get the generated meeting minutes for the current session."""
    session = get_controller().session
    minutes: Optional[MeetingMinutes] = session.minutes

    if minutes is not None:
        return MinutesResponse(
            minutes=minutes.to_export_dict(),
            available=True,
            message="Meeting minutes available"
        )

    return MinutesResponse(
        minutes=None,
        available=False,
        message=session.get_status_display()
    )


@app.get("/api/audio-devices")
async def get_audio_devices() -> Dict[str, List[Dict[str, Any]]]:
    """List available audio input devices."""
    if not media_devices:
        raise HTTPException(status_code=500, detail="Audio devices not initialized")

    try:
        return {"devices": media_devices.get_available_devices()}
    except Exception as e:
        logger.error(f"Failed to query audio devices: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to query audio devices: {e}")


@app.get("/api/errors")
async def get_error_summary():
    """Summary of recent errors for troubleshooting."""
    return error_recovery_manager.get_error_summary()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "ai_meeting_minutes.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.debug
    )
