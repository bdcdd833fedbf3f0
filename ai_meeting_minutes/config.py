"""Configuration management for AI Meeting Minutes application."""

import os
from typing import Optional
from pydantic import BaseModel, Field


class AudioConfig(BaseModel):
    """Audio capture and processing configuration."""
    frame_size: int = Field(default=4096, description="Samples per captured audio frame")
    target_sample_rate: int = Field(default=16000, description="Sample rate sent to the transcription service in Hz")
    capture_sample_rate: Optional[int] = Field(default=None, description="Capture sample rate in Hz (device default if None)")
    volume_decay: float = Field(default=0.8, ge=0.0, lt=1.0, description="Weight of the previous level in the smoothed volume")
    max_pending_frames: int = Field(default=64, ge=1, description="Frames allowed to queue between the audio thread and the pipeline")
    loopback_device_name: str = Field(default="BlackHole 2ch", description="Loopback device used for system audio capture")
    microphone_device_name: Optional[str] = Field(default=None, description="Specific microphone device name (auto-detect if None)")


class TranscriptionConfig(BaseModel):
    """Transcription service configuration."""
    mode: str = Field(default="batch", description="Transcription strategy: 'batch' or 'streaming'")
    service_url: str = Field(default="http://localhost:9876", description="Transcription service base URL")
    api_token: Optional[str] = Field(default=None, description="Token sent as X-API-Token when set")
    language: Optional[str] = Field(default=None, description="Language code or None for detection")
    batch_interval_seconds: float = Field(default=5.0, gt=0.0, description="Length of one batch window")
    connect_timeout_seconds: float = Field(default=5.0, description="HTTP connect timeout")
    request_timeout_seconds: float = Field(default=30.0, description="HTTP read timeout per request")
    stop_timeout_seconds: float = Field(default=10.0, gt=0.0, description="Upper bound for draining pending work on stop")


class LLMConfig(BaseModel):
    """Summarization (minutes generation) configuration."""
    model_name: str = Field(default="qwen2.5:14b", description="Ollama model name")
    temperature: float = Field(default=0.2, description="LLM temperature for generation")
    max_tokens: int = Field(default=4000, description="Maximum tokens for minutes generation")
    timeout_seconds: int = Field(default=300, description="Timeout for LLM requests")
    max_retries: int = Field(default=1, ge=1, description="Attempts per summarization request")
    retry_delay: float = Field(default=2.0, description="Base delay between attempts in seconds")
    ollama_url: str = Field(default="http://localhost:11434", description="Ollama server URL")
    min_transcript_chars: int = Field(default=10, ge=0, description="Shortest trimmed transcript worth summarizing")


class ServerConfig(BaseModel):
    """FastAPI server configuration."""
    host: str = Field(default="127.0.0.1", description="Server host address")
    port: int = Field(default=8000, description="Server port")
    debug: bool = Field(default=False, description="Enable debug mode")
    cors_origins: list[str] = Field(default=["*"], description="CORS allowed origins")


class AppConfig(BaseModel):
    """Main application configuration."""
    audio: AudioConfig = Field(default_factory=AudioConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """Load configuration from environment variables."""
        config = cls()

        # Audio settings
        if os.getenv("AUDIO_LOOPBACK_DEVICE"):
            config.audio.loopback_device_name = os.getenv("AUDIO_LOOPBACK_DEVICE")
        if os.getenv("AUDIO_CAPTURE_SAMPLE_RATE"):
            config.audio.capture_sample_rate = int(os.getenv("AUDIO_CAPTURE_SAMPLE_RATE"))

        # Transcription settings
        if os.getenv("TRANSCRIPTION_MODE"):
            config.transcription.mode = os.getenv("TRANSCRIPTION_MODE").lower()
        if os.getenv("TRANSCRIPTION_SERVICE_URL"):
            config.transcription.service_url = os.getenv("TRANSCRIPTION_SERVICE_URL")
        if os.getenv("TRANSCRIPTION_API_TOKEN"):
            config.transcription.api_token = os.getenv("TRANSCRIPTION_API_TOKEN")
        if os.getenv("TRANSCRIPTION_LANGUAGE"):
            config.transcription.language = os.getenv("TRANSCRIPTION_LANGUAGE")
        if os.getenv("BATCH_INTERVAL_SECONDS"):
            config.transcription.batch_interval_seconds = float(os.getenv("BATCH_INTERVAL_SECONDS"))

        # LLM settings
        if os.getenv("OLLAMA_MODEL"):
            config.llm.model_name = os.getenv("OLLAMA_MODEL")
        if os.getenv("OLLAMA_URL"):
            config.llm.ollama_url = os.getenv("OLLAMA_URL")
        if os.getenv("LLM_TEMPERATURE"):
            config.llm.temperature = float(os.getenv("LLM_TEMPERATURE"))

        # Server settings
        if os.getenv("SERVER_HOST"):
            config.server.host = os.getenv("SERVER_HOST")
        if os.getenv("SERVER_PORT"):
            config.server.port = int(os.getenv("SERVER_PORT"))
        if os.getenv("DEBUG"):
            config.server.debug = os.getenv("DEBUG").lower() == "true"

        return config


# Global configuration instance
config = AppConfig.load_from_env()
