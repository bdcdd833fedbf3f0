"""Media acquisition backed by PortAudio input devices (sounddevice)."""

import logging
from typing import Dict, List, Optional

import numpy as np
import sounddevice as sd

from .audio_source import AudioConstraints, AudioTrack, MediaDevices, MediaStream
from .config import AudioConfig, config as app_config

logger = logging.getLogger(__name__)


class SoundDeviceAudioTrack(AudioTrack):
    """Audio track reading fixed-size blocks from a PortAudio input stream."""

    def __init__(
        self,
        device_id: int,
        device_name: str,
        channels: int,
        sample_rate: int,
        frame_size: int,
        settings: Optional[AudioConstraints] = None
    ):
        super().__init__(sample_rate, label=device_name, settings=settings)
        self.device_id = device_id
        self._stream = sd.InputStream(
            device=device_id,
            channels=channels,
            samplerate=sample_rate,
            blocksize=frame_size,
            dtype=np.float32,
            callback=self._audio_callback,
            finished_callback=self._notify_ended
        )
        self._stream.start()

    def _audio_callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        if status:
            logger.warning(f"Audio callback status ({self.label}): {status}")

        # Convert to mono if needed
        if indata.shape[1] > 1:
            samples = np.mean(indata, axis=1)
        else:
            samples = indata[:, 0].copy()

        self._deliver(samples.astype(np.float32, copy=False))

    def stop(self) -> None:
        super().stop()
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            finally:
                self._stream = None


class SoundDeviceMediaDevices(MediaDevices):
    """
    Captures system audio from a loopback input device (BlackHole on macOS)
    and voice from the default or configured microphone.
    """

    def __init__(self, audio_config: Optional[AudioConfig] = None):
        self.config = audio_config or app_config.audio

    def _query_devices(self) -> list:
        return list(sd.query_devices())

    def get_loopback_device_id(self) -> Optional[int]:
        """Get the device ID for the loopback input device."""
        name = self.config.loopback_device_name.lower()
        for i, device in enumerate(self._query_devices()):
            if name in device['name'].lower() and device['max_input_channels'] > 0:
                return i
        return None

    def get_microphone_device_id(self) -> Optional[int]:
        """Get the device ID for the microphone input device."""
        devices = self._query_devices()
        loopback_name = self.config.loopback_device_name.lower()

        # If specific microphone name is configured, find it
        if self.config.microphone_device_name:
            wanted = self.config.microphone_device_name.lower()
            for i, device in enumerate(devices):
                if wanted in device['name'].lower() and device['max_input_channels'] > 0:
                    return i
            return None

        # Otherwise, use the default input unless it is the loopback device
        default_input = sd.query_devices(kind='input')
        if default_input and loopback_name not in default_input['name'].lower():
            return default_input.get('index')

        # Fallback: first non-loopback input device
        for i, device in enumerate(devices):
            if device['max_input_channels'] > 0 and loopback_name not in device['name'].lower():
                return i

        return None

    def get_available_devices(self) -> List[Dict]:
        """Get list of available audio input devices."""
        loopback_name = self.config.loopback_device_name.lower()
        input_devices = []
        for i, device in enumerate(self._query_devices()):
            if device['max_input_channels'] > 0:
                is_loopback = loopback_name in device['name'].lower()
                input_devices.append({
                    'id': i,
                    'name': device['name'],
                    'channels': device['max_input_channels'],
                    'sample_rate': device['default_samplerate'],
                    'is_loopback': is_loopback,
                    'is_microphone': not is_loopback
                })
        return input_devices

    def _open_track(self, device_id: int, constraints: AudioConstraints) -> SoundDeviceAudioTrack:
        info = sd.query_devices(device_id)
        sample_rate = self.config.capture_sample_rate or int(info['default_samplerate'])
        channels = min(int(info['max_input_channels']), 2)

        try:
            return SoundDeviceAudioTrack(
                device_id=device_id,
                device_name=info['name'],
                channels=channels,
                sample_rate=sample_rate,
                frame_size=self.config.frame_size,
                settings=constraints
            )
        except sd.PortAudioError as e:
            # PortAudio reports OS privacy refusals as a failure to open the device
            raise PermissionError(f"Could not open audio device '{info['name']}': {e}") from e

    async def request_display_audio(self, constraints: AudioConstraints) -> MediaStream:
        device_id = self.get_loopback_device_id()
        if device_id is None:
            logger.warning(
                f"Loopback device '{self.config.loopback_device_name}' not found; "
                "system audio stream has no audio track"
            )
            return MediaStream([])
        return MediaStream([self._open_track(device_id, constraints)])

    async def request_microphone_audio(self, constraints: AudioConstraints) -> MediaStream:
        device_id = self.get_microphone_device_id()
        if device_id is None:
            raise PermissionError("No microphone input device is available")
        return MediaStream([self._open_track(device_id, constraints)])
