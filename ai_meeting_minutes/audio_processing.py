"""
Audio processing: volume metric, resampling and PCM16 encoding.

Frames captured on the audio thread are posted to an explicit frame channel
on the event loop and consumed, in capture order, by a single task that
turns them into ``EncodedAudioChunk`` values for the transcription session.
"""

import asyncio
import logging
import math
from typing import Callable, Optional

import numpy as np

from .audio_source import AudioTrack
from .config import AudioConfig, config as app_config
from .models import AudioFrame, EncodedAudioChunk

logger = logging.getLogger(__name__)

ChunkSink = Callable[[EncodedAudioChunk], None]
VolumeCallback = Callable[[float], None]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_rms(samples: np.ndarray) -> float:
    """Root-mean-square level of a block of samples."""
    if len(samples) == 0:
        return 0.0
    samples = np.asarray(samples, dtype=np.float64)
    return float(np.sqrt(np.mean(samples * samples)))


def downsample_buffer(buffer: np.ndarray, input_sample_rate: int, output_sample_rate: int) -> np.ndarray:
    """
    Resample ``buffer`` from ``input_sample_rate`` to ``output_sample_rate``.

    Downsampling is a box filter: output sample ``i`` is the mean of the input
    samples in ``[round(i * ratio), round((i + 1) * ratio))``. Good enough for
    speech, not for archival audio. Upsampling interpolates linearly.
    Returns ``buffer`` itself when the rates match.
    """
    if input_sample_rate == output_sample_rate:
        return buffer
    if input_sample_rate <= 0 or output_sample_rate <= 0:
        raise ValueError(f"Invalid sample rates: {input_sample_rate} -> {output_sample_rate}")

    buffer = np.asarray(buffer, dtype=np.float32)
    n = len(buffer)
    ratio = input_sample_rate / output_sample_rate
    new_length = _round_half_up(n * output_sample_rate / input_sample_rate)
    if new_length == 0:
        return np.zeros(0, dtype=np.float32)

    if ratio < 1.0:
        positions = np.arange(new_length, dtype=np.float64) * ratio
        return np.interp(positions, np.arange(n), buffer).astype(np.float32)

    ends = np.floor((np.arange(1, new_length + 1) * ratio) + 0.5).astype(np.int64)
    starts = np.concatenate(([0], ends[:-1]))
    ends = np.clip(ends, 0, n)
    starts = np.clip(starts, 0, n)

    cumulative = np.concatenate(([0.0], np.cumsum(buffer, dtype=np.float64)))
    counts = ends - starts
    sums = cumulative[ends] - cumulative[starts]
    means = np.divide(sums, counts, out=np.zeros(new_length, dtype=np.float64), where=counts > 0)
    return means.astype(np.float32)


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """
    Convert float samples to signed 16-bit PCM (little-endian).

    Negative values scale by 32768 and non-negative by 32767 so both ends of
    the int16 range are reachable without overflow.
    """
    clipped = np.clip(np.nan_to_num(np.asarray(samples, dtype=np.float64)), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return np.trunc(scaled).astype("<i2")


def encode_pcm16(samples: np.ndarray, sample_rate: int, sequence: int = 0) -> EncodedAudioChunk:
    """Encode float samples as a transport-ready PCM16 chunk."""
    return EncodedAudioChunk(
        data=float_to_pcm16(samples).tobytes(),
        sample_rate=sample_rate,
        sequence=sequence
    )


class AudioProcessingPipeline:
    """Turns captured frames into encoded chunks and reports per-frame volume."""

    def __init__(
        self,
        target_sample_rate: int = 16000,
        frame_size: int = 4096,
        max_pending_frames: int = 64
    ):
        self.target_sample_rate = target_sample_rate
        self.frame_size = frame_size
        self.max_pending_frames = max_pending_frames

        self._sink: Optional[ChunkSink] = None
        self._on_volume: Optional[VolumeCallback] = None
        self._track: Optional[AudioTrack] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._frames: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._accepting = False
        self._closed = False
        self._next_sequence = 0
        self.frames_processed = 0
        self.frames_dropped = 0

    @classmethod
    def from_config(cls, audio_config: Optional[AudioConfig] = None) -> "AudioProcessingPipeline":
        audio_config = audio_config or app_config.audio
        return cls(
            target_sample_rate=audio_config.target_sample_rate,
            frame_size=audio_config.frame_size,
            max_pending_frames=audio_config.max_pending_frames
        )

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def connect(self, sink: ChunkSink) -> None:
        """Set the consumer of encoded chunks."""
        self._sink = sink

    def disconnect(self) -> None:
        self._sink = None

    async def start(self, track: AudioTrack, on_volume: Optional[VolumeCallback] = None) -> None:
        """Attach to an audio track and start consuming its frames."""
        if self._closed:
            raise RuntimeError("Pipeline has been closed")
        if self.is_running:
            raise RuntimeError("Pipeline is already running")

        self._loop = asyncio.get_running_loop()
        self._frames = asyncio.Queue()
        self._track = track
        self._on_volume = on_volume
        self._accepting = True
        self._consumer = self._loop.create_task(self._run())
        track.connect(self._on_samples)

        logger.info(
            f"Audio pipeline started: {track.sample_rate} Hz -> {self.target_sample_rate} Hz, "
            f"{self.frame_size}-sample frames"
        )

    def _on_samples(self, samples: np.ndarray) -> None:
        # Called on the audio thread; never blocks.
        if not self._accepting or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._enqueue, np.array(samples, dtype=np.float32))
        except RuntimeError:
            # Event loop already closed
            self._accepting = False

    def _enqueue(self, samples: np.ndarray) -> None:
        if not self._accepting:
            return
        if self._frames.qsize() >= self.max_pending_frames:
            self.frames_dropped += 1
            logger.warning(f"Audio frame channel full; dropped frame ({self.frames_dropped} dropped so far)")
            return

        frame = AudioFrame(
            samples=samples,
            sample_rate=self._track.sample_rate,
            sequence=self._next_sequence
        )
        self._next_sequence += 1
        self._frames.put_nowait(frame)

    def process_frame(self, frame: AudioFrame) -> EncodedAudioChunk:
        """Resample and encode one frame."""
        samples = downsample_buffer(frame.samples, frame.sample_rate, self.target_sample_rate)
        return encode_pcm16(samples, self.target_sample_rate, frame.sequence)

    async def _run(self) -> None:
        while True:
            frame = await self._frames.get()
            if frame is None:
                break

            try:
                if self._on_volume is not None:
                    self._on_volume(compute_rms(frame.samples))

                chunk = self.process_frame(frame)
                self.frames_processed += 1

                if self._sink is not None:
                    self._sink(chunk)
            except Exception as e:
                logger.error(f"Failed to process audio frame {frame.sequence}: {e}")

    async def stop(self) -> None:
        """Stop accepting frames and finish the frames already queued."""
        if not self._accepting and not self.is_running:
            return
        self._accepting = False

        if self._consumer is not None:
            self._frames.put_nowait(None)
            await self._consumer

        logger.info(
            f"Audio pipeline stopped: {self.frames_processed} frames processed, "
            f"{self.frames_dropped} dropped"
        )

    def close(self) -> None:
        """Detach from the track and the sink, releasing the audio graph."""
        if self._closed:
            return
        self._closed = True
        self._accepting = False

        if self._track is not None:
            self._track.disconnect()
            self._track = None
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()

        self._sink = None
        self._on_volume = None
