"""Microphone capture as an async stream of PCM16 chunks."""

import asyncio
import logging
from collections.abc import AsyncIterator
from enum import Enum

import sounddevice

from voice_relay._types import AudioChunk, TranscriptErrorKind

logger = logging.getLogger(__name__)

_SENTINEL = None


class _StreamState(Enum):
    """Internal microphone state machine."""

    IDLE = "idle"
    STREAMING = "streaming"
    CLOSED = "closed"


class AudioDeviceError(RuntimeError):
    """Microphone could not be opened."""

    def __init__(self, message: str, kind: TranscriptErrorKind):
        super().__init__(message)
        self.kind = kind


def classify_device_error(error: Exception) -> TranscriptErrorKind:
    """Map a PortAudio failure onto a transcript error kind."""
    text = str(error).lower()
    if "permission" in text or "not allowed" in text or "access denied" in text:
        return TranscriptErrorKind.PERMISSION_DENIED
    if "device" in text or "no default" in text:
        return TranscriptErrorKind.NO_AUDIO_DEVICE
    return TranscriptErrorKind.OTHER


class MicrophoneStream:
    """Captures microphone audio via sounddevice and yields PCM16 chunks.

    The PortAudio callback runs on its own thread and hands chunks to the
    event loop through a bounded asyncio.Queue. When the consumer falls behind,
    the oldest chunks are dropped.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_size: int = 4000,
        device: int | str | None = None,
        max_pending: int = 100,
    ):
        """Initialize microphone stream.

        Args:
            sample_rate: Sample rate in Hz
            channels: Number of channels
            chunk_size: Frames per chunk
            device: Audio device index or name (None for default)
            max_pending: Maximum chunks buffered for a slow consumer
        """
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if channels not in (1, 2):
            raise ValueError("channels must be 1 or 2")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_size = chunk_size
        self.device = device
        self.max_pending = max_pending

        self._state = _StreamState.IDLE
        self._stream = None
        self._queue: asyncio.Queue | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._dropped = 0

        logger.info(
            "MicrophoneStream initialized: %d Hz, %d channels, device=%s",
            sample_rate,
            channels,
            device if device is not None else "default",
        )

    @property
    def is_streaming(self) -> bool:
        return self._state == _StreamState.STREAMING

    def start(self) -> None:
        """Open the input stream and begin buffering chunks.

        Must be called from a running event loop.

        Raises:
            AudioDeviceError: If the device is missing, denied or cannot open
        """
        if self._state == _StreamState.STREAMING:
            raise RuntimeError("Microphone stream already started")

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.max_pending)
        resolved_device = self._resolve_device_selection()

        try:
            self._stream = sounddevice.RawInputStream(
                device=resolved_device,
                samplerate=self.sample_rate,
                channels=self.channels,
                blocksize=self.chunk_size,
                dtype="int16",
                callback=self._callback,
            )
            self._stream.start()
            self._state = _StreamState.STREAMING
            logger.info(
                "Microphone stream started (sample_rate=%d, channels=%d, device=%s)",
                self.sample_rate,
                self.channels,
                resolved_device if resolved_device is not None else "default",
            )
        except Exception as e:
            self._stream = None
            self._state = _StreamState.IDLE
            kind = classify_device_error(e)
            logger.error("Failed to start microphone stream (%s): %s", kind.value, e)
            raise AudioDeviceError(f"Failed to start microphone stream: {e}", kind) from e

    async def chunks(self) -> AsyncIterator[AudioChunk]:
        """Yield captured chunks until the stream is closed."""
        if self._queue is None:
            self.start()
        while True:
            chunk = await self._queue.get()
            if chunk is _SENTINEL:
                return
            yield chunk

    def __aiter__(self) -> AsyncIterator[AudioChunk]:
        return self.chunks()

    def close(self) -> None:
        """Stop the stream and release the device. Safe to call repeatedly."""
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.warning("Error closing microphone stream: %s", e)
            finally:
                self._stream = None

        if self._state == _StreamState.STREAMING and self._queue is not None:
            self._push(_SENTINEL)
        self._state = _StreamState.CLOSED
        if self._dropped:
            logger.info("Microphone stream dropped %d chunks for a slow consumer", self._dropped)

    def _callback(self, indata, frames, time_info, status):
        """Stream callback invoked on audio data arrival."""
        if status:
            logger.warning("Microphone stream status: %s", status)

        chunk = AudioChunk(data=bytes(indata), sample_rate=self.sample_rate, channels=self.channels)
        try:
            self._loop.call_soon_threadsafe(self._push, chunk)
        except RuntimeError:
            pass

    def _push(self, chunk: AudioChunk | None) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self._dropped += 1
        self._queue.put_nowait(chunk)

    def _resolve_device_selection(self) -> int | None:
        """Resolve configured device selection to a sounddevice index."""

        if self.device is None or isinstance(self.device, int):
            return self.device

        try:
            device_list = sounddevice.query_devices()
            if isinstance(device_list, dict):
                device_list = [device_list]
        except Exception as e:
            logger.warning(
                "Unable to enumerate audio devices for '%s': %s; using default",
                self.device,
                e,
            )
            return None

        target = self.device.strip().lower()
        partial_match: int | None = None

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) <= 0:
                continue
            normalized = dev_info.get("name", f"Device {idx}").strip().lower()
            if normalized == target:
                return idx
            if partial_match is None and target in normalized:
                partial_match = idx

        if partial_match is not None:
            logger.debug("Resolved audio device '%s' to index %d via partial match", self.device, partial_match)
            return partial_match

        logger.warning("Audio device '%s' not found, using default input", self.device)
        return None
