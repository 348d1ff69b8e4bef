"""Audio output with a running playback clock and per-source control."""

import asyncio
import logging
import threading
from typing import Protocol

import numpy as np
import sounddevice

logger = logging.getLogger(__name__)


class PlaybackHandle:
    """A scheduled audio source.

    ``done`` resolves when the source finished playing or was stopped.
    """

    def __init__(self, start_frame: int, samples: np.ndarray, loop: asyncio.AbstractEventLoop):
        self.start_frame = start_frame
        self.samples = samples
        self.done: asyncio.Future = loop.create_future()
        self.stopped = False
        self._loop = loop

    @property
    def end_frame(self) -> int:
        return self.start_frame + len(self.samples)

    def stop(self) -> None:
        """Silence this source and resolve ``done``."""
        self.stopped = True
        self._resolve()

    def _resolve(self) -> None:
        if not self.done.done():
            self.done.set_result(None)

    def _resolve_threadsafe(self) -> None:
        try:
            self._loop.call_soon_threadsafe(self._resolve)
        except RuntimeError:
            # Loop already closed; nobody is waiting anymore.
            pass

    async def wait(self) -> None:
        await asyncio.shield(self.done)


class AudioOutput(Protocol):
    """Output device exposing a clock in seconds and sample-accurate scheduling."""

    sample_rate: int

    @property
    def current_time(self) -> float: ...

    def schedule(self, samples: np.ndarray, sample_rate: int, start_time: float | None = None) -> PlaybackHandle: ...

    def set_gain(self, gain: float) -> None: ...

    def close(self) -> None: ...


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Linear-interpolation resample of mono float32 samples."""
    if source_rate == target_rate or len(samples) == 0:
        return samples.astype(np.float32, copy=False)
    target_len = max(1, int(round(len(samples) * target_rate / float(source_rate))))
    positions = np.linspace(0, len(samples) - 1, num=target_len)
    return np.interp(positions, np.arange(len(samples)), samples).astype(np.float32)


class SoundDeviceOutput:
    """Mixes scheduled mono sources into a sounddevice OutputStream.

    The clock is the number of frames rendered by the stream divided by the
    sample rate, so scheduling is sample-accurate relative to what was
    actually played. A gain stage is applied after mixing, independent of
    scheduling.
    """

    def __init__(
        self,
        sample_rate: int = 24000,
        device: int | str | None = None,
        blocksize: int = 1024,
        gain: float = 1.0,
    ):
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if blocksize <= 0:
            raise ValueError("blocksize must be positive")

        self.sample_rate = sample_rate
        self.device = device
        self.blocksize = blocksize

        self._lock = threading.Lock()
        self._stream = None
        self._frames_rendered = 0
        self._sources: list[PlaybackHandle] = []
        self._gain = _clamp(gain)
        self._applied_gain = self._gain

        logger.info(
            "SoundDeviceOutput initialized: %d Hz, device=%s",
            sample_rate,
            device if device is not None else "default",
        )

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / float(self.sample_rate)

    @property
    def gain(self) -> float:
        return self._gain

    def open(self) -> None:
        """Open and start the output stream if not already running.

        Raises:
            RuntimeError: If the stream cannot be opened
        """
        if self._stream is not None:
            return
        try:
            self._stream = sounddevice.OutputStream(
                device=self.device,
                samplerate=self.sample_rate,
                channels=1,
                blocksize=self.blocksize,
                dtype="float32",
                callback=self._callback,
            )
            self._stream.start()
            logger.info("Audio output stream started (sample_rate=%d)", self.sample_rate)
        except Exception as e:
            self._stream = None
            logger.error("Failed to start audio output stream: %s", e)
            raise RuntimeError(f"Failed to start audio output stream: {e}") from e

    def schedule(
        self,
        samples: np.ndarray,
        sample_rate: int,
        start_time: float | None = None,
    ) -> PlaybackHandle:
        """Schedule samples to start at ``start_time`` (seconds on this clock).

        A start time in the past, or None, starts at the next rendered frame.
        """
        self.open()
        loop = asyncio.get_running_loop()
        mono = np.asarray(samples, dtype=np.float32)
        if mono.ndim > 1:
            mono = mono.mean(axis=1)
        mono = resample(mono, sample_rate, self.sample_rate)

        with self._lock:
            requested = self._frames_rendered if start_time is None else int(round(start_time * self.sample_rate))
            handle = PlaybackHandle(max(requested, self._frames_rendered), mono, loop)
            self._sources.append(handle)
        return handle

    def set_gain(self, gain: float) -> None:
        """Set output volume in [0, 1]; ramps over the next rendered block."""
        self._gain = _clamp(gain)
        logger.debug("Output gain set to %.2f", self._gain)

    def close(self) -> None:
        """Stop every scheduled source and close the stream."""
        with self._lock:
            sources, self._sources = self._sources, []
        for handle in sources:
            handle.stopped = True
            handle._resolve_threadsafe()

        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.warning("Error closing output stream: %s", e)
            finally:
                self._stream = None

    def _callback(self, outdata, frames, time_info, status):
        """Stream callback mixing active sources into the output block."""
        if status:
            logger.warning("Audio output status: %s", status)

        mix = np.zeros(frames, dtype=np.float32)
        finished: list[PlaybackHandle] = []

        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frames
            remaining = []
            for handle in self._sources:
                if handle.stopped:
                    finished.append(handle)
                    continue
                begin = max(handle.start_frame, block_start)
                end = min(handle.end_frame, block_end)
                if end > begin:
                    mix[begin - block_start : end - block_start] += handle.samples[
                        begin - handle.start_frame : end - handle.start_frame
                    ]
                if handle.end_frame <= block_end:
                    finished.append(handle)
                else:
                    remaining.append(handle)
            self._sources = remaining
            self._frames_rendered = block_end

        target = self._gain
        ramp = np.linspace(self._applied_gain, target, num=frames, dtype=np.float32)
        self._applied_gain = target

        outdata[:, 0] = np.clip(mix * ramp, -1.0, 1.0)

        for handle in finished:
            handle._resolve_threadsafe()


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, float(value)))
