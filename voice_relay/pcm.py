"""PCM16 conversion helpers for provider audio payloads."""

import base64

import numpy as np


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Convert float32 samples in [-1, 1] to little-endian PCM16 bytes."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (clipped * 32767).astype("<i2").tobytes()


def pcm16_to_float(data: bytes, channels: int = 1) -> np.ndarray:
    """Decode little-endian PCM16 bytes into float32 samples.

    A trailing odd byte is dropped. Multi-channel input is returned with
    shape (frames, channels).
    """
    usable = len(data) - (len(data) % 2)
    samples = np.frombuffer(data[:usable], dtype="<i2").astype(np.float32) / 32768.0
    if channels > 1:
        frames = len(samples) // channels
        samples = samples[: frames * channels].reshape(frames, channels)
    return samples


def float_to_base64(samples: np.ndarray) -> str:
    """Encode float32 samples as base64 PCM16."""
    return base64.b64encode(float_to_pcm16(samples)).decode("ascii")


def base64_to_float(payload: str, channels: int = 1) -> np.ndarray:
    """Decode base64 PCM16 into float32 samples."""
    return pcm16_to_float(base64.b64decode(payload), channels=channels)


def duration_seconds(samples: np.ndarray, sample_rate: int) -> float:
    return len(samples) / float(sample_rate)
