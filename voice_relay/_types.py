"""Shared types and dataclasses for cross-module use."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import numpy as np


@dataclass
class AudioChunk:
    """Container for audio data chunk."""

    data: bytes
    sample_rate: int
    channels: int


@dataclass(frozen=True)
class TranscriptSegment:
    """One unit of recognized speech, interim or final.

    Immutable once emitted by a transcript source.
    """

    id: str
    text: str
    is_final: bool
    start_ms: int = 0
    end_ms: int = 0
    confidence: float = 0.0

    def to_wire(self) -> dict:
        """Serialize to the language-agnostic segment wire shape."""
        return {
            "id": self.id,
            "text": self.text,
            "isFinal": self.is_final,
            "startMs": self.start_ms,
            "endMs": self.end_ms,
            "confidence": self.confidence,
        }

    @classmethod
    def from_wire(cls, payload: dict) -> "TranscriptSegment":
        """Build a segment from its wire shape."""
        return cls(
            id=str(payload["id"]),
            text=str(payload["text"]),
            is_final=bool(payload["isFinal"]),
            start_ms=int(payload.get("startMs", 0)),
            end_ms=int(payload.get("endMs", 0)),
            confidence=float(payload.get("confidence", 0.0)),
        )


@dataclass(frozen=True)
class AudioQueueItem:
    """Decoded audio owned by the playback queue from enqueue to completion."""

    id: str
    samples: np.ndarray
    sample_rate: int
    on_start: Callable[[], None] | None = None
    on_end: Callable[[], None] | None = None

    @property
    def duration(self) -> float:
        return len(self.samples) / float(self.sample_rate)


# Provider request/response types. Each carries a version tag so provider
# adapters can evolve without touching the pipeline.


@dataclass(frozen=True)
class TranslationRequest:
    """Request for a translation engine."""

    text: str
    source_lang: str
    target_lang: str
    version: str = "v1"


@dataclass(frozen=True)
class TranslationResponse:
    """Response from a translation engine."""

    translated_text: str
    version: str = "v1"


@dataclass(frozen=True)
class SynthesisRequest:
    """Request for a speech synthesis engine."""

    text: str
    target_lang: str
    voice: str
    version: str = "v1"


@dataclass(frozen=True)
class ProviderTranscript:
    """Transcript event pushed by a speech-to-text provider."""

    text: str
    is_final: bool
    confidence: float = 0.0
    start: float = 0.0
    duration: float = 0.0


@dataclass(frozen=True)
class ProviderFailure:
    """Error event pushed by a speech-to-text provider."""

    code: str
    message: str = ""


class PipelineState(Enum):
    """Pipeline controller state."""

    IDLE = "idle"
    LISTENING = "listening"
    TRANSLATING = "translating"
    SPEAKING = "speaking"
    ERROR = "error"


class EventKind(Enum):
    """Kinds of events published on a pipeline's event channel."""

    STATE = "state"
    TRANSCRIPT = "transcript"
    TRANSLATION = "translation"
    PLAYBACK_STARTED = "playback_started"
    PLAYBACK_FINISHED = "playback_finished"
    ERROR = "error"


@dataclass(frozen=True)
class PipelineEvent:
    """Single typed event emitted by a pipeline controller."""

    kind: EventKind
    state: PipelineState | None = None
    text: str = ""
    is_final: bool = False
    segment_id: str | None = None
    message: str = ""
    extra: dict = field(default_factory=dict)


class TranscriptErrorKind(Enum):
    """Failure classes of a transcript source."""

    NO_AUDIO_DEVICE = "no-audio-device"
    PERMISSION_DENIED = "permission-denied"
    TRANSPORT = "transport"
    NO_SPEECH = "no-speech"
    OTHER = "other"
