"""Speech synthesis via Gemini text-to-speech."""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

import numpy as np

from voice_relay._types import SynthesisRequest
from voice_relay.languages import voice_for_language
from voice_relay.pcm import duration_seconds, pcm16_to_float

logger = logging.getLogger(__name__)

GEMINI_SAMPLE_RATE = 24000


class SynthesisError(Exception):
    """Speech engine failure."""

    pass


class SpeechEngine(Protocol):
    """External text-to-speech engine returning PCM16 audio."""

    sample_rate: int

    async def synthesize(self, request: SynthesisRequest) -> bytes | None: ...

    def stream(self, request: SynthesisRequest) -> AsyncIterator[bytes]: ...


@dataclass(frozen=True)
class SynthesisResult:
    """Decoded synthesized speech."""

    samples: np.ndarray
    sample_rate: int
    voice: str

    @property
    def duration(self) -> float:
        return duration_seconds(self.samples, self.sample_rate)


class GeminiSpeechEngine:
    """Speech engine backed by the google-genai async client."""

    sample_rate = GEMINI_SAMPLE_RATE

    def __init__(self, api_key: str, model: str = "gemini-2.5-flash-preview-tts"):
        self.api_key = api_key
        self.model = model
        self._client = None
        logger.info("GeminiSpeechEngine initialized: model=%s", model)

    def _ensure_client(self):
        if self._client is None:
            from google import genai

            start_time = time.perf_counter()
            self._client = genai.Client(api_key=self.api_key)
            logger.info(
                "Gemini client initialized in %.3f seconds",
                time.perf_counter() - start_time,
            )
        return self._client

    def _config(self, voice: str):
        from google.genai import types

        return types.GenerateContentConfig(
            response_modalities=["AUDIO"],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice),
                ),
            ),
        )

    async def synthesize(self, request: SynthesisRequest) -> bytes | None:
        from google.genai import errors

        client = self._ensure_client()
        try:
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=request.text,
                config=self._config(request.voice),
            )
        except errors.APIError as e:
            raise SynthesisError(f"Gemini API error ({e.code}): {e.message}") from e
        return _inline_audio(response)

    async def stream(self, request: SynthesisRequest) -> AsyncIterator[bytes]:
        from google.genai import errors

        client = self._ensure_client()
        try:
            response_stream = await client.aio.models.generate_content_stream(
                model=self.model,
                contents=request.text,
                config=self._config(request.voice),
            )
            async for chunk in response_stream:
                data = _inline_audio(chunk)
                if data:
                    yield data
        except errors.APIError as e:
            raise SynthesisError(f"Gemini API error ({e.code}): {e.message}") from e


def _inline_audio(response) -> bytes | None:
    """Concatenate inline audio payloads of the first candidate."""
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return None
    content = getattr(candidates[0], "content", None)
    parts = getattr(content, "parts", None) or []
    payload = b"".join(
        part.inline_data.data
        for part in parts
        if getattr(part, "inline_data", None) is not None and part.inline_data.data
    )
    return payload or None


class SpeechSynthesizer:
    """Turns translated text into decoded audio for a target language.

    Supports discrete mode (one complete payload) and streaming mode (chunks
    assembled before decoding). Absence of audio is a legitimate outcome and
    is reported as None.
    """

    def __init__(
        self,
        engine: SpeechEngine,
        mode: str = "streaming",
        default_voice: str | None = None,
        timeout: float = 30.0,
    ):
        """Initialize synthesizer.

        Args:
            engine: External speech engine
            mode: "discrete" or "streaming"
            default_voice: Voice overriding the per-language table
            timeout: Maximum seconds for one synthesis
        """
        if mode not in ("discrete", "streaming"):
            raise ValueError(f"Unknown synthesis mode: {mode}")
        self.engine = engine
        self.mode = mode
        self.default_voice = default_voice
        self.timeout = timeout

    def select_voice(self, target_lang: str, voice: str | None = None) -> str:
        return voice or self.default_voice or voice_for_language(target_lang)

    async def synthesize(
        self,
        text: str,
        target_lang: str,
        voice: str | None = None,
    ) -> SynthesisResult | None:
        """Synthesize text, returning None when there is nothing to play."""
        if not text.strip():
            return None

        request = SynthesisRequest(
            text=text,
            target_lang=target_lang,
            voice=self.select_voice(target_lang, voice),
        )
        logger.debug("Synthesizing %d characters with voice %s (%s)", len(text), request.voice, self.mode)

        try:
            if self.mode == "streaming":
                payload = await asyncio.wait_for(self._collect_stream(request), timeout=self.timeout)
            else:
                payload = await asyncio.wait_for(self.engine.synthesize(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("Synthesis timed out after %.1f seconds", self.timeout)
            return None
        except Exception as e:
            logger.error("Synthesis failed: %s: %s", type(e).__name__, e)
            return None

        if not payload:
            logger.info("Synthesis produced no audio")
            return None

        samples = pcm16_to_float(payload)
        if len(samples) == 0:
            return None
        return SynthesisResult(samples=samples, sample_rate=self.engine.sample_rate, voice=request.voice)

    async def _collect_stream(self, request: SynthesisRequest) -> bytes:
        chunks: list[bytes] = []
        async for chunk in self.engine.stream(request):
            chunks.append(chunk)
        return b"".join(chunks)
