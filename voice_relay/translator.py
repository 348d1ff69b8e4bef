"""Text translation via Gemini with a bounded cache."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Protocol

from voice_relay._types import TranslationRequest, TranslationResponse
from voice_relay.languages import describe_source
from voice_relay.translation_cache import TranslationCache

logger = logging.getLogger(__name__)

TRANSLATION_PROMPT_TEMPLATE = """Role: Expert Interpreter with a focus on natural speech patterns.
Task: Translate the following text from {source} to {target}.

CRITICAL GUIDELINES:
1. Preserve Disfluencies: If the input has "um", "ah", "oh", or stutters, you MUST include the equivalent filler words in {target}.
2. Maintain Prosody in Text: Keep the punctuation and structure that implies the original rhythm (ellipses for pauses, dashes for abrupt stops).
3. No Cleanup: Do not make the text sound "better" or more formal. Keep it raw.

Input Text: "{text}"

Output only the translated text."""


class TranslationError(Exception):
    """Translation engine failure."""

    pass


class TranslationEngine(Protocol):
    """Stateless external translation engine."""

    async def translate(self, request: TranslationRequest) -> TranslationResponse: ...


@dataclass(frozen=True)
class TranslationResult:
    """Outcome of a translate call.

    On failure ``ok`` is False, ``text`` holds the original text and ``error``
    describes the failure.
    """

    text: str
    ok: bool = True
    cached: bool = False
    error: str | None = None


class GeminiTranslationEngine:
    """Translation engine backed by the google-genai async client.

    Lazy-initializes client on first translation.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-flash-lite-latest",
        temperature: float = 0.2,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self._client = None
        logger.info("GeminiTranslationEngine initialized: model=%s", model)

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

    async def translate(self, request: TranslationRequest) -> TranslationResponse:
        from google.genai import errors, types

        client = self._ensure_client()
        prompt = TRANSLATION_PROMPT_TEMPLATE.format(
            source=describe_source(request.source_lang),
            target=request.target_lang,
            text=request.text,
        )
        try:
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=prompt,
                config=types.GenerateContentConfig(temperature=self.temperature),
            )
        except errors.APIError as e:
            raise TranslationError(f"Gemini API error ({e.code}): {e.message}") from e

        return TranslationResponse(translated_text=_response_text(response))


def _response_text(response) -> str:
    """Join the text parts of the first candidate, falling back to response.text."""
    candidates = getattr(response, "candidates", None) or []
    if candidates:
        content = getattr(candidates[0], "content", None)
        parts = getattr(content, "parts", None) or []
        text = "".join(part.text for part in parts if isinstance(getattr(part, "text", None), str))
        if text.strip():
            return text.strip()
    return (getattr(response, "text", None) or "").strip()


class Translator:
    """Translates final transcript text, consulting and populating the cache."""

    def __init__(
        self,
        engine: TranslationEngine,
        cache: TranslationCache | None = None,
        timeout: float = 10.0,
    ):
        """Initialize translator.

        Args:
            engine: External translation engine
            cache: Translation cache owned by this translator
            timeout: Maximum seconds to wait for the engine
        """
        self.engine = engine
        self.cache = cache if cache is not None else TranslationCache()
        self.timeout = timeout

    async def translate(self, text: str, source_lang: str, target_lang: str) -> TranslationResult:
        """Translate text, returning a cached value when one is still fresh.

        Never raises for engine failures; the result carries ``ok=False`` and
        the original text instead.
        """
        if not text.strip():
            return TranslationResult(text="")

        cached = self.cache.get(source_lang, text, target_lang)
        if cached is not None:
            return TranslationResult(text=cached, cached=True)

        request = TranslationRequest(text=text, source_lang=source_lang, target_lang=target_lang)
        try:
            response = await asyncio.wait_for(self.engine.translate(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("Translation timed out after %.1f seconds", self.timeout)
            return TranslationResult(
                text=text,
                ok=False,
                error=f"Translation timed out after {self.timeout} seconds",
            )
        except Exception as e:
            logger.error("Translation failed: %s: %s", type(e).__name__, e)
            return TranslationResult(text=text, ok=False, error=f"Translation failed: {e}")

        translated = response.translated_text.strip()
        if not translated:
            logger.warning("Translation engine returned empty text")
            return TranslationResult(text="")

        self.cache.put(source_lang, text, target_lang, translated)
        logger.debug("Translated %d characters -> %d characters", len(text), len(translated))
        return TranslationResult(text=translated)
