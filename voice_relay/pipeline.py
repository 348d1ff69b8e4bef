"""Async state machine orchestrating transcription, translation and speech."""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Callable

from voice_relay._types import (
    AudioChunk,
    AudioQueueItem,
    EventKind,
    PipelineEvent,
    PipelineState,
    TranscriptErrorKind,
    TranscriptSegment,
)
from voice_relay.config import Config, PipelineConfig
from voice_relay.languages import language_code
from voice_relay.output import AudioOutput, SoundDeviceOutput
from voice_relay.persistence import JsonlSegmentStore, LoggingSegmentStore, SegmentStore
from voice_relay.playback import AudioPlaybackQueue
from voice_relay.recorder import AudioDeviceError, MicrophoneStream
from voice_relay.synthesizer import GeminiSpeechEngine, SpeechSynthesizer
from voice_relay.transcript_source import (
    DeepgramProvider,
    SpeechToTextOptions,
    TranscriptHandlers,
    TranscriptSource,
    TranscriptSourceError,
    strip_speaker_label,
)
from voice_relay.translation_cache import TranslationCache
from voice_relay.translator import GeminiTranslationEngine, Translator

logger = logging.getLogger(__name__)

EventHandler = Callable[[PipelineEvent], None]


class PipelineConfigError(Exception):
    """Pipeline cannot start because it is misconfigured (e.g. missing credentials)."""

    pass


class PipelineController:
    """Coordinates transcript source, translator, synthesizer and playback.

    Final segments are queued and processed by a single worker task, so one
    Translating -> Speaking -> Listening cycle (including playback) finishes
    before the next segment is translated. All observable activity is
    published as PipelineEvent values on a single event channel.
    """

    def __init__(
        self,
        config: PipelineConfig,
        translator: Translator,
        synthesizer: SpeechSynthesizer | None = None,
        transcript_source: TranscriptSource | None = None,
        output_factory: Callable[[], AudioOutput] | None = None,
        microphone_factory: Callable[[], MicrophoneStream] | None = None,
        store: SegmentStore | None = None,
        on_event: EventHandler | None = None,
        playback_gap: float = 0.5,
        playback_grace: float = 5.0,
        disabled_reason: str | None = None,
    ):
        """Initialize pipeline controller.

        Args:
            config: Effective pipeline configuration
            translator: Translator owning the translation cache
            synthesizer: Speech synthesizer (None disables speech output)
            transcript_source: Source used when config.provider is "deepgram"
            output_factory: Creates the audio output for each started session
            microphone_factory: Creates the microphone when start() gets no stream
            store: Persistence collaborator for text logs
            on_event: Receiver of every PipelineEvent
            playback_gap: Silence between played utterances in seconds
            playback_grace: Extra seconds allowed past an utterance's duration
            disabled_reason: Set when the pipeline must refuse to start
        """
        self._config = config
        self.translator = translator
        self.synthesizer = synthesizer
        self.transcript_source = transcript_source
        self.output_factory = output_factory or SoundDeviceOutput
        self.microphone_factory = microphone_factory
        self.store = store or LoggingSegmentStore()
        self.on_event = on_event
        self.playback_gap = playback_gap
        self.playback_grace = playback_grace
        self.disabled_reason = disabled_reason

        self.state = PipelineState.IDLE
        self._active = False
        self._segments: asyncio.Queue[TranscriptSegment] | None = None
        self._worker_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._processed_segments: set[str] = set()
        self._output: AudioOutput | None = None
        self._playback: AudioPlaybackQueue | None = None
        self._microphone: MicrophoneStream | None = None
        self._last_error: Exception | None = None

        logger.info("PipelineController initialized in IDLE state")

    @classmethod
    def from_config(cls, cfg: Config, on_event: EventHandler | None = None) -> "PipelineController":
        """Build a controller and its collaborators from application config.

        Missing credentials do not raise here; the controller is created in a
        disabled state and refuses to start.
        """
        missing = []
        if not cfg.gemini.api_key:
            missing.append("Gemini API key missing")
        if cfg.pipeline.provider == "deepgram" and not cfg.deepgram.api_key:
            missing.append("Deepgram API key missing")

        translator = Translator(
            GeminiTranslationEngine(cfg.gemini.api_key or "", model=cfg.gemini.translation_model),
            cache=TranslationCache(capacity=cfg.cache.capacity, ttl=cfg.cache.ttl),
            timeout=cfg.gemini.translation_timeout,
        )
        synthesizer = None
        if cfg.pipeline.enable_synthesis:
            synthesizer = SpeechSynthesizer(
                GeminiSpeechEngine(cfg.gemini.api_key or "", model=cfg.gemini.speech_model),
                mode=cfg.gemini.speech_mode,
                default_voice=cfg.gemini.voice,
                timeout=cfg.gemini.synthesis_timeout,
            )

        transcript_source = None
        if cfg.pipeline.provider == "deepgram":
            transcript_source = TranscriptSource(
                DeepgramProvider(cfg.deepgram.api_key or ""),
                SpeechToTextOptions(
                    model=cfg.deepgram.model,
                    language=language_code(cfg.pipeline.source_lang),
                    diarize=cfg.deepgram.diarize,
                    interim_results=cfg.deepgram.interim_results,
                    endpointing_ms=cfg.deepgram.endpointing_ms,
                    smart_format=cfg.deepgram.smart_format,
                    sample_rate=cfg.audio.sample_rate,
                    channels=cfg.audio.channels,
                ),
                retry_backoff=cfg.deepgram.retry_backoff,
            )

        if cfg.persistence.backend == "jsonl":
            store: SegmentStore = JsonlSegmentStore(cfg.persistence.path)
        else:
            store = LoggingSegmentStore()

        return cls(
            config=cfg.pipeline,
            translator=translator,
            synthesizer=synthesizer,
            transcript_source=transcript_source,
            output_factory=lambda: SoundDeviceOutput(
                sample_rate=cfg.playback.output_sample_rate,
                device=cfg.playback.output_device,
            ),
            microphone_factory=lambda: MicrophoneStream(
                sample_rate=cfg.audio.sample_rate,
                channels=cfg.audio.channels,
                chunk_size=cfg.audio.chunk_size,
                device=cfg.audio.device,
            ),
            store=store,
            on_event=on_event,
            playback_gap=cfg.playback.gap,
            disabled_reason="; ".join(missing) or None,
        )

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def playback(self) -> AudioPlaybackQueue | None:
        return self._playback

    async def __aenter__(self) -> "PipelineController":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
        return False

    async def start(self, audio_stream: AsyncIterator[AudioChunk] | None = None) -> None:
        """Activate the pipeline: IDLE -> LISTENING.

        Args:
            audio_stream: Audio to transcribe; the microphone is opened when omitted

        Raises:
            PipelineConfigError: If the pipeline is disabled by configuration
        """
        if self._active:
            logger.warning("Pipeline already active")
            return

        if self.disabled_reason:
            logger.error("Pipeline disabled: %s", self.disabled_reason)
            if self.on_event:
                self._deliver(PipelineEvent(kind=EventKind.ERROR, message=self.disabled_reason))
            raise PipelineConfigError(self.disabled_reason)

        if self._config.provider == "deepgram" and self.transcript_source is None:
            raise PipelineConfigError("Deepgram provider selected but no transcript source configured")

        logger.info(
            "Starting pipeline: source=%s, target=%s, synthesis=%s, provider=%s",
            self._config.source_lang,
            self._config.target_lang,
            self._config.enable_synthesis,
            self._config.provider,
        )
        self._active = True
        self._last_error = None
        # Source segment ids restart on every session.
        self._processed_segments.clear()
        self._segments = asyncio.Queue()
        self._output = self.output_factory()
        self._playback = AudioPlaybackQueue(self._output, gap=self.playback_gap)
        self._worker_task = asyncio.create_task(self._run_worker())
        self._set_state(PipelineState.LISTENING)

        if self._config.provider != "deepgram":
            logger.info("Using external transcript provider, awaiting submitted segments")
            return

        if audio_stream is None:
            try:
                audio_stream = self._open_microphone()
            except AudioDeviceError as e:
                await self._fail(TranscriptSourceError(str(e), e.kind, fatal=True))
                return

        started = await self.transcript_source.start(
            audio_stream,
            TranscriptHandlers(on_transcript=self.submit_segment, on_error=self._on_source_error),
            speaker_label=self._config.speaker_id,
        )
        if not started and self.state != PipelineState.ERROR:
            await self._fail(
                TranscriptSourceError("Failed to start transcription", TranscriptErrorKind.OTHER, fatal=True)
            )

    async def stop(self) -> None:
        """Tear everything down and return to IDLE. Safe from any state.

        Stops the transcript source, cancels the worker, silences and clears
        playback, closes the audio output and releases the microphone. No
        events are emitted after this returns.
        """
        previous = self.state
        was_active = self._active
        self._active = False
        logger.info("Pipeline stop requested from %s state", previous.value)

        task, self._worker_task = self._worker_task, None
        if task and not task.done():
            task.cancel()
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass

        if self.transcript_source:
            try:
                await self.transcript_source.stop()
            except Exception as e:
                logger.warning("Error stopping transcript source: %s", e)

        if self._playback:
            await self._playback.close()
            self._playback = None

        if self._output:
            try:
                self._output.close()
            except Exception as e:
                logger.warning("Error closing audio output: %s", e)
            self._output = None

        if self._microphone:
            self._microphone.close()
            self._microphone = None

        await self._drain_background()
        self._segments = None

        if previous != PipelineState.IDLE or was_active:
            logger.info("State transition: %s -> IDLE", previous.value.upper())
            self.state = PipelineState.IDLE
            if self.on_event:
                self._deliver(PipelineEvent(kind=EventKind.STATE, state=PipelineState.IDLE))
        self.state = PipelineState.IDLE

    def submit_segment(self, segment: TranscriptSegment) -> None:
        """Accept a transcript segment from the source or an external provider.

        Interim segments are published for display only. Final segments are
        queued for translation; a final segment id is processed at most once.
        """
        if not self._active or self.state == PipelineState.ERROR:
            return
        if not segment.text.strip():
            return
        if segment.is_final and segment.id in self._processed_segments:
            logger.debug("Ignoring already processed segment %s", segment.id)
            return

        self._emit(
            PipelineEvent(
                kind=EventKind.TRANSCRIPT,
                text=segment.text,
                is_final=segment.is_final,
                segment_id=segment.id,
            )
        )
        if not segment.is_final:
            return

        self._processed_segments.add(segment.id)
        self._spawn(self._log_segment(segment.text))
        self._segments.put_nowait(segment)

    async def wait_idle(self) -> None:
        """Wait until every queued final segment has completed its cycle."""
        if self._segments is not None:
            await self._segments.join()

    def set_source_language(self, language: str) -> None:
        """Change the source language for subsequent cycles.

        The provider connection is not restarted.
        """
        self._config = self._config.with_languages(source_lang=language)
        logger.info("Source language updated to: %s", language)

    def set_target_language(self, language: str) -> None:
        """Change the target language for subsequent cycles."""
        self._config = self._config.with_languages(target_lang=language)
        logger.info("Target language updated to: %s", language)

    def clear_cache(self) -> None:
        self.translator.cache.clear()

    def cache_stats(self) -> dict:
        return self.translator.cache.stats()

    async def _run_worker(self) -> None:
        while True:
            segment = await self._segments.get()
            try:
                await self._process_final(segment)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error processing segment %s: %s", segment.id, e, exc_info=True)
                self._last_error = e
                self._emit(PipelineEvent(kind=EventKind.ERROR, message=str(e), segment_id=segment.id))
                self._set_state(PipelineState.LISTENING)
            finally:
                self._segments.task_done()

    async def _process_final(self, segment: TranscriptSegment) -> None:
        """Run one Translating -> Speaking -> Listening cycle for a final segment."""
        if not self._active or self.state == PipelineState.ERROR:
            return

        config = self._config
        text = strip_speaker_label(segment.text)
        saved_id = self._spawn(self._save_segment(segment, text))

        self._set_state(PipelineState.TRANSLATING)
        result = await self.translator.translate(text, config.source_lang, config.target_lang)
        if not self._active:
            return

        if not result.ok:
            logger.warning("Translation failed for %s: %s", segment.id, result.error)
            self._emit(
                PipelineEvent(
                    kind=EventKind.ERROR,
                    message=result.error or "Translation failed",
                    segment_id=segment.id,
                )
            )
            self._set_state(PipelineState.LISTENING)
            return

        if not result.text:
            self._set_state(PipelineState.LISTENING)
            return

        self._emit(
            PipelineEvent(
                kind=EventKind.TRANSLATION,
                text=result.text,
                is_final=True,
                segment_id=segment.id,
                extra={"cached": result.cached},
            )
        )
        self._spawn(self._save_translation(saved_id, result.text, config.target_lang))

        if not config.enable_synthesis or self.synthesizer is None:
            self._set_state(PipelineState.LISTENING)
            return

        self._set_state(PipelineState.SPEAKING)
        audio = await self.synthesizer.synthesize(result.text, config.target_lang)
        if not self._active:
            return
        if audio is None:
            logger.info("No audio synthesized for %s, returning to LISTENING", segment.id)
            self._set_state(PipelineState.LISTENING)
            return

        await self._play(segment.id, audio.samples, audio.sample_rate)
        self._set_state(PipelineState.LISTENING)

    async def _play(self, segment_id: str, samples, sample_rate: int) -> None:
        """Enqueue synthesized audio and wait for its playback to end."""
        finished = asyncio.get_running_loop().create_future()

        def on_start() -> None:
            self._emit(PipelineEvent(kind=EventKind.PLAYBACK_STARTED, segment_id=segment_id))

        def on_end() -> None:
            if not finished.done():
                finished.set_result(None)
            self._emit(PipelineEvent(kind=EventKind.PLAYBACK_FINISHED, segment_id=segment_id))

        item = AudioQueueItem(
            id=f"{segment_id}-{uuid.uuid4().hex[:8]}",
            samples=samples,
            sample_rate=sample_rate,
            on_start=on_start,
            on_end=on_end,
        )
        self._playback.enqueue(item)

        limit = item.duration + self.playback_gap * (self._playback.pending + 1) + self.playback_grace
        try:
            await asyncio.wait_for(asyncio.shield(finished), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("Playback of %s did not finish within %.1fs, interrupting", item.id, limit)
            self._playback.clear()

    async def _on_source_error(self, error: TranscriptSourceError) -> None:
        if error.fatal:
            await self._fail(error)
            return
        logger.warning("Transcript source reported %s: %s", error.kind.value, error)
        self._emit(PipelineEvent(kind=EventKind.ERROR, message=str(error), extra={"kind": error.kind.value}))

    async def _fail(self, error: Exception) -> None:
        """Enter ERROR; only stop() leaves it."""
        logger.error("Unrecoverable pipeline error: %s", error)
        self._last_error = error
        if self._playback:
            self._playback.clear()
        kind = getattr(error, "kind", None)
        self._emit(
            PipelineEvent(
                kind=EventKind.ERROR,
                message=str(error),
                extra={"kind": kind.value} if kind else {},
            )
        )
        self._set_state(PipelineState.ERROR)

    def _set_state(self, state: PipelineState) -> None:
        if not self._active or self.state == state:
            return
        if self.state == PipelineState.ERROR:
            logger.debug("Ignoring %s transition while in ERROR", state.value)
            return
        logger.info("State transition: %s -> %s", self.state.value.upper(), state.value.upper())
        self.state = state
        self._emit(PipelineEvent(kind=EventKind.STATE, state=state))

    def _emit(self, event: PipelineEvent) -> None:
        if not self._active:
            return
        if self.on_event:
            self._deliver(event)

    def _deliver(self, event: PipelineEvent) -> None:
        try:
            self.on_event(event)
        except Exception as e:
            logger.warning("Event handler failed for %s: %s", event.kind.value, e)

    def _open_microphone(self) -> AsyncIterator[AudioChunk]:
        if self.microphone_factory is None:
            raise AudioDeviceError("No microphone configured", TranscriptErrorKind.NO_AUDIO_DEVICE)
        self._microphone = self.microphone_factory()
        self._microphone.start()
        return self._microphone.chunks()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _drain_background(self) -> None:
        if not self._background:
            return
        pending = list(self._background)
        _, still_pending = await asyncio.wait(pending, timeout=2.0)
        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)
            logger.warning("Cancelled %d unfinished persistence tasks", len(still_pending))

    async def _log_segment(self, text: str) -> None:
        try:
            await self.store.log_segment(self._config.session_id, text)
        except Exception as e:
            logger.error("Failed to log transcript segment: %s", e)

    async def _save_segment(self, segment: TranscriptSegment, text: str) -> str | None:
        try:
            return await self.store.save_segment(
                self._config.session_id,
                self._config.speaker_id,
                text,
                segment.start_ms,
                segment.end_ms,
            )
        except Exception as e:
            logger.error("Failed to save segment: %s", e)
            return None

    async def _save_translation(self, saved_id: asyncio.Task, text: str, target_lang: str) -> None:
        try:
            segment_id = await saved_id
            if segment_id:
                await self.store.save_translation(segment_id, text, target_lang)
        except Exception as e:
            logger.error("Failed to save translation: %s", e)
