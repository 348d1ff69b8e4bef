"""Duplex realtime session with clock-scheduled playback and barge-in."""

import asyncio
import base64
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Callable, Protocol

from voice_relay._types import AudioChunk
from voice_relay.languages import DEFAULT_VOICE, is_auto_detect
from voice_relay.output import AudioOutput, PlaybackHandle
from voice_relay.pcm import base64_to_float, duration_seconds, float_to_base64

logger = logging.getLogger(__name__)

LIVE_OUTPUT_SAMPLE_RATE = 24000
LIVE_INPUT_SAMPLE_RATE = 16000

INTERPRETER_INSTRUCTION_TEMPLATE = """You are an elite real-time voice translator engine.
{source_instruction}
Target Language: {target}.

CORE DIRECTIVE:
Translate the user's speech into {target} and speak it aloud immediately.

1. VERBATIM DISFLUENCY:
   - Capture and reproduce every filler word, hesitation and stutter.
   - If the user says "Um... ah... I think...", say the equivalent in {target}.
   - Do not clean up the speech. If they stumble, you stumble.

2. NON-CONVERSATIONAL:
   - Do not reply to the user or hold a conversation.
   - Only translate what is heard. If there is silence, remain silent."""

TranscriptionHandler = Callable[[str, str], None]


class LiveSessionError(RuntimeError):
    """Realtime session could not be established or used."""

    pass


def build_interpreter_instruction(source_lang: str, target_lang: str) -> str:
    """System instruction asking the realtime model to act as an interpreter."""
    if is_auto_detect(source_lang):
        source_instruction = "Detect the source language automatically."
    else:
        source_instruction = f"The source language is {source_lang}."
    return INTERPRETER_INSTRUCTION_TEMPLATE.format(source_instruction=source_instruction, target=target_lang)


def input_mime_type(sample_rate: int = LIVE_INPUT_SAMPLE_RATE) -> str:
    return f"audio/pcm;rate={sample_rate}"


@dataclass(frozen=True)
class RealtimeMessage:
    """One message from the realtime provider.

    ``audio_b64`` is base64 PCM16 at 24 kHz.
    """

    audio_b64: str | None = None
    input_text: str | None = None
    output_text: str | None = None
    interrupted: bool = False


class RealtimeChannel(Protocol):
    """Open duplex channel to a realtime speech model."""

    async def send_audio(self, mime_type: str, data_b64: str) -> None: ...

    def messages(self) -> AsyncIterator[RealtimeMessage]: ...

    async def close(self) -> None: ...


class RealtimeConnector(Protocol):
    """Opens realtime channels configured with a system instruction and voice."""

    async def connect(self, system_instruction: str, voice: str) -> RealtimeChannel: ...


class GeminiLiveChannel:
    """Adapts a google-genai live session to RealtimeChannel."""

    def __init__(self, manager, session):
        self._manager = manager
        self._session = session
        self._closed = False

    async def send_audio(self, mime_type: str, data_b64: str) -> None:
        from google.genai import types

        await self._session.send_realtime_input(
            audio=types.Blob(data=base64.b64decode(data_b64), mime_type=mime_type)
        )

    async def messages(self) -> AsyncIterator[RealtimeMessage]:
        # receive() ends after each model turn, so keep reopening it.
        while not self._closed:
            async for message in self._session.receive():
                converted = _convert_message(message)
                if converted is not None:
                    yield converted

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._manager.__aexit__(None, None, None)
        except Exception as e:
            logger.warning("Error closing live session: %s", e)


def _convert_message(message) -> RealtimeMessage | None:
    content = getattr(message, "server_content", None)
    if content is None:
        return None

    audio = b""
    model_turn = getattr(content, "model_turn", None)
    for part in getattr(model_turn, "parts", None) or []:
        inline = getattr(part, "inline_data", None)
        if inline is not None and inline.data:
            audio += inline.data

    input_transcription = getattr(content, "input_transcription", None)
    output_transcription = getattr(content, "output_transcription", None)
    return RealtimeMessage(
        audio_b64=base64.b64encode(audio).decode("ascii") if audio else None,
        input_text=getattr(input_transcription, "text", None) or None,
        output_text=getattr(output_transcription, "text", None) or None,
        interrupted=bool(getattr(content, "interrupted", False)),
    )


class GeminiLiveConnector:
    """Connects to the Gemini Live API.

    Lazy-initializes client on first connection.
    """

    def __init__(self, api_key: str, model: str = "gemini-2.5-flash-native-audio-preview-12-2025"):
        self.api_key = api_key
        self.model = model
        self._client = None

    def _ensure_client(self):
        if self._client is None:
            from google import genai

            start_time = time.perf_counter()
            self._client = genai.Client(api_key=self.api_key)
            logger.info("Gemini client initialized in %.3f seconds", time.perf_counter() - start_time)
        return self._client

    async def connect(self, system_instruction: str, voice: str) -> GeminiLiveChannel:
        from google.genai import types

        client = self._ensure_client()
        config = types.LiveConnectConfig(
            response_modalities=["AUDIO"],
            system_instruction=system_instruction,
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice),
                ),
            ),
            input_audio_transcription=types.AudioTranscriptionConfig(),
            output_audio_transcription=types.AudioTranscriptionConfig(),
        )
        manager = client.aio.live.connect(model=self.model, config=config)
        session = await manager.__aenter__()
        logger.info("Live session connected (model=%s, voice=%s)", self.model, voice)
        return GeminiLiveChannel(manager, session)


class LiveAudioSession:
    """Streams microphone audio to a realtime model and plays its replies.

    Incoming chunks are placed on the output clock back to back: each starts
    at ``max(next_start_time, now)`` and advances ``next_start_time`` by its
    duration. An interrupted message stops every source still scheduled and
    resets the clock to now. Volume is a gain stage on the output and does not
    affect scheduling.
    """

    def __init__(
        self,
        connector: RealtimeConnector,
        output: AudioOutput,
        volume: float = 0.0,
    ):
        """Initialize live session.

        Args:
            connector: Realtime provider connector
            output: Audio output whose clock drives scheduling
            volume: Initial self-monitoring volume in [0, 1] (0 mutes)
        """
        self.connector = connector
        self.output = output
        self._volume = _clamp(volume)
        self._channel: RealtimeChannel | None = None
        self._on_transcription: TranscriptionHandler | None = None
        self._receiver_task: asyncio.Task | None = None
        self._pump_task: asyncio.Task | None = None
        self._sources: set[PlaybackHandle] = set()
        self._next_start_time = 0.0
        self.output.set_gain(self._volume)

    @property
    def is_connected(self) -> bool:
        return self._channel is not None

    @property
    def next_start_time(self) -> float:
        return self._next_start_time

    @property
    def scheduled_count(self) -> int:
        return len(self._sources)

    @property
    def volume(self) -> float:
        return self._volume

    async def connect(
        self,
        system_instruction: str,
        voice: str | None = None,
        on_transcription: TranscriptionHandler | None = None,
    ) -> None:
        """Open the realtime channel and start receiving.

        Args:
            system_instruction: Instruction given to the model at connect time
            voice: Prebuilt voice name (defaults to Puck)
            on_transcription: Called with (text, "user" | "model") for display

        Raises:
            LiveSessionError: If already connected or the provider refuses
        """
        if self._channel is not None:
            raise LiveSessionError("Live session already connected")

        self._on_transcription = on_transcription
        self._next_start_time = self.output.current_time
        try:
            self._channel = await self.connector.connect(system_instruction, voice or DEFAULT_VOICE)
        except Exception as e:
            logger.error("Failed to connect live session: %s", e)
            raise LiveSessionError(f"Failed to connect live session: {e}") from e

        self._receiver_task = asyncio.create_task(self._receive(self._channel))

    async def send_audio(self, samples) -> None:
        """Send float32 samples captured at 16 kHz. Ignored while disconnected."""
        if self._channel is None:
            return
        await self._channel.send_audio(input_mime_type(), float_to_base64(samples))

    def stream_microphone(self, audio_stream: AsyncIterator[AudioChunk]) -> asyncio.Task:
        """Continuously forward PCM16 chunks from ``audio_stream``.

        Raises:
            LiveSessionError: If the session is not connected
        """
        if self._channel is None:
            raise LiveSessionError("Live session is not connected")
        if self._pump_task and not self._pump_task.done():
            raise LiveSessionError("Microphone already streaming")
        self._pump_task = asyncio.create_task(self._pump(audio_stream))
        return self._pump_task

    def set_volume(self, volume: float) -> None:
        self._volume = _clamp(volume)
        self.output.set_gain(self._volume)

    def interrupt(self) -> None:
        """Barge-in: stop all scheduled audio and reset the clock to now."""
        stopped = len(self._sources)
        for handle in list(self._sources):
            handle.stop()
        self._sources.clear()
        self._next_start_time = self.output.current_time
        if stopped:
            logger.info("Interrupted: stopped %d scheduled chunks", stopped)

    async def disconnect(self) -> None:
        """Stop streaming, flush scheduled audio and close the channel."""
        for task in (self._pump_task, self._receiver_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._pump_task = None
        self._receiver_task = None

        self.interrupt()
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()
            logger.info("Live session disconnected")
        self.output.close()

    def handle_message(self, message: RealtimeMessage) -> None:
        """Apply one realtime message: schedule audio, report text, honor interruption."""
        if message.audio_b64:
            self._schedule_chunk(message.audio_b64)
        if message.input_text:
            self._notify(message.input_text, "user")
        if message.output_text:
            self._notify(message.output_text, "model")
        if message.interrupted:
            self.interrupt()

    def _schedule_chunk(self, audio_b64: str) -> None:
        try:
            samples = base64_to_float(audio_b64)
        except ValueError as e:
            logger.error("Error decoding audio chunk: %s", e)
            return
        if len(samples) == 0:
            return

        start_time = max(self._next_start_time, self.output.current_time)
        handle = self.output.schedule(samples, LIVE_OUTPUT_SAMPLE_RATE, start_time=start_time)
        self._next_start_time = start_time + duration_seconds(samples, LIVE_OUTPUT_SAMPLE_RATE)
        self._sources.add(handle)
        handle.done.add_done_callback(lambda _: self._sources.discard(handle))

    def _notify(self, text: str, role: str) -> None:
        if self._on_transcription is None:
            return
        try:
            self._on_transcription(text, role)
        except Exception as e:
            logger.warning("Transcription handler failed: %s", e)

    async def _receive(self, channel: RealtimeChannel) -> None:
        try:
            async for message in channel.messages():
                self.handle_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Live session receive failed: %s", e, exc_info=True)
        logger.info("Live session stream ended")

    async def _pump(self, audio_stream: AsyncIterator[AudioChunk]) -> None:
        async for chunk in audio_stream:
            channel = self._channel
            if channel is None:
                return
            try:
                await channel.send_audio(
                    input_mime_type(chunk.sample_rate),
                    base64.b64encode(chunk.data).decode("ascii"),
                )
            except Exception as e:
                logger.error("Failed to send audio chunk: %s", e)
                return


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, float(value)))
