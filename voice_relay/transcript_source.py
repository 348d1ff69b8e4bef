"""Live transcription of an audio stream into transcript segments."""

import asyncio
import inspect
import logging
import re
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Callable, Protocol

from voice_relay._types import (
    AudioChunk,
    ProviderFailure,
    ProviderTranscript,
    TranscriptErrorKind,
    TranscriptSegment,
)

logger = logging.getLogger(__name__)

SPEAKER_LABEL_PATTERN = re.compile(r"^([^:]+):\s+(.+)$", re.DOTALL)

ERROR_MESSAGES = {
    TranscriptErrorKind.NO_SPEECH: "No speech detected. Please try again.",
    TranscriptErrorKind.NO_AUDIO_DEVICE: "No microphone found. Please check your audio settings.",
    TranscriptErrorKind.PERMISSION_DENIED: "Microphone permission denied.",
    TranscriptErrorKind.TRANSPORT: "Network error. Please check your connection.",
}

_STREAM_END = None


class TranscriptSourceError(Exception):
    """Transcript source failure with its kind and fatality."""

    def __init__(self, message: str, kind: TranscriptErrorKind, fatal: bool = False):
        super().__init__(message)
        self.kind = kind
        self.fatal = fatal


def describe_error(kind: TranscriptErrorKind, detail: str = "") -> str:
    """Human-readable message for an error kind."""
    if kind in ERROR_MESSAGES:
        return ERROR_MESSAGES[kind]
    return f"Speech recognition error: {detail or kind.value}"


def classify_provider_code(code: str) -> TranscriptErrorKind:
    """Map a provider error code onto a transcript error kind."""
    normalized = code.strip().lower()
    if normalized in ("no-speech", "no_speech"):
        return TranscriptErrorKind.NO_SPEECH
    if normalized in ("not-allowed", "permission-denied", "service-not-allowed", "unauthorized"):
        return TranscriptErrorKind.PERMISSION_DENIED
    if normalized in ("audio-capture", "no-audio-device"):
        return TranscriptErrorKind.NO_AUDIO_DEVICE
    if normalized in ("network", "transport", "connection-closed"):
        return TranscriptErrorKind.TRANSPORT
    return TranscriptErrorKind.OTHER


def split_speaker_label(text: str) -> tuple[str | None, str]:
    """Split "<label>: text" into (label, text); (None, text) when unlabeled."""
    match = SPEAKER_LABEL_PATTERN.match(text)
    if match:
        return match.group(1), match.group(2)
    return None, text


def strip_speaker_label(text: str) -> str:
    """Remove a "<label>: " prefix so the label is never translated."""
    return split_speaker_label(text)[1]


@dataclass(frozen=True)
class SpeechToTextOptions:
    """Options for opening a live recognition connection."""

    model: str = "nova-3"
    language: str = "en-US"
    diarize: bool = True
    interim_results: bool = True
    endpointing_ms: int = 300
    smart_format: bool = True
    encoding: str = "linear16"
    sample_rate: int = 16000
    channels: int = 1


class SpeechToTextConnection(Protocol):
    """An open recognition connection."""

    async def send(self, data: bytes) -> None: ...

    def events(self) -> AsyncIterator[ProviderTranscript | ProviderFailure]: ...

    async def close(self) -> None: ...


class SpeechToTextProvider(Protocol):
    """Speech-to-text provider with an explicit open/close lifecycle."""

    async def open(self, options: SpeechToTextOptions) -> SpeechToTextConnection: ...


@dataclass
class TranscriptHandlers:
    """Consumers of a transcript source.

    Either callback may be a plain function or a coroutine function.
    """

    on_transcript: Callable[[TranscriptSegment], object]
    on_error: Callable[[TranscriptSourceError], object] | None = None


class DeepgramConnection:
    """Adapts a Deepgram v1 listen websocket to SpeechToTextConnection."""

    def __init__(self, manager, socket):
        from deepgram.core.events import EventType

        self._manager = manager
        self._socket = socket
        self._events: asyncio.Queue = asyncio.Queue()
        self._closed = False
        socket.on(EventType.MESSAGE, self._on_message)
        socket.on(EventType.ERROR, self._on_error)
        self._listener = asyncio.create_task(self._listen())

    async def _listen(self) -> None:
        try:
            await self._socket.start_listening()
        except Exception as e:
            if not self._closed:
                self._events.put_nowait(ProviderFailure(code="transport", message=str(e)))
        finally:
            self._events.put_nowait(_STREAM_END)

    def _on_message(self, message) -> None:
        if getattr(message, "type", None) != "Results":
            return
        channel = getattr(message, "channel", None)
        alternatives = getattr(channel, "alternatives", None) or []
        if not alternatives:
            return
        alternative = alternatives[0]
        self._events.put_nowait(
            ProviderTranscript(
                text=getattr(alternative, "transcript", "") or "",
                is_final=bool(getattr(message, "is_final", False)),
                confidence=float(getattr(alternative, "confidence", 0.0) or 0.0),
                start=float(getattr(message, "start", 0.0) or 0.0),
                duration=float(getattr(message, "duration", 0.0) or 0.0),
            )
        )

    def _on_error(self, error) -> None:
        if not self._closed:
            self._events.put_nowait(ProviderFailure(code="transport", message=str(error)))

    async def send(self, data: bytes) -> None:
        from deepgram.extensions.types.sockets import ListenV1MediaMessage

        await self._socket.send_media(ListenV1MediaMessage(data))

    async def events(self) -> AsyncIterator[ProviderTranscript | ProviderFailure]:
        while True:
            event = await self._events.get()
            if event is _STREAM_END:
                return
            yield event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        from deepgram.extensions.types.sockets import ListenV1ControlMessage

        try:
            await self._socket.send_control(ListenV1ControlMessage(type="CloseStream"))
        except Exception as e:
            logger.debug("CloseStream not sent: %s", e)
        try:
            await self._manager.__aexit__(None, None, None)
        except Exception as e:
            logger.warning("Error closing Deepgram connection: %s", e)
        if not self._listener.done():
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass


class DeepgramProvider:
    """Deepgram live transcription provider.

    Lazy-initializes the async client on first connection.
    """

    def __init__(self, api_key: str):
        self.api_key = api_key
        self._client = None

    def _ensure_client(self):
        if self._client is None:
            from deepgram import AsyncDeepgramClient

            start_time = time.perf_counter()
            self._client = AsyncDeepgramClient(api_key=self.api_key)
            logger.info("Deepgram client initialized in %.3f seconds", time.perf_counter() - start_time)
        return self._client

    async def open(self, options: SpeechToTextOptions) -> DeepgramConnection:
        client = self._ensure_client()
        connect_kwargs = {
            "model": options.model,
            "language": options.language,
            "diarize": _query_flag(options.diarize),
            "interim_results": _query_flag(options.interim_results),
            "endpointing": str(options.endpointing_ms),
            "smart_format": _query_flag(options.smart_format),
            "encoding": options.encoding,
            "sample_rate": str(options.sample_rate),
            "channels": str(options.channels),
        }
        logger.debug("Deepgram options: %s", connect_kwargs)

        manager = client.listen.v1.connect(**connect_kwargs)
        try:
            socket = await manager.__aenter__()
        except Exception as e:
            raise _connection_error(e) from e
        logger.info("Deepgram connection opened")
        return DeepgramConnection(manager, socket)


def _query_flag(value: bool) -> str:
    return "true" if value else "false"


def _connection_error(error: Exception) -> TranscriptSourceError:
    text = str(error)
    if "401" in text or "403" in text:
        return TranscriptSourceError(
            f"Deepgram rejected credentials: {text}",
            TranscriptErrorKind.PERMISSION_DENIED,
            fatal=True,
        )
    return TranscriptSourceError(
        f"Deepgram connection failed: {text}",
        TranscriptErrorKind.TRANSPORT,
    )


class TranscriptSource:
    """Turns a raw audio stream into ordered transcript segments.

    At most one recognition session is active per instance. Transport drops
    are retried once after ``retry_backoff`` seconds while the source is
    active; device and permission errors are surfaced immediately.
    """

    def __init__(
        self,
        provider: SpeechToTextProvider,
        options: SpeechToTextOptions | None = None,
        retry_backoff: float = 1.0,
        max_buffered_chunks: int = 200,
    ):
        """Initialize transcript source.

        Args:
            provider: Speech-to-text provider
            options: Connection options
            retry_backoff: Seconds to wait before the single reconnect attempt
            max_buffered_chunks: Audio chunks held while reconnecting
        """
        self.provider = provider
        self.options = options or SpeechToTextOptions()
        self.retry_backoff = retry_backoff
        self.max_buffered_chunks = max_buffered_chunks

        self._active = False
        self._handlers: TranscriptHandlers | None = None
        self._label = ""
        self._segment_counter = 0
        self._connection: SpeechToTextConnection | None = None
        self._outbox: asyncio.Queue | None = None
        self._feeder_task: asyncio.Task | None = None
        self._session_task: asyncio.Task | None = None
        self._audio_ended = False
        self._started_at = 0.0

    @property
    def is_active(self) -> bool:
        return self._active

    async def start(
        self,
        audio_stream: AsyncIterator[AudioChunk],
        handlers: TranscriptHandlers,
        speaker_label: str = "",
    ) -> bool:
        """Open a recognition session over ``audio_stream``.

        Returns:
            True when the session is running, False if it could not be opened
        """
        if self._active:
            logger.warning("Transcript source already active")
            return True

        self._handlers = handlers
        self._label = speaker_label
        self._segment_counter = 0
        self._active = True
        self._audio_ended = False
        self._started_at = time.time()

        try:
            self._connection = await self.provider.open(self.options)
        except Exception as e:
            error = e if isinstance(e, TranscriptSourceError) else _connection_error(e)
            error.fatal = True
            logger.error("Failed to start transcription: %s", error)
            self._active = False
            await self._report(error)
            return False

        self._outbox = asyncio.Queue()
        self._feeder_task = asyncio.create_task(self._feed(audio_stream))
        self._session_task = asyncio.create_task(self._run())
        logger.info("Transcript source started (label=%r)", speaker_label)
        return True

    async def stop(self) -> None:
        """Stop recognition and release the connection. Safe from any state."""
        was_active = self._active
        self._active = False

        current = asyncio.current_task()
        for task in (self._session_task, self._feeder_task):
            if task and not task.done() and task is not current:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._session_task = None
        self._feeder_task = None

        await self._close_connection()
        if was_active:
            logger.info("Transcript source stopped")

    async def _feed(self, audio_stream: AsyncIterator[AudioChunk]) -> None:
        """Move audio from the caller's stream into the outbox.

        The outbox outlives individual connections so a reconnect does not
        consume or finalize the caller's stream.
        """
        try:
            async for chunk in audio_stream:
                if self._outbox.qsize() >= self.max_buffered_chunks:
                    self._outbox.get_nowait()
                self._outbox.put_nowait(chunk)
        finally:
            self._outbox.put_nowait(_STREAM_END)

    async def _run(self) -> None:
        retried = False
        try:
            while self._active:
                error = await self._pump(self._connection)
                await self._close_connection()
                if error is None:
                    break
                if error.kind != TranscriptErrorKind.TRANSPORT or error.fatal:
                    error.fatal = True
                    await self._report(error)
                    break
                if retried:
                    logger.error("Transport failed again after retry: %s", error)
                    error.fatal = True
                    await self._report(error)
                    break

                retried = True
                logger.warning("Transport dropped (%s), retrying in %.1fs", error, self.retry_backoff)
                await asyncio.sleep(self.retry_backoff)
                if not self._active:
                    break
                try:
                    self._connection = await self.provider.open(self.options)
                    logger.info("Transcript source reconnected")
                except Exception as e:
                    failure = e if isinstance(e, TranscriptSourceError) else _connection_error(e)
                    failure.fatal = True
                    logger.error("Reconnect failed: %s", failure)
                    await self._report(failure)
                    break
        finally:
            self._active = False
            if self._feeder_task and not self._feeder_task.done():
                self._feeder_task.cancel()

    async def _pump(self, connection: SpeechToTextConnection) -> TranscriptSourceError | None:
        """Run one connection until the audio ends or the transport fails."""
        sender = asyncio.create_task(self._send_audio(connection))
        reader = asyncio.create_task(self._read_events(connection))
        try:
            done, _ = await asyncio.wait({sender, reader}, return_when=asyncio.FIRST_COMPLETED)
            if sender in done:
                send_error = sender.exception()
                if send_error is not None:
                    reader.cancel()
                    return TranscriptSourceError(
                        f"Failed to send audio: {send_error}",
                        TranscriptErrorKind.TRANSPORT,
                    )
                # Audio stream ended: let the provider flush its last results.
                await connection.close()
                return await reader

            sender.cancel()
            return reader.result()
        finally:
            for task in (sender, reader):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sender, reader, return_exceptions=True)

    async def _send_audio(self, connection: SpeechToTextConnection) -> None:
        while True:
            chunk = await self._outbox.get()
            if chunk is _STREAM_END:
                self._audio_ended = True
                return
            await connection.send(chunk.data)

    async def _read_events(self, connection: SpeechToTextConnection) -> TranscriptSourceError | None:
        async for event in connection.events():
            if isinstance(event, ProviderFailure):
                kind = classify_provider_code(event.code)
                if kind == TranscriptErrorKind.NO_SPEECH:
                    logger.info("Provider reported no speech")
                    await self._report(TranscriptSourceError(describe_error(kind), kind))
                    continue
                return TranscriptSourceError(
                    event.message or describe_error(kind, event.code),
                    kind,
                    fatal=kind in (TranscriptErrorKind.PERMISSION_DENIED, TranscriptErrorKind.NO_AUDIO_DEVICE),
                )

            await self._deliver(event)

        if self._active and not self._audio_ended:
            return TranscriptSourceError("Connection closed by provider", TranscriptErrorKind.TRANSPORT)
        return None

    async def _deliver(self, event: ProviderTranscript) -> None:
        text = event.text.strip()
        if not text:
            return

        if event.start or event.duration:
            start_ms = int(event.start * 1000)
            end_ms = int((event.start + event.duration) * 1000)
        else:
            start_ms = end_ms = int((time.time() - self._started_at) * 1000)

        segment = TranscriptSegment(
            id=f"dg-{self._segment_counter}-{'final' if event.is_final else 'partial'}",
            text=f"{self._label}: {text}" if self._label else text,
            is_final=event.is_final,
            start_ms=start_ms,
            end_ms=end_ms,
            confidence=event.confidence,
        )
        if event.is_final:
            self._segment_counter += 1

        try:
            result = self._handlers.on_transcript(segment)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Transcript handler failed: %s", e, exc_info=True)

    async def _report(self, error: TranscriptSourceError) -> None:
        if not self._handlers or not self._handlers.on_error:
            return
        try:
            result = self._handlers.on_error(error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Error handler failed: %s", e, exc_info=True)

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await connection.close()
        except Exception as e:
            logger.warning("Error closing transcription connection: %s", e)
