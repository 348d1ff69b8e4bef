"""Shared fakes for provider and audio output collaborators."""

import asyncio

import numpy as np
import pytest

from voice_relay._types import (
    ProviderFailure,
    ProviderTranscript,
    SynthesisRequest,
    TranslationRequest,
    TranslationResponse,
)
from voice_relay.output import PlaybackHandle


class FakeOutput:
    """Audio output whose clock is event-loop time; sources finish after their duration."""

    def __init__(self, sample_rate: int = 1000):
        self.sample_rate = sample_rate
        self.gain = 1.0
        self.closed = False
        self.scheduled: list[dict] = []
        self._t0: float | None = None

    @property
    def current_time(self) -> float:
        loop = asyncio.get_running_loop()
        if self._t0 is None:
            self._t0 = loop.time()
        return loop.time() - self._t0

    def schedule(self, samples, sample_rate, start_time=None):
        loop = asyncio.get_running_loop()
        now = self.current_time
        start = now if start_time is None else max(start_time, now)
        duration = len(samples) / float(sample_rate)
        handle = PlaybackHandle(int(round(start * self.sample_rate)), np.asarray(samples), loop)
        record = {"start": start, "end": start + duration, "handle": handle, "finished_at": None}
        self.scheduled.append(record)

        timer = loop.call_later(start - now + duration, handle._resolve)

        def on_done(_):
            timer.cancel()
            record["finished_at"] = self.current_time

        handle.done.add_done_callback(on_done)
        return handle

    def set_gain(self, gain):
        self.gain = gain

    def close(self):
        self.closed = True
        for record in self.scheduled:
            record["handle"].stop()


class ManualOutput:
    """Audio output with a hand-driven clock; nothing finishes on its own."""

    def __init__(self, sample_rate: int = 24000):
        self.sample_rate = sample_rate
        self.now = 0.0
        self.gain = 1.0
        self.closed = False
        self.scheduled: list[dict] = []

    @property
    def current_time(self) -> float:
        return self.now

    def schedule(self, samples, sample_rate, start_time=None):
        loop = asyncio.get_running_loop()
        start = self.now if start_time is None else max(start_time, self.now)
        handle = PlaybackHandle(int(round(start * self.sample_rate)), np.asarray(samples), loop)
        self.scheduled.append(
            {"start": start, "duration": len(samples) / float(sample_rate), "handle": handle}
        )
        return handle

    def set_gain(self, gain):
        self.gain = gain

    def close(self):
        self.closed = True


class FakeTranslationEngine:
    """Translation engine answering from a table and counting calls."""

    def __init__(self, table: dict[str, str] | None = None, delay: float = 0.0):
        self.table = table or {}
        self.delay = delay
        self.calls: list[TranslationRequest] = []
        self.error: Exception | None = None

    async def translate(self, request: TranslationRequest) -> TranslationResponse:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return TranslationResponse(translated_text=self.table.get(request.text, f"[{request.text}]"))


class FakeSpeechEngine:
    """Speech engine producing a fixed number of silent samples per request."""

    def __init__(self, sample_rate: int = 1000, frames: int = 50):
        self.sample_rate = sample_rate
        self.frames = frames
        self.requests: list[SynthesisRequest] = []
        self.return_empty = False

    def _payload(self) -> bytes:
        if self.return_empty:
            return b""
        return np.zeros(self.frames, dtype="<i2").tobytes()

    async def synthesize(self, request: SynthesisRequest) -> bytes | None:
        self.requests.append(request)
        return self._payload() or None

    async def stream(self, request: SynthesisRequest):
        self.requests.append(request)
        payload = self._payload()
        half = len(payload) // 2 - (len(payload) // 2) % 2
        for chunk in (payload[:half], payload[half:]):
            if chunk:
                yield chunk


class FakeConnection:
    """Speech-to-text connection fed by the test."""

    def __init__(self):
        self.sent: list[bytes] = []
        self.closed = False
        self._events: asyncio.Queue = asyncio.Queue()

    def push(self, event: ProviderTranscript | ProviderFailure | None) -> None:
        """Queue a provider event; None ends the event stream."""
        self._events.put_nowait(event)

    async def send(self, data: bytes) -> None:
        self.sent.append(data)

    async def events(self):
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._events.put_nowait(None)


class FakeProvider:
    """Provider handing out FakeConnections, optionally failing opens."""

    def __init__(self, open_errors: list[Exception] | None = None):
        self.connections: list[FakeConnection] = []
        self.open_errors = list(open_errors or [])
        self.opened = asyncio.Event()

    async def open(self, options):
        if self.open_errors:
            raise self.open_errors.pop(0)
        connection = FakeConnection()
        self.connections.append(connection)
        self.opened.set()
        return connection


async def idle_audio():
    """Audio stream that never yields and never ends."""
    await asyncio.Event().wait()
    yield  # pragma: no cover


@pytest.fixture
def fake_output():
    return FakeOutput()


@pytest.fixture
def manual_output():
    return ManualOutput()


@pytest.fixture
def fake_translation_engine():
    return FakeTranslationEngine()


@pytest.fixture
def fake_speech_engine():
    return FakeSpeechEngine()


@pytest.fixture
def fake_provider():
    return FakeProvider()
