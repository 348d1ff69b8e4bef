"""Edge case tests for pipeline controller shutdown and failures."""

import asyncio
from unittest.mock import Mock

import pytest

from conftest import FakeProvider, FakeTranslationEngine, idle_audio
from test_pipeline import Harness, segment, wait_for
from voice_relay._types import EventKind, PipelineState, ProviderFailure, TranscriptErrorKind
from voice_relay.config import PipelineConfig
from voice_relay.pipeline import PipelineController
from voice_relay.recorder import AudioDeviceError
from voice_relay.transcript_source import TranscriptSource
from voice_relay.translator import Translator


async def assert_silent_after_stop(h: Harness):
    """Stop the controller and check nothing is emitted afterwards."""
    await h.controller.stop()
    count = len(h.events)
    await asyncio.sleep(0.1)
    assert len(h.events) == count
    assert h.controller.state == PipelineState.IDLE
    assert h.controller.playback is None


class TestStopFromEveryState:
    """stop() must reach IDLE from any state and leave nothing running."""

    @pytest.mark.asyncio
    async def test_stop_from_idle(self, fake_output):
        """Test stop on a never-started controller is a no-op."""
        h = Harness(fake_output)
        await assert_silent_after_stop(h)
        assert h.events == []

    @pytest.mark.asyncio
    async def test_stop_from_listening(self, fake_output):
        """Test stop while listening closes the provider connection."""
        h = Harness(fake_output)
        await h.start()
        assert h.controller.state == PipelineState.LISTENING

        await assert_silent_after_stop(h)

        assert h.provider.connections[0].closed
        assert h.states()[-1] == PipelineState.IDLE
        assert fake_output.closed

    @pytest.mark.asyncio
    async def test_stop_from_translating(self, fake_output):
        """Test stop during a slow translation abandons the cycle."""
        h = Harness(fake_output, translation_delay=5.0)
        await h.start()
        h.controller.submit_segment(segment("a", "Hola"))
        await wait_for(lambda: h.controller.state == PipelineState.TRANSLATING)

        await assert_silent_after_stop(h)

        assert h.of_kind(EventKind.TRANSLATION) == []
        assert fake_output.scheduled == []

    @pytest.mark.asyncio
    async def test_stop_from_speaking(self, fake_output):
        """Test stop during playback silences audio and empties the queue."""
        h = Harness(fake_output, speech_frames=5000)
        await h.start()
        h.controller.submit_segment(segment("a", "Hola"))
        await wait_for(lambda: len(h.of_kind(EventKind.PLAYBACK_STARTED)) == 1)
        assert h.controller.state == PipelineState.SPEAKING
        playback = h.controller.playback

        await assert_silent_after_stop(h)

        assert fake_output.scheduled[0]["handle"].stopped
        assert playback.pending == 0
        assert not playback.is_playing

    @pytest.mark.asyncio
    async def test_stop_from_error(self, fake_output):
        """Test stop is the exit from the error state."""
        h = Harness(fake_output)
        await h.start()
        h.provider.connections[0].push(ProviderFailure(code="not-allowed"))
        await wait_for(lambda: h.controller.state == PipelineState.ERROR)

        await assert_silent_after_stop(h)

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, fake_output):
        """Test a stopped pipeline can be started again."""
        h = Harness(fake_output, synthesis=False)
        await h.start()
        await h.controller.stop()

        await h.start()
        h.controller.submit_segment(segment("b", "Hola"))
        await h.controller.wait_idle()

        assert len(h.provider.connections) == 2
        assert len(h.of_kind(EventKind.TRANSLATION)) == 1
        await h.controller.stop()

    @pytest.mark.asyncio
    async def test_restart_accepts_reused_source_ids(self, fake_output):
        """Test finals from a new session are translated though their ids repeat."""
        h = Harness(fake_output, synthesis=False)
        await h.start()
        await h.speak("Hola")
        await h.controller.wait_idle()
        await h.controller.stop()

        await h.start()
        await h.speak("Buenos dias")
        await h.controller.wait_idle()

        transcripts = h.of_kind(EventKind.TRANSCRIPT)
        assert [e.segment_id for e in transcripts] == ["dg-0-final", "dg-0-final"]
        assert [e.text for e in h.of_kind(EventKind.TRANSLATION)] == ["[Hola]", "[Buenos dias]"]
        await h.controller.stop()


class TestPipelineErrors:
    """Test error state transitions."""

    @pytest.mark.asyncio
    async def test_fatal_transport_moves_to_error(self, fake_output):
        """Test exhausting the transport retry moves the pipeline to ERROR."""
        h = Harness(fake_output)
        await h.start()

        h.provider.connections[0].push(ProviderFailure(code="network"))
        await wait_for(lambda: len(h.provider.connections) == 2)
        h.provider.connections[1].push(ProviderFailure(code="network"))
        await wait_for(lambda: h.controller.state == PipelineState.ERROR)

        errors = h.of_kind(EventKind.ERROR)
        assert errors[-1].extra["kind"] == TranscriptErrorKind.TRANSPORT.value

        await h.controller.stop()

    @pytest.mark.asyncio
    async def test_segments_ignored_in_error(self, fake_output):
        """Test nothing is translated while in ERROR."""
        h = Harness(fake_output)
        await h.start()
        h.provider.connections[0].push(ProviderFailure(code="not-allowed"))
        await wait_for(lambda: h.controller.state == PipelineState.ERROR)

        h.controller.submit_segment(segment("late", "Hola"))
        await h.controller.wait_idle()

        assert h.engine.calls == []
        assert h.controller.state == PipelineState.ERROR
        await h.controller.stop()

    @pytest.mark.asyncio
    async def test_no_speech_keeps_listening(self, fake_output):
        """Test no-speech surfaces as an error event without leaving LISTENING."""
        h = Harness(fake_output)
        await h.start()

        h.provider.connections[0].push(ProviderFailure(code="no-speech"))
        await wait_for(lambda: len(h.of_kind(EventKind.ERROR)) == 1)

        assert h.controller.state == PipelineState.LISTENING
        assert h.of_kind(EventKind.ERROR)[0].extra["kind"] == "no-speech"
        await h.controller.stop()

    @pytest.mark.asyncio
    async def test_provider_unreachable_on_start(self, fake_output):
        """Test a provider that cannot connect puts the pipeline in ERROR."""
        h = Harness(fake_output)
        h.provider.open_errors = [ConnectionError("HTTP 403 Forbidden")]

        await h.start()

        assert h.controller.state == PipelineState.ERROR
        await h.controller.stop()
        assert h.controller.state == PipelineState.IDLE

    @pytest.mark.asyncio
    async def test_microphone_unavailable(self, fake_output):
        """Test a missing microphone is reported as a fatal device error."""
        microphone = Mock()
        microphone.start.side_effect = AudioDeviceError("no device", TranscriptErrorKind.NO_AUDIO_DEVICE)
        events = []
        controller = PipelineController(
            config=PipelineConfig(),
            translator=Translator(FakeTranslationEngine()),
            transcript_source=TranscriptSource(FakeProvider()),
            output_factory=lambda: fake_output,
            microphone_factory=lambda: microphone,
            on_event=events.append,
        )

        await controller.start()

        assert controller.state == PipelineState.ERROR
        errors = [e for e in events if e.kind == EventKind.ERROR]
        assert errors[0].extra["kind"] == "no-audio-device"
        await controller.stop()
        microphone.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_event_handler_errors_contained(self, fake_output):
        """Test a raising event handler does not break the cycle."""
        h = Harness(fake_output, synthesis=False)
        h.controller.on_event = Mock(side_effect=RuntimeError("ui closed"))
        await h.start()

        h.controller.submit_segment(segment("a", "Hola"))
        await h.controller.wait_idle()

        assert h.controller.state == PipelineState.LISTENING
        assert len(h.engine.calls) == 1
        await h.controller.stop()

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, fake_output):
        """Test a second start while active does not reopen anything."""
        h = Harness(fake_output)
        await h.start()
        await h.controller.start(idle_audio())
        assert len(h.provider.connections) == 1
        await h.controller.stop()
