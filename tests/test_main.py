"""Tests for main CLI module."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from conftest import FakeTranslationEngine
from voice_relay.config import Config, ConfigError, GeminiConfig
from voice_relay.main import _merge_config_overrides, app

runner = CliRunner()

DEVICES = [
    {"index": 0, "name": "USB Microphone", "inputs": 1, "outputs": 0, "sample_rate": 48000.0},
    {"index": 1, "name": "Speakers", "inputs": 0, "outputs": 2, "sample_rate": 48000.0},
]


def config_with_key(key="test-key") -> Config:
    return Config(gemini=GeminiConfig(api_key=key))


class TestListAudioCommand:
    """Tests for list-audio command."""

    @patch("voice_relay.main.discover_audio_devices")
    def test_list_audio_table_output(self, mock_discover):
        """Test list-audio command with table output."""
        mock_discover.return_value = DEVICES

        result = runner.invoke(app, ["list-audio"])
        assert result.exit_code == 0
        assert "Available audio devices:" in result.stdout
        assert "[0] USB Microphone" in result.stdout
        assert "out=2" in result.stdout

    @patch("voice_relay.main.discover_audio_devices")
    def test_list_audio_json_output(self, mock_discover):
        """Test list-audio command with JSON output."""
        mock_discover.return_value = DEVICES

        result = runner.invoke(app, ["list-audio", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data[1]["name"] == "Speakers"

    @patch("voice_relay.main.discover_audio_devices")
    def test_list_audio_no_devices(self, mock_discover):
        """Test list-audio when no devices found."""
        mock_discover.return_value = []

        result = runner.invoke(app, ["list-audio"])
        assert result.exit_code == 0
        assert "Available audio devices:" not in result.stdout


class TestLanguagesCommand:
    """Tests for languages command."""

    def test_languages_json(self):
        result = runner.invoke(app, ["languages", "--json"])
        assert result.exit_code == 0
        rows = {row["name"]: row for row in json.loads(result.stdout)}
        assert rows["English (United States)"]["code"] == "en-US"
        assert rows["English (United States)"]["voice"] == "Puck"

    def test_languages_table(self):
        result = runner.invoke(app, ["languages"])
        assert result.exit_code == 0
        assert "Supported languages:" in result.stdout
        assert "Spanish (Spain) (es-ES)" in result.stdout


class TestTranslateCommand:
    """Tests for translate command."""

    @patch("voice_relay.main.load_config")
    @patch("voice_relay.main.GeminiTranslationEngine")
    def test_translate_prints_result(self, mock_engine_cls, mock_load):
        """Test translated text is printed."""
        mock_load.return_value = config_with_key()
        engine = FakeTranslationEngine({"Hola": "Hello"})
        mock_engine_cls.return_value = engine

        result = runner.invoke(app, ["translate", "Hola", "--target", "English (United States)"])

        assert result.exit_code == 0
        assert "Hello" in result.stdout
        mock_engine_cls.assert_called_once_with("test-key", model="gemini-flash-lite-latest")
        assert engine.calls[0].target_lang == "English (United States)"

    @patch("voice_relay.main.load_config")
    @patch("voice_relay.main.GeminiTranslationEngine")
    def test_translate_failure_exits_nonzero(self, mock_engine_cls, mock_load):
        """Test an engine failure exits with code 1."""
        mock_load.return_value = config_with_key()
        engine = FakeTranslationEngine()
        engine.error = RuntimeError("quota exceeded")
        mock_engine_cls.return_value = engine

        result = runner.invoke(app, ["translate", "Hola"])

        assert result.exit_code == 1

    @patch("voice_relay.main.load_config")
    def test_translate_requires_key(self, mock_load):
        """Test translate without a Gemini key fails."""
        mock_load.return_value = Config()

        result = runner.invoke(app, ["translate", "Hola"])

        assert result.exit_code == 1


class TestRunCommand:
    """Tests for run command."""

    @patch("voice_relay.main._run_pipeline", new_callable=AsyncMock)
    @patch("voice_relay.main.PipelineController")
    @patch("voice_relay.main.load_config")
    def test_run_applies_overrides(self, mock_load, mock_controller_cls, mock_run):
        """Test CLI overrides reach the controller configuration."""
        mock_load.return_value = config_with_key()

        result = runner.invoke(
            app,
            ["run", "--source", "Spanish (Spain)", "--target", "Japanese", "--speaker", "Mario", "--no-synthesis"],
        )

        assert result.exit_code == 0
        cfg = mock_controller_cls.from_config.call_args.args[0]
        assert cfg.pipeline.source_lang == "Spanish (Spain)"
        assert cfg.pipeline.target_lang == "Japanese"
        assert cfg.pipeline.speaker_id == "Mario"
        assert cfg.pipeline.enable_synthesis is False
        mock_run.assert_awaited_once()

    @patch("voice_relay.main.load_config")
    def test_run_config_error_exits(self, mock_load):
        """Test configuration errors exit with code 1."""
        mock_load.side_effect = ConfigError("Config file not found: missing.toml")

        result = runner.invoke(app, ["run", "--config", "missing.toml"])

        assert result.exit_code == 1

    @patch("voice_relay.main.discover_audio_devices")
    @patch("voice_relay.main.load_config")
    def test_run_invalid_audio_device(self, mock_load, mock_discover):
        """Test an output-only device is rejected as input."""
        mock_load.return_value = config_with_key()
        mock_discover.return_value = DEVICES

        result = runner.invoke(app, ["run", "--audio-device", "1"])

        assert result.exit_code == 1


class TestLiveCommand:
    """Tests for live command."""

    @patch("voice_relay.main.load_config")
    def test_live_requires_key(self, mock_load):
        mock_load.return_value = Config()

        result = runner.invoke(app, ["live"])

        assert result.exit_code == 1

    @patch("voice_relay.main._run_live", new_callable=AsyncMock)
    @patch("voice_relay.main.load_config")
    def test_live_volume_override(self, mock_load, mock_run_live):
        """Test --volume sets the self-monitoring level."""
        mock_load.return_value = config_with_key()

        result = runner.invoke(app, ["live", "--volume", "0.4"])

        assert result.exit_code == 0
        cfg = mock_run_live.call_args.args[0]
        assert cfg.playback.volume == 0.4

    @patch("voice_relay.main._run_live", new_callable=AsyncMock)
    @patch("voice_relay.main.load_config")
    def test_live_volume_out_of_range(self, mock_load, mock_run_live):
        mock_load.return_value = config_with_key()

        result = runner.invoke(app, ["live", "--volume", "2"])

        assert result.exit_code == 1
        mock_run_live.assert_not_called()


class TestMergeConfigOverrides:
    """Tests for _merge_config_overrides."""

    def test_no_overrides_keeps_config(self):
        cfg = Config()
        merged = _merge_config_overrides(cfg)
        assert merged.pipeline == Config().pipeline

    @patch("voice_relay.main.discover_audio_devices")
    def test_device_overrides(self, mock_discover):
        mock_discover.return_value = DEVICES
        cfg = _merge_config_overrides(Config(), audio_device=0, output_device=1)
        assert cfg.audio.device == 0
        assert cfg.playback.output_device == 1

    @patch("voice_relay.main.discover_audio_devices")
    def test_invalid_output_device(self, mock_discover):
        mock_discover.return_value = DEVICES
        with pytest.raises(ConfigError, match="Invalid output audio device index 0"):
            _merge_config_overrides(Config(), output_device=0)

    def test_single_language_override(self):
        cfg = _merge_config_overrides(Config(), target="French (France)")
        assert cfg.pipeline.target_lang == "French (France)"
        assert cfg.pipeline.source_lang == Config().pipeline.source_lang


@pytest.fixture(autouse=True)
def no_real_logging_setup():
    with patch("voice_relay.main._setup_logging", MagicMock()):
        yield
