"""Configuration loader and validation."""

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from voice_relay.languages import AUTO_DETECT

logger = logging.getLogger(__name__)

__all__ = [
    "PipelineConfig",
    "AudioConfig",
    "DeepgramConfig",
    "GeminiConfig",
    "CacheConfig",
    "PlaybackConfig",
    "PersistenceConfig",
    "GeneralConfig",
    "Config",
    "ConfigError",
    "load_config",
    "discover_audio_devices",
]

SECTIONS = (
    "pipeline",
    "audio",
    "deepgram",
    "gemini",
    "cache",
    "playback",
    "persistence",
    "general",
)


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


@dataclass(frozen=True)
class PipelineConfig:
    """Per-pipeline settings, immutable for the lifetime of one pipeline."""

    session_id: str = "active-session"
    speaker_id: str = "User"
    source_lang: str = AUTO_DETECT
    target_lang: str = "English (United States)"
    enable_synthesis: bool = True
    provider: str = "deepgram"

    def with_languages(
        self,
        source_lang: str | None = None,
        target_lang: str | None = None,
    ) -> "PipelineConfig":
        """Return a new effective configuration with updated languages."""
        return replace(
            self,
            source_lang=source_lang if source_lang is not None else self.source_lang,
            target_lang=target_lang if target_lang is not None else self.target_lang,
        )


@dataclass
class AudioConfig:
    """Microphone capture configuration."""

    sample_rate: int = 16000
    channels: int = 1
    chunk_size: int = 4000
    device: int | str | None = None


@dataclass
class DeepgramConfig:
    """Deepgram live transcription configuration."""

    api_key: str | None = None
    model: str = "nova-3"
    endpointing_ms: int = 300
    diarize: bool = True
    interim_results: bool = True
    smart_format: bool = True
    retry_backoff: float = 1.0


@dataclass
class GeminiConfig:
    """Gemini translation, speech and live session configuration."""

    api_key: str | None = None
    translation_model: str = "gemini-flash-lite-latest"
    speech_model: str = "gemini-2.5-flash-preview-tts"
    live_model: str = "gemini-2.5-flash-native-audio-preview-12-2025"
    voice: str | None = None
    speech_mode: str = "streaming"
    translation_timeout: float = 10.0
    synthesis_timeout: float = 30.0


@dataclass
class CacheConfig:
    """Translation cache bounds."""

    capacity: int = 1000
    ttl: float = 3600.0


@dataclass
class PlaybackConfig:
    """Audio output configuration."""

    gap: float = 0.5
    output_sample_rate: int = 24000
    output_device: int | str | None = None
    volume: float = 0.0


@dataclass
class PersistenceConfig:
    """Transcript log forwarding."""

    backend: str = "log"
    path: str | None = None


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False


@dataclass
class Config:
    """Main configuration container."""

    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    deepgram: DeepgramConfig = field(default_factory=DeepgramConfig)
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    general: GeneralConfig = field(default_factory=GeneralConfig)

    @classmethod
    def from_toml(
        cls,
        path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "Config":
        """Load configuration from TOML file with environment overrides.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. VOICE_RELAY_CONFIG env var
                  2. ./voice-relay.toml
                  3. ~/.config/voice-relay.toml
                  Defaults are used when none of these exist.
            env: Environment variables for overrides (defaults to os.environ)

        Returns:
            Loaded Config instance

        Raises:
            ConfigError: If an explicit file is missing or values are invalid
        """
        if env is None:
            import os

            env = os.environ

        resolved_path = _resolve_config_path(path, env)
        raw_data = _load_toml_file(resolved_path) if resolved_path else {}

        try:
            coerced = _coerce_config_values(raw_data, env)
            return cls(
                pipeline=PipelineConfig(**coerced["pipeline"]),
                audio=AudioConfig(**coerced["audio"]),
                deepgram=DeepgramConfig(**coerced["deepgram"]),
                gemini=GeminiConfig(**coerced["gemini"]),
                cache=CacheConfig(**coerced["cache"]),
                playback=PlaybackConfig(**coerced["playback"]),
                persistence=PersistenceConfig(**coerced["persistence"]),
                general=GeneralConfig(**coerced["general"]),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigError: If any section holds an invalid value
        """
        validate_pipeline_config(self.pipeline)
        validate_audio_config(self.audio)
        validate_gemini_config(self.gemini)
        validate_cache_config(self.cache)
        validate_playback_config(self.playback)
        validate_persistence_config(self.persistence)

        if self.deepgram.retry_backoff < 0:
            raise ConfigError(
                f"deepgram.retry_backoff must be non-negative, got {self.deepgram.retry_backoff}"
            )


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path | None:
    """Resolve configuration file path following search order.

    Search order:
    1. CLI-provided path
    2. VOICE_RELAY_CONFIG environment variable
    3. ./voice-relay.toml (current directory)
    4. ~/.config/voice-relay.toml (user config directory)

    Raises:
        ConfigError: If an explicitly requested file does not exist
    """
    if cli_path:
        cli_path = Path(cli_path)
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get("VOICE_RELAY_CONFIG"):
        candidate = Path(env_path)
        if not candidate.exists():
            raise ConfigError(f"Config file from VOICE_RELAY_CONFIG not found: {candidate}")
        logger.info("Using config file: %s", candidate.resolve())
        return candidate.resolve()

    for candidate in (
        Path("voice-relay.toml"),
        Path.home() / ".config" / "voice-relay.toml",
    ):
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()

    logger.info("No config file found, using defaults")
    return None


def _load_toml_file(path: Path) -> dict:
    """Load and parse TOML configuration file.

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except Exception as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: dict, env: Mapping[str, str]) -> dict:
    """Normalize raw TOML data for dataclass instantiation.

    Fills API keys from DEEPGRAM_API_KEY / GEMINI_API_KEY when the file
    leaves them unset.
    """
    coerced = {}

    for section in SECTIONS:
        value = raw_data.get(section, {})
        if not isinstance(value, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        coerced[section] = dict(value)

    deepgram_section = coerced["deepgram"]
    if not deepgram_section.get("api_key"):
        deepgram_section["api_key"] = env.get("DEEPGRAM_API_KEY")

    gemini_section = coerced["gemini"]
    if not gemini_section.get("api_key"):
        gemini_section["api_key"] = env.get("GEMINI_API_KEY") or env.get("GOOGLE_API_KEY")

    return coerced


def discover_audio_devices() -> list[dict]:
    """Enumerate available audio devices.

    Returns:
        List of device dicts with keys: index, name, inputs, outputs, sample_rate
        Returns empty list if sounddevice unavailable or no devices found
    """
    try:
        import sounddevice
    except ImportError:
        logger.warning("sounddevice not available, cannot enumerate audio devices")
        return []

    devices = []
    try:
        device_list = sounddevice.query_devices()
        if isinstance(device_list, dict):
            device_list = [device_list]

        for idx, dev_info in enumerate(device_list):
            devices.append(
                {
                    "index": idx,
                    "name": dev_info.get("name", f"Device {idx}"),
                    "inputs": dev_info.get("max_input_channels", 0),
                    "outputs": dev_info.get("max_output_channels", 0),
                    "sample_rate": dev_info.get("default_samplerate", 0),
                }
            )
    except Exception as e:
        logger.warning("Error discovering audio devices: %s", e)

    return devices


def validate_pipeline_config(pipeline_cfg: PipelineConfig) -> None:
    valid_providers = ("deepgram", "external")
    if pipeline_cfg.provider not in valid_providers:
        raise ConfigError(
            f"Invalid provider '{pipeline_cfg.provider}'. "
            f"Must be one of: {', '.join(valid_providers)}"
        )
    if not pipeline_cfg.target_lang:
        raise ConfigError("pipeline.target_lang is required")
    if not pipeline_cfg.session_id:
        raise ConfigError("pipeline.session_id must be non-empty")


def validate_audio_config(audio_cfg: AudioConfig) -> None:
    if audio_cfg.sample_rate <= 0:
        raise ConfigError(f"audio.sample_rate must be positive, got {audio_cfg.sample_rate}")
    if audio_cfg.channels not in (1, 2):
        raise ConfigError(f"audio.channels must be 1 or 2, got {audio_cfg.channels}")
    if audio_cfg.chunk_size <= 0:
        raise ConfigError(f"audio.chunk_size must be positive, got {audio_cfg.chunk_size}")


def validate_gemini_config(gemini_cfg: GeminiConfig) -> None:
    valid_modes = ("discrete", "streaming")
    if gemini_cfg.speech_mode not in valid_modes:
        raise ConfigError(
            f"Invalid speech_mode '{gemini_cfg.speech_mode}'. "
            f"Must be one of: {', '.join(valid_modes)}"
        )
    if gemini_cfg.translation_timeout <= 0:
        raise ConfigError(
            f"gemini.translation_timeout must be positive, got {gemini_cfg.translation_timeout}"
        )
    if gemini_cfg.synthesis_timeout <= 0:
        raise ConfigError(
            f"gemini.synthesis_timeout must be positive, got {gemini_cfg.synthesis_timeout}"
        )


def validate_cache_config(cache_cfg: CacheConfig) -> None:
    if cache_cfg.capacity <= 0:
        raise ConfigError(f"cache.capacity must be positive, got {cache_cfg.capacity}")
    if cache_cfg.ttl <= 0:
        raise ConfigError(f"cache.ttl must be positive, got {cache_cfg.ttl}")


def validate_playback_config(playback_cfg: PlaybackConfig) -> None:
    if playback_cfg.gap < 0:
        raise ConfigError(f"playback.gap must be non-negative, got {playback_cfg.gap}")
    if playback_cfg.output_sample_rate <= 0:
        raise ConfigError(
            f"playback.output_sample_rate must be positive, got {playback_cfg.output_sample_rate}"
        )
    if not 0.0 <= playback_cfg.volume <= 1.0:
        raise ConfigError(f"playback.volume must be within [0, 1], got {playback_cfg.volume}")


def validate_persistence_config(persistence_cfg: PersistenceConfig) -> None:
    valid_backends = ("log", "jsonl")
    if persistence_cfg.backend not in valid_backends:
        raise ConfigError(
            f"Invalid persistence backend '{persistence_cfg.backend}'. "
            f"Must be one of: {', '.join(valid_backends)}"
        )
    if persistence_cfg.backend == "jsonl" and not persistence_cfg.path:
        raise ConfigError("persistence.path is required for the jsonl backend")


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().
    """
    return Config.from_toml(path, env=env)
