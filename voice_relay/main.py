"""Typer CLI entrypoint for voice-relay."""

import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path

import typer

from voice_relay._types import EventKind, PipelineEvent
from voice_relay.config import (
    Config,
    ConfigError,
    discover_audio_devices,
    load_config,
)
from voice_relay.languages import DEFAULT_VOICE, LANGUAGE_CODES, voice_for_language
from voice_relay.live_session import (
    GeminiLiveConnector,
    LiveAudioSession,
    LiveSessionError,
    build_interpreter_instruction,
)
from voice_relay.output import SoundDeviceOutput
from voice_relay.pipeline import PipelineConfigError, PipelineController
from voice_relay.recorder import AudioDeviceError, MicrophoneStream
from voice_relay.translation_cache import TranslationCache
from voice_relay.translator import GeminiTranslationEngine, Translator

app = typer.Typer(help="Real-time speech translation via Deepgram and Gemini")

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _merge_config_overrides(
    cfg: Config,
    *,
    source: str | None = None,
    target: str | None = None,
    speaker: str | None = None,
    audio_device: int | None = None,
    output_device: int | None = None,
    no_synthesis: bool = False,
    volume: float | None = None,
) -> Config:
    """Apply CLI overrides to configuration.

    CLI options take precedence over config file values.

    Args:
        cfg: Base configuration from file
        source: Override source language
        target: Override target language
        speaker: Override speaker label
        audio_device: Override input audio device by index
        output_device: Override output audio device by index
        no_synthesis: Disable speech synthesis
        volume: Override live session self-monitoring volume

    Returns:
        Updated Config instance

    Raises:
        ConfigError: If override values are invalid
    """
    if source is not None or target is not None:
        logger.debug("Overriding languages: source=%s, target=%s", source, target)
        cfg.pipeline = cfg.pipeline.with_languages(source_lang=source, target_lang=target)

    if speaker is not None:
        logger.debug("Overriding speaker label to '%s'", speaker)
        cfg.pipeline = replace(cfg.pipeline, speaker_id=speaker)

    if no_synthesis:
        logger.debug("Disabling speech synthesis")
        cfg.pipeline = replace(cfg.pipeline, enable_synthesis=False)

    for override, kind in ((audio_device, "input"), (output_device, "output")):
        if override is None:
            continue
        available = discover_audio_devices()
        key = "inputs" if kind == "input" else "outputs"
        valid_indices = {d["index"] for d in available if d[key] > 0}
        if override not in valid_indices:
            available_str = ", ".join(str(i) for i in sorted(valid_indices))
            raise ConfigError(
                f"Invalid {kind} audio device index {override}. "
                f"Available: {available_str or 'none'}"
            )
        logger.debug("Overriding %s audio device to index %d", kind, override)
        if kind == "input":
            cfg.audio.device = override
        else:
            cfg.playback.output_device = override

    if volume is not None:
        logger.debug("Overriding volume to %.2f", volume)
        cfg.playback.volume = volume

    return cfg


def _print_event(event: PipelineEvent) -> None:
    if event.kind == EventKind.TRANSCRIPT:
        if event.is_final:
            typer.echo(event.text)
    elif event.kind == EventKind.TRANSLATION:
        typer.echo(f"  -> {event.text}")
    elif event.kind == EventKind.ERROR:
        typer.echo(f"  ! {event.message}", err=True)
    elif event.kind == EventKind.STATE:
        logger.debug("Pipeline state: %s", event.state.value)


async def _run_pipeline(controller: PipelineController) -> None:
    async with controller:
        await asyncio.Event().wait()


async def _run_live(cfg: Config) -> None:
    output = SoundDeviceOutput(
        sample_rate=cfg.playback.output_sample_rate,
        device=cfg.playback.output_device,
    )
    session = LiveAudioSession(
        GeminiLiveConnector(cfg.gemini.api_key, model=cfg.gemini.live_model),
        output,
        volume=cfg.playback.volume,
    )
    microphone = MicrophoneStream(
        sample_rate=16000,
        channels=1,
        chunk_size=cfg.audio.chunk_size,
        device=cfg.audio.device,
    )

    def on_transcription(text: str, role: str) -> None:
        typer.echo(f"{'  -> ' if role == 'model' else ''}{text}")

    try:
        await session.connect(
            build_interpreter_instruction(cfg.pipeline.source_lang, cfg.pipeline.target_lang),
            voice=cfg.gemini.voice or DEFAULT_VOICE,
            on_transcription=on_transcription,
        )
        microphone.start()
        await session.stream_microphone(microphone.chunks())
    finally:
        microphone.close()
        await session.disconnect()


def _prepare(config: Path | None, **overrides) -> Config:
    cfg = load_config(config)
    logger.info("Loaded config from: %s", config or "default locations")
    logger.debug("Config: %s", cfg)
    cfg = _merge_config_overrides(cfg, **overrides)
    cfg.validate()
    logger.info("Configuration validated successfully")
    return cfg


@app.command()
def run(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
    source: str | None = typer.Option(
        None, "--source", "-s", help="Override source language"
    ),
    target: str | None = typer.Option(
        None, "--target", "-t", help="Override target language"
    ),
    speaker: str | None = typer.Option(
        None, "--speaker", help="Override speaker label"
    ),
    audio_device: int | None = typer.Option(
        None, "--audio-device", "-a", help="Override input audio device by index"
    ),
    output_device: int | None = typer.Option(
        None, "--output-device", "-o", help="Override output audio device by index"
    ),
    no_synthesis: bool = typer.Option(
        False, "--no-synthesis", help="Print translations without speaking them"
    ),
) -> None:
    """Run the translation pipeline on the microphone."""
    _setup_logging(verbose)
    try:
        cfg = _prepare(
            config,
            source=source,
            target=target,
            speaker=speaker,
            audio_device=audio_device,
            output_device=output_device,
            no_synthesis=no_synthesis,
        )
        controller = PipelineController.from_config(cfg, on_event=_print_event)

        logger.info("Starting translation pipeline")
        asyncio.run(_run_pipeline(controller))

    except (ConfigError, PipelineConfigError) as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Pipeline interrupted by user")
        raise typer.Exit(0)
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        raise typer.Exit(1)


@app.command()
def live(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
    source: str | None = typer.Option(
        None, "--source", "-s", help="Override source language"
    ),
    target: str | None = typer.Option(
        None, "--target", "-t", help="Override target language"
    ),
    volume: float | None = typer.Option(
        None, "--volume", help="Self-monitoring volume between 0 and 1"
    ),
    audio_device: int | None = typer.Option(
        None, "--audio-device", "-a", help="Override input audio device by index"
    ),
    output_device: int | None = typer.Option(
        None, "--output-device", "-o", help="Override output audio device by index"
    ),
) -> None:
    """Run a live interpreter session with barge-in."""
    _setup_logging(verbose)
    try:
        cfg = _prepare(
            config,
            source=source,
            target=target,
            volume=volume,
            audio_device=audio_device,
            output_device=output_device,
        )
        if not cfg.gemini.api_key:
            raise ConfigError("Gemini API key missing")

        logger.info("Starting live session")
        asyncio.run(_run_live(cfg))

    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except (LiveSessionError, AudioDeviceError) as e:
        logger.error("Live session error: %s", e)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Live session interrupted by user")
        raise typer.Exit(0)
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        raise typer.Exit(1)


@app.command()
def translate(
    text: str = typer.Argument(..., help="Text to translate"),
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    source: str | None = typer.Option(
        None, "--source", "-s", help="Override source language"
    ),
    target: str | None = typer.Option(
        None, "--target", "-t", help="Override target language"
    ),
) -> None:
    """Translate a single piece of text and print the result."""
    _setup_logging(verbose)
    try:
        cfg = _prepare(config, source=source, target=target)
        if not cfg.gemini.api_key:
            raise ConfigError("Gemini API key missing")

        translator = Translator(
            GeminiTranslationEngine(cfg.gemini.api_key, model=cfg.gemini.translation_model),
            cache=TranslationCache(capacity=cfg.cache.capacity, ttl=cfg.cache.ttl),
            timeout=cfg.gemini.translation_timeout,
        )
        result = asyncio.run(
            translator.translate(text, cfg.pipeline.source_lang, cfg.pipeline.target_lang)
        )
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except Exception as e:
        logger.error("Unexpected error: %s", e)
        raise typer.Exit(1)

    if not result.ok:
        typer.echo(result.error, err=True)
        raise typer.Exit(1)
    typer.echo(result.text)


@app.command()
def list_audio(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List available audio devices."""
    _setup_logging(verbose)
    try:
        devices = discover_audio_devices()
        if not devices:
            logger.warning("No audio devices found")
            return

        if json_output:
            typer.echo(json.dumps(devices, indent=2))
        else:
            typer.echo("Available audio devices:")
            for dev in devices:
                typer.echo(
                    f"  [{dev['index']}] {dev['name']} "
                    f"(in={dev['inputs']}, out={dev['outputs']}, {dev['sample_rate']}Hz)"
                )
    except Exception as e:
        logger.error("Error listing audio devices: %s", e)
        raise typer.Exit(1)


@app.command()
def languages(
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List supported languages with their codes and voices."""
    rows = [
        {"name": name, "code": code, "voice": voice_for_language(name)}
        for name, code in LANGUAGE_CODES.items()
    ]
    if json_output:
        typer.echo(json.dumps(rows, indent=2))
        return

    typer.echo("Supported languages:")
    for row in rows:
        typer.echo(f"  {row['name']} ({row['code']}) voice={row['voice']}")


if __name__ == "__main__":
    app()
