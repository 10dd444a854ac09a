"""Typer CLI entrypoint for vad-dictation."""

import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path

import typer

from vad_dictation._types import HotkeyPermissionError
from vad_dictation.capture import CaptureSource
from vad_dictation.cleanup import TextCleaner
from vad_dictation.config import (
    HOTKEY_MODES,
    TRANSCRIPTION_BACKENDS,
    Config,
    ConfigError,
    discover_audio_devices,
    discover_input_devices,
    load_config,
)
from vad_dictation.events import (
    CancelRequested,
    Event,
    EventChannel,
    NewlineRequested,
    QuitRequested,
    StateChanged,
    Trigger,
    Waveform,
)
from vad_dictation.hotkey import create_hotkey_listener
from vad_dictation.injector import InjectionError, Injector
from vad_dictation.session import SessionCoordinator
from vad_dictation.transcriber import Transcriber

app = typer.Typer(help="Hands-free dictation with silence-based segmentation")

logger = logging.getLogger(__name__)

MANUAL_COMMANDS = {
    "t": lambda: Trigger(source="manual"),
    "n": NewlineRequested,
    "c": CancelRequested,
    "q": QuitRequested,
}


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _merge_config_overrides(
    cfg: Config,
    *,
    audio_device: int | None = None,
    backend: str | None = None,
    hotkey_mode: str | None = None,
    dry_run: bool = False,
) -> Config:
    """Apply CLI overrides to configuration.

    CLI options take precedence over config file values.

    Raises:
        ConfigError: If override values are invalid
    """
    if audio_device is not None:
        available = discover_audio_devices()
        valid_indices = {d["index"] for d in available}
        if audio_device not in valid_indices:
            available_str = ", ".join(str(d["index"]) for d in available)
            raise ConfigError(
                f"Invalid audio device index {audio_device}. "
                f"Available: {available_str or 'none'}"
            )
        logger.debug("Overriding audio device to index %d", audio_device)
        cfg.audio.device = audio_device

    if backend is not None:
        if backend not in TRANSCRIPTION_BACKENDS:
            raise ConfigError(
                f"Invalid backend '{backend}'. Must be one of: {', '.join(TRANSCRIPTION_BACKENDS)}"
            )
        logger.debug("Overriding transcription backend to '%s'", backend)
        cfg.transcription.backend = backend

    if hotkey_mode is not None:
        if hotkey_mode not in HOTKEY_MODES:
            raise ConfigError(
                f"Invalid hotkey mode '{hotkey_mode}'. Must be one of: {', '.join(HOTKEY_MODES)}"
            )
        logger.debug("Overriding hotkey mode to '%s'", hotkey_mode)
        cfg.hotkey.mode = hotkey_mode

    if dry_run:
        logger.debug("Enabling dry-run mode")
        cfg.injector.dry_run = True

    return cfg


def build_transcriber(cfg: Config) -> Transcriber:
    """Create the transcription backend selected in config."""
    backend = cfg.transcription.backend
    if backend == "openai":
        from vad_dictation.transcriber_openai import OpenAITranscriber

        return OpenAITranscriber(
            api_key=cfg.openai.api_key,
            model=cfg.openai.transcription_model,
            base_url=cfg.openai.base_url,
            timeout=cfg.transcription.timeout,
        )
    if backend == "deepgram":
        from vad_dictation.transcriber_deepgram import DeepgramTranscriber

        return DeepgramTranscriber(
            api_key=cfg.deepgram.api_key,
            model=cfg.deepgram.model,
            smart_format=cfg.deepgram.smart_format,
            punctuate=cfg.deepgram.punctuate,
            timeout=cfg.transcription.timeout,
        )
    if backend == "faster_whisper":
        from vad_dictation.transcriber import WhisperTranscriber

        return WhisperTranscriber(
            model_name=cfg.model.name,
            device=cfg.model.device,
            compute_type=cfg.model.compute_type,
            model_directory=cfg.model.model_directory,
            beam_size=cfg.model.beam_size,
            timeout=cfg.transcription.timeout,
        )
    raise ConfigError(f"Unknown transcription backend: {backend}")


def build_coordinator(cfg: Config, channel: EventChannel) -> SessionCoordinator:
    """Wire every component from a validated config."""
    hotkey = create_hotkey_listener(cfg.hotkey, channel) if cfg.hotkey.enabled else None
    return SessionCoordinator(
        capture=CaptureSource.from_config(cfg.audio),
        transcriber=build_transcriber(cfg),
        injector=Injector(cfg.injector),
        cleaner=TextCleaner.from_config(cfg.cleanup, cfg.openai),
        channel=channel,
        hotkey=hotkey,
        endpoint_config=cfg.endpoint,
        language_hint=cfg.transcription.language_hint,
        publish_waveform=logging.getLogger().isEnabledFor(logging.DEBUG),
    )


def parse_manual_command(line: str) -> Event | None:
    """Map one line of terminal input to an event, or None if unrecognized."""
    factory = MANUAL_COMMANDS.get(line.strip().lower()[:1])
    return factory() if factory else None


def _attach_stdin(loop: asyncio.AbstractEventLoop, channel: EventChannel) -> bool:
    """Publish manual commands read from stdin; False if stdin is unusable."""
    try:
        fd = sys.stdin.fileno()
    except (AttributeError, OSError, ValueError):
        return False

    def _on_readable() -> None:
        line = sys.stdin.readline()
        if not line:
            logger.debug("stdin closed, manual control disabled")
            loop.remove_reader(fd)
            return
        event = parse_manual_command(line)
        if event is None:
            if line.strip():
                logger.info("Unknown command %r (t=toggle, n=newline, c=cancel, q=quit)", line.strip())
            return
        channel.publish(event)

    try:
        loop.add_reader(fd, _on_readable)
    except (NotImplementedError, OSError, ValueError) as e:
        logger.warning("Manual control unavailable: %s", e)
        return False
    return True


def _log_level(event: Waveform) -> None:
    logger.debug("Input level: %.3f", max(event.data, default=0.0))


def _report_state(event: StateChanged, coordinator: SessionCoordinator) -> None:
    if event.error:
        typer.echo(f"[{event.state}] {event.error}", err=True)
        if coordinator.last_text:
            typer.echo(f"Text not inserted: {coordinator.last_text}", err=True)
    else:
        typer.echo(f"[{event.state}]", err=True)


async def _run_daemon(cfg: Config) -> None:
    channel = EventChannel()
    coordinator = build_coordinator(cfg, channel)
    channel.subscribe(lambda e: _report_state(e, coordinator), StateChanged)
    if coordinator.publish_waveform:
        channel.subscribe(_log_level, Waveform)

    loop = asyncio.get_running_loop()
    manual = _attach_stdin(loop, channel)
    if manual:
        typer.echo("Commands: t=toggle, n=newline, c=cancel, q=quit", err=True)

    try:
        await coordinator.run()
    finally:
        if manual:
            loop.remove_reader(sys.stdin.fileno())


@app.command()
def run(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
    audio_device: int | None = typer.Option(
        None, "--audio-device", "-a", help="Override audio device by index"
    ),
    backend: str | None = typer.Option(
        None, "--backend", "-b", help="Override backend (openai, deepgram, faster_whisper)"
    ),
    hotkey_mode: str | None = typer.Option(
        None,
        "--hotkey-mode",
        help="Override hotkey mode (double-press-primary, double-press-secondary, custom-combo)",
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Log transcripts instead of inserting them"
    ),
) -> None:
    """Run the dictation daemon."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        logger.info("Loaded config from: %s", config or "default locations")
        logger.debug("Config: %s", cfg)

        cfg = _merge_config_overrides(
            cfg,
            audio_device=audio_device,
            backend=backend,
            hotkey_mode=hotkey_mode,
            dry_run=dry_run,
        )
        cfg.validate()
        logger.info("Configuration validated successfully")

        logger.info("Starting dictation daemon")
        asyncio.run(_run_daemon(cfg))

    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except (InjectionError, HotkeyPermissionError) as e:
        logger.error("Startup failed: %s", e)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user")
        raise typer.Exit(0)
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        raise typer.Exit(1)


@app.command()
def list_inputs(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List available input devices."""
    _setup_logging(verbose)
    try:
        devices = discover_input_devices()
        if not devices:
            logger.warning("No input devices found")
            return

        if json_output:
            typer.echo(json.dumps(devices, indent=2))
        else:
            typer.echo("Available input devices:")
            for dev in devices:
                if not dev["readable"]:
                    typer.echo(f"  {dev['path']} (permission denied)")
                    continue
                keys = ", ".join(dev["hotkey_keys"]) or "none"
                typer.echo(f"  {dev['path']}")
                typer.echo(f"    Name: {dev['name']}")
                typer.echo(f"    Hotkey keys: {keys}")
    except Exception as e:
        logger.error("Error listing input devices: %s", e)
        raise typer.Exit(1)


@app.command()
def list_audio(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List available audio capture devices."""
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
                marker = " (default)" if dev.get("default") else ""
                typer.echo(
                    f"  [{dev['index']}] {dev['name']} "
                    f"({dev['channels']}ch, {dev['sample_rate']}Hz){marker}"
                )
    except Exception as e:
        logger.error("Error listing audio devices: %s", e)
        raise typer.Exit(1)


@app.command()
def check_config(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Validate configuration and print the resolved values."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        cfg.validate()
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)

    resolved = dataclasses.asdict(cfg)
    for section in ("openai", "deepgram"):
        if resolved[section].get("api_key"):
            resolved[section]["api_key"] = "***"
    typer.echo(json.dumps(resolved, indent=2, default=str))


if __name__ == "__main__":
    app()
