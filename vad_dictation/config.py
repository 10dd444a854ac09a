"""Configuration loader and validation."""

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Sequence

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

__all__ = [
    "HotkeyConfig",
    "AudioConfig",
    "EndpointConfig",
    "TranscriptionConfig",
    "OpenAIConfig",
    "DeepgramConfig",
    "ModelConfig",
    "CleanupConfig",
    "InjectorConfig",
    "GeneralConfig",
    "Config",
    "ConfigError",
    "load_config",
    "discover_input_devices",
    "discover_audio_devices",
]

HOTKEY_MODES = ("double-press-primary", "double-press-secondary", "custom-combo")
TRANSCRIPTION_BACKENDS = ("openai", "deepgram", "faster_whisper")
INJECTOR_BACKENDS = ("wtype", "ydotool", "xdotool")

DEFAULT_CLEANUP_PROMPT = """You are a text cleanup assistant. Your task is to clean up transcribed speech while preserving the original meaning and intent.

Rules:
1. Fix obvious grammar and punctuation errors
2. Remove filler words like "um", "uh", "like", "you know", etc.
3. Fix sentence structure if it's unclear
4. Keep the original tone and style
5. Don't add information that wasn't there
6. Don't change the meaning
7. If the text is already clean, return it as-is
8. Return ONLY the cleaned text, no explanations"""


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


def _as_tuple(value: str | Sequence[str], name: str) -> tuple[str, ...]:
    if isinstance(value, str):
        items: tuple[str, ...] = (value,)
    else:
        try:
            items = tuple(value)
        except TypeError as exc:
            raise ConfigError(f"{name} must be a string or sequence of strings: {exc}") from exc

    for item in items:
        if not isinstance(item, str) or not item:
            raise ConfigError(f"{name} entries must be non-empty strings")
    return items


@dataclass
class HotkeyConfig:
    """Global toggle hotkey configuration."""

    mode: str = "double-press-primary"
    combo: str = "<ctrl>+<shift>+d"
    primary_keys: str | Sequence[str] = ("KEY_LEFTCTRL", "KEY_RIGHTCTRL")
    secondary_keys: str | Sequence[str] = ("KEY_F5",)
    devices: str | Sequence[str] = ()
    double_tap_threshold_ms: int = 300
    enabled: bool = True

    def __post_init__(self) -> None:
        """Normalize key and device lists."""
        self.primary_keys = _as_tuple(self.primary_keys, "hotkey.primary_keys")
        self.secondary_keys = _as_tuple(self.secondary_keys, "hotkey.secondary_keys")
        self.devices = _as_tuple(self.devices, "hotkey.devices")

    @property
    def tracked_keys(self) -> tuple[str, ...]:
        """Key symbols watched by the active double-press mode."""
        if self.mode == "double-press-secondary":
            return tuple(self.secondary_keys)
        return tuple(self.primary_keys)


@dataclass
class AudioConfig:
    """Audio capture configuration."""

    sample_rate: int = 16000
    channels: int = 1
    frame_ms: int = 20
    chunk_ms: int = 100
    device: int | str | None = None


@dataclass
class EndpointConfig:
    """Energy-threshold endpointing settings."""

    silence_threshold: float = 0.01
    silence_duration_ms: int = 900
    min_speech_duration_ms: int = 500


@dataclass
class TranscriptionConfig:
    """Transcription settings."""

    backend: str = "openai"
    language_hint: str | None = "en"
    timeout: float = 30.0


@dataclass
class OpenAIConfig:
    """OpenAI API configuration (transcription and cleanup)."""

    api_key: str | None = None
    base_url: str | None = None
    transcription_model: str = "gpt-4o-mini-transcribe"
    cleanup_model: str = "gpt-4o-mini"


@dataclass
class DeepgramConfig:
    """Deepgram API configuration (for deepgram backend)."""

    api_key: str | None = None
    model: str = "nova-3"
    smart_format: bool = True
    punctuate: bool = True


@dataclass
class ModelConfig:
    """Whisper model configuration (for faster-whisper backend)."""

    name: str = "base"
    device: str = "cpu"
    compute_type: str = "int8"
    model_directory: str | None = None
    beam_size: int = 5


@dataclass
class CleanupConfig:
    """Optional transcript cleanup at finalize."""

    enabled: bool = False
    prompt: str = DEFAULT_CLEANUP_PROMPT
    temperature: float = 0.3
    max_tokens: int = 1000
    timeout: float = 30.0


@dataclass
class InjectorConfig:
    """Text injection configuration."""

    backend: str = "wtype"
    clipboard_mode: bool = True
    typing_delay: int = 5
    timeout: float = 10.0
    dry_run: bool = False


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False


@dataclass
class Config:
    """Main configuration container."""

    hotkey: HotkeyConfig = field(default_factory=HotkeyConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    endpoint: EndpointConfig = field(default_factory=EndpointConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    deepgram: DeepgramConfig = field(default_factory=DeepgramConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    injector: InjectorConfig = field(default_factory=InjectorConfig)
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
                  1. VAD_DICTATION_CONFIG env var
                  2. ./vad-dictation.toml
                  3. ~/.config/vad-dictation.toml
                  and falls back to defaults when none exists.
            env: Environment variables for overrides (defaults to os.environ)

        Returns:
            Loaded Config instance

        Raises:
            ConfigError: If an explicit config file is missing or values are invalid
        """
        if env is None:
            import os

            env = os.environ

        resolved_path = _resolve_config_path(path, env)
        raw_data = _load_toml_file(resolved_path) if resolved_path else {}

        try:
            coerced = _coerce_config_values(raw_data, env)
            return cls(
                **{
                    f.name: _SECTION_TYPES[f.name](**coerced.get(f.name, {}))
                    for f in fields(cls)
                }
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigError: If any value is out of range or unknown
        """
        validate_hotkey_config(self.hotkey)
        validate_audio_config(self.audio)
        validate_endpoint_config(self.endpoint)
        validate_transcription_config(self)
        validate_injector_config(self.injector)


_SECTION_TYPES = {
    "hotkey": HotkeyConfig,
    "audio": AudioConfig,
    "endpoint": EndpointConfig,
    "transcription": TranscriptionConfig,
    "openai": OpenAIConfig,
    "deepgram": DeepgramConfig,
    "model": ModelConfig,
    "cleanup": CleanupConfig,
    "injector": InjectorConfig,
    "general": GeneralConfig,
}


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path | None:
    """Resolve configuration file path following search order.

    Search order:
    1. CLI-provided path
    2. VAD_DICTATION_CONFIG environment variable
    3. ./vad-dictation.toml (current directory)
    4. ~/.config/vad-dictation.toml (user config directory)

    Returns:
        Path to the config file, or None to use built-in defaults

    Raises:
        ConfigError: If an explicitly requested file does not exist
    """
    if cli_path:
        cli_path = Path(cli_path)
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get("VAD_DICTATION_CONFIG"):
        candidate = Path(env_path)
        if not candidate.exists():
            raise ConfigError(f"Config file from VAD_DICTATION_CONFIG not found: {candidate}")
        logger.info("Using config file: %s", candidate.resolve())
        return candidate.resolve()

    for candidate in (
        Path("vad-dictation.toml"),
        Path.home() / ".config" / "vad-dictation.toml",
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

    Args:
        raw_data: Raw parsed TOML dictionary
        env: Environment variables for API key fallbacks

    Returns:
        Coerced dictionary ready for dataclass instantiation
    """
    unknown = set(raw_data) - set(_SECTION_TYPES)
    if unknown:
        raise ConfigError(f"Unknown config sections: {', '.join(sorted(unknown))}")

    coerced = {}
    for section in _SECTION_TYPES:
        value = raw_data.get(section, {})
        if not isinstance(value, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        coerced[section] = dict(value)

    if not coerced["openai"].get("api_key"):
        coerced["openai"]["api_key"] = env.get("OPENAI_API_KEY")

    if not coerced["deepgram"].get("api_key"):
        coerced["deepgram"]["api_key"] = env.get("DEEPGRAM_API_KEY")

    # An empty string in TOML means "let the service detect the language".
    if coerced["transcription"].get("language_hint") == "":
        coerced["transcription"]["language_hint"] = None

    return coerced


def discover_input_devices(key_codes: Sequence[str] | None = None) -> list[dict]:
    """Enumerate evdev input devices and the hotkey keys each one can send.

    Args:
        key_codes: Key symbols to look for; defaults to every key the
            double-press modes can track

    Returns:
        List of device dicts with keys: path, name, readable, hotkey_keys.
        Devices without read permission are listed with readable=False.
    """
    import evdev

    if key_codes is None:
        defaults = HotkeyConfig()
        key_codes = tuple(defaults.primary_keys) + tuple(defaults.secondary_keys)
    wanted = {
        getattr(evdev.ecodes, code): code for code in key_codes if hasattr(evdev.ecodes, code)
    }

    devices = []
    for path in sorted(evdev.list_devices()):
        try:
            dev = evdev.InputDevice(path)
        except PermissionError:
            devices.append({"path": path, "name": None, "readable": False, "hotkey_keys": []})
            continue
        except OSError as e:
            logger.debug("Cannot access device %s: %s", path, e)
            continue

        try:
            keys = dev.capabilities().get(evdev.ecodes.EV_KEY, [])
            devices.append(
                {
                    "path": path,
                    "name": dev.name,
                    "readable": True,
                    "hotkey_keys": [wanted[key] for key in keys if key in wanted],
                }
            )
        finally:
            dev.close()

    return devices


def discover_audio_devices() -> list[dict]:
    """Enumerate audio capture devices via sounddevice.

    Returns:
        List of device dicts with keys: index, name, channels, sample_rate,
        default. Empty when PortAudio cannot be queried.
    """
    import sounddevice

    try:
        device_list = sounddevice.query_devices()
        default_input = sounddevice.default.device[0]
    except Exception as e:
        logger.warning("Error discovering audio devices: %s", e)
        return []

    if isinstance(device_list, dict):
        device_list = [device_list]

    return [
        {
            "index": idx,
            "name": info.get("name", f"Device {idx}"),
            "channels": info.get("max_input_channels", 0),
            "sample_rate": info.get("default_samplerate", 0),
            "default": idx == default_input,
        }
        for idx, info in enumerate(device_list)
        if info.get("max_input_channels", 0) > 0
    ]


def validate_hotkey_config(hotkey_cfg: HotkeyConfig) -> None:
    """Validate hotkey configuration.

    Raises:
        ConfigError: If mode or threshold is invalid
    """
    if hotkey_cfg.mode not in HOTKEY_MODES:
        raise ConfigError(
            f"Invalid hotkey mode '{hotkey_cfg.mode}'. "
            f"Must be one of: {', '.join(HOTKEY_MODES)}"
        )

    if hotkey_cfg.double_tap_threshold_ms <= 0:
        raise ConfigError(
            f"double_tap_threshold_ms must be positive, got {hotkey_cfg.double_tap_threshold_ms}"
        )

    if hotkey_cfg.mode == "custom-combo" and not hotkey_cfg.combo:
        raise ConfigError("hotkey.combo is required in custom-combo mode")


def validate_audio_config(audio_cfg: AudioConfig) -> None:
    """Validate audio capture configuration.

    Raises:
        ConfigError: If sizes are not usable
    """
    if audio_cfg.sample_rate <= 0:
        raise ConfigError(f"sample_rate must be positive, got {audio_cfg.sample_rate}")
    if audio_cfg.channels not in (1, 2):
        raise ConfigError(f"channels must be 1 or 2, got {audio_cfg.channels}")
    if audio_cfg.frame_ms <= 0:
        raise ConfigError(f"frame_ms must be positive, got {audio_cfg.frame_ms}")
    if audio_cfg.chunk_ms < audio_cfg.frame_ms:
        raise ConfigError(
            f"chunk_ms ({audio_cfg.chunk_ms}) must be at least frame_ms ({audio_cfg.frame_ms})"
        )


def validate_endpoint_config(endpoint_cfg: EndpointConfig) -> None:
    """Validate endpointing thresholds.

    Raises:
        ConfigError: If threshold or durations are out of range
    """
    if not 0.0 < endpoint_cfg.silence_threshold < 1.0:
        raise ConfigError(
            f"silence_threshold must be between 0 and 1, got {endpoint_cfg.silence_threshold}"
        )
    if endpoint_cfg.silence_duration_ms <= 0:
        raise ConfigError(
            f"silence_duration_ms must be positive, got {endpoint_cfg.silence_duration_ms}"
        )
    if endpoint_cfg.min_speech_duration_ms < 0:
        raise ConfigError(
            f"min_speech_duration_ms must be non-negative, got {endpoint_cfg.min_speech_duration_ms}"
        )


def validate_transcription_config(cfg: Config) -> None:
    """Validate transcription backend and its credentials.

    Raises:
        ConfigError: If backend is unknown or missing its API key
    """
    backend = cfg.transcription.backend
    if backend not in TRANSCRIPTION_BACKENDS:
        raise ConfigError(
            f"Invalid transcription backend '{backend}'. "
            f"Must be one of: {', '.join(TRANSCRIPTION_BACKENDS)}"
        )

    if cfg.transcription.timeout <= 0:
        raise ConfigError(f"transcription timeout must be positive, got {cfg.transcription.timeout}")

    if backend == "openai" and not cfg.openai.api_key:
        raise ConfigError(
            "OpenAI API key is required when backend is 'openai'. "
            "Set it in config file or via OPENAI_API_KEY environment variable."
        )

    if backend == "deepgram" and not cfg.deepgram.api_key:
        raise ConfigError(
            "Deepgram API key is required when backend is 'deepgram'. "
            "Set it in config file or via DEEPGRAM_API_KEY environment variable."
        )

    if backend == "faster_whisper":
        valid_compute_types = ("int8", "float16", "float32", "default")
        if cfg.model.compute_type not in valid_compute_types:
            raise ConfigError(
                f"Invalid compute_type '{cfg.model.compute_type}'. "
                f"Must be one of: {', '.join(valid_compute_types)}"
            )
        if cfg.model.beam_size <= 0:
            raise ConfigError(f"beam_size must be positive, got {cfg.model.beam_size}")

    if cfg.cleanup.enabled and not cfg.openai.api_key:
        raise ConfigError(
            "Cleanup is enabled but no OpenAI API key is configured. "
            "Set openai.api_key or OPENAI_API_KEY, or disable [cleanup]."
        )


def validate_injector_config(injector_cfg: InjectorConfig) -> None:
    """Validate injector configuration.

    Raises:
        ConfigError: If injector configuration is invalid
    """
    if injector_cfg.backend not in INJECTOR_BACKENDS:
        raise ConfigError(
            f"Invalid backend '{injector_cfg.backend}'. "
            f"Must be one of: {', '.join(INJECTOR_BACKENDS)}"
        )

    if injector_cfg.typing_delay < 0:
        raise ConfigError(
            f"typing_delay must be non-negative, got {injector_cfg.typing_delay}"
        )

    if injector_cfg.timeout <= 0:
        raise ConfigError(f"timeout must be positive, got {injector_cfg.timeout}")


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().
    """
    return Config.from_toml(path, env=env)
