"""
Configuration management for trackmaster.

This module handles loading, validating, and providing access to the
application configuration stored in config.yaml.

The configuration file contains:
    - Path of the SQLite job database
    - Output directory for logs and temporary work files
    - Blob storage backend (local directory or Telegram chat)
    - Batch run defaults (concurrency, page size, limit, timeout, breaker)
    - Fade-out durations used by the mastering pipeline
    - External tool locations and limiter settings

Configuration File Location:
    The config.yaml file is looked up in the current working directory
    unless an explicit path is passed with --config.

Example config.yaml:
    database:
      path: "~/trackmaster/jobs.db"

    output:
      directory: "~/trackmaster"

    storage:
      type: telegram          # or: local
      directory: null         # required for local
      telegram_token: "123:abc"
      telegram_chat: -100123456
      proxy: null

    process:
      concurrency: 2
      page_size: 100
      limit: 0                # 0 means no limit
      timeout: 0              # seconds, 0 means no timeout
      error_threshold: 10
      short_fade_out: 1.0
      long_fade_out: 5.0

    tools:
      ffmpeg: ffmpeg
      aubio: aubio
      phase_limiter: phase_limiter
      loudness: -9.0
      level: 1.0
      bass_preservation: true
      use_aubio_quiet: false
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from trackmaster.core.exceptions import ConfigError


# Default configuration file name (in current working directory)
CONFIG_FILENAME = "config.yaml"

STORAGE_TYPES = ("local", "telegram")
DEFAULT_SOUND_QUALITY2_CACHE = "/etc/phaselimiter/resource/sound_quality2_cache"


@dataclass(frozen=True)
class DatabaseConfig:
    """
    Job store configuration.

    Attributes:
        path: Absolute path to the SQLite database file.
              Its parent directory is created at startup.
    """
    path: Path


@dataclass(frozen=True)
class OutputConfig:
    """
    Output directory configuration.

    Attributes:
        directory: Absolute path where logs/ and work/ are created.
    """
    directory: Path

    @property
    def work_directory(self) -> Path:
        """Scratch directory for downloads and masters."""
        return self.directory / "work"


@dataclass(frozen=True)
class StorageConfig:
    """
    Blob storage configuration.

    Attributes:
        type: Either "local" or "telegram".
        directory: Root directory for the local store.
        telegram_token: Bot token for the telegram store.
        telegram_chat: Chat id used as the storage bucket.
        proxy: Optional HTTP proxy URL for the telegram store.
    """
    type: str
    directory: Path | None = None
    telegram_token: str | None = None
    telegram_chat: int | None = None
    proxy: str | None = None


@dataclass(frozen=True)
class ProcessConfig:
    """
    Batch run configuration shared by every dispatcher-driven command.

    Attributes:
        concurrency: Maximum number of jobs in flight. Default: 1.
        page_size: Jobs fetched per database page. Default: 100.
        limit: Maximum jobs dispatched per run, 0 for no limit.
        timeout: Wall-clock budget in seconds, 0 for no timeout.
        error_threshold: Consecutive failures tolerated before aborting. Default: 10.
        short_fade_out: Fade-out (seconds) when the track ends naturally.
        long_fade_out: Fade-out (seconds) masking an abrupt ending.
    """
    concurrency: int = 1
    page_size: int = 100
    limit: int = 0
    timeout: float = 0.0
    error_threshold: int = 10
    short_fade_out: float = 1.0
    long_fade_out: float = 5.0


@dataclass(frozen=True)
class ToolsConfig:
    """
    External tool configuration.

    Attributes:
        ffmpeg: ffmpeg binary.
        aubio: aubio binary.
        phase_limiter: phase_limiter binary.
        sound_quality2_cache: Resource file required by phase_limiter.
        loudness: Reference loudness passed to phase_limiter.
        level: Mastering matching level passed to phase_limiter.
        bass_preservation: Enable phase_limiter's bass-preserving weighting.
        use_aubio_quiet: Segment silences with `aubio quiet` instead of
                         the built-in RMS envelope.
    """
    ffmpeg: str = "ffmpeg"
    aubio: str = "aubio"
    phase_limiter: str = "phase_limiter"
    sound_quality2_cache: str = DEFAULT_SOUND_QUALITY2_CACHE
    loudness: float = -9.0
    level: float = 1.0
    bass_preservation: bool = True
    use_aubio_quiet: bool = False


@dataclass(frozen=True)
class Config:
    """
    Complete application configuration.

    This is the main configuration object that aggregates all configuration
    sections. It is created by load_config() and should be treated as
    immutable (frozen dataclass).

    Example:
        config = load_config()
        print(f"Jobs in: {config.database.path}")
        print(f"Running {config.process.concurrency} jobs at a time")
    """
    database: DatabaseConfig
    output: OutputConfig
    storage: StorageConfig
    process: ProcessConfig
    tools: ToolsConfig


def load_config(config_path: Path | None = None) -> Config:
    """
    Load and validate configuration from config.yaml.

    Args:
        config_path: Optional explicit path to config file.
                     If None, looks for config.yaml in current working directory.

    Returns:
        Config: A frozen dataclass containing all configuration values.

    Raises:
        ConfigError: If the config file is not found, has invalid YAML syntax,
                     is missing required fields, or contains invalid values.

    Thread Safety:
        This function is NOT thread-safe. It should be called once at
        application startup, before any threads are created.
    """
    if config_path is None:
        config_path = Path.cwd() / CONFIG_FILENAME

    if not config_path.exists():
        raise ConfigError(
            f"Configuration file not found: {config_path}",
            details={"file_path": str(config_path)}
        )

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            content = f.read()
    except IOError as e:
        raise ConfigError(
            f"Failed to read configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML syntax in configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    if not isinstance(raw_config, dict):
        raise ConfigError(
            "Configuration file must contain a YAML dictionary",
            details={"file_path": str(config_path)}
        )

    return parse_config(raw_config)


def parse_config(raw_config: dict[str, Any]) -> Config:
    """
    Build a Config from an already-parsed YAML dictionary.

    Raises:
        ConfigError: If a section is malformed or a value is invalid.
    """
    _validate_config(raw_config)

    output_config = _parse_output_config(raw_config["output"])
    database_config = _parse_database_config(raw_config.get("database"), output_config)

    return Config(
        database=database_config,
        output=output_config,
        storage=_parse_storage_config(raw_config.get("storage")),
        process=_parse_process_config(raw_config.get("process")),
        tools=_parse_tools_config(raw_config.get("tools")),
    )


def _validate_config(raw_config: dict[str, Any]) -> None:
    """
    Validate the raw configuration dictionary structure.

    Raises:
        ConfigError: If the required 'output' section is missing, or
                     any present section is not a dictionary.
    """
    if "output" not in raw_config:
        raise ConfigError(
            "Missing required section: 'output'",
            details={"missing_section": "output"}
        )

    for section in ("output", "database", "storage", "process", "tools"):
        value = raw_config.get(section)
        if value is not None and not isinstance(value, dict):
            raise ConfigError(
                f"Section '{section}' must be a dictionary",
                details={"section": section}
            )


def _expand_path(value: Any, field: str) -> Path:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(
            f"'{field}' must be a non-empty string",
            details={"field": field}
        )
    return Path(value.strip()).expanduser().resolve()


def _parse_output_config(output_section: dict[str, Any]) -> OutputConfig:
    """
    Parse and validate the output configuration section.

    Expands ~ to home directory and converts to absolute Path.
    Does NOT create the directory (that happens at startup).
    """
    return OutputConfig(directory=_expand_path(output_section.get("directory"), "output.directory"))


def _parse_database_config(
    database_section: dict[str, Any] | None,
    output: OutputConfig
) -> DatabaseConfig:
    """Defaults to <output.directory>/jobs.db when no path is given."""
    if not database_section or database_section.get("path") is None:
        return DatabaseConfig(path=output.directory / "jobs.db")
    return DatabaseConfig(path=_expand_path(database_section["path"], "database.path"))


def _parse_storage_config(storage_section: dict[str, Any] | None) -> StorageConfig:
    """
    Parse and validate the storage configuration section.

    Raises:
        ConfigError: If the type is unknown or the fields required by
                     that type are missing.
    """
    if not storage_section:
        raise ConfigError(
            "Missing required section: 'storage'",
            details={"missing_section": "storage"}
        )

    storage_type = storage_section.get("type")
    if storage_type not in STORAGE_TYPES:
        raise ConfigError(
            f"'storage.type' must be one of {', '.join(STORAGE_TYPES)}",
            details={"field": "storage.type", "value": storage_type}
        )

    proxy = storage_section.get("proxy")
    if proxy is not None and not isinstance(proxy, str):
        raise ConfigError(
            "'storage.proxy' must be a string URL or null",
            details={"field": "storage.proxy"}
        )

    if storage_type == "local":
        directory = _expand_path(storage_section.get("directory"), "storage.directory")
        return StorageConfig(type="local", directory=directory, proxy=proxy)

    token = storage_section.get("telegram_token")
    if not isinstance(token, str) or not token.strip():
        raise ConfigError(
            "'storage.telegram_token' must be a non-empty string",
            details={"field": "storage.telegram_token"}
        )
    chat = storage_section.get("telegram_chat")
    if not isinstance(chat, int) or isinstance(chat, bool):
        raise ConfigError(
            "'storage.telegram_chat' must be an integer chat id",
            details={"field": "storage.telegram_chat", "value": chat}
        )
    return StorageConfig(
        type="telegram",
        telegram_token=token.strip(),
        telegram_chat=chat,
        proxy=proxy,
    )


def _positive_int(section: dict[str, Any], key: str, default: int, allow_zero: bool = False) -> int:
    value = section.get(key)
    if value is None:
        return default
    minimum = 0 if allow_zero else 1
    if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
        kind = "a non-negative" if allow_zero else "a positive"
        raise ConfigError(
            f"'process.{key}' must be {kind} integer",
            details={"field": f"process.{key}", "value": value}
        )
    return value


def _seconds(section: dict[str, Any], key: str, default: float, prefix: str = "process") -> float:
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
        raise ConfigError(
            f"'{prefix}.{key}' must be a non-negative number of seconds",
            details={"field": f"{prefix}.{key}", "value": value}
        )
    return float(value)


def _parse_process_config(process_section: dict[str, Any] | None) -> ProcessConfig:
    """
    Parse and validate the process configuration section.

    Applies defaults if section is missing or fields are not specified.

    Raises:
        ConfigError: If a fade-out is not positive or short_fade_out is
                     longer than long_fade_out.
    """
    section = process_section or {}
    defaults = ProcessConfig()
    config = ProcessConfig(
        concurrency=_positive_int(section, "concurrency", defaults.concurrency),
        page_size=_positive_int(section, "page_size", defaults.page_size),
        limit=_positive_int(section, "limit", defaults.limit, allow_zero=True),
        timeout=_seconds(section, "timeout", defaults.timeout),
        error_threshold=_positive_int(section, "error_threshold", defaults.error_threshold, allow_zero=True),
        short_fade_out=_seconds(section, "short_fade_out", defaults.short_fade_out),
        long_fade_out=_seconds(section, "long_fade_out", defaults.long_fade_out),
    )

    for key in ("short_fade_out", "long_fade_out"):
        if getattr(config, key) <= 0:
            raise ConfigError(
                f"'process.{key}' must be positive",
                details={"field": f"process.{key}", "value": getattr(config, key)}
            )
    if config.short_fade_out > config.long_fade_out:
        raise ConfigError(
            "'process.short_fade_out' cannot be longer than 'process.long_fade_out'",
            details={"short_fade_out": config.short_fade_out, "long_fade_out": config.long_fade_out}
        )
    return config


def _parse_tools_config(tools_section: dict[str, Any] | None) -> ToolsConfig:
    """Parse the tools section; every field is optional."""
    section = tools_section or {}
    defaults = ToolsConfig()

    values: dict[str, Any] = {}
    for key in ("ffmpeg", "aubio", "phase_limiter", "sound_quality2_cache"):
        value = section.get(key)
        if value is None:
            continue
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(
                f"'tools.{key}' must be a non-empty string",
                details={"field": f"tools.{key}"}
            )
        values[key] = value.strip()

    for key in ("loudness", "level"):
        value = section.get(key)
        if value is None:
            continue
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            raise ConfigError(
                f"'tools.{key}' must be a number",
                details={"field": f"tools.{key}", "value": value}
            )
        values[key] = float(value)

    for key in ("bass_preservation", "use_aubio_quiet"):
        value = section.get(key)
        if value is None:
            continue
        if not isinstance(value, bool):
            raise ConfigError(
                f"'tools.{key}' must be true or false",
                details={"field": f"tools.{key}", "value": value}
            )
        values[key] = value

    return ToolsConfig(**{**defaults.__dict__, **values})
