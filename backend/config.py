from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import BaseSettings
import json
import logging
from pathlib import Path

from recorder.command_builder import DEFAULT_ARGS_TEMPLATE, validate_args_template

# Set up logging
logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class Settings(BaseSettings):
    """App settings from environment (for container config)."""
    config_dir: str = "/config"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


env_settings = Settings()

# Config file location
CONFIG_DIR = Path(env_settings.config_dir)
CONFIG_FILE = CONFIG_DIR / "settings.json"


class RecorderSettings(BaseModel):
    """User-configurable recording scheduler settings."""
    # Where recordings are written (empty means <CONFIG_DIR>/recordings)
    recording_directory: str = ""
    # Recorder binary; empty means look ffmpeg up on PATH
    ffmpeg_path: str = ""
    # Argument template, must contain {url} and {output}; {title} is optional
    ffmpeg_args_template: str = DEFAULT_ARGS_TEMPLATE
    # IANA timezone used for the timestamp in output file names (empty = UTC)
    file_name_timezone: str = ""
    # Active session key (xtream_<host>_<port>_<user> or m3u_<playlist id>)
    session_key: str = "default"
    # Xtream account used for EPG fetches and stream URLs (optional)
    xtream_host: str = ""
    xtream_port: int = 80
    xtream_username: str = ""
    xtream_password: str = ""
    xtream_use_ssl: bool = False
    # Recording loop
    recording_poll_interval_seconds: int = 30
    start_tolerance_minutes: int = 2  # must exceed the poll interval
    missed_grace_minutes: int = 5
    overrun_grace_minutes: int = 5
    stop_grace_seconds: float = 5.0
    # Series loop
    series_refresh_interval_hours: float = 6
    series_initial_delay_seconds: int = 60
    epg_fetch_timeout_seconds: float = 30.0
    # Series matching
    time_pattern_tolerance_minutes: int = 15
    time_pattern_history: int = 3
    upcoming_window: int = 5
    # Extra rerun markers merged with the built-in list
    extra_rerun_markers: list[str] = []
    # Terminal recordings older than this are pruned on load
    retention_days: int = 7
    # Concurrency caps (0 = unlimited)
    max_manual_recordings: int = 1
    max_scheduled_recordings: int = 0
    # Journal entries older than this are purged at startup
    journal_retention_days: int = 30
    # Backend log level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    backend_log_level: str = "INFO"

    @field_validator("ffmpeg_args_template")
    @classmethod
    def _check_args_template(cls, value: str) -> str:
        problems = validate_args_template(value)
        if problems:
            raise ValueError("; ".join(problems))
        return value

    @field_validator("backend_log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        if value.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"backend_log_level must be one of {', '.join(VALID_LOG_LEVELS)}")
        return value.upper()

    @field_validator(
        "recording_poll_interval_seconds",
        "stop_grace_seconds",
        "series_refresh_interval_hours",
        "epg_fetch_timeout_seconds",
    )
    @classmethod
    def _check_positive(cls, value):
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @model_validator(mode="after")
    def _check_tolerance(self) -> "RecorderSettings":
        # A start window shorter than one poll could be skipped entirely
        if self.start_tolerance_minutes * 60 <= self.recording_poll_interval_seconds:
            raise ValueError("start_tolerance_minutes must be longer than the poll interval")
        return self

    def is_xtream_configured(self) -> bool:
        return bool(self.xtream_host and self.xtream_username and self.xtream_password)

    def get_recording_directory(self) -> Path:
        if self.recording_directory:
            return Path(self.recording_directory).expanduser()
        return CONFIG_DIR / "recordings"


# In-memory cache of settings
_cached_settings: RecorderSettings | None = None


def ensure_config_dir():
    """Ensure config directory exists."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    logger.info(f"Ensured config directory exists: {CONFIG_DIR}")


def load_settings() -> RecorderSettings:
    """Load settings from file or return defaults."""
    global _cached_settings

    if _cached_settings is not None:
        return _cached_settings

    logger.info(f"Loading settings from {CONFIG_FILE}")

    if CONFIG_FILE.exists():
        try:
            data = json.loads(CONFIG_FILE.read_text())
            _cached_settings = RecorderSettings(**data)
            logger.info("Loaded settings successfully")
            return _cached_settings
        except Exception as e:
            logger.error(f"Failed to load settings from {CONFIG_FILE}: {e}")

    logger.info("Using default settings (no config file found or failed to parse)")
    _cached_settings = RecorderSettings()
    return _cached_settings


def save_settings(settings: RecorderSettings) -> None:
    """Save settings to file."""
    global _cached_settings

    ensure_config_dir()

    try:
        settings_json = json.dumps(settings.model_dump(), indent=2)
        CONFIG_FILE.write_text(settings_json)
        _cached_settings = settings
        logger.info(f"Settings saved successfully to {CONFIG_FILE}")
    except Exception as e:
        logger.error(f"Failed to save settings to {CONFIG_FILE}: {e}")
        raise


def clear_settings_cache() -> None:
    """Clear the cached settings (forces reload)."""
    global _cached_settings
    _cached_settings = None
    logger.info("Settings cache cleared")


def get_settings() -> RecorderSettings:
    """Get the current recorder settings."""
    return load_settings()


def log_config_status():
    """Log the current configuration status for debugging."""
    logger.info(f"CONFIG_DIR: {CONFIG_DIR}")
    logger.info(f"CONFIG_FILE: {CONFIG_FILE}")
    logger.info(f"CONFIG_DIR exists: {CONFIG_DIR.exists()}")
    logger.info(f"CONFIG_FILE exists: {CONFIG_FILE.exists()}")


def get_log_level_from_env() -> str:
    """Get log level from the LOG_LEVEL environment variable or default to INFO."""
    return env_settings.log_level.upper()


def set_log_level(level: str) -> None:
    """Set the logging level for all loggers dynamically."""
    level_upper = level.upper()

    if level_upper not in VALID_LOG_LEVELS:
        logger.warning(f"Invalid log level '{level}', using INFO")
        level_upper = "INFO"

    numeric_level = getattr(logging, level_upper)

    # Set root logger level
    logging.getLogger().setLevel(numeric_level)

    # Set level for all existing loggers
    for logger_name in logging.root.manager.loggerDict:
        logger_obj = logging.getLogger(logger_name)
        logger_obj.setLevel(numeric_level)

    logger.info(f"Log level set to {level_upper}")
