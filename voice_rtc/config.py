"""Configuration management for voice-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (VOICE_RTC_SIGNALING_WS, VOICE_RTC_ICE_SERVERS, VOICE_RTC_LOG_LEVEL)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- voice-rtc.toml in current working directory
- ~/.voice-rtc/config.toml

Environment selection via VOICE_RTC_ENV (development, staging, production).
Defaults to production if not set.

Example voice-rtc.toml::

    [environments.production]
    signaling_websocket = "ws://relay.example.org:8080"
    ice_servers = ["stun:stun.l.google.com:19302"]

    [relay]
    host = "0.0.0.0"
    port = 8080

    [audio]
    capture_device = "default"
    capture_format = "pulse"
    playback_device = "default"
    playback_format = "pulse"

    [logging]
    level = "INFO"
    debug = false
"""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from loguru import logger


@dataclass
class AudioConfig:
    """Audio device settings, passed through to FFmpeg.

    Attributes:
        capture_device: Input device name (e.g. "default", "hw:0", ":0").
        capture_format: Input format (e.g. "pulse", "alsa", "avfoundation").
        playback_device: Output device or file. None discards remote audio.
        playback_format: Output format (e.g. "pulse", "alsa", "wav").
    """

    capture_device: str = "default"
    capture_format: Optional[str] = "pulse"
    playback_device: Optional[str] = None
    playback_format: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "AudioConfig":
        """Create AudioConfig from the TOML [audio] table.

        Unknown keys are ignored with a warning.
        """
        known = {"capture_device", "capture_format", "playback_device", "playback_format"}
        for key in data:
            if key not in known:
                logger.warning(f"Ignoring unknown [audio] setting: {key}")
        return cls(**{key: value for key, value in data.items() if key in known})


# Default signaling relay URL
DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"

DEFAULT_RELAY_HOST = "localhost"
DEFAULT_RELAY_PORT = 8080

DEFAULT_ICE_SERVERS = ["stun:stun.l.google.com:19302"]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Config:
    """Configuration manager for voice-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.ice_servers: List[str] = list(DEFAULT_ICE_SERVERS)
        self.relay_host: str = DEFAULT_RELAY_HOST
        self.relay_port: int = DEFAULT_RELAY_PORT
        self.relay_path: Optional[str] = None
        self.audio: AudioConfig = AudioConfig()
        self.log_level: str = "INFO"
        self.debug: bool = False
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from VOICE_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("VOICE_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid VOICE_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. voice-rtc.toml in current working directory
        2. ~/.voice-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "voice-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".voice-rtc" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Failed to load config file {config_file}: {e}. Using defaults.")
            return

        relay = self._config_data.get("relay", {})
        self.relay_host = relay.get("host", self.relay_host)
        self.relay_port = int(relay.get("port", self.relay_port))
        self.relay_path = relay.get("path", self.relay_path)

        self.audio = AudioConfig.from_dict(self._config_data.get("audio", {}))

        logging_config = self._config_data.get("logging", {})
        if "level" in logging_config:
            self.log_level = self._normalize_log_level(logging_config["level"])
        self.debug = bool(logging_config.get("debug", self.debug))

        # Apply environment-specific settings
        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})

        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(f"Loaded signaling_websocket from config: {self.signaling_websocket}")

        if "ice_servers" in env_config:
            self.ice_servers = list(env_config["ice_servers"])
            logger.debug(f"Loaded {len(self.ice_servers)} ICE server(s) from config")

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("VOICE_RTC_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(f"Overriding signaling_websocket from env: {self.signaling_websocket}")

        ice_override = os.getenv("VOICE_RTC_ICE_SERVERS")
        if ice_override is not None:
            self.ice_servers = [url.strip() for url in ice_override.split(",") if url.strip()]
            logger.info(f"Overriding ice_servers from env: {self.ice_servers}")

        level_override = os.getenv("VOICE_RTC_LOG_LEVEL")
        if level_override:
            self.log_level = self._normalize_log_level(level_override)

    def _normalize_log_level(self, level: str) -> str:
        level = str(level).upper()
        if level not in VALID_LOG_LEVELS:
            logger.warning(f"Invalid log level '{level}', using INFO")
            return "INFO"
        return level

    @property
    def effective_log_level(self) -> str:
        """Log level after applying the debug flag."""
        return "DEBUG" if self.debug else self.log_level

    def get_websocket_url(self, port: int = DEFAULT_RELAY_PORT) -> str:
        """Get the WebSocket signaling relay URL.

        Args:
            port: Port number to use if not specified in URL (default: 8080).

        Returns:
            WebSocket URL with port.
        """
        scheme, sep, rest = self.signaling_websocket.rpartition("//")
        host, slash, path = rest.partition("/")
        # Add port if not present
        if ":" not in host:
            host = f"{host}:{port}"
        return f"{scheme}{sep}{host}{slash}{path}"


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
