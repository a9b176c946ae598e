"""
Configuration Management System
Handles relay settings from environment variables, .env and an optional YAML overlay
"""

import yaml
from pathlib import Path
from typing import Dict, Any, Optional, List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
import structlog

logger = structlog.get_logger()

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ServerConfig(BaseSettings):
    """HTTP server settings for the capture and admin API"""

    host: str = Field("127.0.0.1")
    port: int = Field(3000)

    # The dashboard is served from another origin during development
    cors_origins: List[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ]
    )
    request_body_limit_mb: int = Field(10)

    model_config = {
        "env_file": ".env",
        "env_prefix": "RELAY_",
        "extra": "ignore"
    }


class StorageConfig(BaseSettings):
    """Flat-file storage and retention settings"""

    data_directory: Path = Field(Path("db"))
    retention_days: int = Field(7)
    cleanup_interval_hours: float = Field(24)

    @field_validator("retention_days", mode='after')
    @classmethod
    def validate_retention(cls, v):
        """Zero disables retention cleanup, negative values are a mistake"""
        if v < 0:
            raise ValueError("retention_days must be >= 0")
        return v

    model_config = {
        "env_file": ".env",
        "env_prefix": "RELAY_",
        "extra": "ignore"
    }


class RelayConfig(BaseSettings):
    """Capture, interception and upstream forwarding behaviour"""

    # Initial values of the runtime toggles
    capture_enabled: bool = Field(True)
    intercept_enabled: bool = Field(False)

    # Origin calls made on auto-release and manual release
    upstream_timeout_seconds: float = Field(30.0)
    upstream_verify_ssl: bool = Field(True)
    max_concurrent_forwards: int = Field(20)

    @field_validator("upstream_timeout_seconds", "max_concurrent_forwards", mode='after')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    model_config = {
        "env_file": ".env",
        "env_prefix": "RELAY_",
        "extra": "ignore"
    }


class LoggingConfig(BaseSettings):
    """Log level and destinations"""

    log_level: str = Field("INFO")
    log_dir: Path = Field(Path("logs"))
    json_logs: bool = Field(False)

    @field_validator("log_level", mode='after')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Invalid log level. Choose from: {sorted(LOG_LEVELS)}")
        return level

    model_config = {
        "env_file": ".env",
        "env_prefix": "RELAY_",
        "extra": "ignore"
    }


class ApplicationConfig:
    """
    Main configuration class that combines all config sections
    This is what the rest of the application will use
    """

    def __init__(self, config_file: Optional[Path] = Path("config/default.yaml"), ensure_directories: bool = True):
        # YAML values win over environment variables, section by section
        self.custom_config = self._load_custom_config(config_file)

        self.server = ServerConfig(**self.custom_config.get("server", {}))
        self.storage = StorageConfig(**self.custom_config.get("storage", {}))
        self.relay = RelayConfig(**self.custom_config.get("relay", {}))
        self.logging = LoggingConfig(**self.custom_config.get("logging", {}))

        if ensure_directories:
            self._ensure_directories()

    def _load_custom_config(self, config_file: Optional[Path]) -> Dict[str, Any]:
        """Load user-defined configuration from a YAML file"""
        if config_file and config_file.exists():
            with open(config_file, 'r') as f:
                data = yaml.safe_load(f) or {}
            logger.debug("Loaded configuration overlay", file=str(config_file))
            return data
        return {}

    def _ensure_directories(self):
        """Ensure required directories exist for storage and logs"""
        for directory in (self.storage.data_directory, self.logging.log_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> Dict[str, Any]:
        """Flattened view used by the status endpoint"""
        return {
            "server": self.server.model_dump(mode="json"),
            "storage": self.storage.model_dump(mode="json"),
            "relay": self.relay.model_dump(mode="json"),
            "logging": self.logging.model_dump(mode="json"),
        }
