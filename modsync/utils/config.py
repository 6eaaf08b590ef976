"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import Literal, Self

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from modsync.utils.paths import detect_mods_dir

BASE_DIR = Path(__file__).parent.parent.parent


class TelegramConfig(BaseModel):
    """Telegram bot configuration for update notifications."""

    bot_token: str = ""
    admin_ids: list[int] = Field(default_factory=list)


class NotificationsConfig(BaseModel):
    """Notification settings."""

    updates_found: bool = True
    batch_complete: bool = True


class DeploymentConfig(BaseModel):
    """How profile mods are materialized into the mods directory."""

    mode: Literal["copy", "link"] = "copy"
    # Also remove directories that carry no ownership record (pre-manifest behaviour)
    remove_untagged: bool = False


class CalibrationConfig(BaseModel):
    """Disk benchmark settings."""

    file_count: int = Field(default=5, ge=1)
    file_size_mb: int = Field(default=50, ge=1)


class UpdatesConfig(BaseModel):
    """Update checking and installation preferences."""

    auto_update: bool = True
    backup_before_update: bool = True
    startup_delay_seconds: float = 5.0
    check_interval_hours: float = 6.0
    recheck_after_minutes: float = 30.0


class BackupsConfig(BaseModel):
    """Backup configuration."""

    keep_count: int = Field(default=3, ge=1)


class ApiConfig(BaseModel):
    """Mod marketplace backend configuration."""

    base_url: str = "http://localhost:3000"
    api_key: str = ""
    timeout: float = 30.0
    batch_size: int = Field(default=100, ge=1, le=100)


class PathsConfig(BaseModel):
    """File paths configuration."""

    data_dir: Path = Path("./data")
    mods_dir: Path | None = None
    # Look for the game's default mods folder when mods_dir is not set
    auto_detect_mods_dir: bool = True
    database: Path = Path("./data/profiles.db")
    cache_dir: Path = Path("./data/cache")
    backups_dir: Path = Path("./data/backups")

    @model_validator(mode="after")
    def resolve_paths(self) -> Self:
        """Convert relative paths to absolute."""
        if not self.data_dir.is_absolute():
            self.data_dir = (BASE_DIR / self.data_dir).resolve()
        if self.mods_dir is None and self.auto_detect_mods_dir:
            self.mods_dir = detect_mods_dir()
        elif self.mods_dir is not None and not self.mods_dir.is_absolute():
            self.mods_dir = (BASE_DIR / self.mods_dir).resolve()
        if not self.database.is_absolute():
            self.database = (BASE_DIR / self.database).resolve()
        if not self.cache_dir.is_absolute():
            self.cache_dir = (BASE_DIR / self.cache_dir).resolve()
        if not self.backups_dir.is_absolute():
            self.backups_dir = (BASE_DIR / self.backups_dir).resolve()
        return self

    @property
    def performance_file(self) -> Path:
        """Get path to the persisted disk performance config."""
        return self.data_dir / "performance.json"

    @property
    def update_state_file(self) -> Path:
        """Get path to the persisted update state."""
        return self.data_dir / "updates.json"

    @property
    def benchmark_dir(self) -> Path:
        """Get path to the scratch directory used by the disk benchmark."""
        return self.data_dir / "benchmark_temp"


class Config(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    deployment: DeploymentConfig = Field(default_factory=DeploymentConfig)
    calibration: CalibrationConfig = Field(default_factory=CalibrationConfig)
    updates: UpdatesConfig = Field(default_factory=UpdatesConfig)
    backups: BackupsConfig = Field(default_factory=BackupsConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    log_level: str = "INFO"

    @model_validator(mode="after")
    def apply_env_secrets(self) -> Self:
        """Override secrets from environment if set."""
        env_token = os.getenv("BOT_TOKEN")
        if env_token and not self.telegram.bot_token:
            self.telegram.bot_token = env_token
        env_key = os.getenv("CURSEFORGE_API_KEY")
        if env_key and not self.api.api_key:
            self.api.api_key = env_key
        return self


def _substitute_env(value: str) -> str:
    """Resolve a ``${VAR}`` placeholder from the environment."""
    if value.startswith("${") and value.endswith("}"):
        return os.getenv(value[2:-1], "")
    return value


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from YAML file and environment."""
    if config_path is None:
        # Check environment variable first
        env_path = os.getenv("MODSYNC_CONFIG")
        if env_path:
            config_path = Path(env_path)
        else:
            config_path = BASE_DIR / "config.yaml"

    config_data = {}
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

        # Handle ${VAR} substitution in secrets
        for section, key in (("telegram", "bot_token"), ("api", "api_key")):
            if section in config_data and isinstance(config_data[section].get(key), str):
                config_data[section][key] = _substitute_env(config_data[section][key])

    return Config(**config_data)
