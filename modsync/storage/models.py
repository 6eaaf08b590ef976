"""Data models using Pydantic."""

from datetime import datetime
from typing import Self

from pydantic import BaseModel, Field, field_validator, model_validator


class ProfileMod(BaseModel):
    """
    A mod referenced by a profile.

    Marketplace mods are identified by ``mod_id``; locally imported mods
    by ``local_mod_id``. Files live in the content-addressed cache under
    ``cache_location``.
    """

    mod_id: int | None = None
    local_mod_id: str | None = None
    mod_name: str
    version_id: int = 0
    version_number: str = ""
    file_hash: str
    file_name: str
    enabled: bool = True
    install_date: datetime = Field(default_factory=datetime.now)
    cache_location: str

    @model_validator(mode="after")
    def require_identity(self) -> Self:
        """Check that the mod has a marketplace or local identity."""
        if self.mod_id is None and not self.local_mod_id:
            raise ValueError("ProfileMod needs either mod_id or local_mod_id")
        return self

    @property
    def key(self) -> str:
        """Identity used for upserts within a profile."""
        if self.mod_id is not None:
            return str(self.mod_id)
        return self.local_mod_id or ""

    @property
    def is_local(self) -> bool:
        """Check if the mod was imported from a local file."""
        return self.mod_id is None


class Profile(BaseModel):
    """A named mod set."""

    id: str  # UUID
    name: str
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    icon_color: str | None = None
    mods: list[ProfileMod] = Field(default_factory=list)
    is_active: bool = False
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, tags: list[str]) -> list[str]:
        """Tags behave as a set; keep the first occurrence of each."""
        return list(dict.fromkeys(tags))

    @property
    def enabled_mods(self) -> list[ProfileMod]:
        """Get mods that should be materialized when the profile is active."""
        return [m for m in self.mods if m.enabled]

    def find_mod(self, mod_ref: int | str) -> ProfileMod | None:
        """Find a mod by marketplace id or local id."""
        key = str(mod_ref)
        return next((m for m in self.mods if m.key == key), None)


class PendingActivation(BaseModel):
    """Marker for a profile switch that has started but not finished."""

    profile_id: str | None
    started_at: datetime = Field(default_factory=datetime.now)


class ProfileRegistry(BaseModel):
    """Process-wide registry of profiles and the active pointer."""

    active_profile_id: str | None = None
    profiles: list[str] = Field(default_factory=list)
    last_sync: datetime = Field(default_factory=datetime.now)
    pending_activation: PendingActivation | None = None


class DiskPerformanceConfig(BaseModel):
    """Result of the one-time disk calibration."""

    pool_size: int = Field(ge=3, le=12)
    disk_speed_mbps: float
    last_benchmark: datetime = Field(default_factory=datetime.now)
    benchmark_version: int


class RemoteVersion(BaseModel):
    """Latest version of a mod as reported by the marketplace."""

    mod_id: int
    latest_version_id: int
    latest_version_name: str = ""
    file_name: str = ""
    file_date: datetime | None = None
    file_size: int = 0


class UpdateInfo(BaseModel):
    """An available update for an installed mod."""

    mod_id: int
    mod_name: str
    current_version_id: int = 0
    current_version_name: str = ""
    latest_version_id: int
    latest_version_name: str = ""
    latest_file_name: str = ""
    latest_file_size: int = 0
    checked_at: datetime = Field(default_factory=datetime.now)


class UpdateState(BaseModel):
    """Persisted update tracking document."""

    version: str = "1.0.0"
    last_check_timestamp: datetime | None = None
    available_updates: dict[int, UpdateInfo] = Field(default_factory=dict)


class UpdateCheckResult(BaseModel):
    """Result of checking a mod set for updates."""

    checked_count: int = 0
    updates_found: int = 0
    updates: list[UpdateInfo] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class ModUpdateResult(BaseModel):
    """Result of updating one mod."""

    mod_id: int
    mod_name: str
    success: bool
    error: str | None = None


class BatchUpdateResult(BaseModel):
    """Aggregated result of updating many mods."""

    successful: int = 0
    failed: int = 0
    results: list[ModUpdateResult] = Field(default_factory=list)
    # Breakdown of ``failed``
    reported_failures: int = 0
    raised_failures: int = 0


class InstallResult(BaseModel):
    """Result reported by the mod installer."""

    success: bool
    mod_name: str = "Unknown"
    files_installed: list[str] = Field(default_factory=list)
    error: str | None = None


class BackupResult(BaseModel):
    """Result reported by the backup service."""

    success: bool
    backup_path: str | None = None
    error: str | None = None
