"""Storage modules for profile persistence."""

from modsync.storage.database import Database
from modsync.storage.models import Profile, ProfileMod, ProfileRegistry
from modsync.storage.profile_store import (
    ActiveProfileError,
    ProfileConflictError,
    ProfileError,
    ProfileNotFoundError,
    ProfileStore,
)

__all__ = [
    "Database",
    "Profile",
    "ProfileMod",
    "ProfileRegistry",
    "ProfileStore",
    "ProfileError",
    "ProfileConflictError",
    "ProfileNotFoundError",
    "ActiveProfileError",
]
