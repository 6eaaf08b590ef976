"""Profile registry: CRUD for named mod sets and the single active profile."""

import asyncio
import logging
import random
import sqlite3
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from modsync.storage.database import Database
from modsync.storage.models import PendingActivation, Profile, ProfileMod, ProfileRegistry

logger = logging.getLogger(__name__)

PROFILE_COLORS = [
    "#46C89B",  # Green
    "#FF6B6B",  # Red
    "#4ECDC4",  # Teal
    "#FFD93D",  # Yellow
    "#A8E6CF",  # Mint
    "#FF8B94",  # Pink
    "#FFB3BA",  # Light pink
    "#A0C4FF",  # Light blue
]

# Fields update_profile() may change; identity and activation are managed elsewhere
MUTABLE_FIELDS = {"name", "description", "tags", "icon_color", "mods"}


class ProfileError(Exception):
    """Base class for profile validation errors."""


class ProfileConflictError(ProfileError):
    """Raised when a profile name is already taken."""


class ProfileNotFoundError(ProfileError):
    """Raised when a profile or a mod within it does not exist."""


class ActiveProfileError(ProfileError):
    """Raised when an operation is not allowed on the active profile."""


class ProfileStore:
    """
    Manages profiles and the active-profile pointer.

    At most one profile is active at any time. Activating a profile here
    only moves the logical pointer; the mods directory is reconciled
    separately (see ``ProfileActivator``).
    """

    def __init__(self, database: Database):
        self.database = database
        self.profiles: list[Profile] = []
        self.active_profile: Profile | None = None
        # Serializes name checks with the writes that depend on them
        self._names_lock = asyncio.Lock()

    async def create_profile(
        self,
        name: str,
        description: str = "",
        tags: Iterable[str] = (),
    ) -> Profile:
        """
        Create a new, empty profile.

        Raises:
            ProfileConflictError: If a profile with exactly this name exists
        """
        async with self._names_lock:
            if await self.database.get_profile_by_name(name):
                raise ProfileConflictError(f'Profile "{name}" already exists')

            now = datetime.now()
            profile = Profile(
                id=str(uuid.uuid4()),
                name=name,
                description=description,
                tags=list(tags),
                icon_color=random.choice(PROFILE_COLORS),
                created_at=now,
                updated_at=now,
            )
            try:
                await self.database.create_profile(profile)
            except sqlite3.IntegrityError as e:
                # Another connection took the name between the check and the insert
                raise ProfileConflictError(f'Profile "{name}" already exists') from e
        logger.info(f"Created profile {profile.name} ({profile.id})")
        return profile

    async def get_profile(self, profile_id: str) -> Profile | None:
        """Get a profile by ID."""
        return await self.database.get_profile(profile_id)

    async def get_all_profiles(self) -> list[Profile]:
        """Get all profiles sorted by name."""
        return await self.database.get_all_profiles()

    async def get_active_profile(self) -> Profile | None:
        """Get the active profile, if any."""
        registry = await self.database.get_registry()
        if not registry.active_profile_id:
            return None
        return await self.database.get_profile(registry.active_profile_id)

    async def get_registry(self) -> ProfileRegistry:
        """Get the registry document."""
        return await self.database.get_registry()

    async def update_profile(self, profile_id: str, updates: Mapping[str, Any]) -> Profile:
        """
        Apply a partial update to a profile.

        ``id``, ``created_at`` and ``is_active`` are ignored if present.

        Raises:
            ProfileNotFoundError: If the profile does not exist
            ProfileConflictError: If renaming to a name used by another profile
        """
        async with self._names_lock:
            profile = await self._require_profile(profile_id)

            changes = {k: v for k, v in updates.items() if k in MUTABLE_FIELDS}
            new_name = changes.get("name")
            if new_name is not None and new_name != profile.name:
                other = await self.database.get_profile_by_name(new_name)
                if other and other.id != profile_id:
                    raise ProfileConflictError(f'Profile "{new_name}" already exists')

            updated = Profile.model_validate(
                {
                    **profile.model_dump(),
                    **changes,
                    "id": profile.id,
                    "created_at": profile.created_at,
                    "is_active": profile.is_active,
                    "updated_at": datetime.now(),
                }
            )
            try:
                await self.database.update_profile(updated)
            except sqlite3.IntegrityError as e:
                raise ProfileConflictError(f'Profile "{updated.name}" already exists') from e
        return updated

    async def delete_profile(self, profile_id: str) -> None:
        """
        Delete a profile.

        Raises:
            ActiveProfileError: If the profile is currently active
            ProfileNotFoundError: If the profile does not exist
        """
        registry = await self.database.get_registry()
        if registry.active_profile_id == profile_id:
            raise ActiveProfileError("Cannot delete the active profile. Deactivate it first.")

        await self._require_profile(profile_id)
        await self.database.delete_profile(profile_id)
        logger.info(f"Deleted profile {profile_id}")

    async def add_mod_to_profile(self, profile_id: str, mod: ProfileMod) -> None:
        """Add a mod to a profile, replacing an existing entry with the same identity."""
        await self._require_profile(profile_id)
        await self.database.upsert_profile_mod(profile_id, mod, datetime.now())

    async def remove_mod_from_profile(self, profile_id: str, mod_ref: int | str) -> bool:
        """Remove a mod by marketplace id or local id. Returns True if it was present."""
        await self._require_profile(profile_id)
        return await self.database.delete_profile_mod(profile_id, str(mod_ref), datetime.now())

    async def toggle_mod_in_profile(self, profile_id: str, mod_ref: int | str, enabled: bool) -> None:
        """
        Enable or disable a mod within a profile.

        Raises:
            ProfileNotFoundError: If the profile or the mod does not exist
        """
        profile = await self._require_profile(profile_id)
        mod = profile.find_mod(mod_ref)
        if not mod:
            raise ProfileNotFoundError(f"Mod {mod_ref} not found in profile {profile_id}")

        await self.database.upsert_profile_mod(
            profile_id, mod.model_copy(update={"enabled": enabled}), datetime.now()
        )

    async def set_active_profile(self, profile_id: str | None) -> None:
        """
        Make ``profile_id`` the only active profile, or deactivate all with None.

        Raises:
            ProfileNotFoundError: If the profile does not exist
        """
        if profile_id is not None:
            await self._require_profile(profile_id)

        await self.database.set_active_profile(profile_id)
        logger.info(f"Active profile set to {profile_id}")

    async def refresh(self) -> list[Profile]:
        """Reload the cached profile list and active profile."""
        self.profiles = await self.database.get_all_profiles()
        self.active_profile = next((p for p in self.profiles if p.is_active), None)
        await self.database.touch_last_sync()
        return self.profiles

    # ============== Activation Marker ==============

    async def begin_activation(self, profile_id: str | None) -> PendingActivation:
        """Durably record that a switch to ``profile_id`` is in progress."""
        pending = PendingActivation(profile_id=profile_id)
        await self.database.set_pending_activation(pending)
        return pending

    async def complete_activation(self) -> None:
        """Clear the pending-activation marker."""
        await self.database.set_pending_activation(None)

    async def get_pending_activation(self) -> PendingActivation | None:
        """Get the marker left by an interrupted switch, if any."""
        registry = await self.database.get_registry()
        return registry.pending_activation

    async def _require_profile(self, profile_id: str) -> Profile:
        profile = await self.database.get_profile(profile_id)
        if not profile:
            raise ProfileNotFoundError(f"Profile {profile_id} not found")
        return profile
