"""Mod installer: download, cache, add to the active profile, materialize."""

import logging
import re
import shutil
import time
import uuid
import zipfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

from modsync.core.reconciler import DesiredEntry, ModSetReconciler
from modsync.mods.cache import ModCache
from modsync.mods.versions_api import ModVersionsAPI, VersionsAPIError
from modsync.storage.models import InstallResult, ProfileMod
from modsync.storage.profile_store import ProfileError, ProfileStore
from modsync.utils.paths import sanitize_mod_name

logger = logging.getLogger(__name__)

# on_progress(stage, percent, message)
ProgressCallback = Callable[[str, int, str], Any]

LOCAL_EXTENSIONS = {".package", ".ts4script", ".zip"}


def local_mod_name(file_name: str) -> str:
    """
    Derive a display name from an imported file name.

    "My Awesome Mod.package" -> "My_Awesome_Mod"
    """
    stem = re.sub(r"\.(package|ts4script|zip)$", "", file_name, flags=re.IGNORECASE)
    name = re.sub(r"[^\w\s-]", "_", stem.strip())
    name = re.sub(r"\s+", "_", name)
    name = re.sub(r"_+", "_", name).strip("_")
    return name or "Imported_Mod"


class ModInstaller:
    """
    Installs marketplace mods into the active profile.

    Downloads go to a temporary directory, are added to the shared
    cache and then materialized into the mods directory as a single
    managed entry. ``install_mod`` never raises.
    """

    SUPPORTED_EXTENSIONS = {".zip"}

    def __init__(
        self,
        api: ModVersionsAPI,
        cache: ModCache,
        profile_store: ProfileStore,
        reconciler: ModSetReconciler,
        temp_dir: Path,
    ):
        """
        Initialize mod installer.

        Args:
            api: Backend client
            cache: Shared mod cache
            profile_store: Profile registry
            reconciler: Mods directory reconciler
            temp_dir: Scratch directory for downloads
        """
        self.api = api
        self.cache = cache
        self.profile_store = profile_store
        self.reconciler = reconciler
        self.temp_dir = temp_dir

    async def install_mod(
        self,
        mod_id: int,
        mods_path: Path,
        on_progress: ProgressCallback | None = None,
        version_id: int | None = None,
    ) -> InstallResult:
        """
        Download and install a mod.

        Args:
            mod_id: Marketplace mod id
            mods_path: Game mods directory
            on_progress: Optional callback receiving (stage, percent, message)
            version_id: Specific file to install; the latest if omitted

        Returns:
            InstallResult; failures are reported, not raised
        """

        def report(stage: str, percent: int, message: str) -> None:
            if on_progress:
                on_progress(stage, percent, message)

        download_dir = self.temp_dir / f"mod_{mod_id}_{time.time_ns()}"
        try:
            report("downloading", 0, "Getting download URL...")
            info = await self.api.get_download_info(mod_id, version_id)

            extension = Path(info.file_name).suffix.lower()
            if extension not in self.SUPPORTED_EXTENSIONS:
                raise ValueError(f"Unsupported file format: {extension or info.file_name}")

            profile = await self.profile_store.get_active_profile()
            if not profile:
                raise ProfileError(
                    "No active profile. Please create or activate a profile before installing mods."
                )

            message = f"Downloading {info.file_name}..."
            report("downloading", 5, message)

            def on_download(done: int, total: int) -> None:
                if total:
                    report("downloading", 5 + min(60, 60 * done // total), message)

            archive = await self.api.download_file(info, download_dir, on_download)

            report("installing", 70, "Adding to profile cache...")
            cached = await self.cache.add_to_cache(
                archive, profile.id, mod_id=mod_id, file_name=info.file_name
            )

            previous = profile.find_mod(mod_id)
            profile_mod = ProfileMod(
                mod_id=mod_id,
                mod_name=info.mod_name,
                version_id=info.file_id,
                version_number=info.display_name or Path(info.file_name).stem,
                file_hash=cached.file_hash,
                file_name=info.file_name,
                cache_location=cached.file_hash,
            )
            await self.profile_store.add_mod_to_profile(profile.id, profile_mod)

            if mods_path.exists():
                report("installing", 85, "Linking mod into the mods directory...")
                await self._materialize(mods_path, profile_mod, previous)

            report("complete", 100, f"{info.mod_name} installed successfully!")
            logger.info(f"Installed {info.mod_name} ({info.file_name}) into profile {profile.name}")
            return InstallResult(success=True, mod_name=info.mod_name, files_installed=cached.files)

        except (VersionsAPIError, ProfileError, OSError, ValueError, zipfile.BadZipFile) as e:
            logger.error(f"Failed to install mod {mod_id}: {e}")
            report("error", 0, str(e) or "Installation failed")
            return InstallResult(success=False, error=str(e) or "Installation failed")

        finally:
            shutil.rmtree(download_dir, ignore_errors=True)

    async def import_local_mod(
        self,
        file_path: Path,
        profile_id: str,
        mods_path: Path | None = None,
    ) -> InstallResult:
        """
        Import a mod file from disk into a profile.

        The mod gets a fresh ``local_mod_id``. If the profile is active and
        ``mods_path`` exists, it is materialized right away. Never raises.
        """
        if file_path.suffix.lower() not in LOCAL_EXTENSIONS:
            return InstallResult(
                success=False,
                mod_name="",
                error=f"Unsupported file type: {file_path.suffix or file_path.name}",
            )

        mod_name = local_mod_name(file_path.name)
        try:
            profile = await self.profile_store.get_profile(profile_id)
            if not profile:
                raise ProfileError(f"Profile {profile_id} not found")

            local_mod_id = str(uuid.uuid4())
            cached = await self.cache.add_to_cache(
                file_path, profile_id, local_mod_id=local_mod_id, file_name=file_path.name
            )
            profile_mod = ProfileMod(
                local_mod_id=local_mod_id,
                mod_name=mod_name,
                file_hash=cached.file_hash,
                file_name=cached.file_name,
                cache_location=cached.file_hash,
            )
            await self.profile_store.add_mod_to_profile(profile_id, profile_mod)

            if profile.is_active and mods_path and mods_path.exists():
                await self._materialize(mods_path, profile_mod, None)
        except (ProfileError, OSError, ValueError, zipfile.BadZipFile) as e:
            logger.error(f"Failed to import {file_path.name}: {e}")
            return InstallResult(success=False, mod_name=mod_name, error=str(e))

        logger.info(f"Imported local mod {mod_name} into profile {profile.name}")
        return InstallResult(success=True, mod_name=mod_name, files_installed=cached.files)

    async def _materialize(self, mods_path: Path, mod: ProfileMod, previous: ProfileMod | None) -> None:
        dest_name = sanitize_mod_name(mod.mod_name)

        # A renamed mod must not leave its old folder behind
        if previous and sanitize_mod_name(previous.mod_name) != dest_name:
            try:
                await self.reconciler.remove_one(mods_path, sanitize_mod_name(previous.mod_name))
            except OSError as e:
                logger.warning(f"Failed to remove old folder of {previous.mod_name}: {e}")

        result = await self.reconciler.materialize_one(
            mods_path,
            DesiredEntry(source_path=self.cache.cache_path(mod.file_hash), dest_name=dest_name),
        )
        if not result.success:
            # The mod stays in the cache and the profile; the next switch retries
            for error in result.errors:
                logger.warning(f"Failed to materialize {error.target_path}: {error.error}")
