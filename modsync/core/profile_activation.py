"""Profile switching with a durable pending-activation marker."""

import logging
from pathlib import Path

from modsync.core.reconciler import DesiredEntry, ModSetReconciler, ReconcileResult
from modsync.mods.cache import ModCache
from modsync.storage.models import Profile
from modsync.storage.profile_store import ProfileStore
from modsync.utils.paths import sanitize_mod_name

logger = logging.getLogger(__name__)


class ProfileActivator:
    """
    Switches the active profile and rebuilds the mods directory to match.

    A marker is written before anything changes and cleared only after
    the mods directory has been reconciled, so a crash in between is
    detected and finished on the next start.
    """

    def __init__(
        self,
        profile_store: ProfileStore,
        reconciler: ModSetReconciler,
        cache: ModCache,
        mods_path: Path | None,
    ):
        self.profile_store = profile_store
        self.reconciler = reconciler
        self.cache = cache
        self.mods_path = mods_path

    def desired_entries(self, profile: Profile | None) -> list[DesiredEntry]:
        """Map a profile's enabled mods to mods-directory entries."""
        if profile is None:
            return []
        return [
            DesiredEntry(
                source_path=self.cache.cache_path(mod.file_hash),
                dest_name=sanitize_mod_name(mod.mod_name),
            )
            for mod in profile.enabled_mods
        ]

    async def switch_profile(self, profile_id: str | None) -> ReconcileResult:
        """
        Activate ``profile_id`` (or deactivate everything with None).

        Raises:
            ValueError: If no mods directory is configured
            ProfileNotFoundError: If the profile does not exist
        """
        mods_path = self._require_mods_path()

        await self.profile_store.begin_activation(profile_id)
        await self.profile_store.set_active_profile(profile_id)
        result = await self._reconcile(mods_path, profile_id)
        await self.profile_store.complete_activation()
        await self.profile_store.refresh()
        return result

    async def resume_pending_activation(self) -> ReconcileResult | None:
        """
        Finish a switch interrupted by a crash.

        Returns:
            The reconcile result, or None if nothing was pending
        """
        pending = await self.profile_store.get_pending_activation()
        if pending is None:
            return None

        mods_path = self._require_mods_path()
        logger.warning(
            f"Resuming interrupted activation of profile {pending.profile_id} "
            f"(started {pending.started_at:%Y-%m-%d %H:%M:%S})"
        )

        profile_id = pending.profile_id
        if profile_id is not None and await self.profile_store.get_profile(profile_id) is None:
            logger.warning(f"Pending profile {profile_id} no longer exists, deactivating")
            profile_id = None

        await self.profile_store.set_active_profile(profile_id)
        result = await self._reconcile(mods_path, profile_id)
        await self.profile_store.complete_activation()
        await self.profile_store.refresh()
        return result

    async def _reconcile(self, mods_path: Path, profile_id: str | None) -> ReconcileResult:
        profile = await self.profile_store.get_profile(profile_id) if profile_id else None
        desired = self.desired_entries(profile)

        if profile is None:
            result = await self.reconciler.deactivate(mods_path)
            logger.info(f"Deactivated all profiles in {mods_path}")
            return result

        result = await self.reconciler.activate_profile(mods_path, desired)
        if result.manifest_error:
            logger.error(result.manifest_error)
        if not await self.reconciler.verify(mods_path, result.created):
            logger.warning(f"Mods directory {mods_path} does not match profile {profile.name}")

        if result.success:
            logger.info(f"Switched to profile {profile.name} ({result.created} mods)")
        else:
            for error in result.errors:
                logger.error(f"Failed to materialize {error.target_path}: {error.error}")
        return result

    def _require_mods_path(self) -> Path:
        if self.mods_path is None:
            raise ValueError("Mods directory is not configured (paths.mods_dir)")
        return self.mods_path
