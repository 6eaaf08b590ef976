"""Backup manager with rotation for cached mod files."""

import asyncio
import logging
import re
import tarfile
from datetime import datetime
from pathlib import Path

from modsync.mods.cache import ModCache
from modsync.storage.models import BackupResult, ProfileMod

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE = re.compile(r"\s+")

# <prefix>_v<version>_YYYY-mm-dd_HH-MM-SS-ffffff.tar.gz
_TIMESTAMP_SUFFIX_LEN = len("2000-01-01_00-00-00-000000.tar.gz")


def _timestamp_key(path: Path) -> str:
    return path.name[-_TIMESTAMP_SUFFIX_LEN:]


def backup_prefix(mod_name: str) -> str:
    """Build the file-name prefix shared by all backups of a mod."""
    name = _UNSAFE_CHARS.sub("_", mod_name)
    return _WHITESPACE.sub("_", name)[:50]


class BackupManager:
    """
    Archives a mod's cached files before it is updated.

    Creates compressed tar.gz archives named
    ``<mod>_v<version>_<timestamp>.tar.gz`` and keeps the newest
    ``keep_count`` per mod. Never raises: failures are reported in the
    returned BackupResult.
    """

    def __init__(self, backups_dir: Path, cache: ModCache, keep_count: int = 3):
        """
        Initialize backup manager.

        Args:
            backups_dir: Directory to store backups
            cache: Mod cache holding the files to archive
            keep_count: Number of backups to keep per mod
        """
        self.backups_dir = backups_dir
        self.cache = cache
        self.keep_count = keep_count
        self._lock = asyncio.Lock()

    async def create_backup(self, mod: ProfileMod) -> BackupResult:
        """
        Create a backup of a mod's current files.

        Args:
            mod: Profile mod to back up

        Returns:
            BackupResult with the archive path or the error
        """
        source = self.cache.cache_path(mod.file_hash)
        if not source.exists():
            return BackupResult(success=False, error=f"Cache not found for mod: {mod.mod_name}")

        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S-%f")
        prefix = backup_prefix(mod.mod_name)
        version = mod.version_number or str(mod.version_id)
        backup_path = self.backups_dir / f"{prefix}_v{version}_{timestamp}.tar.gz"

        async with self._lock:
            loop = asyncio.get_event_loop()
            try:
                self.backups_dir.mkdir(parents=True, exist_ok=True)
                await loop.run_in_executor(None, self._create_archive, source, backup_path, prefix)
            except OSError as e:
                logger.error(f"Failed to back up {mod.mod_name}: {e}")
                backup_path.unlink(missing_ok=True)
                return BackupResult(success=False, error=f"Failed to create backup: {e}")

            await self.rotate_backups(mod.mod_name)

        logger.info(f"Created backup {backup_path.name} ({self.format_size(backup_path.stat().st_size)})")
        return BackupResult(success=True, backup_path=str(backup_path))

    def _create_archive(self, source_path: Path, dest_path: Path, arcname: str) -> None:
        """Create tar.gz archive of a directory."""
        with tarfile.open(dest_path, "w:gz") as tar:
            tar.add(source_path, arcname=arcname)

    async def rotate_backups(self, mod_name: str) -> list[Path]:
        """
        Delete backups of a mod beyond keep_count.

        Returns:
            List of deleted archives
        """
        backups = self.list_backups(mod_name)
        if len(backups) <= self.keep_count:
            return []

        deleted = []
        loop = asyncio.get_event_loop()
        for path in backups[self.keep_count :]:
            try:
                await loop.run_in_executor(None, path.unlink)
                deleted.append(path)
            except OSError as e:
                logger.warning(f"Failed to delete old backup {path.name}: {e}")

        return deleted

    def list_backups(self, mod_name: str) -> list[Path]:
        """List backups of a mod, newest first."""
        if not self.backups_dir.exists():
            return []
        prefix = backup_prefix(mod_name) + "_v"
        return sorted(
            (p for p in self.backups_dir.glob("*.tar.gz") if p.name.startswith(prefix)),
            key=_timestamp_key,
            reverse=True,
        )

    def list_all_backups(self) -> list[Path]:
        """List every backup archive, newest first."""
        if not self.backups_dir.exists():
            return []
        return sorted(self.backups_dir.glob("*.tar.gz"), key=_timestamp_key, reverse=True)

    async def delete_backup(self, backup_path: Path) -> bool:
        """Delete one backup archive. Returns False if it did not exist."""
        if not backup_path.exists():
            return False
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, backup_path.unlink)
        return True

    @staticmethod
    def format_size(size_bytes: int) -> str:
        """Format file size in human readable format."""
        for unit in ["B", "KB", "MB", "GB"]:
            if size_bytes < 1024:
                return f"{size_bytes:.1f} {unit}"
            size_bytes /= 1024
        return f"{size_bytes:.1f} TB"
