"""Content-addressed mod cache shared by all profiles."""

import asyncio
import hashlib
import json
import logging
import shutil
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CACHE_VERSION = "1.0.0"


class CachedMod(BaseModel):
    """An archive extracted into the cache."""

    file_hash: str
    mod_id: int | None = None
    local_mod_id: str | None = None
    file_name: str
    file_size: int = 0
    downloaded_at: datetime = Field(default_factory=datetime.now)
    used_by_profiles: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)


class CacheIndex(BaseModel):
    """Persisted cache index."""

    version: str = CACHE_VERSION
    entries: dict[str, CachedMod] = Field(default_factory=dict)
    last_cleanup: datetime = Field(default_factory=datetime.now)


@dataclass
class CleanupResult:
    """Outcome of pruning unused cache entries."""

    deleted: int = 0
    freed_bytes: int = 0
    errors: list[str] = field(default_factory=list)


def hash_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    """Compute the SHA-256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def unpack_archive(archive_path: Path, destination: Path) -> list[str]:
    """
    Unpack a downloaded mod into ``destination``.

    Zip archives are extracted; any other file is copied as-is.
    Returns the relative paths of the files written.

    Raises:
        ValueError: If the archive contains paths escaping ``destination``
    """
    destination.mkdir(parents=True, exist_ok=True)

    if not zipfile.is_zipfile(archive_path):
        shutil.copy2(archive_path, destination / archive_path.name)
        return [archive_path.name]

    root = destination.resolve()
    with zipfile.ZipFile(archive_path) as archive:
        for member in archive.namelist():
            if not (root / member).resolve().is_relative_to(root):
                raise ValueError(f"Unsafe path in archive: {member}")
        archive.extractall(destination)

    return sorted(
        str(p.relative_to(destination)).replace("\\", "/")
        for p in destination.rglob("*")
        if p.is_file()
    )


class ModCache:
    """
    Stores extracted mod files under ``<cache_dir>/<sha256>/files``.

    Identical archives are stored once and reference-counted by the
    profiles that use them.
    """

    INDEX_FILE = "cache.index.json"

    def __init__(self, cache_dir: Path):
        self.cache_dir = cache_dir
        self.index_path = cache_dir / self.INDEX_FILE
        self._lock = asyncio.Lock()

    def cache_path(self, file_hash: str) -> Path:
        """Get the directory holding the extracted files for ``file_hash``."""
        return self.cache_dir / file_hash / "files"

    def is_cached(self, file_hash: str) -> bool:
        """Check if extracted files exist for ``file_hash``."""
        return self.cache_path(file_hash).is_dir()

    async def add_to_cache(
        self,
        archive_path: Path,
        profile_id: str,
        mod_id: int | None = None,
        local_mod_id: str | None = None,
        file_name: str | None = None,
    ) -> CachedMod:
        """
        Add a downloaded archive to the cache and record ``profile_id`` as a user.

        Args:
            archive_path: Downloaded archive (zip or single mod file)
            profile_id: Profile that references the mod
            mod_id: Marketplace id, if any
            local_mod_id: Local id for imported mods
            file_name: Original file name (defaults to the archive name)

        Returns:
            The cache entry, existing or new
        """
        loop = asyncio.get_event_loop()
        file_hash = await loop.run_in_executor(None, hash_file, archive_path)

        async with self._lock:
            index = self._load_index()
            cached = index.entries.get(file_hash)

            if cached and self.is_cached(file_hash):
                if profile_id not in cached.used_by_profiles:
                    cached.used_by_profiles.append(profile_id)
                    self._save_index(index)
                return cached

            files_dir = self.cache_path(file_hash)
            try:
                files = await loop.run_in_executor(None, unpack_archive, archive_path, files_dir)
            except (OSError, ValueError, zipfile.BadZipFile):
                shutil.rmtree(files_dir.parent, ignore_errors=True)
                raise

            cached = CachedMod(
                file_hash=file_hash,
                mod_id=mod_id,
                local_mod_id=local_mod_id,
                file_name=file_name or archive_path.name,
                file_size=archive_path.stat().st_size,
                used_by_profiles=[profile_id],
                files=files,
            )
            index.entries[file_hash] = cached
            self._save_index(index)

        logger.info(f"Cached {cached.file_name} as {file_hash[:12]} ({len(files)} files)")
        return cached

    async def get_cached_mod(self, file_hash: str) -> CachedMod | None:
        """Get a cache entry by hash."""
        return self._load_index().entries.get(file_hash)

    async def add_profile_reference(self, file_hash: str, profile_id: str) -> None:
        """Record that ``profile_id`` uses ``file_hash``."""
        async with self._lock:
            index = self._load_index()
            cached = index.entries.get(file_hash)
            if cached and profile_id not in cached.used_by_profiles:
                cached.used_by_profiles.append(profile_id)
                self._save_index(index)

    async def remove_profile(self, profile_id: str) -> CleanupResult:
        """Drop ``profile_id`` from every entry and delete entries nobody uses anymore."""
        async with self._lock:
            index = self._load_index()
            modified = False
            for cached in index.entries.values():
                if profile_id in cached.used_by_profiles:
                    cached.used_by_profiles.remove(profile_id)
                    modified = True

            result = await self._delete_unused(index)
            if modified or result.deleted:
                self._save_index(index)
        return result

    async def cleanup_orphans(self) -> CleanupResult:
        """Delete entries not used by any profile."""
        async with self._lock:
            index = self._load_index()
            result = await self._delete_unused(index)
            if result.deleted:
                index.last_cleanup = datetime.now()
                self._save_index(index)
        return result

    async def get_stats(self) -> dict:
        """Get total size, entry count and referencing profiles."""
        index = self._load_index()
        profiles: set[str] = set()
        for cached in index.entries.values():
            profiles.update(cached.used_by_profiles)
        return {
            "total_size": sum(c.file_size for c in index.entries.values()),
            "total_mods": len(index.entries),
            "profiles": profiles,
        }

    async def _delete_unused(self, index: CacheIndex) -> CleanupResult:
        result = CleanupResult()
        loop = asyncio.get_event_loop()
        for file_hash, cached in list(index.entries.items()):
            if cached.used_by_profiles:
                continue
            try:
                entry_dir = self.cache_dir / file_hash
                if entry_dir.exists():
                    await loop.run_in_executor(None, shutil.rmtree, entry_dir)
            except OSError as e:
                logger.error(f"Failed to delete cache entry {file_hash}: {e}")
                result.errors.append(f"{file_hash}: {e}")
                continue
            del index.entries[file_hash]
            result.deleted += 1
            result.freed_bytes += cached.file_size
        return result

    def _load_index(self) -> CacheIndex:
        if not self.index_path.exists():
            return CacheIndex()
        try:
            with open(self.index_path, encoding="utf-8") as f:
                return CacheIndex.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Failed to read cache index, starting empty: {e}")
            return CacheIndex()

    def _save_index(self, index: CacheIndex) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        with open(self.index_path, "w", encoding="utf-8") as f:
            f.write(index.model_dump_json(indent=2))
