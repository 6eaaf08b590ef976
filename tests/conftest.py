"""Pytest configuration and fixtures."""

import hashlib
from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest
import pytest_asyncio

from modsync.mods.cache import ModCache
from modsync.storage.database import Database
from modsync.storage.models import ProfileMod
from modsync.storage.profile_store import ProfileStore


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """Provide a connected database in a temporary directory.

    Yields:
        Database: Connected database with empty tables.
    """
    db = Database(tmp_path / "data" / "profiles.db")
    await db.connect()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def profile_store(database: Database) -> ProfileStore:
    """Provide a profile store backed by the temporary database."""
    return ProfileStore(database)


@pytest.fixture
def cache(tmp_path: Path) -> ModCache:
    """Provide an empty mod cache."""
    return ModCache(tmp_path / "cache")


@pytest.fixture
def make_mod() -> Callable[..., ProfileMod]:
    """Provide a factory for marketplace ProfileMods.

    The file hash is derived from the mod name so identical names share
    a cache entry.
    """

    def factory(mod_id: int, name: str | None = None, **overrides) -> ProfileMod:
        name = name or f"Mod {mod_id}"
        file_hash = hashlib.sha256(name.encode()).hexdigest()
        data = {
            "mod_id": mod_id,
            "mod_name": name,
            "version_id": 100 + mod_id,
            "version_number": "1.0.0",
            "file_hash": file_hash,
            "file_name": f"{name}.zip",
            "cache_location": file_hash,
        }
        data.update(overrides)
        return ProfileMod(**data)

    return factory


@pytest.fixture
def populate_cache(cache: ModCache) -> Callable[[ProfileMod], Path]:
    """Provide a helper that writes fake extracted files for a mod into the cache."""

    def populate(mod: ProfileMod) -> Path:
        files_dir = cache.cache_path(mod.file_hash)
        files_dir.mkdir(parents=True, exist_ok=True)
        (files_dir / f"{mod.mod_name}.package").write_text(f"contents of {mod.mod_name}")
        return files_dir

    return populate
