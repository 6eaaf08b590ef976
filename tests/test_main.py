"""Tests for application wiring and the long-running service."""

import asyncio
from collections.abc import Sequence
from pathlib import Path

import pytest

import modsync.main
from modsync.app import AppContext, create_app
from modsync.main import serve
from modsync.storage.database import Database
from modsync.storage.models import InstallResult, RemoteVersion
from modsync.storage.profile_store import ProfileStore
from modsync.utils.config import CalibrationConfig, Config, PathsConfig, UpdatesConfig


class StaticVersionSource:
    def __init__(self, latest: dict[int, int]):
        self.latest = latest
        self.queries: list[list[int]] = []

    async def get_latest_versions(self, mod_ids: Sequence[int]) -> dict[int, RemoteVersion]:
        self.queries.append(list(mod_ids))
        return {
            mod_id: RemoteVersion(mod_id=mod_id, latest_version_id=self.latest[mod_id])
            for mod_id in mod_ids
            if mod_id in self.latest
        }


class RecordingInstaller:
    def __init__(self):
        self.calls: list[tuple[int, int | None]] = []

    async def install_mod(self, mod_id, mods_path, on_progress=None, version_id=None) -> InstallResult:
        self.calls.append((mod_id, version_id))
        return InstallResult(success=True, mod_name=f"Mod {mod_id}")


def make_config(tmp_path: Path, mods_dir: Path | None) -> Config:
    data_dir = tmp_path / "data"
    return Config(
        paths=PathsConfig(
            data_dir=data_dir,
            mods_dir=mods_dir,
            database=data_dir / "profiles.db",
            cache_dir=data_dir / "cache",
            backups_dir=data_dir / "backups",
            auto_detect_mods_dir=False,
        ),
        calibration=CalibrationConfig(file_count=1, file_size_mb=1),
        updates=UpdatesConfig(startup_delay_seconds=0.05, backup_before_update=False),
    )


@pytest.fixture(autouse=True)
def no_bot_token(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep Telegram notifications off regardless of the environment."""
    monkeypatch.delenv("BOT_TOKEN", raising=False)


class TestCreateApp:
    """Tests for service wiring."""

    @pytest.mark.asyncio
    async def test_scheduler_drives_auto_update(self, tmp_path: Path) -> None:
        """Test the scheduler owns the auto-update gate when a mods directory is set."""
        ctx = await create_app(make_config(tmp_path, tmp_path / "Mods"))
        try:
            assert ctx.scheduler.auto_update is ctx.auto_update
            assert ctx.notifier is None
        finally:
            await ctx.close()

    @pytest.mark.asyncio
    async def test_no_auto_update_without_mods_dir(self, tmp_path: Path) -> None:
        """Test auto-update stays off when there is nowhere to install."""
        ctx = await create_app(make_config(tmp_path, None))
        try:
            assert ctx.scheduler.auto_update is None
        finally:
            await ctx.close()


class TestServe:
    """Tests for the long-running service."""

    @pytest.mark.asyncio
    async def test_auto_update_runs_when_check_is_due(
        self, tmp_path: Path, make_mod, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test startup with no recent check still installs pending updates."""
        config = make_config(tmp_path, tmp_path / "Mods")
        (tmp_path / "Mods").mkdir()

        database = Database(config.paths.database)
        await database.connect()
        store = ProfileStore(database)
        profile = await store.create_profile("Main")
        await store.add_mod_to_profile(profile.id, make_mod(1))
        await store.set_active_profile(profile.id)
        await database.close()

        source = StaticVersionSource({1: 900})
        installer = RecordingInstaller()
        apps: list[AppContext] = []

        async def create_app_with_fakes(cfg: Config) -> AppContext:
            ctx = await create_app(cfg)
            ctx.orchestrator.version_source = source
            ctx.orchestrator.installer = installer
            apps.append(ctx)
            return ctx

        monkeypatch.setattr(modsync.main, "create_app", create_app_with_fakes)

        service = asyncio.create_task(serve(config))
        async with asyncio.timeout(10):
            while not installer.calls:
                await asyncio.sleep(0.01)
        await apps[0].scheduler.stop()
        await service

        assert installer.calls == [(1, 900)]
        assert len(source.queries) == 1
        assert apps[0].auto_update.has_run(profile.id)
