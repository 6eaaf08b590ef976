"""Construction and wiring of application-lifetime services."""

import logging

from aiogram import Bot

from modsync.core.backup_manager import BackupManager
from modsync.core.disk_performance import MIB, DiskThroughputCalibrator
from modsync.core.profile_activation import ProfileActivator
from modsync.core.reconciler import ModSetReconciler
from modsync.core.update_orchestrator import AutoUpdateGate, UpdateOrchestrator, UpdateScheduler
from modsync.core.update_state import UpdateStateStore
from modsync.mods.cache import CleanupResult, ModCache
from modsync.mods.installer import ModInstaller
from modsync.mods.versions_api import ModVersionsAPI
from modsync.notifications import UpdateNotifier
from modsync.storage.database import Database
from modsync.storage.profile_store import ProfileStore
from modsync.utils.config import Config
from modsync.utils.filesystem import DeploymentMode

logger = logging.getLogger(__name__)


class AppContext:
    """Shared services for the lifetime of the process."""

    def __init__(
        self,
        config: Config,
        database: Database,
        profile_store: ProfileStore,
        calibrator: DiskThroughputCalibrator,
        cache: ModCache,
        reconciler: ModSetReconciler,
        activator: ProfileActivator,
        api: ModVersionsAPI,
        installer: ModInstaller,
        backups: BackupManager,
        orchestrator: UpdateOrchestrator,
        auto_update: AutoUpdateGate,
        scheduler: UpdateScheduler,
    ):
        self.config = config
        self.database = database
        self.profile_store = profile_store
        self.calibrator = calibrator
        self.cache = cache
        self.reconciler = reconciler
        self.activator = activator
        self.api = api
        self.installer = installer
        self.backups = backups
        self.orchestrator = orchestrator
        self.auto_update = auto_update
        self.scheduler = scheduler
        self.notifier: UpdateNotifier | None = None

    async def delete_profile(self, profile_id: str) -> CleanupResult:
        """Delete a profile and release the cache entries only it used."""
        await self.profile_store.delete_profile(profile_id)
        return await self.cache.remove_profile(profile_id)

    async def close(self) -> None:
        """Release network and database resources."""
        await self.scheduler.stop()
        await self.api.close()
        if self.notifier:
            await self.notifier.close()
        await self.database.close()


async def create_app(config: Config) -> AppContext:
    """
    Build every service from configuration.

    Args:
        config: Application configuration

    Returns:
        Connected AppContext
    """
    paths = config.paths
    paths.data_dir.mkdir(parents=True, exist_ok=True)
    paths.database.parent.mkdir(parents=True, exist_ok=True)

    database = Database(paths.database)
    await database.connect()

    profile_store = ProfileStore(database)
    await profile_store.refresh()

    calibrator = DiskThroughputCalibrator(
        config_path=paths.performance_file,
        benchmark_dir=paths.benchmark_dir,
        file_count=config.calibration.file_count,
        file_size=config.calibration.file_size_mb * MIB,
    )

    cache = ModCache(paths.cache_dir)
    reconciler = ModSetReconciler(
        mode=DeploymentMode(config.deployment.mode),
        pool_size=calibrator.get_pool_size,
        remove_untagged=config.deployment.remove_untagged,
    )
    activator = ProfileActivator(profile_store, reconciler, cache, paths.mods_dir)

    api = ModVersionsAPI(
        base_url=config.api.base_url,
        api_key=config.api.api_key or None,
        timeout=config.api.timeout,
        batch_size=config.api.batch_size,
    )
    installer = ModInstaller(
        api=api,
        cache=cache,
        profile_store=profile_store,
        reconciler=reconciler,
        temp_dir=paths.data_dir / "downloads",
    )
    backups = BackupManager(paths.backups_dir, cache, keep_count=config.backups.keep_count)

    orchestrator = UpdateOrchestrator(
        profile_store=profile_store,
        state_store=UpdateStateStore(paths.update_state_file),
        version_source=api,
        installer=installer,
        pool_size=calibrator.get_pool_size,
        mods_path=paths.mods_dir,
        backup_service=backups,
        backup_before_update=config.updates.backup_before_update,
    )
    auto_update = AutoUpdateGate(
        orchestrator,
        enabled=config.updates.auto_update,
        delay_seconds=config.updates.startup_delay_seconds,
    )
    scheduler = UpdateScheduler(
        orchestrator,
        interval_hours=config.updates.check_interval_hours,
        initial_delay_seconds=config.updates.startup_delay_seconds,
        recheck_after_minutes=config.updates.recheck_after_minutes,
        auto_update=auto_update if paths.mods_dir is not None else None,
    )

    ctx = AppContext(
        config=config,
        database=database,
        profile_store=profile_store,
        calibrator=calibrator,
        cache=cache,
        reconciler=reconciler,
        activator=activator,
        api=api,
        installer=installer,
        backups=backups,
        orchestrator=orchestrator,
        auto_update=auto_update,
        scheduler=scheduler,
    )

    if config.telegram.bot_token:
        ctx.notifier = UpdateNotifier(
            bot=Bot(token=config.telegram.bot_token),
            config=config,
            orchestrator=orchestrator,
        )
    else:
        logger.info("Telegram bot token not set, update notifications disabled")

    return ctx
