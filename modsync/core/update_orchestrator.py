"""Update checks and single/batch update cycles."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from modsync.core.concurrency import Settled, concurrent_map
from modsync.core.update_state import UpdateStateStore
from modsync.storage.models import (
    BackupResult,
    BatchUpdateResult,
    InstallResult,
    ModUpdateResult,
    ProfileMod,
    RemoteVersion,
    UpdateCheckResult,
    UpdateInfo,
)
from modsync.storage.profile_store import ProfileStore

logger = logging.getLogger(__name__)

NO_MODS_ERROR = "No active profile or no mods installed"


class VersionSource(Protocol):
    """Remote batch version query."""

    async def get_latest_versions(self, mod_ids: Sequence[int]) -> dict[int, RemoteVersion]: ...


class Installer(Protocol):
    """Downloads a mod version into the cache and the active profile."""

    async def install_mod(
        self,
        mod_id: int,
        mods_path: Path,
        on_progress: Callable[[str, int, str], Any] | None = None,
        version_id: int | None = None,
    ) -> InstallResult: ...


class BackupService(Protocol):
    """Archives a mod's current files before it is replaced."""

    async def create_backup(self, mod: ProfileMod) -> BackupResult: ...


class OrchestratorPhase(str, Enum):
    """What the orchestrator is currently doing."""

    IDLE = "idle"
    CHECKING = "checking"
    UPDATING_ONE = "updating_one"
    UPDATING_ALL = "updating_all"


class OrchestratorBusyError(RuntimeError):
    """Raised when a check or update starts while another one is running."""

    def __init__(self, current: OrchestratorPhase, requested: OrchestratorPhase):
        super().__init__(f"Cannot start {requested.value} while {current.value}")
        self.current = current
        self.requested = requested


class OutcomeKind(str, Enum):
    """How a single install ended."""

    SUCCEEDED = "succeeded"
    REPORTED_FAILURE = "reported_failure"
    RAISED_FAILURE = "raised_failure"


@dataclass(frozen=True)
class InstallOutcome:
    """
    Normalized result of one install within a batch.

    The installer can fail in two ways: by returning an unsuccessful
    InstallResult, or by raising. Both are folded into this one type.
    """

    kind: OutcomeKind
    mod_id: int
    mod_name: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCEEDED

    @classmethod
    def from_settled(cls, update: UpdateInfo, settled: Settled[InstallResult]) -> "InstallOutcome":
        """Classify a settled install."""
        if not settled.ok:
            return cls(
                kind=OutcomeKind.RAISED_FAILURE,
                mod_id=update.mod_id,
                mod_name=update.mod_name,
                error=str(settled.error) or type(settled.error).__name__,
            )

        result = settled.value
        if result is not None and result.success:
            return cls(kind=OutcomeKind.SUCCEEDED, mod_id=update.mod_id, mod_name=update.mod_name)

        return cls(
            kind=OutcomeKind.REPORTED_FAILURE,
            mod_id=update.mod_id,
            mod_name=update.mod_name,
            error=(result.error if result else None) or "Failed to update mod",
        )

    def to_result(self) -> ModUpdateResult:
        return ModUpdateResult(
            mod_id=self.mod_id,
            mod_name=self.mod_name,
            success=self.ok,
            error=self.error,
        )


class UpdateOrchestrator:
    """
    Checks the active profile for updates and installs them.

    One operation at a time: starting a check or update while another
    is running raises OrchestratorBusyError. Per-mod failures never
    abort a batch; results are always returned, not raised.
    """

    def __init__(
        self,
        profile_store: ProfileStore,
        state_store: UpdateStateStore,
        version_source: VersionSource,
        installer: Installer,
        pool_size: Callable[[], Awaitable[int]],
        mods_path: Path | None,
        backup_service: BackupService | None = None,
        backup_before_update: bool = True,
    ):
        """
        Initialize the orchestrator.

        Args:
            profile_store: Source of the active profile and target of refreshes
            state_store: Persisted pending-update map
            version_source: Remote version query
            installer: Mod installer
            pool_size: Async provider of the batch pool size
            mods_path: Game mods directory
            backup_service: Optional backup collaborator
            backup_before_update: Back up each mod before replacing it
        """
        self.profile_store = profile_store
        self.state_store = state_store
        self.version_source = version_source
        self.installer = installer
        self._pool_size = pool_size
        self.mods_path = mods_path
        self.backup_service = backup_service
        self.backup_before_update = backup_before_update

        self._phase = OrchestratorPhase.IDLE

        # Event callbacks
        self._on_updates_found: list[Callable[[UpdateCheckResult], Any]] = []
        self._on_batch_complete: list[Callable[[BatchUpdateResult], Any]] = []

    @property
    def phase(self) -> OrchestratorPhase:
        return self._phase

    @property
    def is_busy(self) -> bool:
        return self._phase != OrchestratorPhase.IDLE

    @property
    def update_count(self) -> int:
        """Number of mods with a pending update."""
        return len(self.state_store.state.available_updates)

    @property
    def last_check(self) -> datetime | None:
        return self.state_store.last_check

    # ============== Checking ==============

    async def check_for_updates(self, profile_mods: list[ProfileMod] | None = None) -> UpdateCheckResult:
        """
        Query the latest version of every marketplace mod and persist the findings.

        Args:
            profile_mods: Mods to check (defaults to the active profile's mods)

        Returns:
            Check summary; query failures and a missing active profile
            are reported in ``errors``

        Raises:
            OrchestratorBusyError: If another operation is running
        """
        async with self._enter(OrchestratorPhase.CHECKING):
            result = UpdateCheckResult()
            if profile_mods is None:
                profile = await self.profile_store.get_active_profile()
                if profile is None or not profile.mods:
                    result.errors.append(NO_MODS_ERROR)
                    return result
                profile_mods = profile.mods

            mods = [m for m in profile_mods if m.mod_id is not None and m.mod_id > 0]
            if not mods:
                return result

            mod_ids = list(dict.fromkeys(m.mod_id for m in mods))
            try:
                latest_versions = await self.version_source.get_latest_versions(mod_ids)
            except Exception as e:
                logger.error(f"Update check failed: {e}")
                result.errors.append(str(e) or "Failed to check for updates")
                return result

            result.checked_count = len(mod_ids)
            now = datetime.now()
            updates: dict[int, UpdateInfo] = {}
            for mod in mods:
                latest = latest_versions.get(mod.mod_id)
                if latest is None or latest.latest_version_id == mod.version_id:
                    continue
                updates[mod.mod_id] = UpdateInfo(
                    mod_id=mod.mod_id,
                    mod_name=mod.mod_name,
                    current_version_id=mod.version_id,
                    current_version_name=mod.version_number,
                    latest_version_id=latest.latest_version_id,
                    latest_version_name=latest.latest_version_name,
                    latest_file_name=latest.file_name,
                    latest_file_size=latest.file_size,
                    checked_at=now,
                )

            result.updates = list(updates.values())
            result.updates_found = len(result.updates)

            # Mods the remote did not report on keep their previous entry
            checked = [mod_id for mod_id in mod_ids if mod_id in latest_versions]
            self.state_store.apply_check(checked, result.updates, checked_at=now)

        logger.info(f"Checked {result.checked_count} mods, {result.updates_found} updates available")
        if result.updates_found:
            await self._notify(self._on_updates_found, result)
        return result

    # ============== Updating ==============

    async def update_mod(self, mod_id: int) -> ModUpdateResult:
        """
        Install the pending update for one mod.

        The pending entry is kept when the install fails so it can be retried.

        Raises:
            OrchestratorBusyError: If another operation is running
        """
        info = self.state_store.get(mod_id)
        if info is None:
            return ModUpdateResult(
                mod_id=mod_id,
                mod_name="Unknown",
                success=False,
                error="No update information found for this mod",
            )

        async with self._enter(OrchestratorPhase.UPDATING_ONE):
            if self.mods_path is None:
                return ModUpdateResult(
                    mod_id=mod_id,
                    mod_name=info.mod_name,
                    success=False,
                    error="Mods directory is not configured",
                )

            if self._backups_enabled:
                profile_mod = await self._find_active_mod(mod_id)
                if profile_mod:
                    await self._backup(profile_mod)

            try:
                install = await self.installer.install_mod(
                    mod_id, self.mods_path, None, info.latest_version_id
                )
            except Exception as e:
                logger.error(f"Failed to update {info.mod_name}: {e}")
                return ModUpdateResult(
                    mod_id=mod_id, mod_name=info.mod_name, success=False, error=str(e)
                )

            if not install.success:
                logger.error(f"Failed to update {info.mod_name}: {install.error}")
                return ModUpdateResult(
                    mod_id=mod_id,
                    mod_name=info.mod_name,
                    success=False,
                    error=install.error or "Failed to update mod",
                )

            self.state_store.clear_update(mod_id)
            await self.profile_store.refresh()

        logger.info(f"Updated {info.mod_name} to {info.latest_version_name or info.latest_version_id}")
        return ModUpdateResult(mod_id=mod_id, mod_name=info.mod_name, success=True)

    async def update_all_mods(
        self,
        on_progress: Callable[[int, int], Any] | None = None,
    ) -> BatchUpdateResult:
        """
        Install every pending update through the concurrency pool.

        Args:
            on_progress: Optional callback receiving (completed, total) after each batch

        Returns:
            Aggregated result with one entry per pending update

        Raises:
            OrchestratorBusyError: If another operation is running
        """
        updates = self.state_store.get_available()
        if not updates:
            return BatchUpdateResult()

        async with self._enter(OrchestratorPhase.UPDATING_ALL):
            if self.mods_path is None:
                return BatchUpdateResult(
                    failed=len(updates),
                    results=[
                        ModUpdateResult(
                            mod_id=u.mod_id,
                            mod_name=u.mod_name,
                            success=False,
                            error="Mods directory is not configured",
                        )
                        for u in updates
                    ],
                    reported_failures=len(updates),
                )

            pool_size = await self._pool_size()
            logger.info(f"Updating {len(updates)} mods with pool size {pool_size}")

            if self._backups_enabled:
                profile = await self.profile_store.get_active_profile()
                to_backup = []
                if profile:
                    to_backup = [m for m in (profile.find_mod(u.mod_id) for u in updates) if m]
                await concurrent_map(to_backup, self._backup, pool_size)

            mods_path = self.mods_path
            settled = await concurrent_map(
                updates,
                lambda u: self.installer.install_mod(u.mod_id, mods_path, None, u.latest_version_id),
                pool_size,
                on_progress,
            )
            outcomes = [InstallOutcome.from_settled(u, s) for u, s in zip(updates, settled)]

            result = BatchUpdateResult(results=[o.to_result() for o in outcomes])
            for outcome in outcomes:
                if outcome.kind == OutcomeKind.SUCCEEDED:
                    result.successful += 1
                elif outcome.kind == OutcomeKind.REPORTED_FAILURE:
                    result.reported_failures += 1
                else:
                    result.raised_failures += 1
                    logger.error(f"Update of {outcome.mod_name} raised: {outcome.error}")
            result.failed = result.reported_failures + result.raised_failures

            self.state_store.clear_updates(o.mod_id for o in outcomes if o.ok)
            await self.profile_store.refresh()

        logger.info(
            f"Batch update finished: {result.successful} succeeded, {result.failed} failed "
            f"({result.reported_failures} reported, {result.raised_failures} raised)"
        )
        await self._notify(self._on_batch_complete, result)
        return result

    # ============== Accessors ==============

    def get_available_updates(self) -> list[UpdateInfo]:
        """Get every pending update, including mods outside the active profile."""
        return self.state_store.get_available()

    def has_update(self, mod_id: int) -> bool:
        return self.state_store.has_update(mod_id)

    def get_update_info(self, mod_id: int) -> UpdateInfo | None:
        return self.state_store.get(mod_id)

    def clear_update(self, mod_id: int) -> None:
        self.state_store.clear_update(mod_id)

    def clear_all_updates(self) -> None:
        self.state_store.clear_all()

    # ============== Callbacks ==============

    def on_updates_found(self, callback: Callable[[UpdateCheckResult], Any]) -> None:
        """Register callback for checks that found updates."""
        self._on_updates_found.append(callback)

    def on_batch_complete(self, callback: Callable[[BatchUpdateResult], Any]) -> None:
        """Register callback for finished batch updates."""
        self._on_batch_complete.append(callback)

    # ============== Internals ==============

    @property
    def _backups_enabled(self) -> bool:
        return self.backup_before_update and self.backup_service is not None

    @asynccontextmanager
    async def _enter(self, phase: OrchestratorPhase):
        if self._phase != OrchestratorPhase.IDLE:
            raise OrchestratorBusyError(self._phase, phase)
        self._phase = phase
        try:
            yield
        finally:
            self._phase = OrchestratorPhase.IDLE

    async def _find_active_mod(self, mod_id: int) -> ProfileMod | None:
        profile = await self.profile_store.get_active_profile()
        return profile.find_mod(mod_id) if profile else None

    async def _backup(self, mod: ProfileMod) -> BackupResult:
        # Backup failures never block the update
        try:
            result = await self.backup_service.create_backup(mod)
        except Exception as e:
            result = BackupResult(success=False, error=str(e))
        if not result.success:
            logger.warning(f"Backup of {mod.mod_name} failed: {result.error}")
        return result

    async def _notify(self, callbacks: list[Callable[[Any], Any]], payload: Any) -> None:
        for callback in callbacks:
            try:
                result = callback(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Update callback failed")


class AutoUpdateGate:
    """
    Runs check-then-update once per active profile after a settle delay.

    Each profile id is handled at most once per process. A profile whose
    run is still in flight is not started again, and a run skipped because
    the orchestrator was busy does not count.
    """

    def __init__(
        self,
        orchestrator: UpdateOrchestrator,
        enabled: bool = True,
        delay_seconds: float = 5.0,
    ):
        self.orchestrator = orchestrator
        self.enabled = enabled
        self.delay_seconds = delay_seconds
        self._done: set[str] = set()
        self._in_flight: set[str] = set()

    def has_run(self, profile_id: str) -> bool:
        return profile_id in self._done

    def is_due(self, profile_id: str | None) -> bool:
        """Whether ``maybe_run`` would start a run for ``profile_id``."""
        if not self.enabled or profile_id is None:
            return False
        return profile_id not in self._done and profile_id not in self._in_flight

    async def maybe_run(
        self, profile_id: str | None, delay_seconds: float | None = None
    ) -> BatchUpdateResult | None:
        """
        Auto-update ``profile_id`` if allowed and not already done.

        Args:
            profile_id: Active profile id
            delay_seconds: Settle delay override (defaults to ``delay_seconds``)

        Returns:
            The batch result, or None if nothing was run
        """
        if not self.is_due(profile_id):
            return None

        self._in_flight.add(profile_id)
        try:
            await asyncio.sleep(self.delay_seconds if delay_seconds is None else delay_seconds)

            await self.orchestrator.check_for_updates()
            self._done.add(profile_id)
            if self.orchestrator.update_count == 0:
                return None

            logger.info(f"Auto-updating {self.orchestrator.update_count} mods for profile {profile_id}")
            return await self.orchestrator.update_all_mods()
        except OrchestratorBusyError as e:
            logger.warning(f"Skipping auto-update for profile {profile_id}: {e}")
            return None
        finally:
            self._in_flight.discard(profile_id)


class UpdateScheduler:
    """
    Periodic background update checks.

    With an auto-update gate attached, each cycle first gives the active
    profile its auto-update run; that run includes the check, so the plain
    check is skipped for the cycle. A profile activated while the process
    runs is picked up on the next cycle.
    """

    def __init__(
        self,
        orchestrator: UpdateOrchestrator,
        interval_hours: float = 6.0,
        initial_delay_seconds: float = 5.0,
        recheck_after_minutes: float = 30.0,
        auto_update: AutoUpdateGate | None = None,
    ):
        self.orchestrator = orchestrator
        self.interval = timedelta(hours=interval_hours)
        self.initial_delay_seconds = initial_delay_seconds
        self.recheck_after = timedelta(minutes=recheck_after_minutes)
        self.auto_update = auto_update
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    def should_run_initial_check(self, now: datetime | None = None) -> bool:
        """Skip the startup check if the last one is recent."""
        last_check = self.orchestrator.last_check
        if last_check is None:
            return True
        return (now or datetime.now()) - last_check > self.recheck_after

    async def run_check(self) -> UpdateCheckResult | None:
        """Run one check, skipping it if the orchestrator is busy."""
        try:
            return await self.orchestrator.check_for_updates()
        except OrchestratorBusyError as e:
            logger.info(f"Skipping scheduled update check: {e}")
            return None

    async def run_cycle(self, initial: bool = False) -> None:
        """Auto-update the active profile if due, otherwise check."""
        if await self._run_auto_update():
            return
        if initial and not self.should_run_initial_check():
            logger.info("Last update check is recent, skipping startup check")
            return
        await self.run_check()

    async def run(self) -> None:
        """Run a startup cycle and then one every interval until stopped."""
        if await self._wait(self.initial_delay_seconds):
            return
        await self.run_cycle(initial=True)

        while not await self._wait(self.interval.total_seconds()):
            await self.run_cycle()

    def start(self) -> asyncio.Task:
        """Start the scheduler in the background."""
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Stop the scheduler and wait for it to exit."""
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None

    async def _wait(self, seconds: float) -> bool:
        """Sleep for ``seconds``; return True if stopped meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_auto_update(self) -> bool:
        """Give the active profile its auto-update run; True if the run happened."""
        if self.auto_update is None:
            return False
        profile = await self.orchestrator.profile_store.get_active_profile()
        profile_id = profile.id if profile else None
        if not self.auto_update.is_due(profile_id):
            return False
        # The scheduler has already waited out the settle delay
        await self.auto_update.maybe_run(profile_id, delay_seconds=0)
        return self.auto_update.has_run(profile_id)
