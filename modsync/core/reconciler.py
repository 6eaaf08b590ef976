"""Materialize a profile's mod set into the game's mods directory."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from modsync.core.concurrency import concurrent_map, get_failed
from modsync.utils.filesystem import DeploymentMode, materialize, remove_entry, run_blocking

logger = logging.getLogger(__name__)

MANIFEST_NAME = ".modsync-managed.json"


class EntryState(str, Enum):
    """Ownership state of a top-level entry in the mods directory."""

    ABSENT = "absent"
    MANAGED = "managed"
    FOREIGN = "foreign"


@dataclass
class DesiredEntry:
    """A mod folder that should exist in the mods directory."""

    source_path: Path
    dest_name: str


@dataclass
class ReconcileError:
    """A single entry that could not be removed or created."""

    source_path: str
    target_path: str
    error: str


@dataclass
class ReconcileResult:
    """Outcome of a reconciliation pass."""

    success: bool = True
    created: int = 0
    failed: int = 0
    errors: list[ReconcileError] = field(default_factory=list)
    # Failures while removing the previous set; they do not affect ``success``
    teardown_errors: list[ReconcileError] = field(default_factory=list)
    # Set when an unreadable manifest was moved aside during this pass
    manifest_error: str | None = None


class ModSetReconciler:
    """
    Makes the mods directory match a desired set of mod folders.

    Every switch tears down all managed entries and rebuilds the desired
    set, so nothing from a previous profile survives. Ownership is
    recorded in a manifest at the root of the mods directory; entries
    not listed there are foreign and left alone unless
    ``remove_untagged`` is set. Whole-set operations on one mods
    directory are serialized; single-entry operations only serialize
    their manifest updates and may run concurrently with each other.
    """

    def __init__(
        self,
        mode: DeploymentMode = DeploymentMode.COPY,
        pool_size: Callable[[], Awaitable[int]] | None = None,
        remove_untagged: bool = False,
    ):
        """
        Initialize the reconciler.

        Args:
            mode: Copy or link mod folders
            pool_size: Async provider of the concurrency limit (defaults to 5)
            remove_untagged: Also remove directories missing from the manifest
        """
        self.mode = mode
        self._pool_size = pool_size
        self.remove_untagged = remove_untagged
        self._locks: dict[Path, asyncio.Lock] = {}

    async def activate_profile(self, mods_path: Path, desired: list[DesiredEntry]) -> ReconcileResult:
        """
        Replace the managed contents of ``mods_path`` with ``desired``.

        Each entry is materialized independently; one failure does not
        block the others.
        """
        async with self._lock_for(mods_path):
            return await self._activate(mods_path, desired)

    async def deactivate(self, mods_path: Path) -> ReconcileResult:
        """Remove every managed entry from ``mods_path`` (best-effort)."""
        async with self._lock_for(mods_path):
            return await self._deactivate(mods_path)

    async def materialize_one(self, mods_path: Path, entry: DesiredEntry) -> ReconcileResult:
        """Create or replace a single managed entry without touching the others."""
        result = ReconcileResult()
        target = mods_path / entry.dest_name

        async with self._lock_for(mods_path):
            managed, result.manifest_error = await self._load_manifest(mods_path)
            state = await self.entry_state(mods_path, entry.dest_name, managed)
            if state == EntryState.FOREIGN:
                self._fail(result, entry, target, "Destination is occupied by an unmanaged entry")
                return result
            await self._write_manifest(mods_path, managed | {entry.dest_name})

        try:
            await run_blocking(materialize, entry.source_path, target, self.mode)
        except OSError as e:
            self._fail(result, entry, target, str(e))
            return result

        result.created = 1
        return result

    async def remove_one(self, mods_path: Path, name: str) -> bool:
        """Remove a single managed entry. Foreign entries are never touched."""
        async with self._lock_for(mods_path):
            managed, _ = await self._load_manifest(mods_path)
        if name not in managed:
            return False

        if _entry_exists(mods_path / name):
            await run_blocking(remove_entry, mods_path / name)

        # Re-read: other entries may have been claimed while removing
        async with self._lock_for(mods_path):
            managed, _ = await self._load_manifest(mods_path)
            await self._write_manifest(mods_path, managed - {name})
        return True

    async def verify(self, mods_path: Path, expected_count: int) -> bool:
        """Check that the number of managed entries present matches ``expected_count``."""
        try:
            managed = await self.list_managed(mods_path)
        except OSError as e:
            logger.error(f"Failed to verify mod folders in {mods_path}: {e}")
            return False
        return len(managed) == expected_count

    async def list_managed(self, mods_path: Path) -> list[str]:
        """List managed entries that still exist on disk."""
        names, _ = await self._load_manifest(mods_path)
        return [name for name in sorted(names) if _entry_exists(mods_path / name)]

    async def entry_state(
        self,
        mods_path: Path,
        name: str,
        managed: set[str] | None = None,
    ) -> EntryState:
        """Classify a top-level entry."""
        if not _entry_exists(mods_path / name):
            return EntryState.ABSENT
        if managed is None:
            managed, _ = await self._load_manifest(mods_path)
        return EntryState.MANAGED if name in managed else EntryState.FOREIGN

    async def _activate(self, mods_path: Path, desired: list[DesiredEntry]) -> ReconcileResult:
        teardown = await self._deactivate(mods_path)
        if teardown.errors:
            logger.warning(
                f"{len(teardown.errors)} entries could not be removed from {mods_path}; "
                "continuing with activation"
            )

        await run_blocking(lambda: mods_path.mkdir(parents=True, exist_ok=True))

        result = ReconcileResult(
            teardown_errors=teardown.errors,
            manifest_error=teardown.manifest_error,
        )
        # Names that failed removal are still ours
        leftover = {Path(e.target_path).name for e in teardown.errors}
        managed = set(leftover)

        claimed: list[DesiredEntry] = []
        seen: set[str] = set()
        for entry in desired:
            target = mods_path / entry.dest_name
            if entry.dest_name in seen:
                self._fail(result, entry, target, "Duplicate destination name in mod set")
                continue
            seen.add(entry.dest_name)

            state = await self.entry_state(mods_path, entry.dest_name, managed)
            if state == EntryState.FOREIGN:
                self._fail(result, entry, target, "Destination is occupied by an unmanaged entry")
                continue
            claimed.append(entry)

        # Record intent first so a crash mid-copy leaves no untracked folders
        await self._write_manifest(mods_path, managed | {e.dest_name for e in claimed})

        pool_size = await self._get_pool_size()
        results = await concurrent_map(
            claimed,
            lambda entry: run_blocking(
                materialize, entry.source_path, mods_path / entry.dest_name, self.mode
            ),
            pool_size,
        )

        failed_indexes = set()
        for failure in get_failed(results):
            failed_indexes.add(failure.index)
            entry = claimed[failure.index]
            self._fail(result, entry, mods_path / entry.dest_name, str(failure.error))

        created = [e.dest_name for i, e in enumerate(claimed) if i not in failed_indexes]
        result.created = len(created)
        result.success = result.failed == 0

        await self._write_manifest(mods_path, managed | set(created))

        logger.info(
            f"Activated {result.created}/{len(desired)} mods in {mods_path} "
            f"({result.failed} failed)"
        )
        return result

    async def _deactivate(self, mods_path: Path) -> ReconcileResult:
        result = ReconcileResult()
        if not mods_path.is_dir():
            return result

        managed, result.manifest_error = await self._load_manifest(mods_path)
        targets = [name for name in sorted(managed) if _entry_exists(mods_path / name)]
        if self.remove_untagged:
            untagged = await run_blocking(self._list_untagged_directories, mods_path, set(targets))
            targets.extend(untagged)

        if not targets:
            await self._write_manifest(mods_path, set())
            return result

        pool_size = await self._get_pool_size()
        results = await concurrent_map(
            targets,
            lambda name: run_blocking(remove_entry, mods_path / name),
            pool_size,
        )

        remaining = set()
        for failure in get_failed(results):
            name = targets[failure.index]
            remaining.add(name)
            result.errors.append(
                ReconcileError(
                    source_path="",
                    target_path=str(mods_path / name),
                    error=str(failure.error),
                )
            )

        result.failed = len(result.errors)
        result.success = result.failed == 0
        await self._write_manifest(mods_path, remaining)
        return result

    def _lock_for(self, mods_path: Path) -> asyncio.Lock:
        return self._locks.setdefault(mods_path, asyncio.Lock())

    def _list_untagged_directories(self, mods_path: Path, managed: set[str]) -> list[str]:
        return sorted(
            p.name
            for p in mods_path.iterdir()
            if p.name not in managed and p.name != MANIFEST_NAME and p.is_dir()
        )

    async def _load_manifest(self, mods_path: Path) -> tuple[set[str], str | None]:
        """
        Read the managed names.

        An unreadable manifest is moved aside to ``<manifest>.bak`` so the
        next write does not destroy it; its entries count as foreign until
        restored by hand.

        Returns:
            Managed names and, if the manifest had to be moved aside, a message
        """
        path = mods_path / MANIFEST_NAME
        if not path.exists():
            return set(), None
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return set(data.get("entries", [])), None
        except (OSError, json.JSONDecodeError, AttributeError) as e:
            backup = path.with_name(MANIFEST_NAME + ".bak")
            try:
                path.replace(backup)
            except OSError as move_error:
                logger.error(f"Could not move unreadable manifest {path} aside: {move_error}")
                return set(), f"Unreadable manifest {path}: {e}"
            message = f"Unreadable manifest {path} moved to {backup.name}: {e}"
            logger.warning(f"{message}; its entries are treated as foreign")
            return set(), message

    async def _write_manifest(self, mods_path: Path, names: set[str]) -> None:
        path = mods_path / MANIFEST_NAME
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"entries": sorted(names)}, f, indent=2)

    async def _get_pool_size(self) -> int:
        if self._pool_size is None:
            return 5
        return await self._pool_size()

    @staticmethod
    def _fail(result: ReconcileResult, entry: DesiredEntry, target: Path, error: str) -> None:
        result.failed += 1
        result.success = False
        result.errors.append(
            ReconcileError(
                source_path=str(entry.source_path),
                target_path=str(target),
                error=error,
            )
        )


def _entry_exists(path: Path) -> bool:
    # Dangling symlinks still occupy the name
    return path.is_symlink() or path.exists()
