"""Tests for mods directory reconciliation."""

import asyncio
import json
from pathlib import Path

import pytest

from modsync.core.reconciler import (
    MANIFEST_NAME,
    DesiredEntry,
    EntryState,
    ModSetReconciler,
)
from modsync.utils.filesystem import DeploymentMode


def make_source(root: Path, name: str, content: str | None = None) -> Path:
    """Create a fake extracted mod directory."""
    source = root / "cache" / name / "files"
    source.mkdir(parents=True, exist_ok=True)
    (source / f"{name}.package").write_text(content or f"{name} data")
    return source


def entries(root: Path, *names: str) -> list[DesiredEntry]:
    return [DesiredEntry(source_path=make_source(root, n), dest_name=n) for n in names]


def listing(mods_path: Path) -> set[str]:
    return {p.name for p in mods_path.iterdir() if p.name != MANIFEST_NAME}


class TestActivateProfile:
    """Tests for activate_profile."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", [DeploymentMode.COPY, DeploymentMode.LINK])
    async def test_materializes_desired_set(self, tmp_path: Path, mode: DeploymentMode) -> None:
        """Test every desired entry is created with its source contents."""
        mods_path = tmp_path / "Mods"
        reconciler = ModSetReconciler(mode=mode)

        result = await reconciler.activate_profile(mods_path, entries(tmp_path, "A", "B", "C"))

        assert result.success
        assert (result.created, result.failed) == (3, 0)
        assert listing(mods_path) == {"A", "B", "C"}
        assert (mods_path / "A" / "A.package").read_text() == "A data"
        assert (mods_path / "A").is_symlink() == (mode == DeploymentMode.LINK)
        assert await reconciler.verify(mods_path, 3)

    @pytest.mark.asyncio
    async def test_switch_replaces_previous_profile(self, tmp_path: Path) -> None:
        """Test switching from A (3 mods) to B (2 mods, 1 shared) leaves exactly B's mods."""
        mods_path = tmp_path / "Mods"
        reconciler = ModSetReconciler()
        await reconciler.activate_profile(mods_path, entries(tmp_path, "X", "Shared", "Y"))

        # Stale file that must not survive the switch
        (mods_path / "Shared" / "stale.txt").write_text("from profile A")
        result = await reconciler.activate_profile(mods_path, entries(tmp_path, "Shared", "Z"))

        assert result.success
        assert listing(mods_path) == {"Shared", "Z"}
        assert not (mods_path / "Shared" / "stale.txt").exists()
        assert await reconciler.list_managed(mods_path) == ["Shared", "Z"]

    @pytest.mark.asyncio
    async def test_idempotent(self, tmp_path: Path) -> None:
        """Test repeated activation with the same set converges to the same entries."""
        mods_path = tmp_path / "Mods"
        reconciler = ModSetReconciler()
        desired = entries(tmp_path, "A", "B")

        await reconciler.activate_profile(mods_path, desired)
        first = listing(mods_path)
        result = await reconciler.activate_profile(mods_path, desired)

        assert result.success
        assert listing(mods_path) == first == {"A", "B"}

    @pytest.mark.asyncio
    async def test_foreign_directories_survive(self, tmp_path: Path) -> None:
        """Test folders not created by the reconciler are never removed."""
        mods_path = tmp_path / "Mods"
        (mods_path / "UserStuff").mkdir(parents=True)
        (mods_path / "Resource.cfg").write_text("cfg")
        reconciler = ModSetReconciler()

        await reconciler.activate_profile(mods_path, entries(tmp_path, "A"))
        await reconciler.activate_profile(mods_path, entries(tmp_path, "B"))

        assert listing(mods_path) == {"UserStuff", "Resource.cfg", "B"}
        assert await reconciler.entry_state(mods_path, "UserStuff") == EntryState.FOREIGN
        assert await reconciler.entry_state(mods_path, "B") == EntryState.MANAGED
        assert await reconciler.entry_state(mods_path, "A") == EntryState.ABSENT

    @pytest.mark.asyncio
    async def test_remove_untagged_restores_legacy_teardown(self, tmp_path: Path) -> None:
        """Test remove_untagged also deletes unmanaged directories but not files."""
        mods_path = tmp_path / "Mods"
        (mods_path / "Old").mkdir(parents=True)
        (mods_path / "Resource.cfg").write_text("cfg")
        reconciler = ModSetReconciler(remove_untagged=True)

        result = await reconciler.activate_profile(mods_path, entries(tmp_path, "A"))

        assert result.success
        assert listing(mods_path) == {"Resource.cfg", "A"}

    @pytest.mark.asyncio
    async def test_foreign_collision_fails_only_that_entry(self, tmp_path: Path) -> None:
        """Test a destination occupied by a foreign folder fails without blocking others."""
        mods_path = tmp_path / "Mods"
        (mods_path / "A").mkdir(parents=True)
        (mods_path / "A" / "mine.txt").write_text("user data")
        reconciler = ModSetReconciler()

        result = await reconciler.activate_profile(mods_path, entries(tmp_path, "A", "B"))

        assert not result.success
        assert (result.created, result.failed) == (1, 1)
        assert result.errors[0].target_path == str(mods_path / "A")
        assert (mods_path / "A" / "mine.txt").read_text() == "user data"
        assert (mods_path / "B").is_dir()

    @pytest.mark.asyncio
    async def test_missing_source_fails_only_that_entry(self, tmp_path: Path) -> None:
        """Test one failing materialization does not block its siblings."""
        mods_path = tmp_path / "Mods"
        desired = entries(tmp_path, "A", "C")
        desired.insert(1, DesiredEntry(source_path=tmp_path / "nowhere", dest_name="B"))
        reconciler = ModSetReconciler()

        result = await reconciler.activate_profile(mods_path, desired)

        assert not result.success
        assert (result.created, result.failed) == (2, 1)
        assert result.errors[0].source_path == str(tmp_path / "nowhere")
        assert await reconciler.list_managed(mods_path) == ["A", "C"]

    @pytest.mark.asyncio
    async def test_duplicate_destination_names(self, tmp_path: Path) -> None:
        """Test a second entry with the same destination name is rejected."""
        mods_path = tmp_path / "Mods"
        first = DesiredEntry(make_source(tmp_path, "one"), "Same")
        second = DesiredEntry(make_source(tmp_path, "two"), "Same")

        result = await ModSetReconciler().activate_profile(mods_path, [first, second])

        assert (result.created, result.failed) == (1, 1)
        assert (mods_path / "Same" / "one.package").exists()

    @pytest.mark.asyncio
    async def test_uses_pool_size_provider(self, tmp_path: Path) -> None:
        """Test the pool size is requested from the provider."""
        calls = []

        async def pool_size() -> int:
            calls.append(1)
            return 3

        reconciler = ModSetReconciler(pool_size=pool_size)
        await reconciler.activate_profile(tmp_path / "Mods", entries(tmp_path, "A"))

        assert calls


class TestDeactivate:
    """Tests for deactivate and single-entry operations."""

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path: Path) -> None:
        """Test deactivating a directory that does not exist succeeds."""
        result = await ModSetReconciler().deactivate(tmp_path / "absent")

        assert result.success
        assert not (tmp_path / "absent").exists()

    @pytest.mark.asyncio
    async def test_removes_only_managed(self, tmp_path: Path) -> None:
        """Test deactivate empties the manifest and keeps foreign entries."""
        mods_path = tmp_path / "Mods"
        reconciler = ModSetReconciler()
        await reconciler.activate_profile(mods_path, entries(tmp_path, "A", "B"))
        (mods_path / "Mine").mkdir()

        result = await reconciler.deactivate(mods_path)

        assert result.success
        assert listing(mods_path) == {"Mine"}
        manifest = json.loads((mods_path / MANIFEST_NAME).read_text())
        assert manifest["entries"] == []

    @pytest.mark.asyncio
    async def test_verify_detects_external_removal(self, tmp_path: Path) -> None:
        """Test verify() notices entries removed behind the reconciler's back."""
        mods_path = tmp_path / "Mods"
        reconciler = ModSetReconciler(mode=DeploymentMode.LINK)
        await reconciler.activate_profile(mods_path, entries(tmp_path, "A", "B"))

        (mods_path / "A").unlink()

        assert not await reconciler.verify(mods_path, 2)
        assert await reconciler.verify(mods_path, 1)

    @pytest.mark.asyncio
    async def test_materialize_one_keeps_others(self, tmp_path: Path) -> None:
        """Test a single entry can be added without rebuilding the directory."""
        mods_path = tmp_path / "Mods"
        reconciler = ModSetReconciler()
        await reconciler.activate_profile(mods_path, entries(tmp_path, "A"))

        result = await reconciler.materialize_one(mods_path, entries(tmp_path, "B")[0])

        assert result.success
        assert await reconciler.list_managed(mods_path) == ["A", "B"]

    @pytest.mark.asyncio
    async def test_remove_one_ignores_foreign(self, tmp_path: Path) -> None:
        """Test remove_one only deletes managed entries."""
        mods_path = tmp_path / "Mods"
        reconciler = ModSetReconciler()
        await reconciler.activate_profile(mods_path, entries(tmp_path, "A"))
        (mods_path / "Mine").mkdir()

        assert not await reconciler.remove_one(mods_path, "Mine")
        assert await reconciler.remove_one(mods_path, "A")
        assert listing(mods_path) == {"Mine"}


class TestManifest:
    """Tests for the ownership manifest."""

    @pytest.mark.asyncio
    async def test_concurrent_remove_and_materialize(self, tmp_path: Path) -> None:
        """Test a rename (remove old, add new) running side by side keeps the new entry managed."""
        mods_path = tmp_path / "Mods"
        reconciler = ModSetReconciler()
        await reconciler.activate_profile(mods_path, entries(tmp_path, "Old"))

        removed, added = await asyncio.gather(
            reconciler.remove_one(mods_path, "Old"),
            reconciler.materialize_one(mods_path, entries(tmp_path, "New")[0]),
        )

        assert removed
        assert added.success
        assert listing(mods_path) == {"New"}
        assert json.loads((mods_path / MANIFEST_NAME).read_text())["entries"] == ["New"]

        # The next switch must be able to tear it down
        await reconciler.activate_profile(mods_path, [])
        assert listing(mods_path) == set()

    @pytest.mark.asyncio
    async def test_many_concurrent_single_entry_updates(self, tmp_path: Path) -> None:
        """Test parallel single-entry adds are all recorded."""
        mods_path = tmp_path / "Mods"
        mods_path.mkdir()
        reconciler = ModSetReconciler()

        await asyncio.gather(
            *(reconciler.materialize_one(mods_path, e) for e in entries(tmp_path, "A", "B", "C", "D"))
        )

        assert await reconciler.list_managed(mods_path) == ["A", "B", "C", "D"]

    @pytest.mark.asyncio
    async def test_unreadable_manifest_is_kept_and_reported(self, tmp_path: Path) -> None:
        """Test a corrupt manifest is moved aside instead of overwritten, and reported."""
        mods_path = tmp_path / "Mods"
        reconciler = ModSetReconciler()
        await reconciler.activate_profile(mods_path, entries(tmp_path, "A"))
        (mods_path / MANIFEST_NAME).write_text("{not json")

        result = await reconciler.activate_profile(mods_path, entries(tmp_path, "A", "B"))

        assert result.manifest_error is not None
        assert "moved to" in result.manifest_error
        assert (mods_path / f"{MANIFEST_NAME}.bak").read_text() == "{not json"
        # A is no longer provably ours, B is new
        assert (result.created, result.failed) == (1, 1)
        assert "unmanaged" in result.errors[0].error
        assert await reconciler.list_managed(mods_path) == ["B"]

    @pytest.mark.asyncio
    async def test_readable_manifest_reports_nothing(self, tmp_path: Path) -> None:
        """Test a normal pass leaves manifest_error unset."""
        mods_path = tmp_path / "Mods"
        reconciler = ModSetReconciler()

        result = await reconciler.activate_profile(mods_path, entries(tmp_path, "A"))

        assert result.manifest_error is None
        assert not (mods_path / f"{MANIFEST_NAME}.bak").exists()
