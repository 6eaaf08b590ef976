"""Tests for the persisted update state."""

from datetime import datetime
from pathlib import Path

from modsync.core.update_state import UpdateStateStore
from modsync.storage.models import UpdateInfo


def make_update(mod_id: int, latest: int = 200) -> UpdateInfo:
    return UpdateInfo(
        mod_id=mod_id,
        mod_name=f"Mod {mod_id}",
        current_version_id=100 + mod_id,
        latest_version_id=latest,
    )


class TestUpdateStateStore:
    """Tests for UpdateStateStore."""

    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        """Test a fresh store has no updates and no last check."""
        store = UpdateStateStore(tmp_path / "update-state.json")

        assert store.get_available() == []
        assert store.last_check is None

    def test_corrupt_file_is_empty(self, tmp_path: Path) -> None:
        """Test an unreadable document is replaced by an empty one."""
        path = tmp_path / "update-state.json"
        path.write_text("[1, 2")

        assert UpdateStateStore(path).get_available() == []

    def test_apply_check_persists(self, tmp_path: Path) -> None:
        """Test found updates and the check time survive a reload."""
        path = tmp_path / "update-state.json"
        checked_at = datetime(2024, 5, 1, 12, 0)
        UpdateStateStore(path).apply_check([1, 2], [make_update(1)], checked_at)

        reloaded = UpdateStateStore(path)

        assert reloaded.has_update(1)
        assert not reloaded.has_update(2)
        assert reloaded.get(1).latest_version_id == 200
        assert reloaded.last_check == checked_at

    def test_apply_check_preserves_unchecked_entries(self, tmp_path: Path) -> None:
        """Test entries for mods outside the checked set are kept."""
        store = UpdateStateStore(tmp_path / "update-state.json")
        store.apply_check([1, 2], [make_update(1), make_update(2)])

        # Mod 2 was not part of this check, mod 1 is now current
        store.apply_check([1, 3], [make_update(3)])

        assert sorted(u.mod_id for u in store.get_available()) == [2, 3]

    def test_newer_check_replaces_entry(self, tmp_path: Path) -> None:
        """Test a later check overwrites the stored latest version."""
        store = UpdateStateStore(tmp_path / "update-state.json")
        store.apply_check([1], [make_update(1, latest=200)])
        store.apply_check([1], [make_update(1, latest=300)])

        assert store.get(1).latest_version_id == 300

    def test_clear(self, tmp_path: Path) -> None:
        """Test clearing single, several and all entries."""
        path = tmp_path / "update-state.json"
        store = UpdateStateStore(path)
        store.apply_check([1, 2, 3, 4], [make_update(i) for i in (1, 2, 3, 4)])

        store.clear_update(1)
        store.clear_updates([2, 99])
        assert [u.mod_id for u in UpdateStateStore(path).get_available()] == [3, 4]

        store.clear_all()
        assert UpdateStateStore(path).get_available() == []
