"""Persisted record of mods with pending updates."""

import json
import logging
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from modsync.storage.models import UpdateInfo, UpdateState

logger = logging.getLogger(__name__)


class UpdateStateStore:
    """
    JSON-backed store for the UpdateState document.

    The document survives restarts and profile switches. Writes replace
    the whole file (last writer wins).
    """

    def __init__(self, path: Path):
        self.path = path
        self._state: UpdateState | None = None

    @property
    def state(self) -> UpdateState:
        """Get the in-memory document, loading it on first access."""
        if self._state is None:
            self._state = self.load()
        return self._state

    def load(self) -> UpdateState:
        """Read the document from disk; a missing or corrupt file yields an empty state."""
        if not self.path.exists():
            self._state = UpdateState()
            return self._state

        try:
            with open(self.path, encoding="utf-8") as f:
                self._state = UpdateState.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Failed to load update state from {self.path}: {e}")
            self._state = UpdateState()
        return self._state

    def save(self) -> None:
        """Write the document to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(self.state.model_dump_json(indent=2))

    def apply_check(
        self,
        checked_ids: Iterable[int],
        updates: Iterable[UpdateInfo],
        checked_at: datetime | None = None,
    ) -> None:
        """
        Merge the outcome of a check and persist it.

        Entries for checked mods that are now up to date are removed.
        Entries for mods outside the checked set are preserved.
        """
        state = self.state
        found = {u.mod_id: u for u in updates}

        for mod_id in checked_ids:
            if mod_id in found:
                state.available_updates[mod_id] = found[mod_id]
            else:
                state.available_updates.pop(mod_id, None)

        state.last_check_timestamp = checked_at or datetime.now()
        self.save()

    def get_available(self) -> list[UpdateInfo]:
        """Get all pending updates."""
        return list(self.state.available_updates.values())

    def get(self, mod_id: int) -> UpdateInfo | None:
        """Get the pending update for ``mod_id``."""
        return self.state.available_updates.get(mod_id)

    def has_update(self, mod_id: int) -> bool:
        """Check if ``mod_id`` has a pending update."""
        return mod_id in self.state.available_updates

    def clear_update(self, mod_id: int) -> None:
        """Remove one entry and persist."""
        self.clear_updates([mod_id])

    def clear_updates(self, mod_ids: Iterable[int]) -> None:
        """Remove several entries with a single write."""
        state = self.state
        removed = False
        for mod_id in mod_ids:
            if state.available_updates.pop(mod_id, None) is not None:
                removed = True
        if removed:
            self.save()

    def clear_all(self) -> None:
        """Remove every entry and persist."""
        self.state.available_updates.clear()
        self.save()

    @property
    def last_check(self) -> datetime | None:
        """Get the time of the last completed check."""
        return self.state.last_check_timestamp
