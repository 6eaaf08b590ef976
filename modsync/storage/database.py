"""SQLite database operations using aiosqlite."""

import json
from datetime import datetime
from pathlib import Path

import aiosqlite

from modsync.storage.models import PendingActivation, Profile, ProfileMod, ProfileRegistry


class Database:
    """Async SQLite database wrapper for profiles and the profile registry."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open database connection and initialize tables."""
        # Ensure parent directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA foreign_keys = ON")
        await self._init_tables()

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        """Get the active connection."""
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def _init_tables(self) -> None:
        """Create database tables if they don't exist."""
        await self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                name TEXT UNIQUE NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                tags TEXT NOT NULL DEFAULT '[]',
                icon_color TEXT,
                is_active INTEGER DEFAULT 0,
                position INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS profile_mods (
                profile_id TEXT NOT NULL,
                mod_key TEXT NOT NULL,
                position INTEGER NOT NULL,
                mod_id INTEGER,
                local_mod_id TEXT,
                mod_name TEXT NOT NULL,
                version_id INTEGER DEFAULT 0,
                version_number TEXT DEFAULT '',
                file_hash TEXT NOT NULL,
                file_name TEXT NOT NULL,
                enabled INTEGER DEFAULT 1,
                install_date TEXT NOT NULL,
                cache_location TEXT NOT NULL,
                PRIMARY KEY (profile_id, mod_key),
                FOREIGN KEY (profile_id) REFERENCES profiles(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS registry (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                active_profile_id TEXT,
                last_sync TEXT NOT NULL,
                pending_activation INTEGER DEFAULT 0,
                pending_profile_id TEXT,
                pending_started_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_profile_mods_profile ON profile_mods(profile_id);
        """)
        await self.conn.execute(
            "INSERT OR IGNORE INTO registry (id, last_sync) VALUES (1, ?)",
            (datetime.now().isoformat(),),
        )
        await self.conn.commit()

    # ============== Profile Operations ==============

    async def create_profile(self, profile: Profile) -> Profile:
        """Insert a new profile (without mods) at the end of the registry order."""
        await self.conn.execute(
            """
            INSERT INTO profiles (
                id, name, description, tags, icon_color, is_active,
                position, created_at, updated_at
            ) VALUES (
                ?, ?, ?, ?, ?, ?,
                (SELECT COALESCE(MAX(position) + 1, 0) FROM profiles), ?, ?
            )
            """,
            (
                profile.id,
                profile.name,
                profile.description,
                json.dumps(profile.tags),
                profile.icon_color,
                1 if profile.is_active else 0,
                profile.created_at.isoformat(),
                profile.updated_at.isoformat(),
            ),
        )
        await self._touch_last_sync()
        await self.conn.commit()
        return profile

    async def get_profile(self, profile_id: str) -> Profile | None:
        """Get profile by ID, including its mods."""
        async with self.conn.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,)) as cursor:
            row = await cursor.fetchone()
            if not row:
                return None
        return self._row_to_profile(row, await self.get_profile_mods(profile_id))

    async def get_profile_by_name(self, name: str) -> Profile | None:
        """Get profile by exact (case-sensitive) name."""
        async with self.conn.execute("SELECT id FROM profiles WHERE name = ?", (name,)) as cursor:
            row = await cursor.fetchone()
        return await self.get_profile(row["id"]) if row else None

    async def get_all_profiles(self) -> list[Profile]:
        """Get all profiles ordered by name."""
        async with self.conn.execute("SELECT * FROM profiles ORDER BY name") as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_profile(row, await self.get_profile_mods(row["id"])) for row in rows]

    async def get_profile_ids(self) -> list[str]:
        """Get profile IDs in creation order."""
        async with self.conn.execute("SELECT id FROM profiles ORDER BY position") as cursor:
            rows = await cursor.fetchall()
            return [row["id"] for row in rows]

    async def update_profile(self, profile: Profile) -> None:
        """Update profile fields and replace its mod list."""
        try:
            await self.conn.execute(
                """
                UPDATE profiles SET
                    name = ?, description = ?, tags = ?, icon_color = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    profile.name,
                    profile.description,
                    json.dumps(profile.tags),
                    profile.icon_color,
                    profile.updated_at.isoformat(),
                    profile.id,
                ),
            )
            await self.conn.execute("DELETE FROM profile_mods WHERE profile_id = ?", (profile.id,))
            for position, mod in enumerate(profile.mods):
                await self._insert_mod(profile.id, mod, position)
        except Exception:
            await self.conn.rollback()
            raise
        await self.conn.commit()

    async def delete_profile(self, profile_id: str) -> None:
        """Delete a profile and its mods."""
        await self.conn.execute("DELETE FROM profile_mods WHERE profile_id = ?", (profile_id,))
        await self.conn.execute("DELETE FROM profiles WHERE id = ?", (profile_id,))
        await self._touch_last_sync()
        await self.conn.commit()

    async def set_active_profile(self, profile_id: str | None) -> None:
        """Set a profile as active, deactivating all others, in one transaction."""
        await self.conn.execute(
            "UPDATE profiles SET is_active = CASE WHEN id = ? THEN 1 ELSE 0 END",
            (profile_id,),
        )
        await self.conn.execute(
            "UPDATE registry SET active_profile_id = ?, last_sync = ? WHERE id = 1",
            (profile_id, datetime.now().isoformat()),
        )
        await self.conn.commit()

    def _row_to_profile(self, row: aiosqlite.Row, mods: list[ProfileMod]) -> Profile:
        """Convert database row to Profile model."""
        return Profile(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            tags=json.loads(row["tags"]),
            icon_color=row["icon_color"],
            mods=mods,
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # ============== Profile Mod Operations ==============

    async def get_profile_mods(self, profile_id: str) -> list[ProfileMod]:
        """Get mods of a profile in insertion order."""
        async with self.conn.execute(
            "SELECT * FROM profile_mods WHERE profile_id = ? ORDER BY position",
            (profile_id,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_mod(row) for row in rows]

    async def upsert_profile_mod(self, profile_id: str, mod: ProfileMod, updated_at: datetime) -> None:
        """Insert a mod or replace the existing entry with the same key."""
        await self._insert_mod(profile_id, mod, position=None)
        await self.conn.execute(
            "UPDATE profiles SET updated_at = ? WHERE id = ?",
            (updated_at.isoformat(), profile_id),
        )
        await self.conn.commit()

    async def delete_profile_mod(self, profile_id: str, mod_key: str, updated_at: datetime) -> bool:
        """Remove a mod from a profile. Returns True if a row was deleted."""
        cursor = await self.conn.execute(
            "DELETE FROM profile_mods WHERE profile_id = ? AND mod_key = ?",
            (profile_id, mod_key),
        )
        deleted = cursor.rowcount > 0
        await self.conn.execute(
            "UPDATE profiles SET updated_at = ? WHERE id = ?",
            (updated_at.isoformat(), profile_id),
        )
        await self.conn.commit()
        return deleted

    async def _insert_mod(self, profile_id: str, mod: ProfileMod, position: int | None) -> None:
        """Upsert a mod row; new rows without a position go to the end of the list."""
        await self.conn.execute(
            """
            INSERT INTO profile_mods (
                profile_id, mod_key, position, mod_id, local_mod_id, mod_name,
                version_id, version_number, file_hash, file_name, enabled,
                install_date, cache_location
            ) VALUES (
                ?, ?,
                COALESCE(?, (SELECT COALESCE(MAX(position) + 1, 0)
                             FROM profile_mods WHERE profile_id = ?)),
                ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
            )
            ON CONFLICT (profile_id, mod_key) DO UPDATE SET
                mod_id = excluded.mod_id,
                local_mod_id = excluded.local_mod_id,
                mod_name = excluded.mod_name,
                version_id = excluded.version_id,
                version_number = excluded.version_number,
                file_hash = excluded.file_hash,
                file_name = excluded.file_name,
                enabled = excluded.enabled,
                install_date = excluded.install_date,
                cache_location = excluded.cache_location
            """,
            (
                profile_id,
                mod.key,
                position,
                profile_id,
                mod.mod_id,
                mod.local_mod_id,
                mod.mod_name,
                mod.version_id,
                mod.version_number,
                mod.file_hash,
                mod.file_name,
                1 if mod.enabled else 0,
                mod.install_date.isoformat(),
                mod.cache_location,
            ),
        )

    def _row_to_mod(self, row: aiosqlite.Row) -> ProfileMod:
        """Convert database row to ProfileMod model."""
        return ProfileMod(
            mod_id=row["mod_id"],
            local_mod_id=row["local_mod_id"],
            mod_name=row["mod_name"],
            version_id=row["version_id"],
            version_number=row["version_number"],
            file_hash=row["file_hash"],
            file_name=row["file_name"],
            enabled=bool(row["enabled"]),
            install_date=datetime.fromisoformat(row["install_date"]),
            cache_location=row["cache_location"],
        )

    # ============== Registry Operations ==============

    async def get_registry(self) -> ProfileRegistry:
        """Get the registry document."""
        async with self.conn.execute("SELECT * FROM registry WHERE id = 1") as cursor:
            row = await cursor.fetchone()

        pending = None
        if row["pending_activation"]:
            pending = PendingActivation(
                profile_id=row["pending_profile_id"],
                started_at=datetime.fromisoformat(row["pending_started_at"]),
            )

        return ProfileRegistry(
            active_profile_id=row["active_profile_id"],
            profiles=await self.get_profile_ids(),
            last_sync=datetime.fromisoformat(row["last_sync"]),
            pending_activation=pending,
        )

    async def set_pending_activation(self, pending: PendingActivation | None) -> None:
        """Write or clear the pending-activation marker."""
        if pending is None:
            await self.conn.execute(
                """
                UPDATE registry SET
                    pending_activation = 0, pending_profile_id = NULL, pending_started_at = NULL
                WHERE id = 1
                """
            )
        else:
            await self.conn.execute(
                """
                UPDATE registry SET
                    pending_activation = 1, pending_profile_id = ?, pending_started_at = ?
                WHERE id = 1
                """,
                (pending.profile_id, pending.started_at.isoformat()),
            )
        await self.conn.commit()

    async def touch_last_sync(self) -> None:
        """Refresh the registry's last_sync timestamp."""
        await self._touch_last_sync()
        await self.conn.commit()

    async def _touch_last_sync(self) -> None:
        await self.conn.execute(
            "UPDATE registry SET last_sync = ? WHERE id = 1",
            (datetime.now().isoformat(),),
        )
