"""Mod download, caching and installation modules."""

from modsync.mods.cache import CachedMod, ModCache
from modsync.mods.installer import ModInstaller
from modsync.mods.versions_api import DownloadInfo, ModVersionsAPI, VersionsAPIError

__all__ = [
    "ModVersionsAPI",
    "VersionsAPIError",
    "DownloadInfo",
    "ModCache",
    "CachedMod",
    "ModInstaller",
]
