"""Mod-set synchronization and update orchestration."""

__version__ = "0.1.0"
