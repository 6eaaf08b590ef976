"""Blocking filesystem primitives and their executor-backed async wrappers."""

import asyncio
import os
import shutil
from enum import Enum
from pathlib import Path


class DeploymentMode(str, Enum):
    """How a cached mod is materialized in the mods directory."""

    COPY = "copy"
    LINK = "link"


def remove_entry(path: Path) -> None:
    """Remove a file, symlink or directory tree."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def copy_directory(source: Path, target: Path) -> None:
    """Recursively copy ``source`` to ``target``, replacing any existing target."""
    if not source.is_dir():
        raise FileNotFoundError(f"Source directory not found: {source}")

    if target.is_symlink() or target.exists():
        remove_entry(target)

    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source, target)


def link_directory(source: Path, target: Path) -> None:
    """Create a directory symlink ``target`` -> ``source``, replacing any existing target."""
    if not source.is_dir():
        raise FileNotFoundError(f"Source directory not found: {source}")

    if target.is_symlink() or target.exists():
        remove_entry(target)

    target.parent.mkdir(parents=True, exist_ok=True)
    os.symlink(source.resolve(), target, target_is_directory=True)


def materialize(source: Path, target: Path, mode: DeploymentMode) -> None:
    """Materialize ``source`` at ``target`` using the given deployment mode."""
    if mode == DeploymentMode.LINK:
        link_directory(source, target)
    else:
        copy_directory(source, target)


async def run_blocking(func, *args):
    """Run a blocking filesystem call in the default executor."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, func, *args)
