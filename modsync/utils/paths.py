"""Folder-name sanitizing and mods-folder lookup for the game directory."""

import re
from pathlib import Path

# Leave room for the rest of the path under Windows MAX_PATH
MAX_FOLDER_NAME_LENGTH = 100

WINDOWS_INVALID_CHARS = re.compile(r'[\\/:*?"<>|]')
OTHER_INVALID_CHARS = re.compile(r"[^\w\s.-]")
SEPARATOR_RUNS = re.compile(r"[\s_]+")

WINDOWS_RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    *(f"COM{i}" for i in range(1, 10)),
    *(f"LPT{i}" for i in range(1, 10)),
}


def sanitize_mod_name(mod_name: str) -> str:
    """
    Turn a mod name into a folder name that is valid on every platform.

    Invalid characters and whitespace collapse to single underscores,
    Windows reserved names get a leading underscore, and long names are
    truncated (preferably at an underscore).

    Examples:
        >>> sanitize_mod_name("Mod | Polish Translation")
        'Mod_Polish_Translation'
        >>> sanitize_mod_name("My/Mod:Name")
        'My_Mod_Name'
    """
    if not mod_name or not mod_name.strip():
        return "unnamed_mod"

    sanitized = WINDOWS_INVALID_CHARS.sub("_", mod_name)
    sanitized = OTHER_INVALID_CHARS.sub("_", sanitized)
    sanitized = SEPARATOR_RUNS.sub("_", sanitized)
    sanitized = sanitized.strip().strip("_")

    if not sanitized:
        return "unnamed_mod"

    if sanitized.upper() in WINDOWS_RESERVED_NAMES:
        sanitized = f"_{sanitized}"

    if len(sanitized) > MAX_FOLDER_NAME_LENGTH:
        sanitized = sanitized[:MAX_FOLDER_NAME_LENGTH]
        last_underscore = sanitized.rfind("_")
        if last_underscore > MAX_FOLDER_NAME_LENGTH * 0.7:
            sanitized = sanitized[:last_underscore]
        sanitized = sanitized.rstrip("_")

    return sanitized


def has_invalid_path_chars(name: str) -> bool:
    """Check if a name contains characters invalid in Windows paths."""
    return WINDOWS_INVALID_CHARS.search(name) is not None


# Where the game creates its mods folder, relative to the user's Documents
MODS_DIR_CANDIDATES = (
    Path("Electronic Arts") / "The Sims 4" / "Mods",
    Path("The Sims 4") / "Mods",
)


def detect_mods_dir(home: Path | None = None) -> Path | None:
    """
    Find the game's mods folder under the user's Documents directory.

    Args:
        home: Home directory to search (defaults to the current user's)

    Returns:
        The first existing candidate, or None
    """
    documents = (home or Path.home()) / "Documents"
    for candidate in MODS_DIR_CANDIDATES:
        path = documents / candidate
        if path.is_dir():
            return path
    return None
