"""
Central configuration loading for all edmcp workflows.

Every workflow server reads the same .env file at the edmcp root, so
settings such as database paths and cache lifetimes live in one place.
"""

import os
from pathlib import Path
from dotenv import load_dotenv


def get_edmcp_root() -> Path:
    """
    Find the edmcp root directory (where the central .env lives).

    Checks the directory above the edmcp-core package first, then walks
    upward from the current working directory.

    Returns:
        Path to the edmcp root directory. Falls back to the parent of
        edmcp-core when no .env or .env.example is found.
    """
    package_root = Path(__file__).resolve().parent.parent.parent
    if (package_root / ".env").exists() or (package_root / ".env.example").exists():
        return package_root

    current = Path.cwd().resolve()
    for _ in range(10):  # Limit search depth
        if (current / ".env").exists() or (current / ".env.example").exists():
            return current
        if current.parent == current:
            break
        current = current.parent

    return package_root


def load_edmcp_config(override: bool = False) -> Path:
    """
    Load environment variables from the central .env file.

    Args:
        override: If True, values in .env replace variables already set
                  in the process environment.

    Returns:
        Path to the .env file that was loaded (or would be, if it existed).
    """
    env_path = get_edmcp_root() / ".env"
    load_dotenv(env_path, override=override)
    return env_path


def get_env(key: str, default: str | None = None) -> str | None:
    """Get an environment variable, treating blank values as unset."""
    value = os.environ.get(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def get_env_int(key: str, default: int) -> int:
    """Get an integer environment variable; unparsable values give the default."""
    value = get_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default
