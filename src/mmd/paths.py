"""Path resolution for mmd global and project directories.

mmd uses a two-tier directory structure:
- Global: ~/.mmd/ holds user-wide settings, secrets and logs
- Project: .mmd/ holds project-specific config

Directories are created lazily on first use, not on install.
"""

from __future__ import annotations

import os
from pathlib import Path

# Directory names
GLOBAL_DIR_NAME = ".mmd"
PROJECT_DIR_NAME = ".mmd"


def get_effective_cwd() -> Path:
    """Get the effective working directory.

    Returns MMD_CWD if set, else Path.cwd(). This provides a single point
    of control for working directory resolution across the server and CLI.

    Returns:
        Resolved Path for working directory
    """
    env_cwd = os.getenv("MMD_CWD")
    if env_cwd:
        return Path(env_cwd).resolve()
    return Path.cwd()


def get_global_dir() -> Path:
    """Get the global mmd directory path.

    Returns:
        Path to ~/.mmd/ (not necessarily existing)
    """
    return Path.home() / GLOBAL_DIR_NAME


def get_project_dir(start: Path | None = None) -> Path | None:
    """Get the project mmd directory.

    Returns cwd/.mmd if it exists, else None. No tree-walking.

    Args:
        start: Starting directory (default: get_effective_cwd())

    Returns:
        Path to .mmd/ if found, None otherwise
    """
    cwd = start or get_effective_cwd()
    candidate = cwd / PROJECT_DIR_NAME
    if candidate.is_dir():
        return candidate
    return None


def get_config_path(cli_name: str) -> Path | None:
    """Get the config file path for a CLI.

    Resolution order:
    1. cwd/.mmd/<cli>.yaml (project-specific)
    2. ~/.mmd/<cli>.yaml (global)

    Args:
        cli_name: CLI name (e.g., "mmd-serve")

    Returns:
        Path to config file if found, None otherwise
    """
    config_name = f"{cli_name}.yaml"

    project_config = get_effective_cwd() / PROJECT_DIR_NAME / config_name
    if project_config.exists():
        return project_config

    global_config = get_global_dir() / config_name
    if global_config.exists():
        return global_config

    return None


def resolve_path(path: str | Path) -> Path:
    """Resolve a user-supplied path.

    Expands ~ and resolves relative paths against the effective cwd,
    so rendered files land where the client expects them.

    Args:
        path: Path string or Path

    Returns:
        Absolute Path
    """
    expanded = Path(path).expanduser()
    if not expanded.is_absolute():
        expanded = get_effective_cwd() / expanded
    return expanded.resolve()
