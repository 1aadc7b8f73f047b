"""Secrets loading for mmd.

Credentials (image-host client ids, MinIO keys) live in secrets.yaml beside
mmd-serve.yaml, separate from committed configuration. Anything not found
there falls back to the process environment.

Example secrets.yaml:

    IMGUR_CLIENT_ID: "abc123"
    MINIO_ACCESS_KEY: "minioadmin"
    MINIO_SECRET_KEY: "minioadmin"
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from loguru import logger

__all__ = ["get_secret", "get_secrets", "load_secrets"]

SECRETS_FILE_NAME = "secrets.yaml"

# Global secrets cache
_secrets: dict[str, str] | None = None


def load_secrets(secrets_path: Path | str | None = None) -> dict[str, str]:
    """Load secrets from a YAML file.

    Args:
        secrets_path: Path to secrets file. If None or missing, returns an
            empty dict.

    Returns:
        Dictionary of secret name -> value

    Raises:
        ValueError: If YAML is invalid or not a mapping
    """
    if secrets_path is None:
        return {}

    secrets_path = Path(secrets_path)
    if not secrets_path.exists():
        logger.debug(f"Secrets file not found: {secrets_path}")
        return {}

    try:
        with secrets_path.open() as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in secrets file {secrets_path}: {e}") from e
    except OSError as e:
        raise ValueError(f"Error reading secrets file {secrets_path}: {e}") from e

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise ValueError(
            f"Secrets file {secrets_path} must be a YAML mapping, not {type(raw_data).__name__}"
        )

    secrets: dict[str, str] = {}
    for key, value in raw_data.items():
        if not isinstance(key, str):
            logger.warning(f"Ignoring non-string secret key: {key}")
            continue
        if value is None:
            continue
        secrets[key] = str(value)

    logger.debug(f"Loaded {len(secrets)} secrets from {secrets_path}")
    return secrets


def _default_secrets_path() -> Path | None:
    from mmd.paths import get_effective_cwd, get_global_dir

    for candidate in (
        get_effective_cwd() / ".mmd" / SECRETS_FILE_NAME,
        get_global_dir() / SECRETS_FILE_NAME,
    ):
        if candidate.exists():
            return candidate
    return None


def get_secrets(
    secrets_path: Path | str | None = None, reload: bool = False
) -> dict[str, str]:
    """Get or load the cached secrets.

    Args:
        secrets_path: Path to secrets file (only used on first load or reload).
            Defaults to .mmd/secrets.yaml in the project, then ~/.mmd.
        reload: Force reload secrets

    Returns:
        Dictionary of secret name -> value
    """
    global _secrets

    if _secrets is None or reload:
        if secrets_path is None:
            secrets_path = _default_secrets_path()
        try:
            _secrets = load_secrets(secrets_path)
        except ValueError as e:
            logger.warning(str(e))
            _secrets = {}

    return _secrets


def get_secret(name: str) -> str | None:
    """Get a secret by name: secrets.yaml first, then the environment."""
    value = get_secrets().get(name)
    if value:
        return value
    return os.getenv(name) or None
