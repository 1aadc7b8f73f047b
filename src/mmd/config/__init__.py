"""Centralized configuration for mmd.

Usage:
    from mmd.config import get_config, load_config

    config = get_config()
    print(config.engine.timeout_seconds)
    print(config.get_output_dir())
"""

from mmd.config.loader import (
    BatchConfig,
    DeliveryConfig,
    EngineConfig,
    ImageHostingConfig,
    MinioConfig,
    ServerConfig,
    get_config,
    load_config,
)
from mmd.config.secrets import get_secret, get_secrets, load_secrets

__all__ = [
    "BatchConfig",
    "DeliveryConfig",
    "EngineConfig",
    "ImageHostingConfig",
    "MinioConfig",
    "ServerConfig",
    "get_config",
    "get_secret",
    "get_secrets",
    "load_config",
    "load_secrets",
]
