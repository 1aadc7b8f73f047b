"""YAML configuration loading for mmd.

Loads mmd-serve.yaml with engine, batch and delivery settings.

Example mmd-serve.yaml:

    port: 3000
    output_dir: ./diagrams

    engine:
      type: browser
      timeout_seconds: 90

    delivery:
      online_link_mode: remoteUpload
      remote_backend: minio
      minio:
        endpoint: storage.example.com
        secure: true
        access_key: ${MINIO_ACCESS_KEY}
        secret_key: ${MINIO_SECRET_KEY}

    # Use !include for modular configs
    batch: !include batch.yaml
"""

from __future__ import annotations

import copy
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Literal

import yaml
from loguru import logger
from pydantic import BaseModel, Field, PrivateAttr, ValidationError
from pydantic.alias_generators import to_snake

from mmd.config.secrets import get_secret, get_secrets
from mmd.models import DeliveryMode
from mmd.paths import get_config_path, get_effective_cwd, resolve_path

CLI_NAME = "mmd-serve"
CONFIG_FILE_NAME = f"{CLI_NAME}.yaml"
DEFAULT_MERMAID_JS_URL = "https://unpkg.com/mermaid@10.9.1/dist/mermaid.min.js"

# Keys whose children are free-form (HTTP header names) and must not be renamed
_FREEFORM_KEYS = frozenset({"headers"})

_SECRET_FIELDS = frozenset(
    {"access_key", "secret_key", "imgur_client_id", "smms_token", "headers"}
)


class IncludeLoader(yaml.SafeLoader):
    """YAML loader that supports the !include tag.

    Paths are resolved relative to the including file.
    """

    _base_path: Path | None = None

    @classmethod
    def with_base_path(cls, base_path: Path) -> type[IncludeLoader]:
        """Create a loader class with a specific base path for includes."""

        class BoundLoader(cls):  # type: ignore[valid-type,misc]
            _base_path = base_path

        return BoundLoader


def _include_constructor(loader: IncludeLoader, node: yaml.Node) -> Any:
    include_path = loader.construct_scalar(node)  # type: ignore[arg-type]

    if loader._base_path is None:
        raise yaml.YAMLError(f"Cannot resolve !include path: {include_path}")

    resolved = (loader._base_path / include_path).resolve()
    if not resolved.exists():
        logger.warning(f"!include file not found: {resolved}")
        return None

    with resolved.open() as f:
        return yaml.load(f, Loader=IncludeLoader.with_base_path(resolved.parent))  # noqa: S506


IncludeLoader.add_constructor("!include", _include_constructor)


class EngineConfig(BaseModel):
    """Rendering engine settings."""

    type: Literal["browser", "cli"] = Field(
        default="browser",
        description="browser: warm Chromium + mermaid.js; cli: mmdc subprocess",
    )
    timeout_seconds: float = Field(
        default=60.0,
        ge=30.0,
        le=600.0,
        description="Completion bound per render in seconds",
    )
    poll_interval_ms: int = Field(
        default=100,
        ge=10,
        le=5000,
        description="Readiness poll interval for the browser engine",
    )
    max_sessions: int = Field(
        default=2,
        ge=1,
        le=16,
        description="Maximum concurrent browser pages",
    )
    mermaid_js_url: str = Field(
        default=DEFAULT_MERMAID_JS_URL,
        description="URL (or file:// path) of the mermaid.js bundle",
    )
    headless: bool = Field(default=True, description="Run Chromium headless")
    browser_args: list[str] = Field(
        default_factory=lambda: ["--no-sandbox", "--disable-setuid-sandbox"],
        description="Extra Chromium launch arguments",
    )
    cli_command: str = Field(
        default="mmdc", description="Mermaid CLI executable for the cli engine"
    )
    retry_attempts: int = Field(
        default=1,
        ge=1,
        le=5,
        description="Whole-render attempts on engine timeout/unavailable (1 = no retry)",
    )
    retry_backoff_seconds: float = Field(
        default=1.0, ge=0.0, le=60.0, description="Linear backoff unit between render attempts"
    )


class BatchConfig(BaseModel):
    """Batch execution settings."""

    max_concurrent: int = Field(
        default=2,
        ge=1,
        le=16,
        description="Concurrent renders per batch (1 = sequential)",
    )


class MinioConfig(BaseModel):
    """MinIO / S3-compatible object storage."""

    endpoint: str = Field(default="localhost", description="Storage host name")
    port: int | None = Field(default=9000, ge=1, le=65535, description="Storage port")
    secure: bool = Field(default=False, description="Use HTTPS")
    access_key: str | None = Field(
        default=None, description="Access key (default: MINIO_ACCESS_KEY secret)"
    )
    secret_key: str | None = Field(
        default=None, description="Secret key (default: MINIO_SECRET_KEY secret)"
    )
    bucket: str = Field(default="mermaid-charts", description="Bucket name")
    region: str | None = Field(default=None, description="Bucket region")

    def resolved_access_key(self) -> str | None:
        return self.access_key or get_secret("MINIO_ACCESS_KEY")

    def resolved_secret_key(self) -> str | None:
        return self.secret_key or get_secret("MINIO_SECRET_KEY")


class ImageHostingConfig(BaseModel):
    """Image-hosting REST backends."""

    imgur_client_id: str | None = Field(
        default=None, description="Imgur client id (default: IMGUR_CLIENT_ID secret)"
    )
    smms_token: str | None = Field(
        default=None, description="SM.MS API token (default: SMMS_API_TOKEN secret)"
    )
    upload_url: str | None = Field(
        default=None, description="Upload endpoint for the custom backend"
    )
    headers: dict[str, str] = Field(
        default_factory=dict, description="Extra headers for the custom backend"
    )
    timeout_seconds: float = Field(
        default=30.0, gt=0, le=300.0, description="HTTP timeout per upload"
    )

    def resolved_imgur_client_id(self) -> str | None:
        return self.imgur_client_id or get_secret("IMGUR_CLIENT_ID")

    def resolved_smms_token(self) -> str | None:
        return self.smms_token or get_secret("SMMS_API_TOKEN")


class DeliveryConfig(BaseModel):
    """Artifact delivery settings."""

    online_link_mode: DeliveryMode = Field(
        default=DeliveryMode.LOCAL_SERVER,
        description="Mode used when a request sets generateOnlineLink",
    )
    remote_backend: Literal["imgur", "smms", "custom", "minio"] = Field(
        default="imgur", description="Backend for remoteUpload"
    )
    public_base_url: str | None = Field(
        default=None,
        description="Public URL prefix for uploaded objects (overrides endpoint URL)",
    )
    retry_attempts: int = Field(
        default=3, ge=1, le=10, description="Upload attempts on transient failure"
    )
    retry_backoff_seconds: float = Field(
        default=1.0, ge=0.0, le=60.0, description="Linear backoff unit between uploads"
    )
    default_retention_days: int = Field(
        default=7, ge=1, le=30, description="Retention when a request does not set one"
    )
    sweep_interval_minutes: int = Field(
        default=0, ge=0, description="Background expired-upload sweep (0 = off)"
    )
    minio: MinioConfig = Field(default_factory=MinioConfig)
    image_hosting: ImageHostingConfig = Field(default_factory=ImageHostingConfig)


class ServerConfig(BaseModel):
    """Root configuration for mmd-serve."""

    _config_dir: Path | None = PrivateAttr(default=None)

    host: str = Field(default="localhost", description="Static file server host")
    port: int = Field(default=3000, ge=1, le=65535, description="Static file server port")
    output_dir: str = Field(
        default="output", description="Default output directory (relative to cwd)"
    )
    temp_dir: str = Field(
        default_factory=lambda: str(Path(tempfile.gettempdir()) / "mermaid-chart-mcp"),
        description="Staging directory for diagram sources",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )
    log_dir: str = Field(
        default="logs", description="Directory for log files (relative to config dir)"
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)

    def get_output_dir(self) -> Path:
        """Resolved absolute output directory."""
        return resolve_path(self.output_dir)

    def get_temp_dir(self) -> Path:
        """Resolved absolute staging directory."""
        return resolve_path(self.temp_dir)

    def get_log_dir_path(self) -> Path:
        """Get the resolved log directory.

        Relative paths resolve against the config file directory, or
        cwd/.mmd when running on defaults.
        """
        path = Path(self.log_dir).expanduser()
        if path.is_absolute():
            return path
        base = self._config_dir or (get_effective_cwd() / ".mmd")
        return (base / path).resolve()

    def to_public_dict(self) -> dict[str, Any]:
        """Dump for tool responses with credentials masked."""
        return _mask_secrets(self.model_dump(mode="json"))

    def with_updates(self, changes: dict[str, Any]) -> ServerConfig:
        """Return a new config with a partial update deep-merged in.

        Keys may be snake_case or camelCase. The merged result is validated
        as a whole; the current instance is never modified.

        Raises:
            ValueError: If the update is not a mapping or fails validation
        """
        if not isinstance(changes, dict):
            raise ValueError("config update must be an object")
        merged = _deep_merge(self.model_dump(), _normalize_keys(changes))
        try:
            updated = ServerConfig.model_validate(merged)
        except ValidationError as e:
            raise ValueError(_format_validation_error(e)) from e
        updated._config_dir = self._config_dir
        return updated


def _mask_secrets(data: Any) -> Any:
    if isinstance(data, dict):
        masked: dict[str, Any] = {}
        for key, value in data.items():
            if key in _SECRET_FIELDS and value:
                masked[key] = "***"
            else:
                masked[key] = _mask_secrets(value)
        return masked
    return data


def _normalize_keys(data: Any) -> Any:
    if not isinstance(data, dict):
        return data
    normalized: dict[str, Any] = {}
    for key, value in data.items():
        name = to_snake(key) if isinstance(key, str) else key
        if name in _FREEFORM_KEYS:
            normalized[name] = value
        else:
            normalized[name] = _normalize_keys(value)
    return normalized


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict) and key not in _FREEFORM_KEYS:
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"]) or "config"
        parts.append(f"{loc}: {item['msg']}")
    return "; ".join(parts)


_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


def expand_secrets(value: str) -> str:
    """Expand ${VAR} and ${VAR:-default} from secrets.yaml or the environment.

    Raises:
        ValueError: If a variable is unset and has no default.
    """
    missing: list[str] = []

    def replace(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        secret = get_secret(name)
        if secret is not None:
            return secret
        if default is not None:
            return default
        missing.append(name)
        return match.group(0)

    expanded = _VAR_PATTERN.sub(replace, value)
    if missing:
        raise ValueError(f"Missing variables in config: {', '.join(missing)}")
    return expanded


def _expand_secrets_recursive(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: _expand_secrets_recursive(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_secrets_recursive(v) for v in data]
    if isinstance(data, str):
        return expand_secrets(data)
    return data


def _resolve_config_path(config_path: Path | str | None) -> Path | None:
    """Resolve config path from explicit path, env var, or default locations.

    Resolution order:
    1. Explicit config_path if provided
    2. MMD_CONFIG env var
    3. cwd/.mmd/mmd-serve.yaml
    4. ~/.mmd/mmd-serve.yaml
    5. None (use defaults)
    """
    if config_path is not None:
        return Path(config_path)

    env_config = os.getenv("MMD_CONFIG")
    if env_config:
        return Path(env_config)

    return get_config_path(CLI_NAME)


def _load_yaml_file(config_path: Path) -> dict[str, Any]:
    """Load and parse a YAML config file.

    Raises:
        FileNotFoundError: If file doesn't exist.
        ValueError: If YAML is invalid or file can't be read.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    try:
        with config_path.open() as f:
            raw_data = yaml.load(f, Loader=IncludeLoader.with_base_path(config_path.parent))  # noqa: S506
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}") from e
    except OSError as e:
        raise ValueError(f"Error reading {config_path}: {e}") from e

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise ValueError(f"Config file {config_path} must be a YAML mapping")
    return raw_data


def load_config(config_path: Path | str | None = None) -> ServerConfig:
    """Load mmd-serve configuration from YAML.

    Resolution order (when config_path is None):
    1. MMD_CONFIG env var
    2. cwd/.mmd/mmd-serve.yaml
    3. ~/.mmd/mmd-serve.yaml
    4. Built-in defaults

    Args:
        config_path: Path to config file (overrides resolution)

    Returns:
        Validated ServerConfig

    Raises:
        FileNotFoundError: If explicit config path doesn't exist
        ValueError: If YAML is invalid or validation fails
    """
    resolved_path = _resolve_config_path(config_path)

    if resolved_path is None:
        logger.debug("No config file found, using defaults")
        return ServerConfig()

    logger.debug(f"Loading config from {resolved_path}")

    secrets_path = resolved_path.parent / "secrets.yaml"
    if secrets_path.exists():
        get_secrets(secrets_path, reload=True)

    raw_data = _load_yaml_file(resolved_path)
    expanded_data = _expand_secrets_recursive(raw_data)

    try:
        config = ServerConfig.model_validate(expanded_data)
    except ValidationError as e:
        raise ValueError(
            f"Invalid configuration in {resolved_path}: {_format_validation_error(e)}"
        ) from e

    config._config_dir = resolved_path.parent.resolve()
    logger.info(f"Config loaded from {resolved_path}")
    return config


# Global config instance
_config: ServerConfig | None = None


def get_config(
    config_path: Path | str | None = None, reload: bool = False
) -> ServerConfig:
    """Get or load the global configuration.

    Args:
        config_path: Path to config file (only used on first load)
        reload: Force reload configuration

    Returns:
        ServerConfig instance
    """
    global _config

    if _config is None or reload:
        _config = load_config(config_path)

    return _config
