"""
healthroute/core/config.py — Typed configuration loader for healthroute.

Loads config/healthroute.yaml and validates all values into typed dataclasses.
All downstream modules take these dataclasses; never read YAML directly.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Dataclass hierarchy, mirrors healthroute.yaml
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class MemoryConfig:
    """Memory-pressure thresholds. All sizes are MiB."""

    low_memory_fraction: float = 0.15
    low_memory_floor_mb: int = 500
    critical_floor_mb: int = 200
    headroom_mb: int = 256
    min_artifact_footprint_mb: int = 768
    watch_interval_s: float = 30.0


@dataclass(frozen=True)
class LocalModelConfig:
    """On-device model loading and generation settings."""

    required_memory_mb: int = 1536
    context_length: int = 4096
    max_new_tokens: int = 512
    reduced_context_length: int = 1024
    reduced_max_new_tokens: int = 256
    temperature: float = 0.7
    top_p: float = 0.9
    repetition_penalty: float = 1.1
    quantization: str = "nf4"
    device_map: str = "auto"
    inference_timeout_s: float = 30.0
    load_timeout_s: float = 180.0


@dataclass(frozen=True)
class DownloadConfig:
    """Artifact manifest location and transfer settings."""

    store_dir: str = "~/.cache/healthroute/models"
    manifest: str = "config/model_manifest.json"
    request_timeout_s: float = 30.0
    chunk_size: int = 1_048_576
    app_version: str = "1.0.0"

    @property
    def resolved_store_dir(self) -> Path:
        """Return the store directory as an absolute Path, expanding ~ if needed."""
        return Path(os.path.expanduser(self.store_dir))

    @property
    def manifest_is_remote(self) -> bool:
        """True when the manifest must be fetched over HTTP(S)."""
        return self.manifest.startswith(("http://", "https://"))


@dataclass(frozen=True)
class RemoteConfig:
    """Remote language-model service (OpenAI-compatible chat completions)."""

    base_url: str = "https://api.openai.com"
    model: str = "gpt-4o-mini"
    api_key_env: str = "HEALTHROUTE_REMOTE_API_KEY"
    timeout_s: float = 60.0
    max_tokens: int = 512
    temperature: float = 0.7


@dataclass(frozen=True)
class RouterConfig:
    """Backend selection policy."""

    prefer_local: bool = True


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    log_dir: str = "logs"


@dataclass(frozen=True)
class HealthRouteConfig:
    """Root configuration object — single source of truth for all settings."""

    memory: MemoryConfig = field(default_factory=MemoryConfig)
    local_model: LocalModelConfig = field(default_factory=LocalModelConfig)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ──────────────────────────────────────────────
# Loader
# ──────────────────────────────────────────────


def _merge(defaults: dict, overrides: dict) -> dict:
    """
    Deep-merge *overrides* into *defaults*, returning a new dict.

    Nested dicts are merged recursively; scalar values in overrides win.
    """
    result: dict = dict(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _resolve_path(config_path: Path | str | None) -> Optional[Path]:
    """Find the config file: argument, HEALTHROUTE_CONFIG, then config/healthroute.yaml."""
    if config_path is not None:
        resolved = Path(config_path)
        if not resolved.exists():
            raise FileNotFoundError(f"Config file not found: {resolved}")
        return resolved
    if "HEALTHROUTE_CONFIG" in os.environ:
        resolved = Path(os.environ["HEALTHROUTE_CONFIG"])
        if not resolved.exists():
            raise FileNotFoundError(
                f"HEALTHROUTE_CONFIG points to missing file: {resolved}"
            )
        return resolved
    here = Path(__file__).resolve()
    for parent in [here.parent.parent.parent, Path.cwd()]:
        candidate = parent / "config" / "healthroute.yaml"
        if candidate.exists():
            return candidate
    return None


def load_config(
    config_path: Path | str | None = None,
    overrides: Optional[dict] = None,
) -> HealthRouteConfig:
    """
    Load, validate, and return a HealthRouteConfig from a YAML file.

    The search order for the config file is:
    1. *config_path* argument (if provided)
    2. HEALTHROUTE_CONFIG environment variable
    3. ``config/healthroute.yaml`` at the project root or working directory
    4. Built-in defaults (no file required)

    Args:
        config_path: Optional path to a ``healthroute.yaml`` file.
        overrides: Optional nested dict applied on top of the file values.

    Returns:
        A fully populated and frozen :class:`HealthRouteConfig` instance.

    Raises:
        ValueError: If a YAML field has an unknown name, invalid type or value.
        FileNotFoundError: If *config_path* is explicitly given but does not exist.
    """
    resolved_path = _resolve_path(config_path)

    raw: dict = {}
    if resolved_path is not None:
        logger.info("Loading config from: %s", resolved_path)
        with resolved_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must be a YAML mapping, got: {type(loaded)}")
        raw = loaded
    else:
        logger.info("No config file found — using built-in defaults")

    if overrides:
        raw = _merge(raw, overrides)

    try:
        memory_cfg = MemoryConfig(**raw.get("memory", {}))
        local_cfg = LocalModelConfig(**raw.get("local_model", {}))
        download_cfg = DownloadConfig(**raw.get("download", {}))
        remote_cfg = RemoteConfig(**raw.get("remote", {}))
        router_cfg = RouterConfig(**raw.get("router", {}))
        log_cfg = LoggingConfig(**raw.get("logging", {}))
    except TypeError as exc:
        raise ValueError(f"Invalid config value: {exc}") from exc

    _validate_config(memory_cfg, local_cfg, download_cfg)

    config = HealthRouteConfig(
        memory=memory_cfg,
        local_model=local_cfg,
        download=download_cfg,
        remote=remote_cfg,
        router=router_cfg,
        logging=log_cfg,
    )
    logger.debug("Config loaded: %s", config)
    return config


def _validate_config(
    memory: MemoryConfig,
    local: LocalModelConfig,
    download: DownloadConfig,
) -> None:
    """
    Validate cross-field constraints on the loaded configuration.

    Raises:
        ValueError: If any configured value violates a hard constraint.
    """
    if not (0.0 < memory.low_memory_fraction < 1.0):
        raise ValueError(
            f"memory.low_memory_fraction must be in (0, 1), got {memory.low_memory_fraction}"
        )
    if memory.critical_floor_mb >= memory.low_memory_floor_mb:
        raise ValueError(
            "memory.critical_floor_mb must be below memory.low_memory_floor_mb, got "
            f"{memory.critical_floor_mb} >= {memory.low_memory_floor_mb}"
        )
    if memory.headroom_mb < 0:
        raise ValueError(f"memory.headroom_mb must be >= 0, got {memory.headroom_mb}")
    if local.reduced_context_length > local.context_length:
        raise ValueError(
            "local_model.reduced_context_length must not exceed local_model.context_length"
        )
    if local.inference_timeout_s <= 0 or local.load_timeout_s <= 0:
        raise ValueError("local_model timeouts must be positive")
    if local.quantization not in {"nf4", "int8", "none"}:
        raise ValueError(
            f"local_model.quantization must be 'nf4', 'int8', or 'none', got '{local.quantization}'"
        )
    if download.chunk_size <= 0:
        raise ValueError(f"download.chunk_size must be positive, got {download.chunk_size}")
