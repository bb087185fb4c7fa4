"""
healthroute/app.py — Wire configured components into a ready-to-use service set.

All components are explicitly constructed and injected; there is no global
model manager. Hosts (the CLI, an embedding application, tests) call
:func:`build_services` once and close the result with
:meth:`Services.aclose`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

import httpx

from healthroute.core.config import DownloadConfig, HealthRouteConfig, load_config
from healthroute.core.errors import InvalidManifestError
from healthroute.core.events import EventBus
from healthroute.core.logger import configure_logger, get_logger
from healthroute.download.manager import DownloadManager
from healthroute.download.manifest import ModelArtifact
from healthroute.download.store import ArtifactStore
from healthroute.llm.backend import BackendFactory, TransformersBackend
from healthroute.llm.lifecycle import ModelLifecycleManager
from healthroute.llm.prompt_builder import PromptBuilder
from healthroute.memory.monitor import MemoryMonitor
from healthroute.remote.provider import OpenAICompatibleProvider, RemoteProvider
from healthroute.router import InferenceRouter

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


@dataclass
class Services:
    """Every long-lived component of one healthroute instance."""

    config: HealthRouteConfig
    event_bus: EventBus
    monitor: MemoryMonitor
    store: ArtifactStore
    downloads: DownloadManager
    artifact: Optional[ModelArtifact]
    lifecycle: ModelLifecycleManager
    remote: RemoteProvider
    router: InferenceRouter
    manifest_error: Optional[InvalidManifestError] = None

    async def aclose(self) -> None:
        """Cancel downloads, release the model and close network clients."""
        await self.downloads.cancel()
        await self.lifecycle.shutdown()
        close = getattr(self.remote, "aclose", None)
        if close is not None:
            await close()
        get_logger().flush()


def resolve_manifest_path(download: DownloadConfig) -> DownloadConfig:
    """Anchor a relative local manifest path at the working directory or project root."""
    if download.manifest_is_remote:
        return download
    path = Path(download.manifest).expanduser()
    if path.is_absolute() or path.exists():
        return download
    candidate = _PROJECT_ROOT / path
    if candidate.exists():
        return replace(download, manifest=str(candidate))
    return download


async def build_services(
    config: Optional[HealthRouteConfig] = None,
    backend_factory: Optional[BackendFactory] = None,
    remote: Optional[RemoteProvider] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Services:
    """
    Construct and connect all components.

    A manifest that cannot be loaded or is incompatible with this host does
    not abort startup: the lifecycle manager starts in
    FAILED(InvalidManifest), never constructs a backend, and the router
    answers every query remotely. The rejection is kept on
    :attr:`Services.manifest_error`.

    Args:
        config: Loaded configuration (``load_config()`` when omitted).
        backend_factory: Local backend factory (default transformers).
        remote: Remote provider (default OpenAI-compatible over httpx).
        http_client: Optional client shared by downloads and the default
            remote provider.
    """
    cfg = config or load_config()
    logging.getLogger("healthroute").setLevel(cfg.logging.level.upper())
    configure_logger(cfg.logging.log_dir)
    log = get_logger()

    bus = EventBus()
    builder = PromptBuilder()
    monitor = MemoryMonitor(cfg.memory)
    store = ArtifactStore(cfg.download.resolved_store_dir)
    downloads = DownloadManager(
        store,
        resolve_manifest_path(cfg.download),
        client=http_client,
        event_bus=bus,
    )

    artifact: Optional[ModelArtifact] = None
    manifest_error: Optional[InvalidManifestError] = None
    try:
        artifact = await downloads.get_artifact_info()
        artifact.check_compatibility(cfg.download.app_version, monitor.snapshot().total_mb)
    except InvalidManifestError as exc:
        manifest_error = exc
        log.error("system", "manifest_unusable", {"manifest": cfg.download.manifest, "error": str(exc)})

    lifecycle = ModelLifecycleManager(
        artifact,
        store,
        monitor,
        backend_factory or TransformersBackend.factory(cfg.local_model),
        cfg.local_model,
        event_bus=bus,
        prompt_builder=builder,
        manifest_error=manifest_error,
    )
    provider = remote or OpenAICompatibleProvider(cfg.remote, client=http_client, prompt_builder=builder)
    router = InferenceRouter(lifecycle, monitor, provider, cfg.router, event_bus=bus)

    log.info(
        "system",
        "services_ready",
        {
            "model": artifact.name if artifact is not None else None,
            "version": artifact.version if artifact is not None else None,
            "installed": lifecycle.artifact_available(),
            "prefer_local": cfg.router.prefer_local,
        },
    )
    return Services(
        config=cfg,
        event_bus=bus,
        monitor=monitor,
        store=store,
        downloads=downloads,
        artifact=artifact,
        lifecycle=lifecycle,
        remote=provider,
        router=router,
        manifest_error=manifest_error,
    )
