"""
healthroute/download/manager.py — Streaming download and verification of model artifacts.

One :class:`DownloadManager` drives at most one :class:`DownloadSession` at a
time. Files are streamed with httpx into ``<name>.part`` and renamed when
complete; once every file has arrived the session enters VERIFYING and each
file's size and SHA-256 digest are recomputed. Only a fully verified artifact
gets the verified marker that the lifecycle manager checks before loading.

Failures never leave half-installed artifacts behind: network, storage and
integrity failures, and cancellation, remove the version directory. There is
no resume; a new :meth:`DownloadManager.start` restarts from scratch.

State flow::

    IDLE → IN_PROGRESS → VERIFYING → COMPLETED
                 │            │
                 ├──► FAILED ◄┘
                 └──► CANCELLED
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

import httpx

from healthroute.core import events
from healthroute.core.config import DownloadConfig
from healthroute.core.constants import DownloadState
from healthroute.core.errors import (
    HealthRouteError,
    IntegrityMismatchError,
    InvalidManifestError,
    NetworkFailureError,
    StorageFailureError,
)
from healthroute.core.events import EventBus
from healthroute.core.logger import HRLogger, get_logger
from healthroute.download.manifest import ModelArtifact, load_manifest, parse_manifest
from healthroute.download.store import ArtifactStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DownloadSession:
    """
    Immutable snapshot of a download.

    Attributes:
        artifact: The artifact being fetched (``None`` before the first start).
        state: Current :class:`DownloadState`.
        file_bytes: Bytes received per file name.
        bytes_transferred: Sum of ``file_bytes``.
        error: Failure cause when ``state`` is FAILED.
        started_at: ``time.monotonic()`` when the transfer began.
        bytes_per_second: Average throughput since ``started_at``.
    """

    artifact: Optional[ModelArtifact] = None
    state: DownloadState = DownloadState.IDLE
    file_bytes: Mapping[str, int] = field(default_factory=dict)
    bytes_transferred: int = 0
    error: Optional[HealthRouteError] = None
    started_at: Optional[float] = None
    bytes_per_second: float = 0.0

    @property
    def total_bytes(self) -> int:
        return self.artifact.total_bytes if self.artifact is not None else 0

    @property
    def progress(self) -> float:
        """``bytes_transferred / total_bytes`` in ``[0, 1]``."""
        if self.state is DownloadState.COMPLETED:
            return 1.0
        if self.total_bytes <= 0:
            return 0.0
        return min(1.0, self.bytes_transferred / self.total_bytes)

    @property
    def eta_seconds(self) -> Optional[float]:
        """Estimated seconds remaining, or ``None`` while throughput is unknown."""
        if self.state is not DownloadState.IN_PROGRESS or self.bytes_per_second <= 0:
            return None
        remaining = max(0, self.total_bytes - self.bytes_transferred)
        return remaining / self.bytes_per_second


class DownloadManager:
    """
    Fetches, verifies and installs model artifacts into an :class:`ArtifactStore`.

    Args:
        store: Destination store.
        config: Manifest location, timeouts and chunk size.
        client: Optional shared ``httpx.AsyncClient`` (tests pass one built on
            ``httpx.MockTransport``). When omitted each session opens and
            closes its own client.
        event_bus: Optional bus for state and progress events.
        log: Structured logger (defaults to :func:`get_logger`).
    """

    def __init__(
        self,
        store: ArtifactStore,
        config: Optional[DownloadConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        event_bus: Optional[EventBus] = None,
        log: Optional[HRLogger] = None,
    ) -> None:
        self._store = store
        self._cfg = config or DownloadConfig()
        self._client = client
        self._bus = event_bus
        self._log = log or get_logger()
        self._session = DownloadSession()
        self._task: Optional[asyncio.Task] = None

    @property
    def store(self) -> ArtifactStore:
        return self._store

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    async def get_artifact_info(self) -> ModelArtifact:
        """
        Load the manifest named in the configuration (local path or URL).

        Raises:
            InvalidManifestError: If it cannot be fetched, read or parsed.
        """
        source = self._cfg.manifest
        if not self._cfg.manifest_is_remote:
            return load_manifest(Path(source).expanduser())
        try:
            if self._client is not None:
                response = await self._client.get(source)
            else:
                async with self._new_client() as client:
                    response = await client.get(source)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise InvalidManifestError(f"Cannot fetch manifest from {source}", cause=exc) from exc
        return parse_manifest(response.content)

    def progress(self) -> DownloadSession:
        """Return the current session snapshot."""
        return self._session

    def start(self, artifact: ModelArtifact) -> DownloadSession:
        """
        Begin downloading *artifact* and return the session snapshot.

        Must be called from a running event loop. While a session is
        IN_PROGRESS or VERIFYING the active session is returned unchanged.
        An artifact already installed completes immediately.

        Raises:
            RuntimeError: If no event loop is running.
        """
        loop = asyncio.get_running_loop()
        if self._session.state.is_active:
            logger.warning("Download already in progress — start() ignored")
            return self._session

        if self._store.is_installed(artifact):
            self._log.info("download", "already_installed", {"model": artifact.name, "version": artifact.version})
            self._set(
                DownloadSession(
                    artifact=artifact,
                    state=DownloadState.COMPLETED,
                    file_bytes={f.name: f.size for f in artifact.files},
                    bytes_transferred=artifact.total_bytes,
                )
            )
            self._task = None
            return self._session

        self._set(
            DownloadSession(
                artifact=artifact,
                state=DownloadState.IN_PROGRESS,
                file_bytes={f.name: 0 for f in artifact.files},
                started_at=time.monotonic(),
            )
        )
        self._task = loop.create_task(self._run(artifact), name=f"download-{artifact.name}")
        return self._session

    async def wait(self) -> DownloadSession:
        """Wait for the current session to settle and return its final snapshot."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait({task})
        return self._session

    async def download(self, artifact: ModelArtifact) -> DownloadSession:
        """
        :meth:`start` then :meth:`wait`.

        Raises:
            HealthRouteError: The session's error if it ended FAILED.
        """
        self.start(artifact)
        session = await self.wait()
        if session.state is DownloadState.FAILED and session.error is not None:
            raise session.error
        return session

    async def cancel(self) -> DownloadSession:
        """
        Cancel an active session; partial files are removed and the state
        becomes CANCELLED. Idempotent and safe when nothing is running.
        """
        task = self._task
        if task is None or task.done() or not self._session.state.is_active:
            return self._session
        artifact = self._session.artifact
        task.cancel()
        await asyncio.wait({task})
        if self._session.state.is_active and artifact is not None:
            # Cancelled before the task body ever ran.
            self._store.remove(artifact)
            self._set(replace(self._session, state=DownloadState.CANCELLED))
        return self._session

    # ──────────────────────────────────────────
    # Download task
    # ──────────────────────────────────────────

    async def _run(self, artifact: ModelArtifact) -> None:
        t0 = time.monotonic()
        self._log.info(
            "download",
            "start",
            {"model": artifact.name, "version": artifact.version, "total_bytes": artifact.total_bytes},
        )
        try:
            self._store.prepare(artifact)
            self._check_free_space(artifact)
            if self._client is not None:
                await self._transfer_all(self._client, artifact)
            else:
                async with self._new_client() as client:
                    await self._transfer_all(client, artifact)

            self._set(replace(self._session, state=DownloadState.VERIFYING))
            for artifact_file in artifact.files:
                await asyncio.to_thread(self._store.verify_file, artifact, artifact_file)
            self._store.write_marker(artifact)
        except asyncio.CancelledError:
            self._store.remove(artifact)
            self._log.info("download", "cancelled", {"model": artifact.name, "bytes": self._session.bytes_transferred})
            self._set(replace(self._session, state=DownloadState.CANCELLED))
            raise
        except HealthRouteError as exc:
            self._fail(artifact, exc)
            return
        except httpx.HTTPError as exc:
            self._fail(artifact, NetworkFailureError(f"Transfer of {artifact.name} failed", cause=exc))
            return
        except OSError as exc:
            self._fail(artifact, StorageFailureError(f"Writing {artifact.name} failed", cause=exc))
            return

        elapsed_ms = (time.monotonic() - t0) * 1000.0
        self._set(replace(self._session, state=DownloadState.COMPLETED))
        self._log.perf(
            "download",
            "completed",
            latency_ms=elapsed_ms,
            data={"model": artifact.name, "version": artifact.version, "bytes": artifact.total_bytes},
        )

    async def _transfer_all(self, client: httpx.AsyncClient, artifact: ModelArtifact) -> None:
        for artifact_file in artifact.files:
            url = artifact.file_url(artifact_file)
            part = self._store.part_path(artifact, artifact_file)
            logger.info("Downloading %s from %s", artifact_file.name, url)
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                received = 0
                with part.open("wb") as fh:
                    async for chunk in response.aiter_bytes(self._cfg.chunk_size):
                        received += len(chunk)
                        if received > artifact_file.size:
                            raise IntegrityMismatchError(
                                artifact_file.name,
                                f"{artifact_file.size} bytes",
                                f"more than {artifact_file.size} bytes",
                            )
                        await asyncio.to_thread(fh.write, chunk)
                        self._advance(artifact_file.name, len(chunk))
            part.replace(self._store.file_path(artifact, artifact_file))
            self._log.info("download", "file_done", {"file": artifact_file.name, "bytes": artifact_file.size})

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._cfg.request_timeout_s, follow_redirects=True)

    def _check_free_space(self, artifact: ModelArtifact) -> None:
        directory = self._store.path_for(artifact)
        free = shutil.disk_usage(directory).free
        needed = max(artifact.total_bytes, artifact.requirements.min_storage_mb * 1024 * 1024)
        if free < needed:
            raise StorageFailureError(
                f"Not enough disk space for {artifact.name}: need {needed} bytes, {free} free"
            )

    def _advance(self, file_name: str, count: int) -> None:
        session = self._session
        file_bytes = dict(session.file_bytes)
        file_bytes[file_name] = file_bytes.get(file_name, 0) + count
        transferred = session.bytes_transferred + count
        elapsed = time.monotonic() - (session.started_at or time.monotonic())
        speed = transferred / elapsed if elapsed > 0 else 0.0
        self._session = replace(session, file_bytes=file_bytes, bytes_transferred=transferred, bytes_per_second=speed)
        if self._bus is not None:
            self._bus.publish(events.ON_DOWNLOAD_PROGRESS, self._session)

    def _fail(self, artifact: ModelArtifact, error: HealthRouteError) -> None:
        self._store.remove(artifact)
        self._log.error(
            "download",
            "failed",
            {"model": artifact.name, "kind": error.kind.value, "error": str(error)},
        )
        self._set(replace(self._session, state=DownloadState.FAILED, error=error))

    def _set(self, session: DownloadSession) -> None:
        previous = self._session.state
        self._session = session
        if session.state is not previous:
            logger.info("Download state: %s → %s", previous.value, session.state.value)
        if self._bus is not None:
            self._bus.publish(events.ON_DOWNLOAD_STATE, session)
