"""
tests/test_download.py — Download manager and verified artifact store.

Transfers go through ``httpx.MockTransport``; nothing leaves the process.
"""

from __future__ import annotations

import asyncio
import json
from collections import Counter
from pathlib import Path
from typing import Optional

import httpx
import pytest

from conftest import BASE_URL
from healthroute.core.config import DownloadConfig
from healthroute.core.constants import C, DownloadState
from healthroute.core.errors import (
    IntegrityMismatchError,
    InvalidManifestError,
    NetworkFailureError,
)
from healthroute.core.events import ON_DOWNLOAD_PROGRESS, ON_DOWNLOAD_STATE, EventBus
from healthroute.download.manager import DownloadManager, DownloadSession
from healthroute.download.manifest import ModelArtifact
from healthroute.download.store import ArtifactStore


class FileServer:
    """MockTransport handler serving artifact files from a dict."""

    def __init__(self, files: dict[str, bytes], status: int = 200, delay: float = 0.0) -> None:
        self.files = dict(files)
        self.status = status
        self.delay = delay
        self.requests: Counter = Counter()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        name = request.url.path.rsplit("/", 1)[-1]
        self.requests[name] += 1
        if self.status != 200:
            return httpx.Response(self.status, text="unavailable")
        data = self.files[name]
        if not self.delay:
            return httpx.Response(200, content=data)

        async def _slow():
            for i in range(0, len(data), 16):
                await asyncio.sleep(self.delay)
                yield data[i:i + 16]

        return httpx.Response(200, content=_slow())


def _manager(store: ArtifactStore, handler, bus: Optional[EventBus] = None, **cfg) -> DownloadManager:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DownloadManager(store, DownloadConfig(chunk_size=64, **cfg), client=client, event_bus=bus)


def _leftovers(store: ArtifactStore, artifact: ModelArtifact) -> list[Path]:
    directory = store.path_for(artifact)
    return sorted(directory.iterdir()) if directory.exists() else []


class TestDownload:
    @pytest.mark.asyncio
    async def test_download_installs_and_verifies(self, store, artifact, artifact_files) -> None:
        bus = EventBus()
        progress: list[float] = []
        states: list[DownloadState] = []
        bus.subscribe(ON_DOWNLOAD_PROGRESS, lambda s: progress.append(s.progress))
        bus.subscribe(ON_DOWNLOAD_STATE, lambda s: states.append(s.state))
        manager = _manager(store, FileServer(artifact_files), bus)

        session = await manager.download(artifact)

        assert session.state is DownloadState.COMPLETED
        assert session.progress == 1.0
        assert session.bytes_transferred == artifact.total_bytes
        assert store.is_installed(artifact)
        assert not list(store.path_for(artifact).glob("*" + C.PART_SUFFIX))
        marker = json.loads(store.marker_path(artifact).read_text(encoding="utf-8"))
        assert marker["files"] == {f.name: f.sha256 for f in artifact.files}
        assert progress == sorted(progress)
        assert progress[-1] == 1.0
        assert states == [DownloadState.IN_PROGRESS, DownloadState.VERIFYING, DownloadState.COMPLETED]

    @pytest.mark.asyncio
    async def test_corrupted_byte_fails_integrity(self, store, artifact, artifact_files) -> None:
        corrupted = dict(artifact_files)
        weights = bytearray(corrupted["model.safetensors"])
        weights[100] ^= 0xFF
        corrupted["model.safetensors"] = bytes(weights)
        manager = _manager(store, FileServer(corrupted))

        manager.start(artifact)
        session = await manager.wait()

        assert session.state is DownloadState.FAILED
        assert isinstance(session.error, IntegrityMismatchError)
        assert session.error.file_name == "model.safetensors"
        assert not store.is_installed(artifact)
        assert _leftovers(store, artifact) == []

    @pytest.mark.asyncio
    async def test_oversized_body_aborted_during_transfer(self, store, artifact, artifact_files) -> None:
        bus = EventBus()
        states: list[DownloadState] = []
        bus.subscribe(ON_DOWNLOAD_STATE, lambda s: states.append(s.state))
        oversized = dict(artifact_files)
        oversized["model.safetensors"] = artifact_files["model.safetensors"] + bytes(1024 * 1024)
        manager = _manager(store, FileServer(oversized), bus)

        manager.start(artifact)
        session = await manager.wait()

        assert session.state is DownloadState.FAILED
        assert isinstance(session.error, IntegrityMismatchError)
        assert session.error.file_name == "model.safetensors"
        assert session.bytes_transferred <= artifact.total_bytes
        assert DownloadState.VERIFYING not in states
        assert _leftovers(store, artifact) == []

    @pytest.mark.asyncio
    async def test_download_raises_session_error(self, store, artifact, artifact_files) -> None:
        truncated = {name: data[:-1] for name, data in artifact_files.items()}
        manager = _manager(store, FileServer(truncated))
        with pytest.raises(IntegrityMismatchError):
            await manager.download(artifact)

    @pytest.mark.asyncio
    async def test_http_error_is_network_failure(self, store, artifact, artifact_files) -> None:
        manager = _manager(store, FileServer(artifact_files, status=503))
        manager.start(artifact)
        session = await manager.wait()
        assert session.state is DownloadState.FAILED
        assert isinstance(session.error, NetworkFailureError)
        assert isinstance(session.error.cause, httpx.HTTPStatusError)
        assert _leftovers(store, artifact) == []

    @pytest.mark.asyncio
    async def test_transport_error_is_network_failure(self, store, artifact) -> None:
        def _refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        manager = _manager(store, _refuse)
        manager.start(artifact)
        session = await manager.wait()
        assert isinstance(session.error, NetworkFailureError)

    @pytest.mark.asyncio
    async def test_restart_after_failure(self, store, artifact, artifact_files) -> None:
        server = FileServer(artifact_files, status=500)
        manager = _manager(store, server)
        manager.start(artifact)
        assert (await manager.wait()).state is DownloadState.FAILED

        server.status = 200
        manager.start(artifact)
        session = await manager.wait()
        assert session.state is DownloadState.COMPLETED
        assert session.error is None

    @pytest.mark.asyncio
    async def test_second_start_is_a_no_op(self, store, artifact, artifact_files) -> None:
        server = FileServer(artifact_files, delay=0.001)
        manager = _manager(store, server)
        first = manager.start(artifact)
        second = manager.start(artifact)
        assert first.state is DownloadState.IN_PROGRESS
        assert second.state is DownloadState.IN_PROGRESS
        assert second.artifact == first.artifact
        await manager.wait()
        assert all(count == 1 for count in server.requests.values())

    @pytest.mark.asyncio
    async def test_installed_artifact_completes_without_network(self, installed_store, artifact) -> None:
        server = FileServer({})
        manager = _manager(installed_store, server)
        session = manager.start(artifact)
        assert session.state is DownloadState.COMPLETED
        assert (await manager.wait()).state is DownloadState.COMPLETED
        assert sum(server.requests.values()) == 0

    @pytest.mark.asyncio
    async def test_cancel_removes_partial_files(self, store, artifact, artifact_files) -> None:
        manager = _manager(store, FileServer(artifact_files, delay=0.01))
        manager.start(artifact)
        await asyncio.sleep(0.05)
        session = await manager.cancel()
        assert session.state is DownloadState.CANCELLED
        assert _leftovers(store, artifact) == []
        assert not store.is_installed(artifact)

    @pytest.mark.asyncio
    async def test_cancel_before_task_runs(self, store, artifact, artifact_files) -> None:
        manager = _manager(store, FileServer(artifact_files))
        manager.start(artifact)
        session = await manager.cancel()
        assert session.state is DownloadState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent_when_idle(self, store) -> None:
        manager = _manager(store, FileServer({}))
        assert (await manager.cancel()).state is DownloadState.IDLE
        assert (await manager.cancel()).state is DownloadState.IDLE

    def test_start_requires_running_loop(self, store, artifact) -> None:
        manager = _manager(store, FileServer({}))
        with pytest.raises(RuntimeError):
            manager.start(artifact)


class TestArtifactInfo:
    @pytest.mark.asyncio
    async def test_local_manifest(self, store, tmp_path, artifact) -> None:
        path = tmp_path / "manifest.json"
        path.write_text(artifact.model_dump_json(), encoding="utf-8")
        manager = _manager(store, FileServer({}), manifest=str(path))
        assert await manager.get_artifact_info() == artifact

    @pytest.mark.asyncio
    async def test_remote_manifest(self, store, artifact) -> None:
        def _serve(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/health/manifest.json"
            return httpx.Response(200, content=artifact.model_dump_json().encode("utf-8"))

        manager = _manager(store, _serve, manifest=f"{BASE_URL}/manifest.json")
        assert (await manager.get_artifact_info()).name == artifact.name

    @pytest.mark.asyncio
    async def test_remote_manifest_http_error(self, store) -> None:
        manager = _manager(store, lambda request: httpx.Response(404), manifest=f"{BASE_URL}/manifest.json")
        with pytest.raises(InvalidManifestError):
            await manager.get_artifact_info()


class TestSession:
    def test_progress_and_eta(self, artifact) -> None:
        half = artifact.total_bytes // 2
        session = DownloadSession(
            artifact=artifact,
            state=DownloadState.IN_PROGRESS,
            bytes_transferred=half,
            bytes_per_second=float(half),
        )
        assert session.progress == pytest.approx(half / artifact.total_bytes)
        assert session.eta_seconds == pytest.approx((artifact.total_bytes - half) / half)

    def test_idle_session(self) -> None:
        session = DownloadSession()
        assert session.progress == 0.0
        assert session.eta_seconds is None


class TestStore:
    def test_marker_must_match_manifest(self, installed_store, artifact) -> None:
        assert installed_store.is_installed(artifact)
        marker = installed_store.marker_path(artifact)
        data = json.loads(marker.read_text(encoding="utf-8"))
        data["files"]["config.json"] = "0" * 64
        marker.write_text(json.dumps(data), encoding="utf-8")
        assert not installed_store.is_installed(artifact)

    def test_size_change_uninstalls(self, installed_store, artifact) -> None:
        weights = installed_store.file_path(artifact, artifact.file("model.safetensors"))
        weights.write_bytes(weights.read_bytes() + b"\x00")
        assert not installed_store.is_installed(artifact)

    def test_verify_file_detects_digest_mismatch(self, installed_store, artifact) -> None:
        config = artifact.file("config.json")
        path = installed_store.file_path(artifact, config)
        data = bytearray(path.read_bytes())
        data[0] ^= 0x01
        path.write_bytes(bytes(data))
        with pytest.raises(IntegrityMismatchError):
            installed_store.verify_file(artifact, config)

    def test_layout(self, store, artifact) -> None:
        assert store.path_for(artifact) == store.root / "tiny-health" / "1.2.0"
        assert store.installed_versions("tiny-health") == []
        store.prepare(artifact)
        assert store.installed_versions("tiny-health") == ["1.2.0"]
        store.remove(artifact)
        assert not store.path_for(artifact).exists()
