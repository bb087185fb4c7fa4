"""
tests/conftest.py — Shared fakes and fixtures for the healthroute test suite.

Nothing here touches a real model or the network: memory counters are fixed
values, artifacts are a few bytes served through ``httpx.MockTransport`` and
the inference backend is an in-process fake that records every call.
"""

from __future__ import annotations

import hashlib
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union

import pytest

from healthroute.core.config import LocalModelConfig, MemoryConfig
from healthroute.download.manifest import ModelArtifact, parse_manifest
from healthroute.download.store import ArtifactStore
from healthroute.llm.backend import GenerationParams
from healthroute.llm.lifecycle import ModelLifecycleManager
from healthroute.memory.monitor import MemoryCounters, MemoryMonitor

MIB = 1024 * 1024
BASE_URL = "https://models.example.test/health"


def pytest_configure(config: pytest.Config) -> None:
    """Keep JSONL event logs out of the working tree."""
    os.environ.setdefault("HEALTHROUTE_LOG_DIR", tempfile.mkdtemp(prefix="healthroute-logs-"))


# ──────────────────────────────────────────────────────────────
# Memory
# ──────────────────────────────────────────────────────────────

class FakeCounters:
    """Memory counter source with mutable MiB values."""

    def __init__(self, total_mb: float = 8192, available_mb: float = 2048, rss_mb: float = 120) -> None:
        self.total_mb = total_mb
        self.available_mb = available_mb
        self.rss_mb = rss_mb

    def __call__(self) -> MemoryCounters:
        return MemoryCounters(
            total=int(self.total_mb * MIB),
            available=int(self.available_mb * MIB),
            process_rss=int(self.rss_mb * MIB),
        )


@pytest.fixture
def counters() -> FakeCounters:
    """8 GB device with 2 GB available."""
    return FakeCounters()


@pytest.fixture
def monitor(counters: FakeCounters) -> MemoryMonitor:
    return MemoryMonitor(MemoryConfig(), counters)


# ──────────────────────────────────────────────────────────────
# Artifacts
# ──────────────────────────────────────────────────────────────

def manifest_dict(contents: dict[str, bytes], base_url: str = BASE_URL) -> dict:
    """Build a manifest mapping whose digests match *contents*."""
    return {
        "model": {"name": "tiny-health", "version": "1.2.0", "provider": "tests"},
        "files": [
            {
                "name": name,
                "role": "weights" if name.endswith(".safetensors") else "config",
                "size": len(data),
                "sha256": hashlib.sha256(data).hexdigest(),
            }
            for name, data in contents.items()
        ],
        "requirements": {"min_memory_mb": 0, "min_storage_mb": 0},
        "compatibility": {"min_app_version": "1.0.0", "max_app_version": "1.9.9"},
        "technical": {"quantization": "nf4", "context_length": 4096},
        "source": {"base_url": base_url},
    }


@pytest.fixture
def artifact_files() -> dict[str, bytes]:
    return {
        "config.json": b'{"model_type": "qwen2", "hidden_size": 64}',
        "model.safetensors": bytes(range(256)) * 16,
    }


@pytest.fixture
def artifact(artifact_files: dict[str, bytes]) -> ModelArtifact:
    return parse_manifest(manifest_dict(artifact_files))


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "models")


@pytest.fixture
def installed_store(store: ArtifactStore, artifact: ModelArtifact, artifact_files: dict[str, bytes]) -> ArtifactStore:
    """Store with *artifact* written and verified."""
    directory = store.prepare(artifact)
    for name, data in artifact_files.items():
        (directory / name).write_bytes(data)
    store.write_marker(artifact)
    return store


# ──────────────────────────────────────────────────────────────
# Inference backend
# ──────────────────────────────────────────────────────────────

Reply = Union[str, Callable[[str], str]]


class FakeBackend:
    """Records prompts and params; tracks how many generate() calls overlap."""

    def __init__(self, reply: Reply = "You walked 8500 steps today.", delay: float = 0.0,
                 error: Optional[Exception] = None) -> None:
        self.reply = reply
        self.delay = delay
        self.error = error
        self.prompts: list[str] = []
        self.params: list[GenerationParams] = []
        self.active = 0
        self.max_active = 0
        self.close_calls = 0
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def generate(self, prompt: str, params: GenerationParams) -> str:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delay)
            self.prompts.append(prompt)
            self.params.append(params)
            if self.error is not None:
                raise self.error
            return self.reply(prompt) if callable(self.reply) else self.reply
        finally:
            with self._lock:
                self.active -= 1

    def close(self) -> None:
        self.close_calls += 1


class FakeFactory:
    """BackendFactory returning one FakeBackend, optionally slow or failing."""

    def __init__(self, backend: Optional[FakeBackend] = None, delay: float = 0.0,
                 error: Optional[Exception] = None) -> None:
        self.backend = backend or FakeBackend()
        self.delay = delay
        self.error = error
        self.calls = 0
        self.directories: list[Path] = []

    def __call__(self, artifact: ModelArtifact, directory: Path, on_progress: Callable[[float], None]) -> FakeBackend:
        self.calls += 1
        self.directories.append(directory)
        on_progress(0.5)
        time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        on_progress(1.0)
        return self.backend


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def make_manager(
    artifact: ModelArtifact,
    installed_store: ArtifactStore,
    monitor: MemoryMonitor,
    factory: FakeFactory,
) -> Callable[..., ModelLifecycleManager]:
    """Factory for lifecycle managers over the installed test artifact."""

    def _make(
        config: Optional[LocalModelConfig] = None,
        store: Optional[ArtifactStore] = None,
        backend_factory: Optional[FakeFactory] = None,
        memory: Optional[MemoryMonitor] = None,
    ) -> ModelLifecycleManager:
        return ModelLifecycleManager(
            artifact,
            store or installed_store,
            memory or monitor,
            backend_factory or factory,
            config or LocalModelConfig(),
        )

    return _make


# ──────────────────────────────────────────────────────────────
# Remote service
# ──────────────────────────────────────────────────────────────

class FakeRemote:
    """RemoteProvider returning a fixed answer or raising."""

    def __init__(self, reply: str = "Remote says: keep walking.", error: Optional[Exception] = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[tuple[Optional[str], Optional[Mapping[str, Any]]]] = []

    async def complete(self, query: Optional[str], health_context: Optional[Mapping[str, Any]] = None) -> str:
        self.calls.append((query, health_context))
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()
