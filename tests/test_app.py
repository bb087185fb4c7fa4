"""
tests/test_app.py — Service wiring and the command-line entry point.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import FakeFactory, FakeRemote, manifest_dict
from healthroute.app import build_services, resolve_manifest_path
from healthroute.core.config import DownloadConfig, HealthRouteConfig, LoggingConfig
from healthroute.core.constants import BackendKind, ErrorKind, ModelStateKind
from healthroute.core.errors import InvalidManifestError
from healthroute.download.store import ArtifactStore
from main import _build_parser, main, parse_context


@pytest.fixture
def manifest_path(tmp_path: Path, artifact_files: dict[str, bytes]) -> Path:
    path = tmp_path / "manifest.json"
    path.write_text(json.dumps(manifest_dict(artifact_files)), encoding="utf-8")
    return path


@pytest.fixture
def config(tmp_path: Path, manifest_path: Path) -> HealthRouteConfig:
    return HealthRouteConfig(
        download=DownloadConfig(store_dir=str(tmp_path / "models"), manifest=str(manifest_path)),
        logging=LoggingConfig(log_dir=str(tmp_path / "logs")),
    )


class TestBuildServices:
    @pytest.mark.asyncio
    async def test_uninstalled_artifact_answers_remotely(self, config: HealthRouteConfig) -> None:
        factory = FakeFactory()
        remote = FakeRemote()
        services = await build_services(config, backend_factory=factory, remote=remote)
        try:
            assert services.artifact.name == "tiny-health"
            assert not services.store.is_installed(services.artifact)
            assert services.lifecycle.state.kind is ModelStateKind.NOT_LOADED

            response = await services.router.respond("How were my steps?", {"steps": 8500})
            assert response.backend is BackendKind.REMOTE
            assert remote.calls == [("How were my steps?", {"steps": 8500})]
            assert factory.calls == 0
        finally:
            await services.aclose()

    @pytest.mark.asyncio
    async def test_incompatible_manifest_answers_remotely(
        self,
        config: HealthRouteConfig,
        manifest_path: Path,
        installed_store: ArtifactStore,
    ) -> None:
        raw = json.loads(manifest_path.read_text(encoding="utf-8"))
        raw["requirements"]["min_memory_mb"] = 10**9
        manifest_path.write_text(json.dumps(raw), encoding="utf-8")
        factory = FakeFactory()
        remote = FakeRemote()
        services = await build_services(config, backend_factory=factory, remote=remote)
        try:
            assert isinstance(services.manifest_error, InvalidManifestError)
            assert services.artifact is not None
            assert services.store.is_installed(services.artifact)
            assert not services.lifecycle.artifact_available()
            state = services.lifecycle.state
            assert state.kind is ModelStateKind.FAILED
            assert state.reason is ErrorKind.INVALID_MANIFEST

            response = await services.router.respond("How were my steps?", {"steps": 8500})
            assert response.backend is BackendKind.REMOTE
            assert response.local_error is services.manifest_error

            state = await services.lifecycle.load_model_if_needed()
            assert state.reason is ErrorKind.INVALID_MANIFEST
            assert factory.calls == 0
        finally:
            await services.aclose()

    @pytest.mark.asyncio
    async def test_unreadable_manifest_answers_remotely(self, config: HealthRouteConfig, manifest_path: Path) -> None:
        manifest_path.write_text("{not json", encoding="utf-8")
        factory = FakeFactory()
        remote = FakeRemote()
        services = await build_services(config, backend_factory=factory, remote=remote)
        try:
            assert services.artifact is None
            assert services.lifecycle.state.reason is ErrorKind.INVALID_MANIFEST

            response = await services.router.respond("Am I sleeping enough?")
            assert response.backend is BackendKind.REMOTE
            assert response.local_error.kind is ErrorKind.INVALID_MANIFEST
            assert factory.calls == 0
        finally:
            await services.aclose()

    def test_relative_manifest_anchored_at_project_root(self) -> None:
        resolved = resolve_manifest_path(DownloadConfig(manifest="config/model_manifest.json"))
        assert Path(resolved.manifest).is_file()

    def test_remote_manifest_untouched(self) -> None:
        download = DownloadConfig(manifest="https://models.example.test/manifest.json")
        assert resolve_manifest_path(download) is download


class TestCli:
    def test_parse_context(self) -> None:
        context = parse_context(["steps=8500", "sleep_hours=7.5", "mood=tired", "hr=[60,72]", "note=a=b"])
        assert context == {"steps": 8500, "sleep_hours": 7.5, "mood": "tired", "hr": [60, 72], "note": "a=b"}

    @pytest.mark.parametrize("item", ["steps", "=5"])
    def test_parse_context_rejects_bad_items(self, item: str) -> None:
        with pytest.raises(ValueError):
            parse_context([item])

    def test_parser(self) -> None:
        args = _build_parser().parse_args(["ask", "q", "--context", "steps=1", "--remote-first"])
        assert args.command == "ask"
        assert args.context == ["steps=1"]
        assert args.remote_first is True
        assert args.load is False

    def test_status(self, tmp_path: Path, manifest_path: Path, capsys: pytest.CaptureFixture) -> None:
        cfg = tmp_path / "healthroute.yaml"
        cfg.write_text(
            f"download:\n  store_dir: {tmp_path / 'models'}\n  manifest: {manifest_path}\n",
            encoding="utf-8",
        )
        assert main(["--config", str(cfg), "status"]) == 0
        out = capsys.readouterr().out
        assert "[MODEL] tiny-health 1.2.0" in out
        assert "installed=False" in out

    def test_unusable_manifest_status_and_download(
        self, tmp_path: Path, manifest_path: Path, capsys: pytest.CaptureFixture
    ) -> None:
        manifest_path.write_text("{not json", encoding="utf-8")
        cfg = tmp_path / "healthroute.yaml"
        cfg.write_text(
            f"download:\n  store_dir: {tmp_path / 'models'}\n  manifest: {manifest_path}\n",
            encoding="utf-8",
        )
        assert main(["--config", str(cfg), "status"]) == 0
        out = capsys.readouterr().out
        assert "manifest unusable" in out
        assert "InvalidManifest" in out

        assert main(["--config", str(cfg), "download"]) == 1
        assert "[ERROR]" in capsys.readouterr().err

    def test_missing_config_exits_1(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        assert main(["--config", str(tmp_path / "absent.yaml"), "status"]) == 1
        assert "[ERROR]" in capsys.readouterr().err

    def test_bad_context_exits_1(self, capsys: pytest.CaptureFixture) -> None:
        assert main(["ask", "q", "--context", "steps"]) == 1
        assert "KEY=VALUE" in capsys.readouterr().err
