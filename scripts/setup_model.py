"""
scripts/setup_model.py — Download and verify the on-device model for offline use.

Reads the model manifest, streams every artifact file into the local store,
checks SHA-256 digests and writes the verified marker. Run this ONCE with
internet access; after that the local model loads without network.

Usage:
    python scripts/setup_model.py [--manifest PATH_OR_URL] [--store-dir DIR]
    HUGGINGFACE_TOKEN=hf_... python scripts/setup_model.py
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace

import httpx

from healthroute.app import resolve_manifest_path
from healthroute.core.config import load_config
from healthroute.core.constants import DownloadState
from healthroute.core.errors import HealthRouteError
from healthroute.download.manager import DownloadManager
from healthroute.download.manifest import ModelArtifact
from healthroute.download.store import ArtifactStore
from healthroute.memory.monitor import MemoryMonitor

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure stdout logging for the setup script."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
    )


def _check_hf_token() -> str | None:
    """
    Check for a HuggingFace access token in the environment.

    Returns:
        The token string if found, None otherwise.
    """
    token = os.environ.get("HUGGINGFACE_TOKEN") or os.environ.get("HF_TOKEN")
    if token:
        logger.info("HuggingFace token found in environment")
    else:
        logger.info("No HuggingFace token set; gated repositories will refuse the download")
    return token


def estimate_memory(artifact: ModelArtifact, monitor: MemoryMonitor, required_mb: int) -> None:
    """Log the artifact footprint against this device's memory."""
    snapshot = monitor.snapshot()
    logger.info("─── Memory Footprint Estimate ─────────────────")
    logger.info("  Model:        %s %s", artifact.name, artifact.version)
    logger.info("  Quantization: %s", artifact.technical.quantization or "unspecified")
    logger.info("  Disk:         %.0f MB", artifact.total_mb)
    logger.info("  Load needs:   %d MB (+%d MB headroom)", required_mb, monitor.config.headroom_mb)
    logger.info("  Device:       %s", monitor.describe(snapshot))
    fits = monitor.has_enough_memory(required_mb, snapshot)
    logger.info("  Fits now:     %s", "yes ✅" if fits else "no — the router will use the remote service")
    logger.info("───────────────────────────────────────────────")


async def _run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    download_cfg = cfg.download
    if args.manifest:
        download_cfg = replace(download_cfg, manifest=args.manifest)
    if args.store_dir:
        download_cfg = replace(download_cfg, store_dir=args.store_dir)
    download_cfg = resolve_manifest_path(download_cfg)

    headers = {}
    token = _check_hf_token()
    if token:
        headers["Authorization"] = f"Bearer {token}"

    store = ArtifactStore(download_cfg.resolved_store_dir)
    monitor = MemoryMonitor(cfg.memory)
    async with httpx.AsyncClient(
        timeout=download_cfg.request_timeout_s,
        follow_redirects=True,
        headers=headers,
    ) as client:
        manager = DownloadManager(store, download_cfg, client=client)
        artifact = await manager.get_artifact_info()
        artifact.check_compatibility(download_cfg.app_version, monitor.snapshot().total_mb)

        logger.info("═══ healthroute — Model Setup ════════════════════")
        logger.info("  Model:     %s %s", artifact.name, artifact.version)
        logger.info("  Files:     %d (%.0f MB)", len(artifact.files), artifact.total_mb)
        logger.info("  Store Dir: %s", store.path_for(artifact))
        logger.info("══════════════════════════════════════════════════")

        session = await manager.download(artifact)

    if session.state is not DownloadState.COMPLETED:
        logger.error("Setup incomplete (%s) — re-run to retry download", session.state.value)
        return 1

    estimate_memory(artifact, monitor, cfg.local_model.required_memory_mb)
    logger.info("")
    logger.info("✅ Setup complete! The local model is available offline:")
    logger.info("   healthroute status")
    logger.info('   healthroute ask "How did I sleep?" --context sleepAnalysis=7.5')
    return 0


def main() -> None:
    """Main entry point for the model setup script."""
    _setup_logging()

    parser = argparse.ArgumentParser(description="Download and verify the healthroute on-device model")
    parser.add_argument("--config", default=None, help="Path to healthroute.yaml")
    parser.add_argument("--manifest", default=None, help="Manifest path or URL (overrides download.manifest)")
    parser.add_argument("--store-dir", default=None, help="Artifact store directory (overrides download.store_dir)")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(_run(args)))
    except HealthRouteError as exc:
        logger.error("❌ %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
