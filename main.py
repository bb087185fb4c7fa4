"""
main.py — healthroute command-line entry point.

Subcommands:

    ask       Route one health question to the local model or the remote service.
    download  Fetch and verify the model artifact named in the manifest.
    status    Show memory pressure, the recommendation and the install state.

Examples::

    healthroute ask "How were my steps today?" --context steps=8500 --context heartRate=72
    healthroute download
    healthroute status --config config/healthroute.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional

from healthroute import __version__
from healthroute.core.config import load_config
from healthroute.core.constants import DownloadState
from healthroute.core.errors import HealthRouteError
from healthroute.core.events import ON_DOWNLOAD_PROGRESS

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Argument parsing
# ──────────────────────────────────────────────────────────────

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="healthroute",
        description="healthroute — on-device / remote routing for health questions",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--version", action="version", version=f"healthroute {__version__}")
    p.add_argument(
        "--config",
        default=None,
        help="Path to healthroute.yaml (default: $HEALTHROUTE_CONFIG or config/healthroute.yaml)",
    )
    p.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Override logging.level from the config file",
    )
    sub = p.add_subparsers(dest="command", required=True)

    ask = sub.add_parser("ask", help="Answer one question")
    ask.add_argument("query", help="The question, in any language")
    ask.add_argument(
        "--context",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Health metric for the prompt; repeatable. Values are parsed as JSON when possible",
    )
    ask.add_argument("--remote-first", action="store_true", help="Try the remote service before the local model")
    ask.add_argument("--load", action="store_true", help="Load the local model before routing")

    sub.add_parser("download", help="Download and verify the model artifact")
    sub.add_parser("status", help="Print memory and model status")
    return p


def parse_context(pairs: list[str]) -> dict[str, Any]:
    """
    Turn ``KEY=VALUE`` strings into a health-context mapping.

    ``8500`` becomes an int, ``7.5`` a float, ``[1,2]`` a list; anything that
    is not JSON stays a string.

    Raises:
        ValueError: If an item has no ``=``.
    """
    context: dict[str, Any] = {}
    for item in pairs:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"--context expects KEY=VALUE, got {item!r}")
        try:
            context[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            context[key.strip()] = raw
    return context


# ──────────────────────────────────────────────────────────────
# Commands
# ──────────────────────────────────────────────────────────────

async def _cmd_ask(args: argparse.Namespace, overrides: dict) -> int:
    from healthroute.app import build_services

    context = parse_context(args.context)
    if args.remote_first:
        overrides.setdefault("router", {})["prefer_local"] = False
    services = await build_services(load_config(args.config, overrides))
    try:
        if args.load:
            state = await services.lifecycle.load_model_if_needed()
            print(f"[INFO] Local model: {state}")
        response = await services.router.respond(args.query, context)
    finally:
        await services.aclose()

    print(response.text)
    print(
        f"\n[INFO] backend={response.backend.value} latency={response.latency_ms:.0f}ms "
        f"config={response.configuration.value}",
        file=sys.stderr,
    )
    if response.local_error is not None:
        print(f"[INFO] local model not used: {response.local_error}", file=sys.stderr)
    return 0


async def _cmd_download(args: argparse.Namespace, overrides: dict) -> int:
    from healthroute.app import build_services

    services = await build_services(load_config(args.config, overrides))
    last_pct = -1

    def _on_progress(session) -> None:
        nonlocal last_pct
        pct = int(session.progress * 100)
        if pct != last_pct:
            last_pct = pct
            eta = f" eta={session.eta_seconds:.0f}s" if session.eta_seconds is not None else ""
            print(f"\r[....] {pct:3d}% {session.bytes_per_second / 1e6:.1f} MB/s{eta}", end="", flush=True)

    services.event_bus.subscribe(ON_DOWNLOAD_PROGRESS, _on_progress)
    try:
        if services.manifest_error is not None:
            raise services.manifest_error
        session = await services.downloads.download(services.artifact)
    finally:
        await services.aclose()
    print()
    if session.state is DownloadState.COMPLETED:
        print(f"[OK] {services.artifact.name} {services.artifact.version} → {services.store.path_for(services.artifact)}")
        return 0
    print(f"[FAIL] download ended {session.state.value}", file=sys.stderr)
    return 1


async def _cmd_status(args: argparse.Namespace, overrides: dict) -> int:
    from healthroute.app import build_services

    services = await build_services(load_config(args.config, overrides))
    try:
        snapshot = services.monitor.snapshot()
        artifact = services.artifact
        print(f"[MEM]   {services.monitor.describe(snapshot)}")
        if services.manifest_error is not None:
            print(f"[MODEL] manifest unusable: {services.manifest_error}")
        if artifact is not None:
            print(f"[MODEL] {artifact.name} {artifact.version} ({artifact.total_mb:.0f} MB, {len(artifact.files)} files)")
            print(f"[STORE] {services.store.path_for(artifact)}")
        print(f"[STORE] installed={services.lifecycle.artifact_available()}")
        print(f"[STATE] {services.lifecycle.state}")
        fits = services.monitor.has_enough_memory(services.config.local_model.required_memory_mb, snapshot)
        print(f"[LOAD]  required={services.config.local_model.required_memory_mb}MB fits={fits}")
    finally:
        await services.aclose()
    return 0


_COMMANDS = {
    "ask": _cmd_ask,
    "download": _cmd_download,
    "status": _cmd_status,
}


# ──────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────

def main(argv: Optional[list[str]] = None) -> int:
    """Parse arguments, run the subcommand and return the exit code."""
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level or "WARNING",
        format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )
    overrides: dict = {}
    if args.log_level:
        overrides["logging"] = {"level": args.log_level}

    try:
        return asyncio.run(_COMMANDS[args.command](args, overrides))
    except KeyboardInterrupt:
        print("\n[INFO] Interrupted")
        return 130
    except (HealthRouteError, ValueError, FileNotFoundError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
