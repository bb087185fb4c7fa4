"""
healthroute/core/logger.py — JSONL structured event logger for healthroute.

HRLogger writes one JSON object per line to ``<log_dir>/healthroute_{date}.jsonl``,
rotating automatically each day. WARN/ERROR are also mirrored to Python
stdlib logging (stderr). Thread-safe via threading.Lock, so it can be called
from the event loop and from executor threads alike.

The log directory defaults to ``logs/`` and can be moved with the
``HEALTHROUTE_LOG_DIR`` environment variable (read when the singleton is
first created).

Usage::

    from healthroute.core.logger import get_logger
    log = get_logger()
    log.info("lifecycle", "load_start", {"model": "phi-3.5-mini"})
    log.perf("router", "respond_done", latency_ms=812.4, data={"backend": "local"})
"""

from __future__ import annotations

import json
import logging
import os
import platform
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

# ── stdlib mirror logger (stderr for WARN+) ──────────────────
_stdlib = logging.getLogger("healthroute.events")
if not _stdlib.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s — %(message)s"))
    _stdlib.addHandler(_handler)
_stdlib.setLevel(logging.WARNING)
_stdlib.propagate = False

_DEFAULT_LOG_DIR = Path("logs")

# ── Singleton storage ─────────────────────────────────────────
_instance: Optional["HRLogger"] = None
_instance_lock = threading.Lock()


class HRLogger:
    """
    JSONL structured logger.

    Fields written per entry:

    .. code-block:: json

        {
          "timestamp_iso": "2026-10-18T09:12:03.123456+00:00",
          "level": "INFO",
          "phase": "download",
          "event": "file_done",
          "data": {"file": "tokenizer.json"},
          "latency_ms": 1240.5
        }

    ``latency_ms`` is omitted when ``None``.

    Use :func:`get_logger` for the process-wide instance; tests may build
    their own with an explicit *log_dir*.

    Args:
        log_dir: Directory for the JSONL files.
    """

    def __init__(self, log_dir: Path | str = _DEFAULT_LOG_DIR) -> None:
        """Open the log file for today and write the startup entry."""
        self._log_dir = Path(log_dir)
        self._lock = threading.Lock()
        self._file: Optional[Any] = None
        self._current_date: str = ""
        self._open_file()
        self._write_startup()

    @property
    def log_dir(self) -> Path:
        """Directory the JSONL files are written to."""
        return self._log_dir

    # ──────────────────────────────────────────
    # Public logging methods
    # ──────────────────────────────────────────

    def debug(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a DEBUG-level entry (file only)."""
        self._write("DEBUG", phase, event, data)

    def info(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """
        Write an INFO-level structured log entry.

        Args:
            phase: Subsystem (``'memory'``, ``'download'``, ``'lifecycle'``, ``'router'``).
            event: Short event identifier (e.g. ``'load_start'``).
            data: Optional dict of additional key-value context.
        """
        self._write("INFO", phase, event, data)

    def warn(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a WARN-level entry and mirror it to stderr."""
        self._write("WARN", phase, event, data)
        _stdlib.warning("[%s] %s | %s", phase, event, data or {})

    def error(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write an ERROR-level entry and mirror it to stderr."""
        self._write("ERROR", phase, event, data)
        _stdlib.error("[%s] %s | %s", phase, event, data or {})

    def perf(
        self,
        phase: str,
        event: str,
        latency_ms: float,
        data: Optional[dict] = None,
    ) -> None:
        """
        Write a PERF-level entry for latency tracking.

        Args:
            phase: Subsystem the measurement belongs to.
            event: What was measured (e.g. ``'inference_done'``).
            latency_ms: Measured latency in milliseconds.
            data: Optional additional context dict.
        """
        self._write("PERF", phase, event, data, latency_ms=latency_ms)

    def flush(self) -> None:
        """Flush the underlying file buffer immediately."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.flush()

    def close(self) -> None:
        """Close the current log file; later writes reopen it."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.close()
            self._file = None
            self._current_date = ""

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _write(
        self,
        level: str,
        phase: str,
        event: str,
        data: Optional[dict],
        latency_ms: Optional[float] = None,
    ) -> None:
        """Serialise and append one JSON line, rotating on date change."""
        now = datetime.now(tz=timezone.utc)
        record: dict[str, Any] = {
            "timestamp_iso": now.isoformat(),
            "level": level,
            "phase": phase,
            "event": event,
            "data": data or {},
        }
        if latency_ms is not None:
            record["latency_ms"] = round(latency_ms, 3)

        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)

        with self._lock:
            self._rotate_if_needed(now)
            if self._file and not self._file.closed:
                self._file.write(line + "\n")
                self._file.flush()

    def _rotate_if_needed(self, now: datetime) -> None:
        """
        Open a new log file if the calendar date has changed.

        Called inside ``self._lock`` — do not call from outside.
        """
        today = now.strftime("%Y-%m-%d")
        if today != self._current_date or self._file is None:
            if self._file and not self._file.closed:
                self._file.close()
            self._current_date = today
            log_path = self._log_dir / f"healthroute_{today}.jsonl"
            self._log_dir.mkdir(parents=True, exist_ok=True)
            self._file = open(log_path, "a", encoding="utf-8", buffering=1)

    def _open_file(self) -> None:
        """Open the log file for today's date (called once on init)."""
        now = datetime.now(tz=timezone.utc)
        with self._lock:
            self._rotate_if_needed(now)

    def _write_startup(self) -> None:
        """Write a startup entry with Python version and platform."""
        self.info(
            phase="system",
            event="startup",
            data={
                "python_version": sys.version,
                "platform": platform.platform(),
                "timestamp_local": datetime.now().isoformat(),
            },
        )


# ──────────────────────────────────────────────────────────────
# Singleton accessor
# ──────────────────────────────────────────────────────────────

def get_logger() -> HRLogger:
    """
    Return the process-wide :class:`HRLogger` instance.

    The first call creates the instance in ``$HEALTHROUTE_LOG_DIR`` (or
    ``logs/``); subsequent calls return the same object.
    """
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                log_dir = os.environ.get("HEALTHROUTE_LOG_DIR", str(_DEFAULT_LOG_DIR))
                _instance = HRLogger(log_dir)
    return _instance


def configure_logger(log_dir: Path | str) -> HRLogger:
    """
    Point the process-wide logger at *log_dir*.

    ``$HEALTHROUTE_LOG_DIR`` still wins when set. Returns the active instance.
    """
    global _instance
    target = Path(os.environ.get("HEALTHROUTE_LOG_DIR", str(log_dir)))
    with _instance_lock:
        if _instance is not None and _instance.log_dir == target:
            return _instance
        if _instance is not None:
            _instance.close()
        _instance = HRLogger(target)
        return _instance
