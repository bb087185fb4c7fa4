"""
healthroute/memory/monitor.py — Device memory snapshots and pressure policy.

Reads OS memory counters through psutil and classifies them into a pressure
level and a recommended model configuration. Every decision takes a fresh
:class:`MemorySnapshot`; nothing is cached between calls, because a stale
reading is exactly what leads to an out-of-memory kill during a model load.

Callers that need several answers consistent with each other should take
one snapshot and pass it to each method.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional

import psutil

from healthroute.core.config import MemoryConfig
from healthroute.core.constants import C, PressureLevel, RecommendedConfiguration

logger = logging.getLogger(__name__)


class MemoryCounters(NamedTuple):
    """Raw OS counters in bytes."""

    total: int
    available: int
    process_rss: int


CounterSource = Callable[[], MemoryCounters]


def psutil_counters() -> MemoryCounters:
    """Read system and current-process memory counters via psutil."""
    vm = psutil.virtual_memory()
    rss = psutil.Process().memory_info().rss
    return MemoryCounters(total=int(vm.total), available=int(vm.available), process_rss=int(rss))


@dataclass(frozen=True)
class MemorySnapshot:
    """
    Point-in-time memory reading.

    Attributes:
        total_bytes: Physical memory of the device.
        available_bytes: Memory the OS reports as available; always below total.
        process_bytes: Resident set size of this process.
        pressure: Derived :class:`PressureLevel`.
    """

    total_bytes: int
    available_bytes: int
    process_bytes: int
    pressure: PressureLevel

    @property
    def total_mb(self) -> float:
        return self.total_bytes / C.MIB

    @property
    def available_mb(self) -> float:
        return self.available_bytes / C.MIB

    @property
    def process_mb(self) -> float:
        return self.process_bytes / C.MIB

    @property
    def usage_fraction(self) -> float:
        """Share of total memory not available, in ``[0, 1]``."""
        if self.total_bytes <= 0:
            return 1.0
        return (self.total_bytes - self.available_bytes) / self.total_bytes


class MemoryMonitor:
    """
    Memory pressure policy over OS counters.

    Args:
        config: Thresholds (floors, fraction, headroom, minimum footprint).
        counters: Counter source; defaults to :func:`psutil_counters`.
            Tests inject a fake returning fixed values.
    """

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        counters: Optional[CounterSource] = None,
    ) -> None:
        self._cfg = config or MemoryConfig()
        self._counters = counters or psutil_counters

    @property
    def config(self) -> MemoryConfig:
        return self._cfg

    def snapshot(self) -> MemorySnapshot:
        """Take a fresh snapshot from the counter source."""
        raw = self._counters()
        total = max(1, int(raw.total))
        # Some kernels briefly report available == total right after boot.
        available = max(0, min(int(raw.available), total - 1))
        return MemorySnapshot(
            total_bytes=total,
            available_bytes=available,
            process_bytes=max(0, int(raw.process_rss)),
            pressure=self._classify(total, available),
        )

    def pressure_level(self, snapshot: Optional[MemorySnapshot] = None) -> PressureLevel:
        """Return the pressure level of *snapshot* (a fresh one if omitted)."""
        snap = snapshot if snapshot is not None else self.snapshot()
        return self._classify(snap.total_bytes, snap.available_bytes)

    def has_enough_memory(
        self,
        required_mb: float,
        snapshot: Optional[MemorySnapshot] = None,
    ) -> bool:
        """
        True iff *required_mb* fits in available memory minus the headroom.

        Exactly at the margin (``required_mb == available_mb - headroom_mb``)
        counts as enough.
        """
        snap = snapshot if snapshot is not None else self.snapshot()
        budget_mb = snap.available_mb - self._cfg.headroom_mb
        enough = required_mb <= budget_mb
        logger.debug(
            "Memory check: available=%.0fMB required=%.0fMB headroom=%dMB → %s",
            snap.available_mb,
            required_mb,
            self._cfg.headroom_mb,
            "sufficient" if enough else "insufficient",
        )
        return enough

    def recommended_configuration(
        self,
        snapshot: Optional[MemorySnapshot] = None,
    ) -> RecommendedConfiguration:
        """
        Decide how the local model may be used.

        * REMOTE_ONLY — CRITICAL pressure, or not even the smallest artifact
          plus headroom fits.
        * REDUCED_CONTEXT — HIGH pressure.
        * FULL_MODEL — otherwise.
        """
        snap = snapshot if snapshot is not None else self.snapshot()
        floor_mb = self._cfg.min_artifact_footprint_mb + self._cfg.headroom_mb
        if snap.pressure is PressureLevel.CRITICAL or snap.available_mb < floor_mb:
            return RecommendedConfiguration.REMOTE_ONLY
        if snap.pressure is PressureLevel.HIGH:
            return RecommendedConfiguration.REDUCED_CONTEXT
        return RecommendedConfiguration.FULL_MODEL

    def describe(self, snapshot: Optional[MemorySnapshot] = None) -> str:
        """One-line human-readable status, e.g. for logs and the CLI."""
        snap = snapshot if snapshot is not None else self.snapshot()
        return (
            f"total={snap.total_mb:.0f}MB available={snap.available_mb:.0f}MB "
            f"used={snap.usage_fraction * 100:.1f}% process={snap.process_mb:.0f}MB "
            f"pressure={snap.pressure.name} "
            f"recommendation={self.recommended_configuration(snap).value}"
        )

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _classify(self, total_bytes: int, available_bytes: int) -> PressureLevel:
        """One level of escalation per breached threshold, starting at LOW."""
        breaches = 0
        if available_bytes < total_bytes * self._cfg.low_memory_fraction:
            breaches += 1
        if available_bytes < self._cfg.low_memory_floor_mb * C.MIB:
            breaches += 1
        if available_bytes < self._cfg.critical_floor_mb * C.MIB:
            breaches += 1
        return PressureLevel.from_rank(PressureLevel.LOW.value + breaches)
