"""
healthroute/core/constants.py — Shared enums and fixed constants for healthroute.

Typed enum groups for model state, memory pressure, download state and
backends, plus a frozen constants holder for values that are part of the
on-disk or prompt contract and therefore not configurable.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar


# ──────────────────────────────────────────────────────────────
# Model lifecycle
# ──────────────────────────────────────────────────────────────

class ModelStateKind(Enum):
    """All valid states of the on-device model lifecycle."""

    NOT_LOADED = "NOT_LOADED"
    LOADING = "LOADING"
    READY = "READY"
    UNLOADING = "UNLOADING"
    FAILED = "FAILED"


# ──────────────────────────────────────────────────────────────
# Memory
# ──────────────────────────────────────────────────────────────

class PressureLevel(Enum):
    """Coarse classification of how close the device is to exhausting memory."""

    LOW = 0
    MODERATE = 1
    HIGH = 2
    CRITICAL = 3

    @classmethod
    def from_rank(cls, rank: int) -> "PressureLevel":
        """Return the level for *rank*, clamped to ``[LOW, CRITICAL]``."""
        return cls(max(cls.LOW.value, min(cls.CRITICAL.value, rank)))

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, PressureLevel):
            return NotImplemented
        return self.value >= other.value

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, PressureLevel):
            return NotImplemented
        return self.value > other.value


class RecommendedConfiguration(Enum):
    """How the local model may be used under the current memory state."""

    FULL_MODEL = "FULL_MODEL"
    REDUCED_CONTEXT = "REDUCED_CONTEXT"
    REMOTE_ONLY = "REMOTE_ONLY"


# ──────────────────────────────────────────────────────────────
# Download
# ──────────────────────────────────────────────────────────────

class DownloadState(Enum):
    """States of a :class:`~healthroute.download.manager.DownloadSession`."""

    IDLE = "IDLE"
    IN_PROGRESS = "IN_PROGRESS"
    VERIFYING = "VERIFYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_active(self) -> bool:
        """True while a transfer or verification is running."""
        return self in (DownloadState.IN_PROGRESS, DownloadState.VERIFYING)


# ──────────────────────────────────────────────────────────────
# Routing
# ──────────────────────────────────────────────────────────────

class BackendKind(Enum):
    """Which backend served an inference request."""

    LOCAL = "local"
    REMOTE = "remote"


class ErrorKind(Enum):
    """Failure taxonomy shared by every component."""

    ARTIFACT_MISSING = "ArtifactMissing"
    INSUFFICIENT_MEMORY = "InsufficientMemory"
    INTEGRITY_MISMATCH = "IntegrityMismatch"
    LOAD_FAILURE = "LoadFailure"
    INFERENCE_FAILURE = "InferenceFailure"
    TIMEOUT = "Timeout"
    PAUSED = "Paused"
    INVALID_MANIFEST = "InvalidManifest"
    NETWORK_FAILURE = "NetworkFailure"
    STORAGE_FAILURE = "StorageFailure"
    MODEL_NOT_READY = "ModelNotReady"
    REMOTE_FAILURE = "RemoteFailure"
    ALL_BACKENDS_FAILED = "AllBackendsFailed"


# ──────────────────────────────────────────────────────────────
# Frozen constants
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HealthRouteConstants:
    """
    Fixed values that form part of a persisted or textual contract.

    Use the class attributes directly — do not instantiate this class.
    Tunable thresholds live in :mod:`healthroute.core.config` instead.
    """

    MIB: ClassVar[int] = 1024 * 1024
    """Bytes per mebibyte; every ``*_mb`` value in healthroute is MiB."""

    VERIFIED_MARKER: ClassVar[str] = ".verified.json"
    """File written into an artifact directory after digest verification."""

    PART_SUFFIX: ClassVar[str] = ".part"
    """Suffix of in-flight download files; never present in a verified artifact."""

    NO_HEALTH_DATA_MARKER: ClassVar[str] = "No health data available."
    """Rendered in place of the health-data block when the context is empty."""

    EMPTY_RESPONSE_FALLBACK: ClassVar[str] = (
        "Sorry, I could not generate a suitable answer to your health question. "
        "Please rephrase it or try again later."
    )
    """Returned when the local model produces only whitespace."""

    LOAD_PROGRESS_START: ClassVar[float] = 0.1
    """Progress reported as soon as backend construction begins."""

    LOAD_PROGRESS_SPAN: ClassVar[float] = 0.8
    """Share of the progress bar driven by the backend's own load callback."""

    STATE_HISTORY_SIZE: ClassVar[int] = 50
    """Number of model-state transitions retained for diagnostics."""


#: Convenience alias: ``from healthroute.core.constants import C``
C = HealthRouteConstants
