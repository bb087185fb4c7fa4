"""
healthroute/router.py — Choose the local model or the remote service for each query.

Per request the router takes a fresh memory snapshot, asks the monitor for a
recommended configuration and tries the preferred backend first. Any failure
of the first backend is logged and the other one is tried transparently;
only when both fail does the caller see :class:`AllBackendsFailedError`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from healthroute.core import events
from healthroute.core.config import RouterConfig
from healthroute.core.constants import BackendKind, ModelStateKind, RecommendedConfiguration
from healthroute.core.errors import (
    AllBackendsFailedError,
    ArtifactMissingError,
    HealthRouteError,
    InferenceFailureError,
    InsufficientMemoryError,
    RemoteProviderError,
)
from healthroute.core.events import EventBus
from healthroute.core.logger import HRLogger, get_logger
from healthroute.llm.lifecycle import ModelLifecycleManager
from healthroute.memory.monitor import MemoryMonitor
from healthroute.remote.provider import RemoteProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InferenceRequest:
    """A user query plus optional health metrics."""

    query: str
    health_context: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InferenceResponse:
    """
    Answer to one :class:`InferenceRequest`.

    Attributes:
        text: The answer.
        backend: Which backend produced it.
        latency_ms: End-to-end routing latency.
        configuration: Memory recommendation in force for this request.
        local_error: Why the local model was skipped or failed, if it was.
        remote_error: Why the remote service failed, when local answered
            as the fallback.
    """

    text: str
    backend: BackendKind
    latency_ms: float
    configuration: RecommendedConfiguration = RecommendedConfiguration.FULL_MODEL
    local_error: Optional[HealthRouteError] = None
    remote_error: Optional[HealthRouteError] = None


class InferenceRouter:
    """
    Routes queries between :class:`ModelLifecycleManager` and a :class:`RemoteProvider`.

    Args:
        lifecycle: Local model lifecycle manager.
        monitor: Memory monitor (a fresh snapshot per request).
        remote: Remote provider.
        config: Routing policy (``prefer_local``).
        event_bus: Optional bus for ``ON_ROUTED`` / ``ON_FALLBACK``.
        log: Structured logger.
    """

    def __init__(
        self,
        lifecycle: ModelLifecycleManager,
        monitor: MemoryMonitor,
        remote: RemoteProvider,
        config: Optional[RouterConfig] = None,
        event_bus: Optional[EventBus] = None,
        log: Optional[HRLogger] = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._monitor = monitor
        self._remote = remote
        self._cfg = config or RouterConfig()
        self._bus = event_bus
        self._log = log or get_logger()
        self._last_error: Optional[HealthRouteError] = None

    @property
    def last_error(self) -> Optional[HealthRouteError]:
        """The most recent :class:`AllBackendsFailedError`, if any."""
        return self._last_error

    async def respond(
        self,
        query: str,
        health_context: Optional[Mapping[str, Any]] = None,
    ) -> InferenceResponse:
        """
        Answer *query*, falling back between backends.

        Raises:
            AllBackendsFailedError: Both backends failed or were unavailable.
        """
        return await self.route(InferenceRequest(query=query, health_context=dict(health_context or {})))

    async def route(self, request: InferenceRequest) -> InferenceResponse:
        t0 = time.monotonic()
        snapshot = self._monitor.snapshot()
        recommendation = self._monitor.recommended_configuration(snapshot)
        skip_reason = self._local_skip_reason(recommendation, snapshot.pressure.name)
        reduced = recommendation is RecommendedConfiguration.REDUCED_CONTEXT

        self._log.info(
            "router",
            "request",
            {
                "recommendation": recommendation.value,
                "pressure": snapshot.pressure.name,
                "local_eligible": skip_reason is None,
                "prefer_local": self._cfg.prefer_local,
            },
        )

        local_error: Optional[HealthRouteError] = skip_reason
        remote_error: Optional[HealthRouteError] = None

        if self._cfg.prefer_local and skip_reason is None:
            try:
                text = await self._lifecycle.generate_response(
                    request.query, request.health_context, reduced_context=reduced
                )
                return self._done(t0, text, BackendKind.LOCAL, recommendation)
            except Exception as exc:  # noqa: BLE001
                local_error = _as_error(exc, InferenceFailureError, "Local model failed")
                self._fallback(BackendKind.LOCAL, BackendKind.REMOTE, local_error)

        try:
            text = await self._remote.complete(request.query, request.health_context)
            return self._done(t0, text, BackendKind.REMOTE, recommendation, local_error=local_error)
        except Exception as exc:  # noqa: BLE001
            remote_error = _as_error(exc, RemoteProviderError, "Remote service failed")

        if not self._cfg.prefer_local and skip_reason is None:
            self._fallback(BackendKind.REMOTE, BackendKind.LOCAL, remote_error)
            try:
                text = await self._lifecycle.generate_response(
                    request.query, request.health_context, reduced_context=reduced
                )
                return self._done(t0, text, BackendKind.LOCAL, recommendation, remote_error=remote_error)
            except Exception as exc:  # noqa: BLE001
                local_error = _as_error(exc, InferenceFailureError, "Local model failed")

        error = AllBackendsFailedError(local_error, remote_error)
        self._last_error = error
        self._log.error(
            "router",
            "all_backends_failed",
            {
                "local": str(local_error) if local_error else None,
                "remote": str(remote_error) if remote_error else None,
            },
        )
        raise error

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _local_skip_reason(
        self,
        recommendation: RecommendedConfiguration,
        pressure: str,
    ) -> Optional[HealthRouteError]:
        """Why the local model must not be tried for this request, or ``None``."""
        if self._lifecycle.manifest_error is not None:
            return self._lifecycle.manifest_error
        if recommendation is RecommendedConfiguration.REMOTE_ONLY:
            return InsufficientMemoryError(f"Memory pressure {pressure}: local model not used")
        state = self._lifecycle.state
        if state.kind in (ModelStateKind.NOT_LOADED, ModelStateKind.FAILED) and not self._lifecycle.artifact_available():
            return ArtifactMissingError("Local model artifact is not installed")
        return None

    def _done(
        self,
        t0: float,
        text: str,
        backend: BackendKind,
        recommendation: RecommendedConfiguration,
        local_error: Optional[HealthRouteError] = None,
        remote_error: Optional[HealthRouteError] = None,
    ) -> InferenceResponse:
        response = InferenceResponse(
            text=text,
            backend=backend,
            latency_ms=(time.monotonic() - t0) * 1000.0,
            configuration=recommendation,
            local_error=local_error,
            remote_error=remote_error,
        )
        self._log.perf(
            "router",
            "respond_done",
            latency_ms=response.latency_ms,
            data={"backend": backend.value, "recommendation": recommendation.value},
        )
        if self._bus is not None:
            self._bus.publish(events.ON_ROUTED, response)
        return response

    def _fallback(self, source: BackendKind, target: BackendKind, error: HealthRouteError) -> None:
        logger.warning("%s backend failed (%s); falling back to %s", source.value, error, target.value)
        self._log.warn(
            "router",
            "fallback",
            {"from": source.value, "to": target.value, "kind": error.kind.value, "error": str(error)},
        )
        if self._bus is not None:
            self._bus.publish(events.ON_FALLBACK, {"from": source, "to": target, "error": error})


def _as_error(exc: Exception, wrapper: type, message: str) -> HealthRouteError:
    """Return *exc* if it is already a :class:`HealthRouteError`, else wrap it."""
    if isinstance(exc, HealthRouteError):
        return exc
    return wrapper(message, cause=exc)
