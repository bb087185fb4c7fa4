"""
healthroute/llm/lifecycle.py — Load, serve and unload the on-device model.

:class:`ModelLifecycleManager` owns the inference backend handle and is the
only writer of the model :class:`~healthroute.core.fsm.ModelState`.

Concurrency model:

* Every blocking backend call (construction, ``generate``, ``close``) runs on
  one private ``ThreadPoolExecutor(max_workers=1)``, so backend calls never
  overlap and the event loop is never blocked.
* Inference requests are queued FIFO and served by a single worker task.
* Load and unload are serialised by an ``asyncio.Lock``; concurrent
  ``load_model_if_needed()`` callers share one in-flight load task, so the
  backend is constructed at most once.

A load that fails for any reason leaves the manager in FAILED with a typed
error; nothing propagates into the host. FAILED is retryable.
"""

from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from healthroute.core import events
from healthroute.core.config import LocalModelConfig
from healthroute.core.constants import C, ModelStateKind, PressureLevel
from healthroute.core.errors import (
    ArtifactMissingError,
    HealthRouteError,
    InferenceFailureError,
    InferenceTimeoutError,
    InsufficientMemoryError,
    InvalidManifestError,
    LoadFailureError,
    ModelNotReadyError,
    PausedError,
)
from healthroute.core.events import EventBus
from healthroute.core.fsm import ModelState, ModelStateMachine
from healthroute.core.logger import HRLogger, get_logger
from healthroute.download.manifest import ModelArtifact
from healthroute.download.store import ArtifactStore
from healthroute.llm.backend import BackendFactory, GenerationParams, InferenceBackend
from healthroute.llm.prompt_builder import PromptBuilder
from healthroute.memory.monitor import MemoryMonitor

logger = logging.getLogger(__name__)


@dataclass
class _Job:
    """One queued generation request."""

    prompt: str
    params: GenerationParams
    future: asyncio.Future
    enqueued_at: float = field(default_factory=time.monotonic)


class ModelLifecycleManager:
    """
    Memory-aware lifecycle of one local model artifact.

    Args:
        artifact: The artifact to serve.
        store: Verified artifact store the files are loaded from.
        monitor: Memory monitor consulted before every load.
        backend_factory: Builds the backend from the artifact directory.
        config: Memory requirement, generation budgets and timeouts.
        event_bus: Bus receiving ``ON_MODEL_STATE``; a private one is
            created when omitted.
        prompt_builder: Prompt builder (default :class:`PromptBuilder`).
        log: Structured logger (defaults to :func:`get_logger`).
        manifest_error: Set when the manifest could not be parsed or is
            incompatible with this host. The manager then starts in
            FAILED(InvalidManifest) and never constructs a backend;
            *artifact* may be ``None`` in that case.
    """

    def __init__(
        self,
        artifact: Optional[ModelArtifact],
        store: ArtifactStore,
        monitor: MemoryMonitor,
        backend_factory: BackendFactory,
        config: Optional[LocalModelConfig] = None,
        event_bus: Optional[EventBus] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        log: Optional[HRLogger] = None,
        manifest_error: Optional[InvalidManifestError] = None,
    ) -> None:
        if artifact is None and manifest_error is None:
            raise ValueError("artifact is required unless manifest_error is given")
        self._artifact = artifact
        self._store = store
        self._monitor = monitor
        self._factory = backend_factory
        self._cfg = config or LocalModelConfig()
        self._bus = event_bus or EventBus()
        self._builder = prompt_builder or PromptBuilder()
        self._log = log or get_logger()

        self._fsm = ModelStateMachine(on_transition=self._on_transition)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="healthroute-model")
        self._backend: Optional[InferenceBackend] = None
        self._lock = asyncio.Lock()
        self._load_task: Optional[asyncio.Task] = None
        self._queue: asyncio.Queue[_Job] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._paused = False
        self._draining = False
        self._last_error: Optional[HealthRouteError] = None
        self._manifest_error = manifest_error
        if manifest_error is not None:
            self._fail(manifest_error)

    # ──────────────────────────────────────────
    # Read-only views
    # ──────────────────────────────────────────

    @property
    def state(self) -> ModelState:
        """Current state snapshot."""
        return self._fsm.current_state

    @property
    def artifact(self) -> Optional[ModelArtifact]:
        return self._artifact

    @property
    def last_error(self) -> Optional[HealthRouteError]:
        """Most recent load or inference failure, if any."""
        return self._last_error

    @property
    def manifest_error(self) -> Optional[InvalidManifestError]:
        """Why the manifest was rejected; ``None`` for a usable manifest."""
        return self._manifest_error

    @property
    def is_paused(self) -> bool:
        return self._paused

    def artifact_available(self) -> bool:
        """True iff the manifest is usable and the artifact is installed and verified."""
        if self._manifest_error is not None:
            return False
        return self._store.is_installed(self._artifact)

    def state_history(self) -> list[dict]:
        return self._fsm.get_history()

    def subscribe(self, callback: Callable[[ModelState], Any]) -> Callable[[], None]:
        """Call *callback* with every new :class:`ModelState`; returns an unsubscribe function."""
        return self._bus.subscribe(events.ON_MODEL_STATE, callback)

    # ──────────────────────────────────────────
    # Load / unload
    # ──────────────────────────────────────────

    async def load_model_if_needed(self) -> ModelState:
        """
        Bring the model to READY if possible and return the resulting state.

        READY is a no-op. While a load is in flight every caller awaits the
        same load. Failures are reported as a FAILED state (see
        :attr:`last_error`), never raised.
        """
        if self._fsm.current_state.kind is ModelStateKind.READY:
            return self._fsm.current_state
        if self._load_task is None or self._load_task.done():
            self._load_task = asyncio.get_running_loop().create_task(self._load(), name="model-load")
        await asyncio.shield(self._load_task)
        return self._fsm.current_state

    async def unload_model(self, force: bool = False) -> None:
        """
        Release the backend and return to NOT_LOADED. Idempotent.

        Args:
            force: Fail queued requests with :class:`ModelNotReadyError`
                instead of letting them drain first. A request already
                running on the backend always completes before release.
                While a non-forced unload drains the queue, new requests
                are rejected with :class:`ModelNotReadyError`.
        """
        async with self._lock:
            if self._fsm.current_state.kind is not ModelStateKind.READY:
                return
            if force:
                self._fail_queued(ModelNotReadyError("Local model unloaded under memory pressure"))
            else:
                self._draining = True
                try:
                    await self._queue.join()
                finally:
                    self._draining = False
            reason = "forced unload" if force else "unload requested"
            self._fsm.transition(ModelState.unloading(), reason)
            backend, self._backend = self._backend, None
            t0 = time.monotonic()
            if backend is not None:
                loop = asyncio.get_running_loop()
                try:
                    await loop.run_in_executor(self._executor, backend.close)
                except Exception as exc:  # noqa: BLE001
                    self._log.warn("lifecycle", "backend_close_failed", {"error": str(exc)})
            self._fsm.transition(ModelState.not_loaded(), "backend released")
            self._log.perf(
                "lifecycle",
                "unloaded",
                latency_ms=(time.monotonic() - t0) * 1000.0,
                data={"model": self._artifact.name, "forced": force},
            )

    async def handle_memory_warning(self) -> bool:
        """
        React to an OS memory warning.

        Takes a fresh snapshot; if pressure is CRITICAL (or available memory
        is below the smallest artifact footprint) and the model is READY, it
        is force-unloaded.

        Returns:
            True if the model was unloaded.
        """
        snapshot = self._monitor.snapshot()
        footprint_mb = self._monitor.config.min_artifact_footprint_mb
        critical = snapshot.pressure is PressureLevel.CRITICAL or snapshot.available_mb < footprint_mb
        if not critical or self._fsm.current_state.kind is not ModelStateKind.READY:
            return False
        self._log.warn(
            "lifecycle",
            "memory_warning_unload",
            {"available_mb": round(snapshot.available_mb, 1), "pressure": snapshot.pressure.name},
        )
        await self.unload_model(force=True)
        return True

    def start_pressure_watch(self, interval: Optional[float] = None) -> None:
        """Poll memory every *interval* seconds and unload on critical pressure."""
        if self._watch_task is not None and not self._watch_task.done():
            return
        period = interval if interval is not None else self._monitor.config.watch_interval_s
        self._watch_task = asyncio.get_running_loop().create_task(self._watch(period), name="memory-watch")

    async def stop_pressure_watch(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

    # ──────────────────────────────────────────
    # Inference
    # ──────────────────────────────────────────

    async def generate_response(
        self,
        query: Optional[str],
        health_context: Optional[Mapping[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
        reduced_context: bool = False,
    ) -> str:
        """
        Answer *query* with the local model.

        Loads the model if needed, builds the prompt and queues the request
        behind any earlier ones.

        Args:
            query: User question.
            health_context: Optional metric mapping for the prompt.
            timeout: Seconds to wait for the answer (default
                ``inference_timeout_s``), measured from submission.
            reduced_context: Use the reduced context and output budgets.

        Raises:
            PausedError: Inference is paused.
            ModelNotReadyError: The model could not reach READY.
            InferenceTimeoutError: No answer within *timeout*.
            InferenceFailureError: The backend raised.
        """
        self._check_accepting()
        state = await self.load_model_if_needed()
        if state.kind is not ModelStateKind.READY:
            raise ModelNotReadyError(f"Local model is {state}", cause=self._last_error)
        self._check_accepting()

        params = GenerationParams.from_config(self._cfg, reduced_context)
        prompt, dropped = self._builder.build_within(query, health_context, params.max_input_tokens)
        if dropped:
            self._log.warn(
                "lifecycle",
                "health_context_trimmed",
                {"dropped_metrics": dropped, "limit": params.max_input_tokens},
            )

        job = _Job(prompt=prompt, params=params, future=asyncio.get_running_loop().create_future())
        self._queue.put_nowait(job)
        self._ensure_worker()

        budget = timeout if timeout is not None else self._cfg.inference_timeout_s
        try:
            return await asyncio.wait_for(job.future, budget)
        except asyncio.TimeoutError as exc:
            error = InferenceTimeoutError(f"No local response within {budget:.1f}s")
            self._last_error = error
            self._log.warn("lifecycle", "inference_timeout", {"timeout_s": budget})
            raise error from exc

    def pause_inference(self) -> None:
        """Stop accepting requests; queued ones fail with :class:`PausedError`."""
        if self._paused:
            return
        self._paused = True
        failed = self._fail_queued(PausedError("Local inference paused"))
        self._log.info("lifecycle", "paused", {"failed_jobs": failed})

    def resume_inference(self) -> None:
        """Accept requests again."""
        if not self._paused:
            return
        self._paused = False
        self._log.info("lifecycle", "resumed", {})

    async def shutdown(self) -> None:
        """Stop the watcher and worker, release the backend and the executor."""
        await self.stop_pressure_watch()
        await self.unload_model(force=True)
        self._fail_queued(ModelNotReadyError("Lifecycle manager shut down"))
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            await asyncio.wait({worker})
        self._executor.shutdown(wait=False)

    # ──────────────────────────────────────────
    # Internal: load
    # ──────────────────────────────────────────

    async def _load(self) -> None:
        async with self._lock:
            if self._fsm.current_state.kind is ModelStateKind.READY:
                return
            if self._manifest_error is not None:
                self._fail(self._manifest_error)
                return
            if not self._store.is_installed(self._artifact):
                self._fail(
                    ArtifactMissingError(
                        f"{self._artifact.name} {self._artifact.version} is not installed "
                        f"in {self._store.root}"
                    )
                )
                return
            snapshot = self._monitor.snapshot()
            if not self._monitor.has_enough_memory(self._cfg.required_memory_mb, snapshot):
                self._fail(
                    InsufficientMemoryError(
                        f"Need {self._cfg.required_memory_mb}MB plus "
                        f"{self._monitor.config.headroom_mb}MB headroom, "
                        f"{snapshot.available_mb:.0f}MB available"
                    )
                )
                return

            self._fsm.transition(ModelState.loading(C.LOAD_PROGRESS_START), "load requested")
            self._log.info(
                "lifecycle",
                "load_start",
                {"model": self._artifact.name, "version": self._artifact.version},
            )
            loop = asyncio.get_running_loop()

            def on_progress(fraction: float) -> None:
                loop.call_soon_threadsafe(self._report_progress, fraction)

            t0 = time.monotonic()
            future = loop.run_in_executor(
                self._executor,
                self._factory,
                self._artifact,
                self._store.path_for(self._artifact),
                on_progress,
            )
            try:
                backend = await asyncio.wait_for(asyncio.shield(future), self._cfg.load_timeout_s)
            except asyncio.TimeoutError:
                future.add_done_callback(self._close_orphan)
                self._fail(InferenceTimeoutError(f"Model load exceeded {self._cfg.load_timeout_s:.0f}s"))
                return
            except LoadFailureError as exc:
                self._fail(exc)
                return
            except Exception as exc:  # noqa: BLE001
                self._fail(LoadFailureError("Backend construction failed", cause=exc))
                return

            self._backend = backend
            self._fsm.transition(ModelState.ready(), "backend constructed")
            self._log.perf(
                "lifecycle",
                "loaded",
                latency_ms=(time.monotonic() - t0) * 1000.0,
                data={"model": self._artifact.name, "process_mb": round(self._monitor.snapshot().process_mb, 1)},
            )

    def _report_progress(self, fraction: float) -> None:
        if self._fsm.current_state.kind is not ModelStateKind.LOADING:
            return
        fraction = min(1.0, max(0.0, fraction))
        self._fsm.transition(ModelState.loading(C.LOAD_PROGRESS_START + C.LOAD_PROGRESS_SPAN * fraction))

    def _close_orphan(self, future: asyncio.Future) -> None:
        """Close a backend whose construction finished after its load timed out."""
        if future.cancelled() or future.exception() is not None:
            return
        backend = future.result()
        logger.warning("Closing backend constructed after load timeout")
        self._executor.submit(backend.close)

    def _fail(self, error: HealthRouteError) -> None:
        self._last_error = error
        self._log.error(
            "lifecycle",
            "load_failed",
            {
                "model": self._artifact.name if self._artifact is not None else None,
                "kind": error.kind.value,
                "error": str(error),
            },
        )
        self._fsm.transition(ModelState.failed(error.kind, error), str(error))

    # ──────────────────────────────────────────
    # Internal: inference queue
    # ──────────────────────────────────────────

    def _check_accepting(self) -> None:
        if self._paused:
            raise PausedError("Local inference is paused")
        if self._draining:
            raise ModelNotReadyError("Local model is unloading")

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._serve(), name="model-worker")

    async def _serve(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            job = await self._queue.get()
            try:
                if job.future.done():
                    continue
                backend = self._backend
                if backend is None or self._fsm.current_state.kind is not ModelStateKind.READY:
                    job.future.set_exception(ModelNotReadyError(f"Local model is {self._fsm.current_state}"))
                    continue
                t0 = time.monotonic()
                try:
                    text = await loop.run_in_executor(self._executor, backend.generate, job.prompt, job.params)
                except Exception as exc:  # noqa: BLE001
                    error = InferenceFailureError("Local generation failed", cause=exc)
                    self._last_error = error
                    self._log.error("lifecycle", "inference_failed", {"error": str(exc)})
                    if not job.future.done():
                        job.future.set_exception(error)
                    continue
                text = (text or "").strip() or C.EMPTY_RESPONSE_FALLBACK
                self._log.perf(
                    "lifecycle",
                    "inference_done",
                    latency_ms=(time.monotonic() - t0) * 1000.0,
                    data={
                        "queued_ms": round((t0 - job.enqueued_at) * 1000.0, 1),
                        "max_new_tokens": job.params.max_new_tokens,
                        "chars": len(text),
                    },
                )
                if not job.future.done():
                    job.future.set_result(text)
            finally:
                self._queue.task_done()

    def _fail_queued(self, error: HealthRouteError) -> int:
        """Fail every queued, not yet started job with *error*; returns the count."""
        failed = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return failed
            if not job.future.done():
                job.future.set_exception(error)
                failed += 1
            self._queue.task_done()

    # ──────────────────────────────────────────
    # Internal: observation
    # ──────────────────────────────────────────

    async def _watch(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.handle_memory_warning()
            except Exception as exc:  # noqa: BLE001
                self._log.warn("lifecycle", "pressure_watch_error", {"error": str(exc)})

    def _on_transition(self, from_state: ModelState, to_state: ModelState, reason: str) -> None:
        if from_state.kind is not to_state.kind:
            self._log.info(
                "lifecycle",
                "state",
                {"from": str(from_state), "to": str(to_state), "reason": reason},
            )
        self._bus.publish(events.ON_MODEL_STATE, to_state)
