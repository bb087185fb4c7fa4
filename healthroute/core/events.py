"""
healthroute/core/events.py — Minimal publish/subscribe bus.

Lets non-UI observers react to model-state and download-session changes
without holding references to component internals. Callbacks run
synchronously in registration order; a failing callback is logged and never
disrupts the remaining subscribers or the publisher.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

# ── Event-name constants ──────────────────────────────────────────────────────

ON_MODEL_STATE = "ON_MODEL_STATE"
"""Payload: the new :class:`~healthroute.core.fsm.ModelState` snapshot."""

ON_DOWNLOAD_STATE = "ON_DOWNLOAD_STATE"
"""Payload: :class:`~healthroute.download.manager.DownloadSession` after a state change."""

ON_DOWNLOAD_PROGRESS = "ON_DOWNLOAD_PROGRESS"
"""Payload: :class:`~healthroute.download.manager.DownloadSession` after bytes arrive."""

ON_ROUTED = "ON_ROUTED"
"""Payload: :class:`~healthroute.router.InferenceResponse` after a successful reply."""

ON_FALLBACK = "ON_FALLBACK"
"""Payload: dict with ``from``, ``to`` and ``error`` when the router switches backend."""

Callback = Callable[[Any], None]


class EventBus:
    """Thread-safe event registry keyed by event name."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Callback]] = defaultdict(list)

    def subscribe(self, event: str, callback: Callback) -> Callable[[], None]:
        """
        Register *callback* for *event*.

        Returns:
            A zero-argument function that removes the subscription.
        """
        with self._lock:
            self._subscribers[event].append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(event, callback)

        return _unsubscribe

    def unsubscribe(self, event: str, callback: Callback) -> None:
        """Remove *callback* from *event*; unknown callbacks are ignored."""
        with self._lock:
            callbacks = self._subscribers.get(event, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def publish(self, event: str, payload: Any) -> None:
        """Dispatch *payload* to every subscriber of *event*."""
        with self._lock:
            callbacks = list(self._subscribers.get(event, []))
        for cb in callbacks:
            try:
                cb(payload)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Event callback for %s raised: %s", event, exc)
