"""
healthroute/core/fsm.py — Strict state machine for the on-device model lifecycle.

Thread-safe FSM with an explicit validated transition map, transition
history (last 50), an external transition callback and structured logging.
The lifecycle manager is its only writer; everybody else reads
:class:`ModelState` snapshots.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from healthroute.core.constants import C, ErrorKind, ModelStateKind

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# State snapshot
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ModelState:
    """
    Immutable snapshot of the model lifecycle.

    Attributes:
        kind: Current lifecycle state.
        progress: Load progress in ``[0, 1]``; 1.0 once READY, 0.0 otherwise.
        reason: Failure category when ``kind`` is FAILED.
        error: The exception behind a FAILED state.
    """

    kind: ModelStateKind
    progress: float = 0.0
    reason: Optional[ErrorKind] = None
    error: Optional[BaseException] = None

    @classmethod
    def not_loaded(cls) -> "ModelState":
        return cls(ModelStateKind.NOT_LOADED)

    @classmethod
    def loading(cls, progress: float = 0.0) -> "ModelState":
        return cls(ModelStateKind.LOADING, progress=min(1.0, max(0.0, progress)))

    @classmethod
    def ready(cls) -> "ModelState":
        return cls(ModelStateKind.READY, progress=1.0)

    @classmethod
    def unloading(cls) -> "ModelState":
        return cls(ModelStateKind.UNLOADING)

    @classmethod
    def failed(cls, reason: ErrorKind, error: Optional[BaseException] = None) -> "ModelState":
        return cls(ModelStateKind.FAILED, reason=reason, error=error)

    def __str__(self) -> str:
        if self.kind is ModelStateKind.LOADING:
            return f"LOADING({self.progress:.2f})"
        if self.kind is ModelStateKind.FAILED and self.reason is not None:
            return f"FAILED({self.reason.value})"
        return self.kind.value


# ──────────────────────────────────────────────────────────────
# Custom exception
# ──────────────────────────────────────────────────────────────

class InvalidTransitionError(RuntimeError):
    """
    Raised when a requested transition is not in the valid transition map.

    Args:
        from_state: Current state at the time of the illegal attempt.
        to_state: Requested (invalid) target state.
        reason: Caller-supplied reason string.
    """

    def __init__(
        self,
        from_state: ModelStateKind,
        to_state: ModelStateKind,
        reason: str = "",
    ) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        super().__init__(
            f"Invalid transition {from_state.value} → {to_state.value}"
            + (f" (reason: {reason})" if reason else "")
        )


# ──────────────────────────────────────────────────────────────
# Valid transition map
# ──────────────────────────────────────────────────────────────

_VALID_TRANSITIONS: dict[ModelStateKind, list[ModelStateKind]] = {
    ModelStateKind.NOT_LOADED: [
        ModelStateKind.LOADING,
        ModelStateKind.FAILED,
    ],
    ModelStateKind.LOADING: [
        ModelStateKind.LOADING,  # progress updates
        ModelStateKind.READY,
        ModelStateKind.FAILED,
    ],
    ModelStateKind.READY: [
        ModelStateKind.UNLOADING,
    ],
    ModelStateKind.UNLOADING: [
        ModelStateKind.NOT_LOADED,
    ],
    ModelStateKind.FAILED: [
        ModelStateKind.LOADING,  # retry
        ModelStateKind.FAILED,  # retry rejected again
    ],
}


# ──────────────────────────────────────────────────────────────
# FSM class
# ──────────────────────────────────────────────────────────────

TransitionCallback = Callable[[ModelState, ModelState, str], None]


class ModelStateMachine:
    """
    Thread-safe finite state machine over :class:`ModelState`.

    Enforces :data:`_VALID_TRANSITIONS` on the state *kind*; illegal
    transitions raise :class:`InvalidTransitionError` immediately. The last
    50 transitions are retained in :meth:`get_history`.

    Args:
        on_transition: Optional callback invoked after every successful
            transition with signature ``(from_state, to_state, reason)``.
    """

    def __init__(self, on_transition: TransitionCallback | None = None) -> None:
        self._state: ModelState = ModelState.not_loaded()
        self._lock = threading.Lock()
        self._history: list[dict] = []
        self._external_callback = on_transition

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    @property
    def current_state(self) -> ModelState:
        """Return the current state snapshot (thread-safe read)."""
        with self._lock:
            return self._state

    def transition(self, new_state: ModelState, reason: str = "") -> ModelState:
        """
        Attempt a validated state transition.

        Args:
            new_state: Target state snapshot.
            reason: Human-readable reason (for logs/history).

        Returns:
            The previous state.

        Raises:
            InvalidTransitionError: If the transition is not in the valid map.
        """
        with self._lock:
            from_state = self._state
            allowed = _VALID_TRANSITIONS.get(from_state.kind, [])
            if new_state.kind not in allowed:
                raise InvalidTransitionError(from_state.kind, new_state.kind, reason)

            self._state = new_state
            self._history.append(
                {
                    "from": str(from_state),
                    "to": str(new_state),
                    "reason": reason,
                    "timestamp": time.time(),
                }
            )
            if len(self._history) > C.STATE_HISTORY_SIZE:
                self._history.pop(0)

        if from_state.kind is not new_state.kind:
            logger.info(
                "Model state: %s → %s%s",
                from_state,
                new_state,
                f" [{reason}]" if reason else "",
            )
        else:
            logger.debug("Model state: %s → %s", from_state, new_state)

        # External callback outside the lock to avoid deadlock
        if self._external_callback is not None:
            try:
                self._external_callback(from_state, new_state, reason)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Model state callback raised: %s", exc)
        return from_state

    def can_transition(self, target: ModelStateKind) -> bool:
        """Check whether a transition to *target* is currently valid."""
        with self._lock:
            return target in _VALID_TRANSITIONS.get(self._state.kind, [])

    def get_history(self) -> list[dict]:
        """
        Return a copy of the last (up to 50) transition records, oldest first.

        Each record has keys ``from``, ``to``, ``reason`` and ``timestamp``.
        """
        with self._lock:
            return list(self._history)

    def __repr__(self) -> str:
        with self._lock:
            state_str = str(self._state)
            last = self._history[-1] if self._history else None
        last_str = f"{last['from']}→{last['to']}" if last else "none"
        return f"ModelStateMachine(state={state_str}, last={last_str})"
