"""
healthroute/core/errors.py — Failure taxonomy for healthroute.

Every component raises a subclass of :class:`HealthRouteError` carrying an
:class:`~healthroute.core.constants.ErrorKind`. Underlying causes are chained
with ``raise ... from exc`` and also kept on ``.cause`` so that callers that
only hold the error (``last_error``) can still inspect them.
"""

from __future__ import annotations

from typing import Optional

from healthroute.core.constants import ErrorKind


class HealthRouteError(Exception):
    """
    Base class for all healthroute failures.

    Args:
        message: Human-readable description.
        cause: Optional underlying exception.
    """

    kind: ErrorKind = ErrorKind.INFERENCE_FAILURE

    def __init__(self, message: str = "", cause: Optional[BaseException] = None) -> None:
        self.cause = cause
        if not message:
            message = self.kind.value
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class ArtifactMissingError(HealthRouteError):
    """The model artifact is not installed and verified on local storage."""

    kind = ErrorKind.ARTIFACT_MISSING


class InsufficientMemoryError(HealthRouteError):
    """Available memory minus headroom cannot hold the model."""

    kind = ErrorKind.INSUFFICIENT_MEMORY


class IntegrityMismatchError(HealthRouteError):
    """
    A downloaded file failed size or digest verification.

    Args:
        file_name: Name of the offending artifact file.
        expected: Expected digest (or size, as text).
        actual: Observed digest (or size, as text).
    """

    kind = ErrorKind.INTEGRITY_MISMATCH

    def __init__(self, file_name: str, expected: str, actual: str) -> None:
        self.file_name = file_name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Integrity check failed for {file_name!r}: expected {expected}, got {actual}"
        )


class LoadFailureError(HealthRouteError):
    """The inference backend could not be constructed."""

    kind = ErrorKind.LOAD_FAILURE


class InferenceFailureError(HealthRouteError):
    """The inference backend raised while generating."""

    kind = ErrorKind.INFERENCE_FAILURE


class InferenceTimeoutError(HealthRouteError):
    """A load or generation call exceeded its time budget."""

    kind = ErrorKind.TIMEOUT


class PausedError(HealthRouteError):
    """Inference is paused (host process in background)."""

    kind = ErrorKind.PAUSED


class InvalidManifestError(HealthRouteError):
    """The model manifest is missing, malformed or incompatible."""

    kind = ErrorKind.INVALID_MANIFEST


class NetworkFailureError(HealthRouteError):
    """A network transfer failed."""

    kind = ErrorKind.NETWORK_FAILURE


class StorageFailureError(HealthRouteError):
    """Reading or writing artifact files failed."""

    kind = ErrorKind.STORAGE_FAILURE


class ModelNotReadyError(HealthRouteError):
    """The local model could not reach READY for this request."""

    kind = ErrorKind.MODEL_NOT_READY


class RemoteProviderError(HealthRouteError):
    """The remote language-model service failed (transport, auth or payload)."""

    kind = ErrorKind.REMOTE_FAILURE


class AllBackendsFailedError(HealthRouteError):
    """
    Raised by the router when neither backend could serve a request.

    Args:
        local_error: Why the local backend was not used or failed.
        remote_error: Why the remote backend failed.
    """

    kind = ErrorKind.ALL_BACKENDS_FAILED

    def __init__(
        self,
        local_error: Optional[BaseException],
        remote_error: Optional[BaseException],
    ) -> None:
        self.local_error = local_error
        self.remote_error = remote_error
        local_text = str(local_error) if local_error is not None else "not attempted"
        remote_text = str(remote_error) if remote_error is not None else "not attempted"
        super().__init__(
            "No backend could answer the query "
            f"(local model: {local_text}; remote service: {remote_text})"
        )
