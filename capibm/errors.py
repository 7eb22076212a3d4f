"""Error taxonomy exposed to the reconciliation scheduler.

Every failure leaving the orchestrator is one of four kinds:

- ``TransientError``: worth an immediate requeue (API failures, rate limits,
  elapsed deadlines).
- ``ConfigurationError``: terminal until the desired state changes.
- ``NotReadyError``: a dependency step has not completed yet.
- ``ConflictError``: the status object changed since it was read.

Example:
    >>> try:
    ...     await reconciler.reconcile(spec, status)
    ... except CapibmError as e:
    ...     schedule(e.requeue_after)
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import ClassVar

import aiohttp

from capibm.infra.http import HttpError

DEFAULT_NOT_READY_DELAY = 30.0


class CapibmError(Exception):
    """Base class for all classified orchestrator errors."""

    terminal: ClassVar[bool] = False
    requeue_after: float | None = None


class TransientError(CapibmError):
    """Network/API failure. Never retried internally."""

    requeue_after = 0.0


class RemoteCallError(TransientError):
    """A remote call failed; carries the operation and resource it was attempting."""

    def __init__(self, operation: str, resource: str, cause: HttpError) -> None:
        self.operation = operation
        self.resource = resource
        self.status = cause.status
        self.body = cause.body
        super().__init__(f"{operation} {resource}: {cause}")

    @property
    def not_found(self) -> bool:
        return self.status == 404


class DeadlineExceeded(TransientError):
    """The caller-supplied deadline elapsed while a remote call was in flight."""


class ConfigurationError(CapibmError):
    """The desired state (or credentials) cannot be acted on until corrected."""

    terminal = True


class NotReadyError(CapibmError):
    """A dependency step has not completed."""

    def __init__(self, message: str, requeue_after: float = DEFAULT_NOT_READY_DELAY) -> None:
        super().__init__(message)
        self.requeue_after = requeue_after


class ConflictError(CapibmError):
    """Optimistic-concurrency write lost; re-read and retry remaining steps."""

    requeue_after = 0.0

    def __init__(
        self, key: str, expected: str | None, actual: str | None, detail: str | None = None,
    ) -> None:
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(detail or (
            f"status for {key} changed since it was read "
            f"(expected version {expected}, found {actual})"
        ))


@contextmanager
def remote_call(operation: str, resource: str) -> Iterator[None]:
    """Rewrap facade ``HttpError`` as ``RemoteCallError``.

    Example:
        with remote_call("create vpc", spec.vpc):
            vpc = await client.create_vpc(...)
    """
    try:
        yield
    except HttpError as e:
        raise RemoteCallError(operation, resource, e) from e


def classify(exc: BaseException) -> CapibmError:
    """Map any exception raised during a pass into the taxonomy."""
    match exc:
        case CapibmError():
            return exc
        case HttpError():
            return RemoteCallError("request", "unknown", exc)
        case TimeoutError():
            return DeadlineExceeded("deadline exceeded while waiting on a remote call")
        case aiohttp.ClientError():
            return TransientError(str(exc))
        case _:
            return TransientError(f"{type(exc).__name__}: {exc}")


__all__ = [
    "CapibmError",
    "ConfigurationError",
    "ConflictError",
    "DeadlineExceeded",
    "NotReadyError",
    "RemoteCallError",
    "TransientError",
    "classify",
    "remote_call",
]
