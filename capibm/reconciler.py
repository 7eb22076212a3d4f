"""Reconcile entry points called by the external scheduler.

One call is one pass: build a scope, run the provisioner (or teardown), and
report the resulting status with a classified error. Nothing is retried here;
``ReconcileResult.requeue_after`` tells the scheduler when to call again.

Example:
    reconciler = ClusterReconciler(store, deadline=300)
    result = await reconciler.reconcile(spec)
    if result.error:
        schedule(spec, after=result.requeue_after)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any, Generic, TypeAlias, TypeVar

from loguru import logger
from pydantic import BaseModel

from capibm.api.spec import ClusterSpec, MachineSpec
from capibm.api.status import ClusterStatus, MachineStatus
from capibm.config import CloudConfig, Credentials, load_config, load_credentials
from capibm.errors import CapibmError, ConfigurationError, classify
from capibm.persistence import SecretReader, StatusStore
from capibm.provisioner import ClusterProvisioner, MachineProvisioner
from capibm.scope import ClusterScope, MachineScope
from capibm.teardown import ClusterTeardown, MachineTeardown


S = TypeVar("S", bound=BaseModel)
Sc = TypeVar("Sc", ClusterScope, MachineScope)
_T = TypeVar("_T")


@dataclass(frozen=True, slots=True)
class ReconcileResult(Generic[S]):
    """Outcome of one pass: the status as left by the pass, and its error if any."""

    status: S
    error: CapibmError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def requeue_after(self) -> float | None:
        """Seconds until the next pass; ``None`` when no requeue is needed."""
        return self.error.requeue_after if self.error is not None else None


Step: TypeAlias = Callable[[_T], Awaitable[Any]]


async def run_pass(
    opener: AbstractAsyncContextManager[Sc],
    step: Step[Sc],
    fallback: S,
    *,
    deadline: float | None = None,
) -> ReconcileResult[S]:
    """Run ``step`` inside a scope, bounded by ``deadline`` seconds.

    A failed pass records the error message as the status condition; a
    successful one clears it. ``fallback`` is reported when the scope could
    not be opened at all.
    """
    scope: Sc | None = None
    try:
        async with asyncio.timeout(deadline):
            async with opener as opened:
                scope = opened
                await step(opened)
    except Exception as exc:
        error = classify(exc)
        if scope is None:
            logger.bind(component="reconciler").warning("Could not open scope: {error}", error=error)
            return ReconcileResult(fallback, error)
        return await _finish(scope, error)
    return await _finish(scope, None)


async def _finish(scope: Any, error: CapibmError | None) -> ReconcileResult[S]:
    status = scope.status
    if error is not None:
        log = scope.log.error if error.terminal else scope.log.warning
        log("Pass failed: {error}", error=error)
    condition = str(error) if error is not None else None
    if status.condition == condition:
        return ReconcileResult(status, error)

    status.condition = condition
    try:
        await scope.persist()
    except Exception as exc:
        # Status write is best effort; the write failure replaces the pass result
        persist_error = classify(exc)
        scope.log.warning("Could not record condition: {error}", error=persist_error)
        return ReconcileResult(status, persist_error)
    return ReconcileResult(status, error)


class _Reconciler:
    def __init__(
        self,
        store: StatusStore,
        *,
        config: CloudConfig | None = None,
        credentials: Credentials | None = None,
        deadline: float | None = None,
    ) -> None:
        self.store = store
        self.config = config or load_config()
        self.credentials = credentials or load_credentials()
        self.deadline = deadline


class ClusterReconciler(_Reconciler):
    """Drives VPC cluster infrastructure towards a ``ClusterSpec``."""

    def _open(self, spec: ClusterSpec, status: ClusterStatus | None) -> AbstractAsyncContextManager[ClusterScope]:
        return ClusterScope.open(spec, self.store, self.config, self.credentials, status)

    async def reconcile(
        self, spec: ClusterSpec, status: ClusterStatus | None = None,
    ) -> ReconcileResult[ClusterStatus]:
        async def step(scope: ClusterScope) -> None:
            await ClusterProvisioner(scope).provision()

        return await run_pass(
            self._open(spec, status), step, status or ClusterStatus(), deadline=self.deadline,
        )

    async def reconcile_delete(
        self, spec: ClusterSpec, status: ClusterStatus | None = None,
    ) -> ReconcileResult[ClusterStatus]:
        async def step(scope: ClusterScope) -> None:
            await ClusterTeardown(scope).teardown()

        return await run_pass(
            self._open(spec, status), step, status or ClusterStatus(), deadline=self.deadline,
        )


class MachineReconciler(_Reconciler):
    """Drives one PowerVS instance towards a ``MachineSpec``."""

    def __init__(
        self,
        store: StatusStore,
        secrets: SecretReader,
        *,
        config: CloudConfig | None = None,
        credentials: Credentials | None = None,
        deadline: float | None = None,
    ) -> None:
        super().__init__(store, config=config, credentials=credentials, deadline=deadline)
        self.secrets = secrets

    def _open(self, spec: MachineSpec, status: MachineStatus | None) -> AbstractAsyncContextManager[MachineScope]:
        return MachineScope.open(
            spec, self.store, self.secrets, self.config, self.credentials, status,
        )

    async def reconcile(
        self, spec: MachineSpec, status: MachineStatus | None = None,
    ) -> ReconcileResult[MachineStatus]:
        try:
            spec.memory_gb()
            spec.processor_count()
        except ConfigurationError as error:
            logger.bind(component="reconciler", machine=spec.name).error(
                "Invalid machine shape: {error}", error=error,
            )
            return ReconcileResult(status or MachineStatus(), error)

        async def step(scope: MachineScope) -> None:
            await MachineProvisioner(scope).provision()

        return await run_pass(
            self._open(spec, status), step, status or MachineStatus(), deadline=self.deadline,
        )

    async def reconcile_delete(
        self, spec: MachineSpec, status: MachineStatus | None = None,
    ) -> ReconcileResult[MachineStatus]:
        async def step(scope: MachineScope) -> None:
            await MachineTeardown(scope).teardown()

        return await run_pass(
            self._open(spec, status), step, status or MachineStatus(), deadline=self.deadline,
        )
