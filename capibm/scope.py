"""Per-pass scopes.

A scope bundles everything one reconcile pass needs: the immutable spec, the
mutable observed status, the persister guarding it, and the client handles.
Scopes are built per pass and never shared, so concurrent passes for
different clusters or machines hold no common mutable state.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, TypeVar

from injector import Injector
from loguru import logger
from pydantic import BaseModel

from capibm.api.spec import ClusterSpec, MachineSpec
from capibm.api.status import ClusterStatus, MachineStatus
from capibm.clients.module import CloudModule, PowerVSClientFactory
from capibm.clients.power import PowerVSClient
from capibm.clients.resource_controller import ResourceControllerClient
from capibm.clients.vpc import VPCClient
from capibm.errors import ConflictError, remote_call
from capibm.persistence import PersistResult, SecretReader, StatePersister, StatusStore
from capibm.resolver import ExistenceResolver

if TYPE_CHECKING:
    from loguru import Logger

    from capibm.config import CloudConfig, Credentials


def cluster_key(spec: ClusterSpec) -> str:
    return f"cluster/{spec.namespace}/{spec.name}"


def machine_key(spec: MachineSpec) -> str:
    return f"machine/{spec.namespace}/{spec.name}"


@dataclass
class ClusterScope:
    """Everything a pass over one VPC cluster needs."""

    spec: ClusterSpec
    status: ClusterStatus
    persister: StatePersister[ClusterStatus]
    vpc: VPCClient
    resolver: ExistenceResolver = field(init=False)
    log: Logger = field(init=False)

    def __post_init__(self) -> None:
        self.resolver = ExistenceResolver(self.vpc)
        self.log = logger.bind(component="cluster", cluster=self.spec.name)

    async def persist(self) -> PersistResult:
        return await self.persister.persist(self.status)

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        spec: ClusterSpec,
        store: StatusStore,
        config: CloudConfig,
        credentials: Credentials,
        status: ClusterStatus | None = None,
    ) -> AsyncIterator[ClusterScope]:
        """Build a scope with fresh client handles in the cluster's region; closes them on exit.

        ``status`` is the caller's copy of the status. It must match the stored
        status, otherwise the pass fails with ``ConflictError`` before any
        remote call and the caller re-reads.
        """
        injector = Injector([CloudModule(replace(config, region=spec.region), credentials)])
        vpc = injector.get(VPCClient)
        try:
            persister, stored = await StatePersister.load(store, cluster_key(spec), ClusterStatus)
            yield cls(
                spec=spec,
                status=_starting_status(persister, stored, status),
                persister=persister,
                vpc=vpc,
            )
        finally:
            await vpc.close()


@dataclass
class MachineScope:
    """Everything a pass over one PowerVS machine needs."""

    spec: MachineSpec
    status: MachineStatus
    persister: StatePersister[MachineStatus]
    power: PowerVSClient
    secrets: SecretReader
    resolver: ExistenceResolver = field(init=False)
    log: Logger = field(init=False)

    def __post_init__(self) -> None:
        self.resolver = ExistenceResolver(self.power)
        self.log = logger.bind(
            component="machine",
            machine=self.spec.name,
            service_instance=self.spec.service_instance_id,
        )

    async def persist(self) -> PersistResult:
        return await self.persister.persist(self.status)

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        spec: MachineSpec,
        store: StatusStore,
        secrets: SecretReader,
        config: CloudConfig,
        credentials: Credentials,
        status: MachineStatus | None = None,
    ) -> AsyncIterator[MachineScope]:
        """Locate the service instance, then build a scope bound to its region.

        A stale ``status`` is rejected as in ``ClusterScope.open``.
        """
        injector = Injector([CloudModule(config, credentials)])
        controller = injector.get(ResourceControllerClient)
        power: PowerVSClient | None = None
        try:
            persister, stored = await StatePersister.load(store, machine_key(spec), MachineStatus)
            starting = _starting_status(persister, stored, status)
            with remote_call("get service instance", spec.service_instance_id):
                instance = await controller.get_instance(spec.service_instance_id)
            power = injector.get(PowerVSClientFactory)(instance)
            yield cls(
                spec=spec,
                status=starting,
                persister=persister,
                power=power,
                secrets=secrets,
            )
        finally:
            await _close_all(controller, power)


S = TypeVar("S", bound=BaseModel)


def _starting_status(
    persister: StatePersister[S], stored: S, status: S | None,
) -> S:
    if status is None:
        return stored
    if status.model_dump(mode="json") != stored.model_dump(mode="json"):
        raise ConflictError(
            persister.key,
            None,
            persister.version,
            detail=f"status for {persister.key} is stale (stored version {persister.version})",
        )
    return status.model_copy(deep=True)


async def _close_all(*clients: Any) -> None:
    for client in clients:
        if client is not None:
            await client.close()
