"""capibm - IBM Cloud VPC and PowerVS infrastructure for cluster reconcilers.

Example:

    from capibm import ClusterReconciler, ClusterSpec, InMemoryStatusStore

    reconciler = ClusterReconciler(InMemoryStatusStore(), deadline=300)
    result = await reconciler.reconcile(ClusterSpec(
        name="demo",
        vpc="demo-vpc",
        resource_group="rg-id",
        region="us-south",
        zone="us-south-1",
    ))
    if result.error:
        schedule(after=result.requeue_after)
"""

from loguru import logger

from capibm.api import (
    ClusterSpec,
    ClusterStatus,
    MachineSpec,
    MachineStatus,
    Resource,
    ResourceKind,
    ResourceReference,
    parse_spec,
)
from capibm.config import (
    BearerTokenCredentials,
    CloudConfig,
    Credentials,
    IAMCredentials,
    load_config,
    load_credentials,
)
from capibm.errors import (
    CapibmError,
    ConfigurationError,
    ConflictError,
    DeadlineExceeded,
    NotReadyError,
    RemoteCallError,
    TransientError,
    classify,
)
from capibm.observability import LogConfig, setup_logging, teardown_logging
from capibm.persistence import (
    InMemorySecretStore,
    InMemoryStatusStore,
    PersistResult,
    SecretReader,
    StatePersister,
    StatusStore,
)
from capibm.provisioner import ClusterProvisioner, MachineProvisioner
from capibm.reconciler import ClusterReconciler, MachineReconciler, ReconcileResult
from capibm.resolver import ExistenceResolver
from capibm.scope import ClusterScope, MachineScope
from capibm.teardown import ClusterTeardown, MachineTeardown

logger.disable("capibm")

__all__ = [
    "BearerTokenCredentials",
    "CapibmError",
    "CloudConfig",
    "ClusterProvisioner",
    "ClusterReconciler",
    "ClusterScope",
    "ClusterSpec",
    "ClusterStatus",
    "ClusterTeardown",
    "ConfigurationError",
    "ConflictError",
    "Credentials",
    "DeadlineExceeded",
    "ExistenceResolver",
    "IAMCredentials",
    "InMemorySecretStore",
    "InMemoryStatusStore",
    "LogConfig",
    "MachineProvisioner",
    "MachineReconciler",
    "MachineScope",
    "MachineSpec",
    "MachineStatus",
    "MachineTeardown",
    "NotReadyError",
    "PersistResult",
    "ReconcileResult",
    "RemoteCallError",
    "Resource",
    "ResourceKind",
    "ResourceReference",
    "SecretReader",
    "StatePersister",
    "StatusStore",
    "TransientError",
    "classify",
    "load_config",
    "load_credentials",
    "parse_spec",
    "setup_logging",
    "teardown_logging",
]
