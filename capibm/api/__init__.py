"""Desired spec, observed status, and normalized resource shapes."""

from .model import Page as Page
from .model import Resource as Resource
from .model import ResourceKind as ResourceKind
from .spec import ClusterSpec as ClusterSpec
from .spec import MachineSpec as MachineSpec
from .spec import ResourceReference as ResourceReference
from .spec import parse_spec as parse_spec
from .status import ClusterStatus as ClusterStatus
from .status import MachineStatus as MachineStatus

__all__ = [
    "ClusterSpec",
    "ClusterStatus",
    "MachineSpec",
    "MachineStatus",
    "Page",
    "Resource",
    "ResourceKind",
    "ResourceReference",
    "parse_spec",
]
