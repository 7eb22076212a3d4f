"""Resource client facades for the IBM Cloud VPC and PowerVS APIs."""

from .base import Collection, ResourceLister
from .module import CloudModule, PowerVSClientFactory
from .power import InstanceCreate, PowerVSClient
from .resource_controller import ResourceControllerClient, ServiceInstance, region_for_zone
from .vpc import VPCClient

__all__ = [
    "CloudModule",
    "Collection",
    "InstanceCreate",
    "PowerVSClient",
    "PowerVSClientFactory",
    "ResourceControllerClient",
    "ResourceLister",
    "ServiceInstance",
    "VPCClient",
    "region_for_zone",
]
