"""Observed status: the durable record of what has actually been provisioned.

These models are the only state trusted across reconcile passes. Fields are
keyed by resource kind and each holds at most one identifier.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClusterStatus(BaseModel):
    """Identifiers of the VPC resources provisioned for a cluster."""

    vpc_id: str | None = None
    subnet_id: str | None = None
    public_gateway_id: str | None = None
    floating_ip_id: str | None = None
    floating_ip_name: str | None = None
    floating_ip_address: str | None = None
    ready: bool = False
    condition: str | None = Field(default=None, description="Last failure, shown to the user")


class MachineStatus(BaseModel):
    """Identifier of the PowerVS instance provisioned for a machine."""

    instance_id: str | None = None
    instance_name: str | None = None
    addresses: list[str] = Field(default_factory=list)
    ready: bool = False
    condition: str | None = None
