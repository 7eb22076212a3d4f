"""Desired topology for one cluster or one machine.

Specs are supplied by the caller once per reconcile pass and are never
mutated by the orchestrator.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any, Self, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from capibm.errors import ConfigurationError


class ResourceReference(BaseModel):
    """Reference to a remote resource by identifier or by name.

    The identifier always takes precedence over the name.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str | None = None
    name: str | None = None

    def describe(self) -> str:
        if self.id:
            return f"id={self.id}"
        if self.name:
            return f"name={self.name}"
        return "<empty>"


class ClusterSpec(BaseModel):
    """Target VPC topology for a cluster.

    Examples:
        spec = ClusterSpec(
            name="demo",
            vpc="demo-vpc",
            resource_group="4f1b...",
            region="us-south",
            zone="us-south-1",
        )
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1, description="Cluster name, prefix for derived resource names")
    vpc: str = Field(min_length=1, description="VPC name, used as its idempotency key")
    resource_group: str = Field(min_length=1, description="Resource group ID")
    region: str = Field(min_length=1)
    zone: str = Field(min_length=1)
    create_public_gateway: bool = True
    namespace: str = "default"

    @property
    def subnet_name(self) -> str:
        return f"{self.name}-subnet"

    @property
    def public_gateway_name(self) -> str:
        return f"{self.name}-gateway"

    @property
    def floating_ip_name(self) -> str:
        return f"{self.name}-control-plane"


class MachineSpec(BaseModel):
    """Target PowerVS instance for a machine.

    ``memory`` and ``processors`` are kept as the strings the user wrote;
    they are parsed when the instance is created so that a bad value is
    reported as a configuration error rather than rejected on load.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    namespace: str = "default"
    service_instance_id: str = Field(min_length=1)
    image: ResourceReference
    network: ResourceReference
    ssh_key: str = ""
    memory: str
    processors: str
    proc_type: str = "shared"
    sys_type: str = "s922"
    bootstrap_secret: str | None = None

    @model_validator(mode="after")
    def check_shape_present(self) -> Self:
        if not self.memory.strip():
            raise ValueError("memory is required")
        if not self.processors.strip():
            raise ValueError("processors is required")
        return self

    def memory_gb(self) -> float:
        return _quantity("memory", self.memory)

    def processor_count(self) -> float:
        return _quantity("processors", self.processors)


def _quantity(field: str, raw: str) -> float:
    try:
        if "_" in raw:
            raise ValueError(raw)
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"failed to convert {field}({raw}) to float") from None
    if not math.isfinite(value) or value <= 0:
        raise ConfigurationError(f"{field}({raw}) must be a positive number")
    return value


M = TypeVar("M", bound=BaseModel)


def parse_spec(model: type[M], data: Mapping[str, Any]) -> M:
    """Validate a raw spec mapping, reporting problems as configuration errors."""
    try:
        return model.model_validate(dict(data))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"invalid {model.__name__}: {problems}") from None
