"""Normalized resource shapes shared by every client facade."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any


class ResourceKind(StrEnum):
    VPC = "vpc"
    SUBNET = "subnet"
    PUBLIC_GATEWAY = "public gateway"
    FLOATING_IP = "floating ip"
    INSTANCE = "instance"
    IMAGE = "image"
    POWER_NETWORK = "network"


DEPENDENCIES: MappingProxyType[ResourceKind, tuple[ResourceKind, ...]] = MappingProxyType({
    ResourceKind.VPC: (),
    ResourceKind.SUBNET: (ResourceKind.VPC,),
    ResourceKind.PUBLIC_GATEWAY: (ResourceKind.VPC, ResourceKind.SUBNET),
    ResourceKind.FLOATING_IP: (),
    ResourceKind.INSTANCE: (ResourceKind.IMAGE, ResourceKind.POWER_NETWORK),
})


@dataclass(frozen=True, slots=True)
class Resource:
    """A remote resource as seen through a facade.

    ``name`` is the idempotency key; ``raw`` keeps the full API payload for
    callers that need fields beyond the common ones.
    """

    kind: ResourceKind
    name: str
    id: str
    raw: MappingProxyType[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def depends_on(self) -> tuple[ResourceKind, ...]:
        return DEPENDENCIES.get(self.kind, ())


@dataclass(frozen=True, slots=True)
class Page:
    """One page of a listing. ``next_start`` is ``None`` on the last page."""

    items: tuple[Resource, ...]
    next_start: str | None = None
