"""Facade protocol shared by the VPC and PowerVS clients.

Every facade exposes the same listing shape (``Page`` of ``Resource``) so
the existence resolver can scan any kind without knowing which API serves it.
Facades do not retry and do not deduplicate; they are a pure I/O boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Protocol
from urllib.parse import parse_qs, urlparse

from capibm.api.model import Page, Resource, ResourceKind


class ResourceLister(Protocol):
    """Listing and lookup operations the resolver relies on."""

    async def list_page(self, kind: ResourceKind, start: str | None = None) -> Page: ...

    async def get(self, kind: ResourceKind, resource_id: str) -> Resource | None: ...


@dataclass(frozen=True, slots=True)
class Collection:
    """Where a resource kind lives in an API and how its payload is keyed."""

    path: str
    items_key: str
    id_key: str = "id"
    name_key: str = "name"


def to_resource(kind: ResourceKind, collection: Collection, payload: dict[str, Any]) -> Resource:
    return Resource(
        kind=kind,
        name=str(payload.get(collection.name_key) or ""),
        id=str(payload.get(collection.id_key) or ""),
        raw=MappingProxyType(payload),
    )


def next_start(payload: dict[str, Any] | None) -> str | None:
    """Extract the ``start`` token from an IBM ``next.href`` link."""
    if not payload:
        return None
    href = (payload.get("next") or {}).get("href")
    if not href:
        return None
    values = parse_qs(urlparse(href).query).get("start")
    return values[0] if values else None


def to_page(
    kind: ResourceKind, collection: Collection, payload: dict[str, Any] | None,
) -> Page:
    items = (payload or {}).get(collection.items_key) or []
    return Page(
        items=tuple(to_resource(kind, collection, item) for item in items),
        next_start=next_start(payload),
    )
