"""Existence checks that stand in for idempotency keys.

The IBM Cloud APIs reject neither duplicate names nor repeated creates, so
before every create whose target has no recorded identifier the orchestrator
scans the remote listing for a resource with the same name. The scan is
case-sensitive and the first match in listing order wins.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

from loguru import logger

from capibm.api.model import Resource, ResourceKind
from capibm.api.spec import ResourceReference
from capibm.clients.base import ResourceLister
from capibm.errors import ConfigurationError, remote_call


class ExistenceResolver:
    def __init__(self, lister: ResourceLister) -> None:
        self._lister = lister
        self._log = logger.bind(component="resolver")

    async def iter_all(self, kind: ResourceKind) -> AsyncIterator[Resource]:
        """Every remote resource of ``kind``, following pagination."""
        start: str | None = None
        seen: set[str] = set()
        while True:
            with remote_call(f"list {kind}", start or "first page"):
                page = await self._lister.list_page(kind, start)
            for item in page.items:
                yield item
            if page.next_start is None or page.next_start in seen:
                return
            start = page.next_start
            seen.add(start)

    async def find_by_name(self, kind: ResourceKind, name: str) -> Resource | None:
        """First resource of ``kind`` named exactly ``name``, or ``None``."""
        async for item in self.iter_all(kind):
            if item.name == name:
                self._log.debug("Found {kind} {name} ({id})", kind=kind, name=name, id=item.id)
                return item
        self._log.debug("No {kind} named {name}", kind=kind, name=name)
        return None

    async def find_by_id(self, kind: ResourceKind, resource_id: str) -> Resource | None:
        with remote_call(f"get {kind}", resource_id):
            return await self._lister.get(kind, resource_id)

    async def find_recorded_or_named(
        self, kind: ResourceKind, recorded_id: str | None, name: str,
    ) -> Resource | None:
        """Verify a recorded identifier, or fall back to a by-name scan.

        A recorded identifier is never replaced by a name match: if it no
        longer exists remotely, ``None`` is returned so the caller recreates
        the resource after this verify call.
        """
        if recorded_id:
            resource = await self.find_by_id(kind, recorded_id)
            if resource is None:
                self._log.warning(
                    "Recorded {kind} {id} no longer exists", kind=kind, id=recorded_id,
                )
            return resource
        return await self.find_by_name(kind, name)

    async def resolve_reference(self, kind: ResourceKind, ref: ResourceReference) -> str:
        """Identifier for ``ref``: its ID if set, else the ID of its by-name match.

        Raises:
            ConfigurationError: Neither ID nor name is set, or no resource has that name.
        """
        if ref.id:
            return ref.id
        if not ref.name:
            raise ConfigurationError(f"{kind} reference: both ID and Name can't be nil")
        resource = await self.find_by_name(kind, ref.name)
        if resource is None:
            raise ConfigurationError(f"failed to find a {kind} ID for name {ref.name!r}")
        self._log.info(
            "{kind} {ref} found with ID {id}", kind=kind, ref=ref.describe(), id=resource.id,
        )
        return resource.id
