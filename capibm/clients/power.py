"""Async HTTP client for the IBM Power Virtual Server API.

A client is scoped to one service (cloud) instance: every path lives under
``/pcloud/v1/cloud-instances/{cloud_instance_id}`` and every request carries
the instance CRN header.
"""

from __future__ import annotations

from typing import Any, NotRequired, TypedDict

from loguru import logger

from capibm.api.model import Page, Resource, ResourceKind
from capibm.infra.http import HttpClient, HttpError

from .base import Collection, to_page, to_resource

COLLECTIONS: dict[ResourceKind, Collection] = {
    ResourceKind.INSTANCE: Collection("/pvm-instances", "pvmInstances", "pvmInstanceID", "serverName"),
    ResourceKind.IMAGE: Collection("/images", "images", "imageID", "name"),
    ResourceKind.POWER_NETWORK: Collection("/networks", "networks", "networkID", "name"),
}


class InstanceNetwork(TypedDict):
    networkID: str
    ipAddress: NotRequired[str]


class InstanceCreate(TypedDict):
    """Body of ``POST /pvm-instances``."""

    serverName: str
    imageID: str
    memory: float
    processors: float
    procType: str
    sysType: NotRequired[str]
    keyPairName: NotRequired[str]
    networks: list[InstanceNetwork]
    userData: NotRequired[str]


def cloud_instance_path(cloud_instance_id: str) -> str:
    return f"/pcloud/v1/cloud-instances/{cloud_instance_id}"


def _collection(kind: ResourceKind) -> Collection:
    try:
        return COLLECTIONS[kind]
    except KeyError:
        raise ValueError(f"PowerVS API does not serve {kind} resources") from None


class PowerVSClient:
    """List/get/create/delete against one PowerVS service instance.

    The PowerVS API does not paginate its collections, so every listing is a
    single page.
    """

    def __init__(self, http: HttpClient, cloud_instance_id: str) -> None:
        self._http = http
        self.cloud_instance_id = cloud_instance_id
        self._prefix = cloud_instance_path(cloud_instance_id)
        self._log = logger.bind(component="power-client", service_instance=cloud_instance_id)

    async def __aenter__(self) -> PowerVSClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.close()

    async def list_page(self, kind: ResourceKind, start: str | None = None) -> Page:
        collection = _collection(kind)
        payload = await self._http.request("GET", f"{self._prefix}{collection.path}")
        return to_page(kind, collection, payload)

    async def get(self, kind: ResourceKind, resource_id: str) -> Resource | None:
        collection = _collection(kind)
        try:
            payload = await self._http.request(
                "GET", f"{self._prefix}{collection.path}/{resource_id}"
            )
        except HttpError as e:
            if e.status == 404:
                return None
            raise
        return to_resource(kind, collection, payload or {})

    async def create_instance(self, body: InstanceCreate) -> Resource:
        """Create an instance. The API answers with a list of created instances."""
        self._log.debug("Creating instance {name}", name=body["serverName"])
        payload = await self._http.request(
            "POST", f"{self._prefix}/pvm-instances", json=dict(body),
        )
        created = payload[0] if isinstance(payload, list) and payload else payload or {}
        resource = to_resource(ResourceKind.INSTANCE, _collection(ResourceKind.INSTANCE), created)
        if not resource.name:
            # Create responses omit serverName on some API versions
            return Resource(
                kind=resource.kind, name=body["serverName"], id=resource.id, raw=resource.raw,
            )
        return resource

    async def delete_instance(self, instance_id: str) -> bool:
        try:
            await self._http.request("DELETE", f"{self._prefix}/pvm-instances/{instance_id}")
        except HttpError as e:
            if e.status == 404:
                return False
            raise
        return True
