"""Async HTTP client for the IBM Cloud VPC API.

Example:
    async with VPCClient(http) as vpc:
        page = await vpc.list_page(ResourceKind.VPC)
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from capibm.api.model import Page, Resource, ResourceKind
from capibm.infra.http import HttpClient, HttpError

from .base import Collection, next_start, to_page, to_resource

VPC_API_VERSION = "2021-06-08"

COLLECTIONS: dict[ResourceKind, Collection] = {
    ResourceKind.VPC: Collection("/vpcs", "vpcs"),
    ResourceKind.SUBNET: Collection("/subnets", "subnets"),
    ResourceKind.PUBLIC_GATEWAY: Collection("/public_gateways", "public_gateways"),
    ResourceKind.FLOATING_IP: Collection("/floating_ips", "floating_ips"),
}

ADDRESS_PREFIXES = Collection("/vpcs/{vpc_id}/address_prefixes", "address_prefixes")


def _collection(kind: ResourceKind) -> Collection:
    try:
        return COLLECTIONS[kind]
    except KeyError:
        raise ValueError(f"VPC API does not serve {kind} resources") from None


class VPCClient:
    """Per-resource-type list/get/create/delete operations against the VPC API.

    Returns normalized ``Resource`` values; the full payload is kept in
    ``Resource.raw``. Deletes report whether the resource was still there.
    """

    def __init__(self, http: HttpClient, *, page_limit: int = 50) -> None:
        self._http = http
        self._page_limit = page_limit
        self._log = logger.bind(component="vpc-client")

    async def __aenter__(self) -> VPCClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.close()

    async def _create(self, kind: ResourceKind, path: str, body: dict[str, Any]) -> Resource:
        self._log.debug("Creating {kind}", kind=kind)
        payload = await self._http.request("POST", path, json=body)
        return to_resource(kind, _collection(kind), payload or {})

    async def _delete(self, path: str) -> bool:
        try:
            await self._http.request("DELETE", path)
        except HttpError as e:
            if e.status == 404:
                return False
            raise
        return True

    # =========================================================================
    # Generic listing
    # =========================================================================

    async def list_page(self, kind: ResourceKind, start: str | None = None) -> Page:
        collection = _collection(kind)
        params: dict[str, Any] = {"limit": self._page_limit}
        if start:
            params["start"] = start
        payload = await self._http.request("GET", collection.path, params=params)
        return to_page(kind, collection, payload)

    async def get(self, kind: ResourceKind, resource_id: str) -> Resource | None:
        collection = _collection(kind)
        try:
            payload = await self._http.request("GET", f"{collection.path}/{resource_id}")
        except HttpError as e:
            if e.status == 404:
                return None
            raise
        return to_resource(kind, collection, payload or {})

    # =========================================================================
    # VPC
    # =========================================================================

    async def create_vpc(self, name: str, resource_group: str) -> Resource:
        return await self._create(
            ResourceKind.VPC,
            "/vpcs",
            {"name": name, "resource_group": {"id": resource_group}},
        )

    async def delete_vpc(self, vpc_id: str) -> bool:
        return await self._delete(f"/vpcs/{vpc_id}")

    async def create_security_group_rule(self, security_group_id: str) -> dict[str, Any]:
        """Add an inbound, all-protocol IPv4 rule to a security group."""
        result: dict[str, Any] = await self._http.request(
            "POST",
            f"/security_groups/{security_group_id}/rules",
            json={"direction": "inbound", "protocol": "all", "ip_version": "ipv4"},
        )
        return result or {}

    async def list_security_group_rules(self, security_group_id: str) -> list[dict[str, Any]]:
        payload = await self._http.request("GET", f"/security_groups/{security_group_id}/rules")
        return list((payload or {}).get("rules") or [])

    async def list_address_prefixes(self, vpc_id: str) -> list[dict[str, Any]]:
        """All address prefixes of a VPC, across pages."""
        path = ADDRESS_PREFIXES.path.format(vpc_id=vpc_id)
        prefixes: list[dict[str, Any]] = []
        start: str | None = None
        seen: set[str] = set()
        while True:
            params: dict[str, Any] = {"limit": self._page_limit}
            if start:
                params["start"] = start
            payload = await self._http.request("GET", path, params=params) or {}
            prefixes.extend(payload.get(ADDRESS_PREFIXES.items_key) or [])
            start = next_start(payload)
            if start is None or start in seen:
                return prefixes
            seen.add(start)

    # =========================================================================
    # Subnet
    # =========================================================================

    async def create_subnet(
        self, *, name: str, vpc_id: str, zone: str, cidr_block: str, resource_group: str,
    ) -> Resource:
        return await self._create(
            ResourceKind.SUBNET,
            "/subnets",
            {
                "name": name,
                "ipv4_cidr_block": cidr_block,
                "vpc": {"id": vpc_id},
                "zone": {"name": zone},
                "resource_group": {"id": resource_group},
            },
        )

    async def delete_subnet(self, subnet_id: str) -> bool:
        return await self._delete(f"/subnets/{subnet_id}")

    # =========================================================================
    # Public gateway
    # =========================================================================

    async def create_public_gateway(
        self, *, name: str, vpc_id: str, zone: str, resource_group: str,
    ) -> Resource:
        return await self._create(
            ResourceKind.PUBLIC_GATEWAY,
            "/public_gateways",
            {
                "name": name,
                "vpc": {"id": vpc_id},
                "zone": {"name": zone},
                "resource_group": {"id": resource_group},
            },
        )

    async def delete_public_gateway(self, gateway_id: str) -> bool:
        return await self._delete(f"/public_gateways/{gateway_id}")

    async def get_subnet_public_gateway(self, subnet_id: str) -> Resource | None:
        """The gateway attached to a subnet, or ``None`` when nothing is attached."""
        try:
            payload = await self._http.request("GET", f"/subnets/{subnet_id}/public_gateway")
        except HttpError as e:
            if e.status == 404:
                return None
            raise
        if not payload:
            return None
        return to_resource(ResourceKind.PUBLIC_GATEWAY, _collection(ResourceKind.PUBLIC_GATEWAY), payload)

    async def set_subnet_public_gateway(self, subnet_id: str, gateway_id: str) -> Resource:
        payload = await self._http.request(
            "PUT", f"/subnets/{subnet_id}/public_gateway", json={"id": gateway_id},
        )
        return to_resource(ResourceKind.PUBLIC_GATEWAY, _collection(ResourceKind.PUBLIC_GATEWAY), payload or {})

    async def unset_subnet_public_gateway(self, subnet_id: str) -> bool:
        return await self._delete(f"/subnets/{subnet_id}/public_gateway")

    # =========================================================================
    # Floating IP
    # =========================================================================

    async def create_floating_ip(self, *, name: str, zone: str, resource_group: str) -> Resource:
        return await self._create(
            ResourceKind.FLOATING_IP,
            "/floating_ips",
            {
                "name": name,
                "zone": {"name": zone},
                "resource_group": {"id": resource_group},
            },
        )

    async def delete_floating_ip(self, floating_ip_id: str) -> bool:
        return await self._delete(f"/floating_ips/{floating_ip_id}")
