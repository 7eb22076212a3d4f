"""Resource controller lookups used to locate a PowerVS service instance."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from capibm.errors import ConfigurationError
from capibm.infra.http import HttpClient

# Zone prefix -> PowerVS regional endpoint prefix
_ZONE_REGIONS: tuple[tuple[str, str], ...] = (
    ("dal", "us-south"),
    ("us-south", "us-south"),
    ("wdc", "us-east"),
    ("us-east", "us-east"),
    ("eu-de", "eu-de"),
    ("lon", "lon"),
    ("mad", "mad"),
    ("mon", "mon"),
    ("osa", "osa"),
    ("sao", "sao"),
    ("syd", "syd"),
    ("tok", "tok"),
    ("tor", "tor"),
)


def region_for_zone(zone: str) -> str:
    """Map a PowerVS zone (``lon04``, ``dal12``) to its regional endpoint prefix."""
    for prefix, region in _ZONE_REGIONS:
        if zone.startswith(prefix):
            return region
    raise ConfigurationError(f"unsupported PowerVS zone {zone!r}")


@dataclass(frozen=True, slots=True)
class ServiceInstance:
    guid: str
    crn: str
    zone: str

    @property
    def region(self) -> str:
        return region_for_zone(self.zone)


class ResourceControllerClient:
    def __init__(self, http: HttpClient) -> None:
        self._http = http

    async def __aenter__(self) -> ResourceControllerClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.close()

    async def get_instance(self, guid: str) -> ServiceInstance:
        payload = await self._http.request("GET", f"/v2/resource_instances/{guid}") or {}
        return ServiceInstance(
            guid=str(payload.get("guid") or guid),
            crn=str(payload.get("crn") or ""),
            zone=str(payload.get("region_id") or ""),
        )
