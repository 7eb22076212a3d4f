from __future__ import annotations

import itertools
from collections import Counter
from typing import Any, TypeVar

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from capibm.api import ClusterSpec, ClusterStatus, MachineSpec, MachineStatus, ResourceReference
from capibm.api.model import Page, Resource, ResourceKind
from capibm.clients import power as power_api
from capibm.clients import vpc as vpc_api
from capibm.clients.base import Collection, to_resource
from capibm.infra.http import HttpError
from capibm.persistence import InMemorySecretStore, InMemoryStatusStore, StatePersister
from capibm.scope import ClusterScope, MachineScope, cluster_key, machine_key

ZONES = ("us-south-1", "us-south-2", "us-south-3")


# =============================================================================
# In-memory cloud
# =============================================================================


class FakeCloud:
    """Shared bookkeeping: ordered call log, counters, and injected failures."""

    def __init__(self, page_size: int = 2) -> None:
        self.page_size = page_size
        self.calls: Counter[str] = Counter()
        self.log: list[tuple[str, str]] = []
        self._failures: dict[str, list[HttpError]] = {}
        self._ids = itertools.count(1)

    def fail(self, method: str, status: int = 500, body: str = "boom", times: int = 1) -> None:
        self._failures.setdefault(method, []).extend(HttpError(status, body) for _ in range(times))

    def _call(self, method: str, arg: str = "") -> None:
        self.calls[method] += 1
        self.log.append((method, arg))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids):04d}"

    @property
    def creates(self) -> int:
        return sum(n for method, n in self.calls.items() if method.startswith("create_"))

    @property
    def deletes(self) -> int:
        return sum(n for method, n in self.calls.items() if method.startswith("delete_"))

    def order(self, *methods: str) -> list[int]:
        names = [method for method, _ in self.log]
        return [names.index(m) for m in methods]


class FakeVPC(FakeCloud):
    """In-memory stand-in for ``VPCClient``."""

    def __init__(self, page_size: int = 2) -> None:
        super().__init__(page_size)
        self.items: dict[ResourceKind, list[dict[str, Any]]] = {
            kind: [] for kind in vpc_api.COLLECTIONS
        }
        self.rules: dict[str, list[dict[str, Any]]] = {}
        self.prefixes: dict[str, list[dict[str, Any]]] = {}
        self.attachments: dict[str, str] = {}
        self.closed = False

    def _resource(self, kind: ResourceKind, payload: dict[str, Any]) -> Resource:
        return to_resource(kind, vpc_api.COLLECTIONS[kind], payload)

    def _find(self, kind: ResourceKind, resource_id: str) -> dict[str, Any] | None:
        return next((p for p in self.items[kind] if p["id"] == resource_id), None)

    def _add(self, kind: ResourceKind, payload: dict[str, Any]) -> Resource:
        self.items[kind].append(payload)
        return self._resource(kind, payload)

    def _remove(self, kind: ResourceKind, resource_id: str) -> bool:
        payload = self._find(kind, resource_id)
        if payload is None:
            return False
        self.items[kind].remove(payload)
        return True

    def seed(self, kind: ResourceKind, name: str, **extra: Any) -> Resource:
        """Add a resource out of band, as if created by an earlier process."""
        resource_id = self._next_id(kind.value.replace(" ", "-"))
        payload: dict[str, Any] = {"id": resource_id, "name": name, **extra}
        if kind == ResourceKind.VPC:
            payload.setdefault("default_security_group", {"id": f"sg-{resource_id}"})
            self.rules.setdefault(payload["default_security_group"]["id"], [])
            self.prefixes[resource_id] = [
                {"zone": {"name": zone}, "cidr": f"10.{240 + i}.0.0/18"}
                for i, zone in enumerate(ZONES)
            ]
        if kind == ResourceKind.FLOATING_IP:
            payload.setdefault("address", "169.48.0.10")
        return self._add(kind, payload)

    async def close(self) -> None:
        self.closed = True

    async def list_page(self, kind: ResourceKind, start: str | None = None) -> Page:
        self._call("list_page", kind)
        offset = int(start or 0)
        items = self.items[kind][offset:offset + self.page_size]
        more = offset + self.page_size < len(self.items[kind])
        return Page(
            items=tuple(self._resource(kind, p) for p in items),
            next_start=str(offset + self.page_size) if more else None,
        )

    async def get(self, kind: ResourceKind, resource_id: str) -> Resource | None:
        self._call("get", resource_id)
        payload = self._find(kind, resource_id)
        return self._resource(kind, payload) if payload else None

    async def create_vpc(self, name: str, resource_group: str) -> Resource:
        self._call("create_vpc", name)
        return self.seed(ResourceKind.VPC, name, resource_group={"id": resource_group})

    async def delete_vpc(self, vpc_id: str) -> bool:
        self._call("delete_vpc", vpc_id)
        return self._remove(ResourceKind.VPC, vpc_id)

    async def create_security_group_rule(self, security_group_id: str) -> dict[str, Any]:
        self._call("create_security_group_rule", security_group_id)
        rule = {
            "id": self._next_id("rule"),
            "direction": "inbound",
            "protocol": "all",
            "ip_version": "ipv4",
            "remote": {"cidr_block": "0.0.0.0/0"},
        }
        self.rules.setdefault(security_group_id, []).append(rule)
        return rule

    async def list_security_group_rules(self, security_group_id: str) -> list[dict[str, Any]]:
        self._call("list_security_group_rules", security_group_id)
        return list(self.rules.get(security_group_id, []))

    async def list_address_prefixes(self, vpc_id: str) -> list[dict[str, Any]]:
        self._call("list_address_prefixes", vpc_id)
        return list(self.prefixes.get(vpc_id, []))

    async def create_subnet(
        self, *, name: str, vpc_id: str, zone: str, cidr_block: str, resource_group: str,
    ) -> Resource:
        self._call("create_subnet", name)
        return self.seed(
            ResourceKind.SUBNET, name,
            vpc={"id": vpc_id}, zone={"name": zone}, ipv4_cidr_block=cidr_block,
        )

    async def delete_subnet(self, subnet_id: str) -> bool:
        self._call("delete_subnet", subnet_id)
        return self._remove(ResourceKind.SUBNET, subnet_id)

    async def create_public_gateway(
        self, *, name: str, vpc_id: str, zone: str, resource_group: str,
    ) -> Resource:
        self._call("create_public_gateway", name)
        return self.seed(ResourceKind.PUBLIC_GATEWAY, name, vpc={"id": vpc_id}, zone={"name": zone})

    async def delete_public_gateway(self, gateway_id: str) -> bool:
        self._call("delete_public_gateway", gateway_id)
        return self._remove(ResourceKind.PUBLIC_GATEWAY, gateway_id)

    async def get_subnet_public_gateway(self, subnet_id: str) -> Resource | None:
        self._call("get_subnet_public_gateway", subnet_id)
        gateway_id = self.attachments.get(subnet_id)
        payload = self._find(ResourceKind.PUBLIC_GATEWAY, gateway_id) if gateway_id else None
        return self._resource(ResourceKind.PUBLIC_GATEWAY, payload) if payload else None

    async def set_subnet_public_gateway(self, subnet_id: str, gateway_id: str) -> Resource:
        self._call("set_subnet_public_gateway", subnet_id)
        self.attachments[subnet_id] = gateway_id
        payload = self._find(ResourceKind.PUBLIC_GATEWAY, gateway_id) or {"id": gateway_id}
        return self._resource(ResourceKind.PUBLIC_GATEWAY, payload)

    async def unset_subnet_public_gateway(self, subnet_id: str) -> bool:
        self._call("unset_subnet_public_gateway", subnet_id)
        return self.attachments.pop(subnet_id, None) is not None

    async def create_floating_ip(self, *, name: str, zone: str, resource_group: str) -> Resource:
        self._call("create_floating_ip", name)
        return self.seed(ResourceKind.FLOATING_IP, name, zone={"name": zone})

    async def delete_floating_ip(self, floating_ip_id: str) -> bool:
        self._call("delete_floating_ip", floating_ip_id)
        return self._remove(ResourceKind.FLOATING_IP, floating_ip_id)


class FakePower(FakeCloud):
    """In-memory stand-in for ``PowerVSClient`` scoped to one service instance."""

    def __init__(self, cloud_instance_id: str = "svc-1") -> None:
        super().__init__(page_size=1000)
        self.cloud_instance_id = cloud_instance_id
        self.items: dict[ResourceKind, list[dict[str, Any]]] = {
            kind: [] for kind in power_api.COLLECTIONS
        }
        self.bodies: list[dict[str, Any]] = []
        self.closed = False

    def _collection(self, kind: ResourceKind) -> Collection:
        return power_api.COLLECTIONS[kind]

    def seed(self, kind: ResourceKind, name: str, **extra: Any) -> Resource:
        collection = self._collection(kind)
        payload = {
            collection.id_key: self._next_id(kind.value),
            collection.name_key: name,
            **extra,
        }
        self.items[kind].append(payload)
        return to_resource(kind, collection, payload)

    async def close(self) -> None:
        self.closed = True

    async def list_page(self, kind: ResourceKind, start: str | None = None) -> Page:
        self._call("list_page", kind)
        collection = self._collection(kind)
        return Page(items=tuple(to_resource(kind, collection, p) for p in self.items[kind]))

    async def get(self, kind: ResourceKind, resource_id: str) -> Resource | None:
        self._call("get", resource_id)
        collection = self._collection(kind)
        for payload in self.items[kind]:
            if payload[collection.id_key] == resource_id:
                return to_resource(kind, collection, payload)
        return None

    async def create_instance(self, body: power_api.InstanceCreate) -> Resource:
        self._call("create_instance", body["serverName"])
        self.bodies.append(dict(body))
        return self.seed(
            ResourceKind.INSTANCE,
            body["serverName"],
            status="BUILD",
            networks=[{"networkID": body["networks"][0]["networkID"], "ipAddress": "192.168.10.5"}],
        )

    async def delete_instance(self, instance_id: str) -> bool:
        self._call("delete_instance", instance_id)
        items = self.items[ResourceKind.INSTANCE]
        for payload in items:
            if payload["pvmInstanceID"] == instance_id:
                items.remove(payload)
                return True
        return False


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store() -> InMemoryStatusStore:
    return InMemoryStatusStore()


@pytest.fixture
def vpc() -> FakeVPC:
    return FakeVPC()


@pytest.fixture
def power() -> FakePower:
    cloud = FakePower()
    cloud.seed(ResourceKind.IMAGE, "rhcos-414")
    cloud.seed(ResourceKind.POWER_NETWORK, "capi-net")
    return cloud


@pytest.fixture
def secrets() -> InMemorySecretStore:
    return InMemorySecretStore({("default", "worker-0-bootstrap"): {"value": b"#cloud-config\n"}})


@pytest.fixture
def cluster_spec() -> ClusterSpec:
    return ClusterSpec(
        name="demo",
        vpc="demo-vpc",
        resource_group="rg-1",
        region="us-south",
        zone="us-south-1",
    )


@pytest.fixture
def machine_spec() -> MachineSpec:
    return MachineSpec(
        name="worker-0",
        service_instance_id="svc-1",
        image=ResourceReference(name="rhcos-414"),
        network=ResourceReference(name="capi-net"),
        ssh_key="capi-key",
        memory="8",
        processors="0.25",
        bootstrap_secret="worker-0-bootstrap",
    )


async def open_cluster_scope(
    spec: ClusterSpec,
    store: InMemoryStatusStore,
    vpc: FakeVPC,
    status: ClusterStatus | None = None,
) -> ClusterScope:
    """Scope wired to the fake cloud, loaded from ``store`` like a real pass."""
    persister, stored = await StatePersister.load(store, cluster_key(spec), ClusterStatus)
    return ClusterScope(spec=spec, status=status or stored, persister=persister, vpc=vpc)  # type: ignore[arg-type]


async def open_machine_scope(
    spec: MachineSpec,
    store: InMemoryStatusStore,
    power: FakePower,
    secrets: InMemorySecretStore,
    status: MachineStatus | None = None,
) -> MachineScope:
    persister, stored = await StatePersister.load(store, machine_key(spec), MachineStatus)
    return MachineScope(
        spec=spec,
        status=status or stored,
        persister=persister,
        power=power,  # type: ignore[arg-type]
        secrets=secrets,
    )


S = TypeVar("S", ClusterStatus, MachineStatus)


async def stored_status(
    store: InMemoryStatusStore, key: str, model: type[S],
) -> S:
    entry = await store.get(key)
    return model.model_validate(dict(entry.payload)) if entry else model()




# =============================================================================
# Fake VPC HTTP API
# =============================================================================

VPC_STATE = web.AppKey("vpc_state", dict)
VPC_COLLECTIONS = ("vpcs", "subnets", "public_gateways", "floating_ips")


def make_vpc_api(*, page_size: int = 2) -> web.Application:
    """aiohttp app serving the subset of the VPC API the client uses."""
    app = web.Application()
    state: dict[str, Any] = {
        **{name: [] for name in VPC_COLLECTIONS},
        "rules": {},
        "prefixes": {},
        "attachments": {},
        "requests": [],
    }
    app[VPC_STATE] = state
    ids = itertools.count(1)

    @web.middleware
    async def require_version(request: web.Request, handler: Any) -> web.StreamResponse:
        state["requests"].append((request.method, request.path))
        if "version" not in request.query or request.query.get("generation") != "2":
            return web.json_response({"errors": [{"code": "missing_version"}]}, status=400)
        return await handler(request)

    app.middlewares.append(require_version)

    def find(collection: str, resource_id: str) -> dict[str, Any]:
        for payload in state[collection]:
            if payload["id"] == resource_id:
                return payload
        raise web.HTTPNotFound(text='{"errors": [{"code": "not_found"}]}', content_type="application/json")

    def list_handler(collection: str):
        async def handler(request: web.Request) -> web.Response:
            limit = int(request.query.get("limit", page_size))
            offset = int(request.query.get("start", 0))
            items = state[collection][offset:offset + limit]
            body: dict[str, Any] = {collection: items, "limit": limit}
            if offset + limit < len(state[collection]):
                body["next"] = {"href": str(request.url.with_query(limit=limit, start=offset + limit))}
            return web.json_response(body)
        return handler

    def create_handler(collection: str):
        async def handler(request: web.Request) -> web.Response:
            body = await request.json()
            resource_id = f"{collection[:-1]}-{next(ids):04d}"
            payload = {"id": resource_id, **body}
            if collection == "vpcs":
                sg = f"sg-{resource_id}"
                payload["default_security_group"] = {"id": sg}
                state["rules"][sg] = []
                state["prefixes"][resource_id] = [
                    {"id": f"prefix-{i}", "zone": {"name": zone}, "cidr": f"10.{240 + i}.0.0/18"}
                    for i, zone in enumerate(ZONES)
                ]
            if collection == "floating_ips":
                payload["address"] = "169.48.0.20"
            state[collection].append(payload)
            return web.json_response(payload, status=201)
        return handler

    def get_handler(collection: str):
        async def handler(request: web.Request) -> web.Response:
            return web.json_response(find(collection, request.match_info["id"]))
        return handler

    def delete_handler(collection: str):
        async def handler(request: web.Request) -> web.Response:
            state[collection].remove(find(collection, request.match_info["id"]))
            return web.Response(status=204)
        return handler

    async def list_rules(request: web.Request) -> web.Response:
        return web.json_response({"rules": state["rules"].get(request.match_info["id"], [])})

    async def create_rule(request: web.Request) -> web.Response:
        rule = {"id": f"rule-{next(ids):04d}", **await request.json()}
        state["rules"].setdefault(request.match_info["id"], []).append(rule)
        return web.json_response(rule, status=201)

    async def list_prefixes(request: web.Request) -> web.Response:
        vpc_id = request.match_info["id"]
        find("vpcs", vpc_id)
        return web.json_response({"address_prefixes": state["prefixes"].get(vpc_id, [])})

    async def get_attachment(request: web.Request) -> web.Response:
        gateway_id = state["attachments"].get(request.match_info["id"])
        if gateway_id is None:
            raise web.HTTPNotFound(text="{}", content_type="application/json")
        return web.json_response(find("public_gateways", gateway_id))

    async def set_attachment(request: web.Request) -> web.Response:
        body = await request.json()
        gateway = find("public_gateways", body["id"])
        state["attachments"][request.match_info["id"]] = gateway["id"]
        return web.json_response(gateway, status=201)

    async def unset_attachment(request: web.Request) -> web.Response:
        if state["attachments"].pop(request.match_info["id"], None) is None:
            raise web.HTTPNotFound(text="{}", content_type="application/json")
        return web.Response(status=204)

    for collection in VPC_COLLECTIONS:
        app.router.add_get(f"/{collection}", list_handler(collection))
        app.router.add_post(f"/{collection}", create_handler(collection))
        app.router.add_get(f"/{collection}/{{id}}", get_handler(collection))
        app.router.add_delete(f"/{collection}/{{id}}", delete_handler(collection))
    app.router.add_get("/security_groups/{id}/rules", list_rules)
    app.router.add_post("/security_groups/{id}/rules", create_rule)
    app.router.add_get("/vpcs/{id}/address_prefixes", list_prefixes)
    app.router.add_get("/subnets/{id}/public_gateway", get_attachment)
    app.router.add_put("/subnets/{id}/public_gateway", set_attachment)
    app.router.add_delete("/subnets/{id}/public_gateway", unset_attachment)
    return app


@pytest.fixture
async def vpc_server():
    srv = TestServer(make_vpc_api())
    await srv.start_server()
    yield srv
    await srv.close()


@pytest.fixture
def vpc_url(vpc_server: TestServer) -> str:
    return f"http://{vpc_server.host}:{vpc_server.port}"


@pytest.fixture
def vpc_state(vpc_server: TestServer) -> dict[str, Any]:
    return vpc_server.app[VPC_STATE]
