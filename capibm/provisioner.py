"""Dependency-ordered provisioning.

Cluster resources are created in dependency order, each step gated on the
identifier recorded by the step before it:

    vpc -> default security policy -> subnet -> public gateway -> attach -> floating ip

Machine instances are resolved independently: image and network are looked
up (identifier first, then by name), the bootstrap payload is fetched, and the
instance is created.

Every step follows the same state machine: resolve (recorded identifier, or
by-name scan) and, only if nothing was found, create and persist the new
identifier before moving on. Remote failures propagate unchanged; retrying is
the scheduler's job.
"""

from __future__ import annotations

import base64
from typing import Any

from capibm.api.model import Resource, ResourceKind
from capibm.clients.power import InstanceCreate
from capibm.errors import ConfigurationError, NotReadyError, remote_call
from capibm.scope import ClusterScope, MachineScope

OPEN_INBOUND_CIDR = "0.0.0.0/0"


def is_open_inbound_rule(rule: dict[str, Any]) -> bool:
    """Whether ``rule`` admits all inbound IPv4 traffic from anywhere."""
    remote = rule.get("remote") or {}
    return (
        rule.get("direction") == "inbound"
        and rule.get("protocol") == "all"
        and rule.get("ip_version", "ipv4") == "ipv4"
        and remote.get("cidr_block", OPEN_INBOUND_CIDR) == OPEN_INBOUND_CIDR
        and "id" not in remote
    )


def cidr_for_zone(prefixes: list[dict[str, Any]], zone: str) -> str | None:
    for prefix in prefixes:
        if (prefix.get("zone") or {}).get("name") == zone and prefix.get("cidr"):
            return str(prefix["cidr"])
    return None


# =============================================================================
# Cluster
# =============================================================================


class ClusterProvisioner:
    def __init__(self, scope: ClusterScope) -> None:
        self.scope = scope
        self._log = scope.log.bind(component="provisioner")

    async def provision(self) -> None:
        await self.ensure_vpc()
        await self.ensure_subnet()
        await self.ensure_public_gateway()
        await self.ensure_floating_ip()
        self.scope.status.ready = True
        await self.scope.persist()

    async def _adopt(self, resource: Resource, field_name: str) -> None:
        status = self.scope.status
        if getattr(status, field_name) == resource.id:
            return
        self._log.info(
            "Adopting existing {kind} {name} ({id})",
            kind=resource.kind, name=resource.name, id=resource.id,
        )
        setattr(status, field_name, resource.id)
        await self.scope.persist()

    # -------------------------------------------------------------------------
    # VPC
    # -------------------------------------------------------------------------

    async def ensure_vpc(self) -> Resource:
        """Resolve or create the VPC, applying the default security policy on creation.

        The VPC identifier is persisted only once its default security group
        admits inbound traffic; a VPC found by name (not by recorded
        identifier) has the policy re-checked, since an earlier pass may have
        crashed between the create and the rule.
        """
        scope = self.scope
        spec, status = scope.spec, scope.status
        recorded = status.vpc_id

        vpc = await scope.resolver.find_recorded_or_named(ResourceKind.VPC, recorded, spec.vpc)
        if vpc is not None and recorded == vpc.id:
            return vpc

        if vpc is None:
            with remote_call("create vpc", spec.vpc):
                vpc = await scope.vpc.create_vpc(spec.vpc, spec.resource_group)
            self._log.info("Created vpc {name} ({id})", name=spec.vpc, id=vpc.id)

        await self._ensure_default_policy(vpc)
        await self._adopt(vpc, "vpc_id")
        return vpc

    async def _default_security_group(self, vpc: Resource) -> str:
        sg_id = (vpc.raw.get("default_security_group") or {}).get("id")
        if sg_id:
            return str(sg_id)
        fetched = await self.scope.resolver.find_by_id(ResourceKind.VPC, vpc.id)
        sg_id = ((fetched.raw if fetched else {}).get("default_security_group") or {}).get("id")
        if not sg_id:
            raise NotReadyError(f"vpc {vpc.name} has no default security group yet")
        return str(sg_id)

    async def _ensure_default_policy(self, vpc: Resource) -> None:
        sg_id = await self._default_security_group(vpc)
        with remote_call("list security group rules", sg_id):
            rules = await self.scope.vpc.list_security_group_rules(sg_id)
        if any(is_open_inbound_rule(rule) for rule in rules):
            return
        with remote_call("update default security group", sg_id):
            await self.scope.vpc.create_security_group_rule(sg_id)
        self._log.info("Opened inbound traffic on security group {id}", id=sg_id)

    # -------------------------------------------------------------------------
    # Subnet
    # -------------------------------------------------------------------------

    async def ensure_subnet(self) -> Resource:
        scope = self.scope
        spec, status = scope.spec, scope.status
        vpc_id = status.vpc_id
        if not vpc_id:
            raise NotReadyError(f"subnet {spec.subnet_name} waits for vpc {spec.vpc}")

        subnet = await scope.resolver.find_recorded_or_named(
            ResourceKind.SUBNET, status.subnet_id, spec.subnet_name,
        )
        if subnet is None:
            cidr = await self._subnet_cidr(vpc_id, spec.zone)
            with remote_call("create subnet", spec.subnet_name):
                subnet = await scope.vpc.create_subnet(
                    name=spec.subnet_name,
                    vpc_id=vpc_id,
                    zone=spec.zone,
                    cidr_block=cidr,
                    resource_group=spec.resource_group,
                )
            self._log.info(
                "Created subnet {name} ({id}) with {cidr}",
                name=spec.subnet_name, id=subnet.id, cidr=cidr,
            )
        await self._adopt(subnet, "subnet_id")
        return subnet

    async def _subnet_cidr(self, vpc_id: str, zone: str) -> str:
        with remote_call("list address prefixes", vpc_id):
            prefixes = await self.scope.vpc.list_address_prefixes(vpc_id)
        cidr = cidr_for_zone(prefixes, zone)
        if cidr is None:
            raise ConfigurationError(f"not found a valid CIDR for VPC {vpc_id} in zone {zone}")
        return cidr

    # -------------------------------------------------------------------------
    # Public gateway
    # -------------------------------------------------------------------------

    async def ensure_public_gateway(self) -> Resource | None:
        """Create a gateway for the subnet's zone and attach it.

        Not required for the subnet to be complete: the subnet identifier is
        already persisted, so a failure here only repeats this step.
        """
        scope = self.scope
        spec, status = scope.spec, scope.status
        if not spec.create_public_gateway:
            return None
        subnet_id = status.subnet_id
        if not subnet_id or not status.vpc_id:
            raise NotReadyError(f"public gateway waits for subnet {spec.subnet_name}")

        with remote_call("get subnet public gateway", subnet_id):
            attached = await scope.vpc.get_subnet_public_gateway(subnet_id)
        if attached is not None:
            await self._adopt(attached, "public_gateway_id")
            return attached

        gateway = await scope.resolver.find_recorded_or_named(
            ResourceKind.PUBLIC_GATEWAY, status.public_gateway_id, spec.public_gateway_name,
        )
        if gateway is None:
            with remote_call("create public gateway", spec.public_gateway_name):
                gateway = await scope.vpc.create_public_gateway(
                    name=spec.public_gateway_name,
                    vpc_id=status.vpc_id,
                    zone=spec.zone,
                    resource_group=spec.resource_group,
                )
            self._log.info(
                "Created public gateway {name} ({id})", name=spec.public_gateway_name, id=gateway.id,
            )
        await self._adopt(gateway, "public_gateway_id")

        with remote_call("attach public gateway", subnet_id):
            await scope.vpc.set_subnet_public_gateway(subnet_id, gateway.id)
        self._log.info("Attached public gateway {id} to subnet {subnet}", id=gateway.id, subnet=subnet_id)
        return gateway

    # -------------------------------------------------------------------------
    # Floating IP
    # -------------------------------------------------------------------------

    async def ensure_floating_ip(self) -> Resource:
        scope = self.scope
        spec, status = scope.spec, scope.status
        name = spec.floating_ip_name

        fip = await scope.resolver.find_recorded_or_named(
            ResourceKind.FLOATING_IP, status.floating_ip_id, name,
        )
        if fip is None:
            with remote_call("reserve floating ip", name):
                fip = await scope.vpc.create_floating_ip(
                    name=name, zone=spec.zone, resource_group=spec.resource_group,
                )
            self._log.info("Reserved floating ip {name} ({id})", name=name, id=fip.id)

        address = fip.raw.get("address")
        changed = (
            status.floating_ip_id != fip.id
            or status.floating_ip_name != name
            or (address is not None and status.floating_ip_address != address)
        )
        if changed:
            status.floating_ip_id = fip.id
            status.floating_ip_name = name
            if address is not None:
                status.floating_ip_address = str(address)
            await scope.persist()
        return fip


# =============================================================================
# Machine
# =============================================================================


class MachineProvisioner:
    def __init__(self, scope: MachineScope) -> None:
        self.scope = scope
        self._log = scope.log.bind(component="provisioner")

    async def provision(self) -> Resource:
        scope = self.scope
        spec, status = scope.spec, scope.status

        if status.instance_id:
            recorded = await scope.resolver.find_by_id(ResourceKind.INSTANCE, status.instance_id)
            if recorded is not None:
                await self._record(recorded)
                return recorded
            self._log.warning(
                "Recorded instance {id} no longer exists, recreating", id=status.instance_id,
            )
            status.instance_id = None
            status.ready = False
            await scope.persist()

        # Shape is validated before any remote call
        memory = spec.memory_gb()
        processors = spec.processor_count()

        existing = await scope.resolver.find_by_name(ResourceKind.INSTANCE, spec.name)
        if existing is not None:
            self._log.info("Instance {name} already exists ({id})", name=spec.name, id=existing.id)
            await self._record(existing)
            return existing

        image_id = await scope.resolver.resolve_reference(ResourceKind.IMAGE, spec.image)
        network_id = await scope.resolver.resolve_reference(ResourceKind.POWER_NETWORK, spec.network)
        user_data = await self.bootstrap_data()

        body: InstanceCreate = {
            "serverName": spec.name,
            "imageID": image_id,
            "memory": memory,
            "processors": processors,
            "procType": spec.proc_type,
            "networks": [{"networkID": network_id}],
            "userData": user_data,
        }
        if spec.sys_type:
            body["sysType"] = spec.sys_type
        if spec.ssh_key:
            body["keyPairName"] = spec.ssh_key

        with remote_call("create instance", spec.name):
            instance = await scope.power.create_instance(body)
        self._log.info("Created instance {name} ({id})", name=spec.name, id=instance.id)
        await self._record(instance)
        return instance

    async def bootstrap_data(self) -> str:
        """Base64-encoded bootstrap payload from the machine's bootstrap secret."""
        spec = self.scope.spec
        if not spec.bootstrap_secret:
            raise NotReadyError(
                f"bootstrap data for machine {spec.name} is not available yet: "
                "bootstrap secret name is not set"
            )
        secret = await self.scope.secrets.get_secret(spec.namespace, spec.bootstrap_secret)
        value = secret.get("value")
        if value is None:
            raise ConfigurationError(
                f"bootstrap secret {spec.namespace}/{spec.bootstrap_secret} has no 'value' key"
            )
        return base64.b64encode(value).decode("ascii")

    async def _record(self, instance: Resource) -> None:
        status = self.scope.status
        addresses = [
            str(address)
            for network in instance.raw.get("networks") or []
            for address in (network.get("ipAddress"), network.get("externalIP"))
            if address
        ]
        ready = str(instance.raw.get("status", "")).upper() == "ACTIVE"
        if (
            status.instance_id == instance.id
            and status.instance_name == self.scope.spec.name
            and status.addresses == addresses
            and status.ready == ready
        ):
            return
        status.instance_id = instance.id
        status.instance_name = self.scope.spec.name
        status.addresses = addresses
        status.ready = ready
        await self.scope.persist()
