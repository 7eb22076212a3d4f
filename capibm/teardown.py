"""Reverse-order teardown.

Cluster resources go in reverse dependency order:

    floating ip -> (detach gateway -> gateway) -> subnet -> vpc

Deletes act only on recorded identifiers. A resource that is already gone
(HTTP 404) counts as deleted, so repeating a teardown is harmless. Every step
clears its status field and persists before the next one starts.
"""

from __future__ import annotations

from capibm.errors import remote_call
from capibm.scope import ClusterScope, MachineScope


class ClusterTeardown:
    def __init__(self, scope: ClusterScope) -> None:
        self.scope = scope
        self._log = scope.log.bind(component="teardown")

    async def teardown(self) -> None:
        if self.scope.status.ready:
            self.scope.status.ready = False
            await self.scope.persist()
        await self.delete_floating_ip()
        await self.delete_subnet()
        await self.delete_vpc()

    def _deleted(self, kind: str, resource_id: str, existed: bool) -> None:
        if existed:
            self._log.info("Deleted {kind} {id}", kind=kind, id=resource_id)
        else:
            self._log.warning("{kind} {id} was already gone", kind=kind, id=resource_id)

    async def delete_floating_ip(self) -> None:
        """Release the recorded floating IP. No recorded ID means nothing to do."""
        status = self.scope.status
        fip_id = status.floating_ip_id
        if not fip_id:
            return
        with remote_call("delete floating ip", fip_id):
            existed = await self.scope.vpc.delete_floating_ip(fip_id)
        self._deleted("floating ip", fip_id, existed)
        status.floating_ip_id = None
        status.floating_ip_name = None
        status.floating_ip_address = None
        await self.scope.persist()

    async def delete_subnet(self) -> None:
        """Detach and delete the subnet's gateway, then delete the subnet.

        The gateway attached to the subnet is what gets deleted; a recorded
        gateway that is not attached (attach never completed) is deleted too.
        """
        scope = self.scope
        status = scope.status
        subnet_id = status.subnet_id

        if subnet_id:
            with remote_call("get subnet public gateway", subnet_id):
                attached = await scope.vpc.get_subnet_public_gateway(subnet_id)
            if attached is not None:
                with remote_call("detach public gateway", subnet_id):
                    await scope.vpc.unset_subnet_public_gateway(subnet_id)
                self._log.info(
                    "Detached public gateway {id} from subnet {subnet}",
                    id=attached.id, subnet=subnet_id,
                )
                await self._delete_gateway(attached.id)

        if status.public_gateway_id:
            await self._delete_gateway(status.public_gateway_id)

        if subnet_id:
            with remote_call("delete subnet", subnet_id):
                existed = await scope.vpc.delete_subnet(subnet_id)
            self._deleted("subnet", subnet_id, existed)
            status.subnet_id = None
            await scope.persist()

    async def _delete_gateway(self, gateway_id: str) -> None:
        with remote_call("delete public gateway", gateway_id):
            existed = await self.scope.vpc.delete_public_gateway(gateway_id)
        self._deleted("public gateway", gateway_id, existed)
        status = self.scope.status
        if status.public_gateway_id == gateway_id:
            status.public_gateway_id = None
            await self.scope.persist()

    async def delete_vpc(self) -> None:
        status = self.scope.status
        vpc_id = status.vpc_id
        if not vpc_id:
            return
        with remote_call("delete vpc", vpc_id):
            existed = await self.scope.vpc.delete_vpc(vpc_id)
        self._deleted("vpc", vpc_id, existed)
        status.vpc_id = None
        await self.scope.persist()


class MachineTeardown:
    def __init__(self, scope: MachineScope) -> None:
        self.scope = scope
        self._log = scope.log.bind(component="teardown")

    async def teardown(self) -> None:
        """Delete the recorded instance from its service instance."""
        scope = self.scope
        status = scope.status
        instance_id = status.instance_id
        if not instance_id:
            return
        with remote_call("delete instance", instance_id):
            existed = await scope.power.delete_instance(instance_id)
        if existed:
            self._log.info(
                "Deleted instance {id} from service instance {service}",
                id=instance_id, service=scope.spec.service_instance_id,
            )
        else:
            self._log.warning("Instance {id} was already gone", id=instance_id)
        status.instance_id = None
        status.instance_name = None
        status.addresses = []
        status.ready = False
        await scope.persist()
