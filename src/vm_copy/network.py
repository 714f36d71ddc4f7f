"""
Destination network provisioning.
"""

from typing import Optional

from .azure_cli import AzureCLI
from .exceptions import NotFoundError, ProvisioningFailedError, SubnetNotFoundError
from .logging import logger
from .models import MigrationRequest, NetworkInterface
from .security import CommandBuilder


class NetworkProvisioner:
    """Resolves the destination subnet and creates the VM's NIC."""

    def __init__(self, az: AzureCLI):
        self.az = az

    async def resolve_subnet(self, request: MigrationRequest) -> str:
        """
        Resolve the destination subnet to its full resource id.

        Raises:
            SubnetNotFoundError: The subnet does not exist or resolves to nothing.
        """
        network_rg = request.network_resource_group
        try:
            subnet = await self.az.run(
                CommandBuilder.subnet_show(
                    network_rg, request.destination_vnet, request.destination_subnet
                ),
                request.destination_subscription,
            )
        except NotFoundError:
            subnet = None

        subnet_id = (subnet or {}).get("id") or ""
        if not subnet_id.strip():
            raise SubnetNotFoundError(
                request.destination_vnet, request.destination_subnet, network_rg
            )

        logger.info(
            f"Resolved subnet {subnet_id}",
            stage="network",
            subnet_id=subnet_id,
        )
        return subnet_id

    async def source_accelerated_networking(
        self, source_subscription: str, nic_id: str
    ) -> bool:
        """Whether the source NIC has accelerated networking enabled."""
        if not nic_id:
            return False
        try:
            nic = await self.az.run(CommandBuilder.nic_show(nic_id), source_subscription)
        except NotFoundError:
            logger.warning(f"Source NIC {nic_id} not found, accelerated networking off")
            return False
        return bool((nic or {}).get("enableAcceleratedNetworking"))

    async def provision(
        self,
        request: MigrationRequest,
        location: str,
        source_nic_id: Optional[str] = None,
        subnet_id: Optional[str] = None,
    ) -> NetworkInterface:
        """
        Create ``<vm>-nic`` in the destination resource group.

        The subnet is resolved first (unless already known) so that NIC
        creation is never attempted with an empty subnet reference.
        """
        subnet_id = subnet_id or await self.resolve_subnet(request)
        accelerated = await self.source_accelerated_networking(
            request.source_subscription, source_nic_id or ""
        )
        nic_name = f"{request.target_vm_name}-nic"

        logger.info(
            f"Creating NIC {nic_name}",
            stage="network",
            nic_name=nic_name,
            accelerated_networking=accelerated,
        )
        response = await self.az.run(
            CommandBuilder.nic_create(
                request.destination_resource_group,
                nic_name,
                subnet_id,
                location,
                accelerated_networking=accelerated,
            ),
            request.destination_subscription,
        )

        nic = (response or {}).get("NewNIC") or response or {}
        state = nic.get("provisioningState")
        if state != "Succeeded":
            raise ProvisioningFailedError(nic_name, "NIC creation", state)

        return NetworkInterface(
            nic_id=nic["id"],
            nic_name=nic_name,
            subnet_id=subnet_id,
            accelerated_networking=accelerated,
        )
