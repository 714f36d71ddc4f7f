"""
Destination VM assembly.

The VM is described as an ARM ``Microsoft.Compute/virtualMachines`` body
attaching the migrated disks and the new NIC, then submitted with
``az rest --method put``. Submission runs as a background task raced against
an existence poller; whichever branch settles the outcome first wins and the
other is cancelled.
"""

import asyncio
import json
from typing import Any, Dict, List

from .azure_cli import AzureCLI
from .disks import placement_zone
from .exceptions import CreationTimeoutError, ProvisioningFailedError, ValidationError
from .logging import logger
from .models import MigratedDisk, MigrationRequest, NetworkInterface, VmProfile
from .security import CommandBuilder
from .transaction import MigrationTransaction, ResourceType
from .verifier import PostCreateVerifier

COMPUTE_API_VERSION = "2023-09-01"


def vm_resource_id(subscription: str, resource_group: str, vm_name: str) -> str:
    return (
        f"/subscriptions/{subscription}/resourceGroups/{resource_group}"
        f"/providers/Microsoft.Compute/virtualMachines/{vm_name}"
    )


class VMAssembler:
    """Builds and submits the destination VM definition."""

    def __init__(self, az: AzureCLI, verifier: PostCreateVerifier):
        self.az = az
        self.verifier = verifier

    @staticmethod
    def build_definition(
        request: MigrationRequest,
        profile: VmProfile,
        disks: List[MigratedDisk],
        nic: NetworkInterface,
    ) -> Dict[str, Any]:
        """Return the ARM body for the destination VM."""
        os_disks = [d for d in disks if d.descriptor.is_os_disk]
        if len(os_disks) != 1:
            raise ValidationError(
                f"expected exactly one migrated OS disk, got {len(os_disks)}", "assemble"
            )
        os_disk = os_disks[0]
        data_disks = sorted(
            (d for d in disks if not d.descriptor.is_os_disk),
            key=lambda d: d.descriptor.lun,
        )

        storage: Dict[str, Any] = {
            "osDisk": {
                "osType": profile.os_type.value,
                "name": os_disk.disk_name,
                "createOption": "Attach",
                "caching": os_disk.descriptor.caching,
                "managedDisk": {"id": os_disk.disk_id},
            },
            "dataDisks": [
                {
                    "lun": d.descriptor.lun,
                    "name": d.disk_name,
                    "createOption": "Attach",
                    "caching": d.descriptor.caching,
                    "managedDisk": {"id": d.disk_id},
                }
                for d in data_disks
            ],
        }

        body: Dict[str, Any] = {
            "location": profile.location,
            "tags": {"copied-from": profile.vm_id},
            "properties": {
                "hardwareProfile": {"vmSize": request.destination_size or profile.vm_size},
                "storageProfile": storage,
                "networkProfile": {
                    "networkInterfaces": [
                        {"id": nic.nic_id, "properties": {"primary": True}}
                    ]
                },
            },
        }

        if profile.plan.is_complete:
            body["plan"] = {
                "name": profile.plan.name,
                "product": profile.plan.product,
                "publisher": profile.plan.publisher,
            }
        zone = placement_zone(request, profile)
        if zone:
            body["zones"] = [zone]
        if profile.license_type:
            body["properties"]["licenseType"] = profile.license_type

        return body

    async def create(
        self,
        request: MigrationRequest,
        profile: VmProfile,
        disks: List[MigratedDisk],
        nic: NetworkInterface,
        txn: MigrationTransaction,
    ) -> Dict[str, Any]:
        """
        Submit the VM and wait until it exists.

        Returns:
            The VM as last reported by the provider.

        Raises:
            AzureCommandError: The provider rejected the submission.
            ProvisioningFailedError: The VM reached ``Failed``.
            CreationTimeoutError: Neither branch settled within the wait budget.
        """
        subscription = request.destination_subscription
        resource_group = request.destination_resource_group
        vm_name = request.target_vm_name
        vm_id = vm_resource_id(subscription, resource_group, vm_name)
        body = self.build_definition(request, profile, disks, nic)
        uri = f"https://management.azure.com{vm_id}?api-version={COMPUTE_API_VERSION}"

        logger.info(
            f"Creating VM {vm_name} ({body['properties']['hardwareProfile']['vmSize']})",
            stage="assemble",
            vm_name=vm_name,
            data_disks=len(body["properties"]["storageProfile"]["dataDisks"]),
        )

        submit = asyncio.ensure_future(
            self.az.run(CommandBuilder.rest_put(uri, json.dumps(body)), subscription)
        )
        poll = asyncio.ensure_future(
            self.verifier.wait_for_existence(subscription, resource_group, vm_name)
        )

        try:
            vm = await self._race(submit, poll)
        except (CreationTimeoutError, ProvisioningFailedError) as e:
            outcome = "unknown" if isinstance(e, CreationTimeoutError) else "failed"
            txn.register_resource(
                ResourceType.VIRTUAL_MACHINE, vm_id, subscription, metadata={"outcome": outcome}
            )
            raise
        finally:
            for task in (submit, poll):
                if not task.done():
                    task.cancel()
            await asyncio.gather(submit, poll, return_exceptions=True)

        txn.register_resource(
            ResourceType.VIRTUAL_MACHINE, vm.get("id") or vm_id, subscription
        )
        logger.info(f"VM {vm_name} created", stage="assemble", vm_id=vm.get("id") or vm_id)
        return vm

    @staticmethod
    async def _race(submit: "asyncio.Future[Any]", poll: "asyncio.Future[Any]") -> Dict[str, Any]:
        done, _ = await asyncio.wait({submit, poll}, return_when=asyncio.FIRST_COMPLETED)

        if submit in done:
            # raises when submission failed
            response = submit.result() or {}
            state = (response.get("properties") or {}).get("provisioningState")
            if state == "Succeeded":
                return response
            logger.debug(
                f"VM submission accepted with state {state}, waiting for existence",
                stage="assemble",
            )
            return await poll

        return poll.result()
