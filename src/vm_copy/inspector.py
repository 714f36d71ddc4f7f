"""
Source VM inspection.

Reads the VM definition and the managed-disk resources behind it and
turns them into a ``VmProfile`` plus an ordered list of ``DiskDescriptor``.
"""

from typing import Any, Dict, List, Optional, Tuple

from .azure_cli import AzureCLI
from .exceptions import NotFoundError, ValidationError
from .logging import logger
from .models import (
    DiskDescriptor,
    DiskRole,
    ImageReference,
    OSType,
    PlanReference,
    VmProfile,
)
from .security import CommandBuilder


class SourceInspector:
    """Captures the state of the source VM."""

    def __init__(self, az: AzureCLI):
        self.az = az

    async def inspect(
        self, subscription: str, resource_group: str, vm_name: str
    ) -> Tuple[VmProfile, List[DiskDescriptor]]:
        """
        Read the source VM.

        Returns:
            The captured profile and the disks, OS disk first, data disks by LUN.

        Raises:
            NotFoundError: The VM (or one of its disks) does not exist.
            AccessDeniedError: The caller cannot read the VM.
        """
        logger.info(
            f"Inspecting source VM '{vm_name}'",
            stage="inspect",
            vm_name=vm_name,
            resource_group=resource_group,
        )

        try:
            vm = await self.az.run(
                CommandBuilder.vm_show(resource_group, vm_name), subscription
            )
        except NotFoundError:
            raise NotFoundError(f"{resource_group}/{vm_name}", subscription)
        if not vm:
            raise NotFoundError(f"{resource_group}/{vm_name}", subscription)

        storage = vm.get("storageProfile") or {}
        os_disk_spec = storage.get("osDisk") or {}
        os_disk_resource = await self._managed_disk(os_disk_spec, subscription)

        disks = [self._describe(os_disk_spec, os_disk_resource, DiskRole.OS)]
        for data_spec in sorted(
            storage.get("dataDisks") or [], key=lambda d: int(d.get("lun", 0))
        ):
            resource = await self._managed_disk(data_spec, subscription)
            disks.append(self._describe(data_spec, resource, DiskRole.DATA))

        profile = VmProfile(
            vm_id=vm.get("id", ""),
            vm_name=vm.get("name", vm_name),
            location=vm.get("location", ""),
            os_type=OSType.parse(
                os_disk_spec.get("osType") or os_disk_resource.get("osType")
            ),
            vm_size=(vm.get("hardwareProfile") or {}).get("vmSize", ""),
            image=self._image_reference(storage.get("imageReference")),
            plan=self._plan_reference(vm.get("plan")),
            primary_nic_id=self._primary_nic(vm),
            hyper_v_generation=os_disk_resource.get("hyperVGeneration"),
            license_type=vm.get("licenseType") or None,
            zones=tuple(vm.get("zones") or ()),
            tenant_id=await self.tenant_of(subscription),
        )

        logger.info(
            f"Source VM '{vm_name}': {profile.vm_size}, {profile.os_type.value}, "
            f"{len(disks) - 1} data disk(s)",
            stage="inspect",
            vm_name=vm_name,
            disk_count=len(disks),
        )
        return profile, disks

    async def tenant_of(self, subscription: str) -> Optional[str]:
        """Return the directory (tenant) id that owns a subscription."""
        account = await self.az.run(CommandBuilder.account_show(), subscription)
        return (account or {}).get("tenantId")

    async def _managed_disk(
        self, disk_spec: Dict[str, Any], subscription: str
    ) -> Dict[str, Any]:
        managed = disk_spec.get("managedDisk") or {}
        disk_id = managed.get("id")
        if not disk_id:
            raise ValidationError(
                f"Disk '{disk_spec.get('name')}' is not a managed disk", "disk"
            )
        # The VM's cached diskSizeGb can lag behind the disk resource
        resource = await self.az.run(CommandBuilder.disk_show(disk_id=disk_id), subscription)
        if not resource:
            raise NotFoundError(disk_id, subscription)
        return resource

    @staticmethod
    def _describe(
        spec: Dict[str, Any], resource: Dict[str, Any], role: DiskRole
    ) -> DiskDescriptor:
        managed = spec.get("managedDisk") or {}
        sku = (resource.get("sku") or {}).get("name") or managed.get("storageAccountType")
        size = resource.get("diskSizeGB") or resource.get("diskSizeGb") or spec.get("diskSizeGb")
        return DiskDescriptor(
            role=role,
            name=resource.get("name") or spec.get("name", ""),
            source_id=resource.get("id") or managed.get("id", ""),
            caching=spec.get("caching") or "None",
            sku=sku or "Standard_LRS",
            size_gb=int(size or 0),
            lun=int(spec["lun"]) if role == DiskRole.DATA else None,
        )

    @staticmethod
    def _image_reference(ref: Optional[Dict[str, Any]]) -> ImageReference:
        ref = ref or {}
        return ImageReference(
            publisher=ref.get("publisher") or "",
            offer=ref.get("offer") or "",
            sku=ref.get("sku") or "",
            version=ref.get("exactVersion") or ref.get("version") or "",
        )

    @staticmethod
    def _plan_reference(plan: Optional[Dict[str, Any]]) -> PlanReference:
        plan = plan or {}
        return PlanReference(
            name=plan.get("name") or "",
            product=plan.get("product") or "",
            publisher=plan.get("publisher") or "",
        )

    @staticmethod
    def _primary_nic(vm: Dict[str, Any]) -> str:
        nics = (vm.get("networkProfile") or {}).get("networkInterfaces") or []
        for nic in nics:
            if nic.get("primary"):
                return nic.get("id", "")
        return nics[0].get("id", "") if nics else ""
