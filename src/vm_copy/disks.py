"""
Disk migration.

Each disk moves through a fixed sequence of states:

    Inspected -> SnapshotPending -> SnapshotReady
      -> (TransferPending -> TransferReady)   cross-tenant only
      -> DiskPending -> DiskReady -> SnapshotDeleted

Disks are migrated one at a time, OS disk first, then data disks by LUN.
Any provisioning outcome other than ``Succeeded`` aborts the whole run.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .azure_cli import AzureCLI
from .exceptions import ProvisioningFailedError, ValidationError
from .logging import logger
from .models import (
    ArtifactKind,
    DiskDescriptor,
    DiskState,
    MigratedDisk,
    MigrationRequest,
    TransferArtifact,
    VmProfile,
)
from .security import CommandBuilder
from .transaction import CleanupFunc, MigrationTransaction, ResourceType
from .transfer import BlobTransfer, StagingStorage

MAX_SNAPSHOT_NAME = 80

TRANSITIONS = {
    DiskState.INSPECTED: {DiskState.SNAPSHOT_PENDING},
    DiskState.SNAPSHOT_PENDING: {DiskState.SNAPSHOT_READY},
    DiskState.SNAPSHOT_READY: {DiskState.TRANSFER_PENDING, DiskState.DISK_PENDING},
    DiskState.TRANSFER_PENDING: {DiskState.TRANSFER_READY},
    DiskState.TRANSFER_READY: {DiskState.DISK_PENDING},
    DiskState.DISK_PENDING: {DiskState.DISK_READY},
    DiskState.DISK_READY: {DiskState.SNAPSHOT_DELETED},
    DiskState.SNAPSHOT_DELETED: set(),
}


class DiskMigration:
    """State of one disk's migration."""

    def __init__(self, disk: DiskDescriptor):
        self.disk = disk
        self.state = DiskState.INSPECTED
        self.history: List[DiskState] = [DiskState.INSPECTED]

    def advance(self, state: DiskState) -> None:
        if state not in TRANSITIONS[self.state]:
            raise ValidationError(
                f"illegal transition {self.state.value} -> {state.value} for disk '{self.disk.name}'",
                "disk_state",
            )
        self.state = state
        self.history.append(state)
        logger.debug(
            f"Disk {self.disk.name}: {state.value}",
            stage="disks",
            disk=self.disk.name,
            state=state.value,
        )


def placement_zone(request: MigrationRequest, profile: VmProfile) -> Optional[str]:
    """The zone for destination disks and VM: the requested one, else the source's."""
    if request.zone:
        return request.zone
    return profile.zones[0] if profile.zones else None


def require_succeeded(response: Optional[Dict[str, Any]], resource: str, operation: str) -> Dict[str, Any]:
    state = (response or {}).get("provisioningState")
    if state != "Succeeded":
        raise ProvisioningFailedError(resource, operation, state)
    return response  # type: ignore[return-value]


class DiskMigrator:
    """Recreates the source disks as managed disks in the destination."""

    def __init__(
        self,
        az: AzureCLI,
        transfer: BlobTransfer,
        sas_duration_seconds: int = 4 * 3600,
        staging_storage_sku: str = "Standard_LRS",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.az = az
        self.transfer = transfer
        self.sas_duration_seconds = sas_duration_seconds
        self.staging_storage_sku = staging_storage_sku
        self.clock = clock
        self._staging: Optional[StagingStorage] = None

    @staticmethod
    def ordered(disks: List[DiskDescriptor]) -> List[DiskDescriptor]:
        """OS disk first, then data disks in LUN order."""
        os_disks = [d for d in disks if d.is_os_disk]
        if len(os_disks) != 1:
            raise ValidationError(f"expected exactly one OS disk, got {len(os_disks)}", "disk")
        data = sorted((d for d in disks if not d.is_os_disk), key=lambda d: d.lun)
        luns = [d.lun for d in data]
        if len(set(luns)) != len(luns):
            raise ValidationError(f"duplicate data disk LUNs: {luns}", "disk")
        return os_disks + data

    def snapshot_name(self, disk_name: str) -> str:
        suffix = f"-snap-{self.clock().strftime('%Y%m%d%H%M%S')}"
        return disk_name[: MAX_SNAPSHOT_NAME - len(suffix)] + suffix

    @staticmethod
    def destination_disk_name(request: MigrationRequest, disk: DiskDescriptor) -> str:
        if request.same_resource_group:
            # Azure rejects names ending in '-' or '.'
            return f"{request.target_vm_name}-{disk.name}"[:MAX_SNAPSHOT_NAME].rstrip("-.")
        return disk.name

    async def migrate_all(
        self,
        request: MigrationRequest,
        profile: VmProfile,
        disks: List[DiskDescriptor],
        txn: MigrationTransaction,
        cross_tenant: bool,
    ) -> List[MigratedDisk]:
        self._staging = None
        migrated = []
        for disk in self.ordered(disks):
            migrated.append(await self.migrate(request, profile, disk, txn, cross_tenant))
        return migrated

    async def migrate(
        self,
        request: MigrationRequest,
        profile: VmProfile,
        disk: DiskDescriptor,
        txn: MigrationTransaction,
        cross_tenant: bool,
    ) -> MigratedDisk:
        """Move one disk. Raises on any definitive failure."""
        migration = DiskMigration(disk)
        target_name = self.destination_disk_name(request, disk)
        logger.info(
            f"Migrating {disk.role.value} disk {disk.name} -> {target_name}",
            stage="disks",
            disk=disk.name,
            lun=disk.lun,
            cross_tenant=cross_tenant,
        )

        # Same tenant: the destination pulls straight from the source disk.
        # Cross-tenant: the snapshot stays with the source and is exported.
        if cross_tenant:
            snap_sub, snap_rg = request.source_subscription, request.source_resource_group
        else:
            snap_sub, snap_rg = request.destination_subscription, request.destination_resource_group

        migration.advance(DiskState.SNAPSHOT_PENDING)
        snap_name = self.snapshot_name(disk.name)
        snapshot = await self.az.run(
            CommandBuilder.snapshot_create(snap_rg, snap_name, disk.source_id, profile.location),
            snap_sub,
        )
        # registered before the provisioning state is checked
        snapshot_id = (snapshot or {}).get("id")
        snap_record = None
        if snapshot_id:
            snap_record = txn.register_artifact(
                TransferArtifact(ArtifactKind.SNAPSHOT, snapshot_id, snap_sub, disk.name),
                self._delete_snapshot(snapshot_id, snap_sub),
            )
        require_succeeded(snapshot, snap_name, "Snapshot creation")
        if snap_record is None:
            raise ProvisioningFailedError(snap_name, "Snapshot creation", "no resource id")
        migration.advance(DiskState.SNAPSHOT_READY)

        source = snapshot_id
        source_account_id = None
        released_early = []
        if cross_tenant:
            migration.advance(DiskState.TRANSFER_PENDING)
            source, source_account_id, released_early = await self._export(
                request, profile, disk, target_name, snapshot_id, snap_sub, txn
            )
            migration.advance(DiskState.TRANSFER_READY)

        migration.advance(DiskState.DISK_PENDING)
        await self._remove_existing_disk(request, target_name)
        zone = placement_zone(request, profile)
        created = await self.az.run(
            CommandBuilder.disk_create(
                request.destination_resource_group,
                target_name,
                source,
                sku=disk.sku,
                size_gb=disk.size_gb,
                location=profile.location,
                zone=zone,
                os_type=profile.os_type.value if disk.is_os_disk else None,
                hyper_v_generation=profile.hyper_v_generation if disk.is_os_disk else None,
                source_storage_account_id=source_account_id,
            ),
            request.destination_subscription,
        )
        disk_id = (created or {}).get("id")
        if disk_id:
            metadata = {"role": disk.role.value, "lun": disk.lun, "source": disk.source_id}
            state = (created or {}).get("provisioningState")
            if state != "Succeeded":
                metadata["outcome"] = "failed"
            txn.register_resource(
                ResourceType.MANAGED_DISK,
                disk_id,
                request.destination_subscription,
                metadata=metadata,
            )
        require_succeeded(created, target_name, "Disk creation")
        if not disk_id:
            raise ProvisioningFailedError(target_name, "Disk creation", "no resource id")
        migration.advance(DiskState.DISK_READY)

        for record in released_early:
            await txn.release(record)
        if await txn.release(snap_record):
            migration.advance(DiskState.SNAPSHOT_DELETED)

        return MigratedDisk(
            descriptor=disk,
            disk_id=disk_id,
            disk_name=target_name,
            state=migration.state,
        )

    async def _export(
        self,
        request: MigrationRequest,
        profile: VmProfile,
        disk: DiskDescriptor,
        target_name: str,
        snapshot_id: str,
        snap_sub: str,
        txn: MigrationTransaction,
    ):
        grant = await self.az.run(
            CommandBuilder.snapshot_grant_access(snapshot_id, self.sas_duration_seconds),
            snap_sub,
        )
        url = (grant or {}).get("accessSas") or (grant or {}).get("accessSAS")
        if not url:
            raise ProvisioningFailedError(snapshot_id, "Snapshot access grant", None)
        grant_record = txn.register_artifact(
            TransferArtifact(
                ArtifactKind.SAS_GRANT,
                snapshot_id,
                snap_sub,
                disk.name,
                url=url,
                expires_at=self.clock() + timedelta(seconds=self.sas_duration_seconds),
            ),
            self._revoke_access(snapshot_id, snap_sub),
        )

        staging = await self._ensure_staging(request, profile, txn)
        blob = f"{target_name}.vhd"
        blob_record = txn.register_artifact(
            TransferArtifact(
                ArtifactKind.STAGING_BLOB,
                staging.blob_url(blob),
                staging.subscription,
                disk.name,
                metadata={
                    "account": staging.account,
                    "container": staging.container,
                    "blob": blob,
                    "resource_group": staging.resource_group,
                },
            ),
            self._delete_blob(staging, blob),
        )
        await self.transfer.copy(url, staging, blob, disk.name)
        return staging.blob_url(blob), staging.account_id, [blob_record, grant_record]

    async def _ensure_staging(
        self, request: MigrationRequest, profile: VmProfile, txn: MigrationTransaction
    ) -> StagingStorage:
        if self._staging is not None:
            return self._staging
        account = "vmcopy" + txn.operation_id.replace("-", "").lower()[:18]
        staging = await self.transfer.create_staging(
            request.destination_subscription,
            request.destination_resource_group,
            account,
            profile.location,
            self.staging_storage_sku,
            self.sas_duration_seconds,
        )
        txn.register_artifact(
            TransferArtifact(
                ArtifactKind.STORAGE_ACCOUNT, staging.account_id, staging.subscription
            ),
            self._delete_resource(staging.account_id, staging.subscription),
        )
        self._staging = staging
        return staging

    async def _remove_existing_disk(self, request: MigrationRequest, disk_name: str) -> None:
        existing = await self.az.exists(
            CommandBuilder.disk_show(request.destination_resource_group, disk_name),
            request.destination_subscription,
        )
        if not existing:
            return
        logger.warning(
            f"Destination disk {disk_name} already exists, deleting it before recreation",
            stage="disks",
            disk=disk_name,
        )
        await self.az.run(
            CommandBuilder.disk_delete(request.destination_resource_group, disk_name),
            request.destination_subscription,
        )

    @staticmethod
    def _delete_snapshot(snapshot_id: str, subscription: str) -> CleanupFunc:
        async def cleanup(az: AzureCLI) -> None:
            await az.run(CommandBuilder.snapshot_delete(snapshot_id), subscription)

        return cleanup

    @staticmethod
    def _revoke_access(snapshot_id: str, subscription: str) -> CleanupFunc:
        async def cleanup(az: AzureCLI) -> None:
            await az.run(CommandBuilder.snapshot_revoke_access(snapshot_id), subscription)

        return cleanup

    @staticmethod
    def _delete_blob(staging: StagingStorage, blob: str) -> CleanupFunc:
        async def cleanup(az: AzureCLI) -> None:
            await az.run(
                CommandBuilder.blob_delete(
                    staging.account, staging.container, blob, staging.account_key
                ),
                staging.subscription,
            )

        return cleanup

    @staticmethod
    def _delete_resource(resource_id: str, subscription: str) -> CleanupFunc:
        async def cleanup(az: AzureCLI) -> None:
            await az.run(CommandBuilder.delete_by_id(resource_id), subscription)

        return cleanup
