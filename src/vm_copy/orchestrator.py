"""
VM copy orchestration.

Runs the stages in order (inspect, resolve subnet, create NIC, accept terms,
migrate disks, assemble VM, verify) inside a ``MigrationTransaction``. Any
stage failure halts the run; transient artifacts are always discarded.
"""

import time
import uuid
from typing import List, Optional

from .assembler import VMAssembler
from .azure_cli import AzureCLI
from .config import AppConfig
from .disks import DiskMigrator
from .inspector import SourceInspector
from .licensing import LicenseAcceptor
from .logging import logger
from .models import (
    MigrationPlan,
    MigrationRequest,
    MigrationResult,
    VmProfile,
)
from .network import NetworkProvisioner
from .retry import RetryPolicy
from .transaction import MigrationTransaction, ResourceType
from .transfer import BlobTransfer
from .verifier import PostCreateVerifier


class MigrationOrchestrator:
    """Wires the stages together for one configuration."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        az: Optional[AzureCLI] = None,
        transfer: Optional[BlobTransfer] = None,
    ):
        self.config = config or AppConfig()
        self.az = az or AzureCLI(
            az_path=self.config.az_path,
            timeout=self.config.command_timeout,
            retry_policy=RetryPolicy(
                max_attempts=self.config.retry_attempts,
                min_wait=self.config.retry_min_wait,
                max_wait=self.config.retry_max_wait,
            ),
        )
        self.inspector = SourceInspector(self.az)
        self.network = NetworkProvisioner(self.az)
        self.licenses = LicenseAcceptor(self.az)
        self.transfer = transfer or BlobTransfer(
            self.az,
            azcopy_path=self.config.azcopy_path,
            azcopy_concurrency=self.config.azcopy_concurrency,
            poll_interval=self.config.poll_interval,
            copy_timeout=self.config.copy_wait_timeout,
            chunk_size=self.config.chunk_size_mb * 1024 * 1024,
            chunk_retries=self.config.chunk_retries,
            staging_dir=self.config.staging_dir,
        )
        self.disks = DiskMigrator(
            self.az,
            self.transfer,
            sas_duration_seconds=self.config.sas_duration_seconds,
            staging_storage_sku=self.config.staging_storage_sku,
        )
        self.verifier = PostCreateVerifier(
            self.az,
            poll_interval=self.config.poll_interval,
            max_wait=self.config.vm_wait_timeout,
        )
        self.assembler = VMAssembler(self.az, self.verifier)

    async def is_cross_tenant(self, request: MigrationRequest, profile: VmProfile) -> bool:
        """Explicit override first, else compare the tenants owning both subscriptions."""
        if request.cross_tenant is not None:
            return request.cross_tenant
        if request.source_subscription.lower() == request.destination_subscription.lower():
            return False
        destination_tenant = await self.inspector.tenant_of(request.destination_subscription)
        if not profile.tenant_id or not destination_tenant:
            logger.warning(
                "Could not determine both tenant ids, assuming same tenant",
                stage="inspect",
            )
            return False
        return profile.tenant_id.lower() != destination_tenant.lower()

    async def plan(self, request: MigrationRequest) -> MigrationPlan:
        """Inspect and resolve everything a copy needs without creating anything."""
        profile, disks = await self.inspector.inspect(
            request.source_subscription, request.source_resource_group, request.vm_name
        )
        subnet_id = await self.network.resolve_subnet(request)
        cross_tenant = await self.is_cross_tenant(request, profile)

        warnings: List[str] = []
        if request.destination_size and request.destination_size != profile.vm_size:
            warnings.append(
                f"VM size changes from {profile.vm_size} to {request.destination_size}"
            )
        if request.zone and profile.zones and request.zone not in profile.zones:
            warnings.append(
                f"Zone changes from {','.join(profile.zones)} to {request.zone}"
            )

        return MigrationPlan(
            request=request,
            profile=profile,
            disks=disks,
            subnet_id=subnet_id,
            cross_tenant=cross_tenant,
            accept_terms=LicenseAcceptor.requires_acceptance(profile),
            warnings=warnings,
        )

    async def migrate(
        self,
        request: MigrationRequest,
        stop_after_create: Optional[bool] = None,
        enable_diagnostics: Optional[bool] = None,
    ) -> MigrationResult:
        """
        Copy the VM described by ``request``.

        Raises:
            VmCopyError: The first stage failure, after transient artifacts
                were discarded (and created resources rolled back, if enabled).
        """
        operation_id = str(uuid.uuid4())
        stop = self.config.stop_after_create if stop_after_create is None else stop_after_create
        diagnostics = (
            self.config.enable_diagnostics if enable_diagnostics is None else enable_diagnostics
        )
        with logger.operation(operation_id):
            return await self._migrate(request, operation_id, stop, diagnostics)

    async def _migrate(
        self, request: MigrationRequest, operation_id: str, stop: bool, diagnostics: bool
    ) -> MigrationResult:
        started = time.monotonic()
        logger.info(
            f"Starting copy {operation_id}: {request.vm_name} -> {request.target_vm_name}",
            operation_id=operation_id,
            source_subscription=request.source_subscription,
            destination_subscription=request.destination_subscription,
        )

        plan = await self.plan(request)
        profile = plan.profile

        txn = MigrationTransaction(
            operation_id,
            self.az,
            log_dir=self.config.transaction_log_dir,
            rollback_on_failure=self.config.rollback_on_failure,
        )
        async with txn:
            nic = await self.network.provision(
                request, profile.location, profile.primary_nic_id, plan.subnet_id
            )
            txn.register_resource(
                ResourceType.NETWORK_INTERFACE, nic.nic_id, request.destination_subscription
            )

            await self.licenses.accept(profile, request.destination_subscription)

            migrated = await self.disks.migrate_all(
                request, profile, plan.disks, txn, plan.cross_tenant
            )

            vm = await self.assembler.create(request, profile, migrated, nic, txn)

            outcome = await self.verifier.finalize(
                request.destination_subscription,
                request.destination_resource_group,
                request.target_vm_name,
                stop=stop,
                enable_diagnostics=diagnostics,
            )
            await txn.commit()

        warnings = plan.warnings + outcome["warnings"]
        orphans = [f"{a.kind.value}:{a.resource_id}" for a in txn.orphans]
        for orphan in orphans:
            warnings.append(f"Orphaned artifact needs manual cleanup: {orphan}")

        duration = time.monotonic() - started
        logger.info(
            f"Copy {operation_id} completed in {duration:.1f}s",
            operation_id=operation_id,
            vm_id=vm.get("id"),
            power_state=outcome["power_state"],
        )
        return MigrationResult(
            operation_id=operation_id,
            vm_id=vm.get("id") or "",
            vm_name=request.target_vm_name,
            power_state=outcome["power_state"],
            created_resources=[r.resource_id for r in txn.resources],
            duration=duration,
            cross_tenant=plan.cross_tenant,
            warnings=warnings,
            orphaned_artifacts=orphans,
        )
