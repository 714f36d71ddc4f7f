"""
Main client class for VM copy operations.

This module implements the library interface for copying an Azure VM into
another subscription, resource group or tenant.
"""

from typing import Optional

from .azure_cli import AzureCLI
from .config import AppConfig
from .models import MigrationPlan, MigrationRequest, MigrationResult
from .orchestrator import MigrationOrchestrator


class VmCopyClient:
    """
    Main client for VM copy operations.

    Args:
        config (Optional[AppConfig]): Configuration; defaults apply when omitted
        az (Optional[AzureCLI]): Command runner to use instead of the configured one

    Usage:
        async with VmCopyClient(config) as client:
            result = await client.copy_vm(
                source_subscription=..., source_resource_group=...,
                destination_subscription=..., destination_resource_group=...,
                vm_name="web-01", destination_vnet="vnet", destination_subnet="default",
            )
    """

    def __init__(
        self, config: Optional[AppConfig] = None, az: Optional[AzureCLI] = None
    ) -> None:
        self.config = config or AppConfig()
        self.orchestrator = MigrationOrchestrator(self.config, az=az)

    async def copy_vm(
        self,
        source_subscription: str,
        source_resource_group: str,
        destination_subscription: str,
        destination_resource_group: str,
        vm_name: str,
        destination_vnet: str,
        destination_subnet: str,
        *,
        zone: Optional[str] = None,
        destination_network_resource_group: Optional[str] = None,
        destination_vm_name: Optional[str] = None,
        destination_size: Optional[str] = None,
        cross_tenant: Optional[bool] = None,
        stop_after_create: Optional[bool] = None,
        enable_diagnostics: Optional[bool] = None,
    ) -> MigrationResult:
        """
        Copy a VM into the destination subscription and resource group.

        Args:
            zone: Availability zone; defaults to the source VM's zone
            destination_network_resource_group: Resource group of the vnet
                (default: destination_resource_group)
            destination_vm_name: Name of the copy (default: vm_name)
            destination_size: VM size of the copy (default: source size)
            cross_tenant: Force the cross-tenant path on or off; detected
                from the subscriptions' tenants when None
            stop_after_create: Deallocate the copy once created
            enable_diagnostics: Enable boot diagnostics on the copy

        Returns:
            MigrationResult: Result of the copy

        Raises:
            VmCopyError: Any stage failure.
        """
        request = MigrationRequest(
            source_subscription=source_subscription,
            source_resource_group=source_resource_group,
            destination_subscription=destination_subscription,
            destination_resource_group=destination_resource_group,
            vm_name=vm_name,
            destination_vnet=destination_vnet,
            destination_subnet=destination_subnet,
            zone=zone,
            destination_network_resource_group=destination_network_resource_group,
            destination_vm_name=destination_vm_name,
            destination_size=destination_size,
            cross_tenant=cross_tenant,
        )
        return await self.orchestrator.migrate(
            request,
            stop_after_create=stop_after_create,
            enable_diagnostics=enable_diagnostics,
        )

    async def plan_copy(self, request: MigrationRequest) -> MigrationPlan:
        """Inspect the source and resolve the destination without creating anything."""
        return await self.orchestrator.plan(request)

    async def __aenter__(self) -> "VmCopyClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        pass
