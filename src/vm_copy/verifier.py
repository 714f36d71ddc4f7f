"""
Post-create verification of the destination VM.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

from .azure_cli import AzureCLI
from .exceptions import CreationTimeoutError, NotFoundError, ProvisioningFailedError
from .logging import logger
from .security import CommandBuilder


class PostCreateVerifier:
    """Waits for the VM to exist, then applies the post-create settings."""

    def __init__(
        self,
        az: AzureCLI,
        poll_interval: float = 15.0,
        max_wait: float = 1800,
    ):
        self.az = az
        self.poll_interval = poll_interval
        self.max_wait = max_wait

    async def wait_for_existence(
        self, subscription: str, resource_group: str, vm_name: str
    ) -> Dict[str, Any]:
        """
        Poll ``az vm show`` until the VM reports ``Succeeded``.

        Raises:
            ProvisioningFailedError: The VM reached provisioning state ``Failed``.
            CreationTimeoutError: ``max_wait`` elapsed; the outcome is unknown.
        """
        deadline = time.monotonic() + self.max_wait
        last_state: Optional[str] = None

        while True:
            try:
                vm = await self.az.run(
                    CommandBuilder.vm_show(resource_group, vm_name), subscription
                )
            except NotFoundError:
                vm = None

            state = (vm or {}).get("provisioningState")
            if state != last_state:
                logger.info(
                    f"VM {vm_name} provisioning state: {state or 'absent'}",
                    stage="verify",
                    vm_name=vm_name,
                    provisioning_state=state,
                )
                last_state = state

            if state == "Succeeded":
                return vm  # type: ignore[return-value]
            if state == "Failed":
                raise ProvisioningFailedError(vm_name, "VM creation", state)

            if time.monotonic() + self.poll_interval > deadline:
                raise CreationTimeoutError(vm_name, self.max_wait)
            await asyncio.sleep(self.poll_interval)

    async def finalize(
        self,
        subscription: str,
        resource_group: str,
        vm_name: str,
        stop: bool = True,
        enable_diagnostics: bool = True,
    ) -> Dict[str, Any]:
        """
        Deallocate the VM and enable boot diagnostics, as requested.

        Neither step is fatal. Returns ``{"power_state": ..., "warnings": [...]}``.
        """
        warnings: List[str] = []

        if stop:
            logger.info(f"Deallocating VM {vm_name}", stage="verify", vm_name=vm_name)
            try:
                await self.az.run(
                    CommandBuilder.vm_deallocate(resource_group, vm_name), subscription
                )
            except Exception as e:
                warnings.append(f"Could not deallocate {vm_name}: {e}")
                logger.warning(warnings[-1], stage="verify", vm_name=vm_name)

        if enable_diagnostics:
            try:
                await self.az.run(
                    CommandBuilder.vm_boot_diagnostics(resource_group, vm_name), subscription
                )
            except Exception as e:
                warnings.append(f"Could not enable boot diagnostics on {vm_name}: {e}")
                logger.warning(warnings[-1], stage="verify", vm_name=vm_name)

        power_state = await self.power_state(subscription, resource_group, vm_name)
        return {"power_state": power_state, "warnings": warnings}

    async def power_state(
        self, subscription: str, resource_group: str, vm_name: str
    ) -> Optional[str]:
        """Read ``PowerState/...`` from the instance view, or None when unavailable."""
        try:
            view = await self.az.run(
                CommandBuilder.vm_instance_view(resource_group, vm_name), subscription
            )
        except Exception as e:
            logger.warning(f"Could not read instance view of {vm_name}: {e}", stage="verify")
            return None

        statuses = ((view or {}).get("instanceView") or {}).get("statuses") or []
        for status in statuses:
            code = status.get("code") or ""
            if code.startswith("PowerState/"):
                return code.split("/", 1)[1]
        return None
