"""
Custom exceptions for VM copy operations.

This module defines all custom exceptions used throughout the VM copy system.
Every error carries a small ``error_code`` that the CLI uses as its exit code.
"""

from typing import Optional


class VmCopyError(Exception):
    """Base exception for VM copy operations."""

    def __init__(self, message: str, error_code: int = 1) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ConfigurationError(VmCopyError):
    """Configuration-related errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code=2)


class ValidationError(VmCopyError):
    """Input validation errors."""

    def __init__(self, message: str, validation_type: str = "general") -> None:
        super().__init__(
            f"Validation error ({validation_type}): {message}", error_code=3
        )
        self.validation_type = validation_type


class AzureCommandError(VmCopyError):
    """An ``az`` command failed and the failure was not classified further."""

    def __init__(
        self,
        message: str,
        command: str = "",
        stderr: str = "",
        exit_code: Optional[int] = None,
        error_code: int = 4,
    ) -> None:
        super().__init__(message, error_code=error_code)
        self.command = command
        self.stderr = stderr
        self.exit_code = exit_code


class TransientCommandError(AzureCommandError):
    """Retryable command failure (throttling, network blips, timeouts)."""

    def __init__(
        self,
        message: str,
        command: str = "",
        stderr: str = "",
        exit_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, command, stderr, exit_code, error_code=5)


class NotFoundError(VmCopyError):
    """A source resource does not exist."""

    def __init__(self, resource: str, subscription: str = "") -> None:
        where = f" in subscription '{subscription}'" if subscription else ""
        super().__init__(f"Resource '{resource}' not found{where}", error_code=6)
        self.resource = resource
        self.subscription = subscription


class AccessDeniedError(VmCopyError):
    """Authentication or authorization failure."""

    def __init__(self, message: str, subscription: str = "") -> None:
        where = f" for subscription '{subscription}'" if subscription else ""
        super().__init__(f"Access denied{where}: {message}", error_code=7)
        self.subscription = subscription


class SubnetNotFoundError(VmCopyError):
    """The destination subnet could not be resolved."""

    def __init__(self, vnet: str, subnet: str, resource_group: str) -> None:
        super().__init__(
            f"Subnet '{subnet}' not found in vnet '{vnet}' "
            f"(resource group '{resource_group}'). Check RG/VNET/Subnet names.",
            error_code=8,
        )
        self.vnet = vnet
        self.subnet = subnet
        self.resource_group = resource_group


class TermsNotAcceptedError(VmCopyError):
    """Marketplace terms could not be accepted in the destination."""

    def __init__(self, publisher: str, product: str, plan: str) -> None:
        super().__init__(
            f"Marketplace terms for {publisher}:{product}:{plan} were not accepted",
            error_code=9,
        )
        self.publisher = publisher
        self.product = product
        self.plan = plan


class ProvisioningFailedError(VmCopyError):
    """The provider reported an operation outcome other than Succeeded."""

    def __init__(self, resource: str, operation: str, state: Optional[str]) -> None:
        super().__init__(
            f"{operation} of '{resource}' finished with provisioning state "
            f"'{state or 'unknown'}'",
            error_code=10,
        )
        self.resource = resource
        self.operation = operation
        self.state = state


class TransferFailedError(VmCopyError):
    """Every cross-tenant copy tier failed."""

    def __init__(self, disk_name: str, tier: str, message: str) -> None:
        super().__init__(
            f"Transfer of disk '{disk_name}' failed (last tier: {tier}): {message}",
            error_code=11,
        )
        self.disk_name = disk_name
        self.tier = tier


class CreationTimeoutError(VmCopyError):
    """VM existence could not be confirmed within the wait budget."""

    def __init__(self, vm_name: str, timeout: float) -> None:
        super().__init__(
            f"VM '{vm_name}' was not confirmed within {timeout:.0f}s; "
            "it may still be materializing, inspect the destination manually",
            error_code=12,
        )
        self.vm_name = vm_name
        self.timeout = timeout
