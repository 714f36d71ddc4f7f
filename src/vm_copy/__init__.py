"""VM Copy - A utility for copying Azure VMs across subscriptions and tenants."""

__version__ = "0.1.0"
__description__ = "Azure VM copy utility"

# Import main classes for easy access
from .client import VmCopyClient
from .models import (
    MigrationRequest,
    MigrationPlan,
    MigrationResult,
    VmProfile,
    DiskDescriptor,
    OSType,
    DiskRole,
)
from .exceptions import (
    VmCopyError,
    ConfigurationError,
    ValidationError,
    AzureCommandError,
    TransientCommandError,
    NotFoundError,
    AccessDeniedError,
    SubnetNotFoundError,
    TermsNotAcceptedError,
    ProvisioningFailedError,
    TransferFailedError,
    CreationTimeoutError,
)
from .retry import RetryPolicy

__all__ = [
    "__version__",
    "__description__",
    "VmCopyClient",
    "MigrationRequest",
    "MigrationPlan",
    "MigrationResult",
    "VmProfile",
    "DiskDescriptor",
    "OSType",
    "DiskRole",
    "VmCopyError",
    "ConfigurationError",
    "ValidationError",
    "AzureCommandError",
    "TransientCommandError",
    "NotFoundError",
    "AccessDeniedError",
    "SubnetNotFoundError",
    "TermsNotAcceptedError",
    "ProvisioningFailedError",
    "TransferFailedError",
    "CreationTimeoutError",
    "RetryPolicy",
]
