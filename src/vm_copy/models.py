"""
Data models for VM copy operations.

This module defines the data structures used throughout the VM copy system.
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime
from enum import Enum

from .exceptions import ValidationError


class OSType(Enum):
    """Guest operating system families."""

    LINUX = "Linux"
    WINDOWS = "Windows"

    @classmethod
    def parse(cls, value: Optional[str]) -> "OSType":
        for member in cls:
            if value and member.value.lower() == value.lower():
                return member
        raise ValidationError(f"Unsupported OS type: {value!r}", "os_type")


class DiskRole(Enum):
    """Logical role of a disk on the VM."""

    OS = "OS"
    DATA = "Data"


class DiskState(Enum):
    """Per-disk migration states."""

    INSPECTED = "inspected"
    SNAPSHOT_PENDING = "snapshot_pending"
    SNAPSHOT_READY = "snapshot_ready"
    TRANSFER_PENDING = "transfer_pending"
    TRANSFER_READY = "transfer_ready"
    DISK_PENDING = "disk_pending"
    DISK_READY = "disk_ready"
    SNAPSHOT_DELETED = "snapshot_deleted"


class ArtifactKind(Enum):
    """Kinds of transient artifacts created while moving a disk."""

    SNAPSHOT = "snapshot"
    SAS_GRANT = "sas_grant"
    STAGING_BLOB = "staging_blob"
    STORAGE_ACCOUNT = "storage_account"


class CopyTier(Enum):
    """Cross-tenant copy strategies, in order of preference."""

    SERVER_SIDE = "server_side"
    AZCOPY = "azcopy"
    BUFFERED = "buffered"


@dataclass(frozen=True)
class MigrationRequest:
    """Immutable description of one VM copy."""

    source_subscription: str
    source_resource_group: str
    destination_subscription: str
    destination_resource_group: str
    vm_name: str
    destination_vnet: str
    destination_subnet: str
    zone: Optional[str] = None
    destination_network_resource_group: Optional[str] = None
    destination_vm_name: Optional[str] = None
    destination_size: Optional[str] = None
    cross_tenant: Optional[bool] = None  # None: decide from the tenant ids

    REQUIRED = (
        "source_subscription",
        "source_resource_group",
        "destination_subscription",
        "destination_resource_group",
        "vm_name",
        "destination_vnet",
        "destination_subnet",
    )

    def __post_init__(self) -> None:
        missing = [f for f in self.REQUIRED if not (getattr(self, f) or "").strip()]
        if missing:
            raise ValidationError(
                f"Missing required values: {', '.join(missing)}", "request"
            )
        if self.same_resource_group and self.target_vm_name == self.vm_name:
            raise ValidationError(
                "Destination VM would replace the source VM; "
                "choose another resource group or VM name",
                "request",
            )

    @property
    def target_vm_name(self) -> str:
        return self.destination_vm_name or self.vm_name

    @property
    def network_resource_group(self) -> str:
        return self.destination_network_resource_group or self.destination_resource_group

    @property
    def same_resource_group(self) -> bool:
        return (
            self.source_subscription.lower() == self.destination_subscription.lower()
            and self.source_resource_group.lower()
            == self.destination_resource_group.lower()
        )


@dataclass(frozen=True)
class ImageReference:
    """Marketplace image the source VM was created from."""

    publisher: str = ""
    offer: str = ""
    sku: str = ""
    version: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.publisher and self.offer and self.sku)


@dataclass(frozen=True)
class PlanReference:
    """Marketplace purchase plan attached to the source VM."""

    name: str = ""
    product: str = ""
    publisher: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.name and self.product and self.publisher)


@dataclass(frozen=True)
class VmProfile:
    """Source VM state captured at inspection time."""

    vm_id: str
    vm_name: str
    location: str
    os_type: OSType
    vm_size: str
    image: ImageReference
    plan: PlanReference
    primary_nic_id: str
    hyper_v_generation: Optional[str] = None
    license_type: Optional[str] = None
    zones: Tuple[str, ...] = ()
    tenant_id: Optional[str] = None


@dataclass(frozen=True)
class DiskDescriptor:
    """One disk of the source VM."""

    role: DiskRole
    name: str
    source_id: str
    caching: str
    sku: str
    size_gb: int
    lun: Optional[int] = None

    def __post_init__(self) -> None:
        if self.role == DiskRole.DATA and self.lun is None:
            raise ValidationError(f"Data disk '{self.name}' has no LUN", "disk")
        if self.role == DiskRole.OS and self.lun is not None:
            raise ValidationError(f"OS disk '{self.name}' cannot have a LUN", "disk")

    @property
    def is_os_disk(self) -> bool:
        return self.role == DiskRole.OS


@dataclass
class TransferArtifact:
    """A transient resource created while migrating one disk."""

    kind: ArtifactKind
    resource_id: str
    subscription: str
    disk_name: Optional[str] = None
    url: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MigratedDisk:
    """A destination managed disk ready to be attached."""

    descriptor: DiskDescriptor
    disk_id: str
    disk_name: str
    state: DiskState = DiskState.DISK_READY


@dataclass
class NetworkInterface:
    """The NIC created in the destination."""

    nic_id: str
    nic_name: str
    subnet_id: str
    accelerated_networking: bool = False


@dataclass
class MigrationPlan:
    """What a copy would do, as reported by a dry run."""

    request: MigrationRequest
    profile: VmProfile
    disks: List[DiskDescriptor]
    subnet_id: str
    cross_tenant: bool
    accept_terms: bool
    warnings: List[str] = field(default_factory=list)


@dataclass
class MigrationResult:
    """Result of a successful copy."""

    operation_id: str
    vm_id: str
    vm_name: str
    power_state: Optional[str]
    created_resources: List[str]
    duration: float  # seconds
    cross_tenant: bool = False
    warnings: List[str] = field(default_factory=list)
    orphaned_artifacts: List[str] = field(default_factory=list)
