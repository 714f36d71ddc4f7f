"""
Transaction management for VM copy operations.

The transaction tracks every resource a copy creates. Transient artifacts
(snapshots, SAS grants, staging blobs and accounts) are always discarded
when the transaction ends; created resources (NIC, disks, VM) are kept for
audit and only deleted on failure when rollback is enabled.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any, Callable, Awaitable

from .azure_cli import AzureCLI
from .logging import logger
from .models import ArtifactKind, TransferArtifact
from .security import CommandBuilder


CleanupFunc = Callable[[AzureCLI], Awaitable[None]]


class ResourceType(Enum):
    """Types of durable resources created in the destination."""

    NETWORK_INTERFACE = "network_interface"
    MANAGED_DISK = "managed_disk"
    VIRTUAL_MACHINE = "virtual_machine"


@dataclass
class TransactionResource:
    """A resource created during a transaction."""

    resource_type: ResourceType
    resource_id: str
    subscription: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    cleanup_func: Optional[CleanupFunc] = field(default=None, repr=False, compare=False)


@dataclass
class ArtifactRecord:
    """A transient artifact and what became of it."""

    kind: ArtifactKind
    resource_id: str
    subscription: str
    disk_name: Optional[str] = None
    status: str = "active"  # active, released, orphaned
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    cleanup_func: Optional[CleanupFunc] = field(default=None, repr=False, compare=False)


@dataclass
class TransactionLog:
    """Log of a transaction for auditing and later cleanup."""

    transaction_id: str
    operation_type: str
    started_at: str
    completed_at: Optional[str] = None
    status: str = "pending"  # pending, committed, failed, rolled_back
    resources: List[TransactionResource] = field(default_factory=list)
    artifacts: List[ArtifactRecord] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        result = asdict(self)
        for entry in result.get("resources", []) + result.get("artifacts", []):
            entry.pop("cleanup_func", None)
            for key in ("resource_type", "kind"):
                if isinstance(entry.get(key), Enum):
                    entry[key] = entry[key].value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionLog":
        resources = [
            TransactionResource(
                resource_type=ResourceType(r["resource_type"]),
                resource_id=r["resource_id"],
                subscription=r["subscription"],
                metadata=r.get("metadata", {}),
                created_at=r.get("created_at", ""),
            )
            for r in data.get("resources", [])
        ]
        artifacts = [
            ArtifactRecord(
                kind=ArtifactKind(a["kind"]),
                resource_id=a["resource_id"],
                subscription=a["subscription"],
                disk_name=a.get("disk_name"),
                status=a.get("status", "active"),
                error=a.get("error"),
                metadata=a.get("metadata", {}),
                created_at=a.get("created_at", ""),
            )
            for a in data.get("artifacts", [])
        ]
        return cls(
            transaction_id=data["transaction_id"],
            operation_type=data.get("operation_type", "copy"),
            started_at=data.get("started_at", ""),
            completed_at=data.get("completed_at"),
            status=data.get("status", "pending"),
            resources=resources,
            artifacts=artifacts,
            error=data.get("error"),
        )

    def save_to_file(self, path: str) -> None:
        """Save transaction log to file."""
        try:
            with open(path, "w") as f:
                json.dump(self.to_dict(), f, indent=2)
            logger.debug(f"Transaction log saved to {path}")
        except OSError as e:
            logger.warning(f"Failed to save transaction log: {e}")

    @classmethod
    def load_from_file(cls, path: str) -> "TransactionLog":
        with open(path) as f:
            return cls.from_dict(json.load(f))


class MigrationTransaction:
    """
    Tracks a VM copy and disposes of its transient artifacts.

    Usage:
        async with MigrationTransaction(operation_id, az) as txn:
            txn.register_resource(ResourceType.NETWORK_INTERFACE, nic_id, sub)
            record = txn.register_artifact(snapshot_artifact, cleanup_func)
            ...
            await txn.release(record)
            await txn.commit()
    """

    def __init__(
        self,
        operation_id: str,
        az: AzureCLI,
        log_dir: str = "/tmp",
        rollback_on_failure: bool = False,
    ):
        self.operation_id = operation_id
        self.az = az
        self.log_dir = log_dir
        self.rollback_on_failure = rollback_on_failure
        self.resources: List[TransactionResource] = []
        self.artifacts: List[ArtifactRecord] = []
        self.committed = False
        self.rolled_back = False

        self.log = TransactionLog(
            transaction_id=operation_id,
            operation_type="copy",
            started_at=datetime.now().isoformat(),
        )

        logger.info(
            f"Transaction {operation_id} started",
            transaction_id=operation_id,
        )

    @property
    def log_path(self) -> str:
        return os.path.join(self.log_dir, f"vm-copy-txn-{self.operation_id}.json")

    async def __aenter__(self) -> MigrationTransaction:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Discard transient artifacts; roll back on failure when enabled."""
        if exc_type is not None:
            self.log.status = "failed"
            self.log.error = str(exc_val)
            logger.error(
                f"Transaction {self.operation_id} failed: {exc_val}",
                transaction_id=self.operation_id,
            )
        elif not self.committed:
            logger.warning(
                f"Transaction {self.operation_id} exited without commit or error",
                transaction_id=self.operation_id,
            )

        await self.discard_artifacts()

        if exc_type is not None and self.rollback_on_failure:
            await self.rollback()

        self.log.completed_at = datetime.now().isoformat()
        self.log.save_to_file(self.log_path)

    def register_resource(
        self,
        resource_type: ResourceType,
        resource_id: str,
        subscription: str,
        metadata: Optional[Dict[str, Any]] = None,
        cleanup_func: Optional[CleanupFunc] = None,
    ) -> TransactionResource:
        """Register a durable resource created in the destination."""
        resource = TransactionResource(
            resource_type=resource_type,
            resource_id=resource_id,
            subscription=subscription,
            metadata=metadata or {},
            cleanup_func=cleanup_func,
        )
        self.resources.append(resource)
        self.log.resources.append(resource)

        logger.debug(
            f"Registered resource: {resource_type.value} - {resource_id}",
            transaction_id=self.operation_id,
            resource_type=resource_type.value,
            resource_id=resource_id,
        )
        return resource

    def register_artifact(
        self, artifact: TransferArtifact, cleanup_func: CleanupFunc
    ) -> ArtifactRecord:
        """Register a transient artifact together with how to dispose of it."""
        record = ArtifactRecord(
            kind=artifact.kind,
            resource_id=artifact.resource_id,
            subscription=artifact.subscription,
            disk_name=artifact.disk_name,
            metadata=dict(artifact.metadata),
            cleanup_func=cleanup_func,
        )
        self.artifacts.append(record)
        self.log.artifacts.append(record)

        logger.debug(
            f"Registered artifact: {artifact.kind.value} - {artifact.resource_id}",
            transaction_id=self.operation_id,
            artifact_kind=artifact.kind.value,
            resource_id=artifact.resource_id,
        )
        return record

    async def release(self, record: ArtifactRecord) -> bool:
        """Dispose of one artifact now. Failures are logged, never raised."""
        if record.status != "active":
            return record.status == "released"
        try:
            if record.cleanup_func is not None:
                await record.cleanup_func(self.az)
            record.status = "released"
            logger.debug(
                f"Released artifact {record.kind.value} - {record.resource_id}",
                transaction_id=self.operation_id,
            )
            return True
        except Exception as e:
            record.status = "orphaned"
            record.error = str(e)
            logger.warning(
                f"Orphaned {record.kind.value} {record.resource_id} needs manual cleanup: {e}",
                transaction_id=self.operation_id,
                resource_id=record.resource_id,
            )
            return False

    async def discard_artifacts(self) -> None:
        """Release every still-active artifact, newest first."""
        for record in reversed(self.artifacts):
            await self.release(record)

    @property
    def orphans(self) -> List[ArtifactRecord]:
        return [a for a in self.artifacts if a.status == "orphaned"]

    async def commit(self) -> None:
        """Mark the copy as complete."""
        if self.committed:
            logger.warning(
                f"Transaction {self.operation_id} already committed",
                transaction_id=self.operation_id,
            )
            return

        self.committed = True
        self.log.status = "committed"
        logger.info(
            f"Transaction {self.operation_id} committed",
            transaction_id=self.operation_id,
            resource_count=len(self.resources),
        )

    async def rollback(self) -> None:
        """Delete created resources in reverse order. Failures are warnings."""
        if self.rolled_back:
            logger.warning(
                f"Transaction {self.operation_id} already rolled back",
                transaction_id=self.operation_id,
            )
            return

        logger.info(
            f"Rolling back transaction {self.operation_id}",
            transaction_id=self.operation_id,
            resource_count=len(self.resources),
        )

        for resource in reversed(self.resources):
            try:
                await self._cleanup_resource(resource)
                logger.debug(
                    f"Deleted {resource.resource_type.value} - {resource.resource_id}",
                    transaction_id=self.operation_id,
                )
            except Exception as e:
                logger.warning(
                    f"Failed to delete {resource.resource_id}: {e}",
                    transaction_id=self.operation_id,
                    resource_id=resource.resource_id,
                )

        self.rolled_back = True
        self.log.status = "rolled_back"
        logger.info(
            f"Transaction {self.operation_id} rolled back",
            transaction_id=self.operation_id,
        )

    async def _cleanup_resource(self, resource: TransactionResource) -> None:
        if resource.cleanup_func:
            await resource.cleanup_func(self.az)
            return
        await self.az.run(
            CommandBuilder.delete_by_id(resource.resource_id), resource.subscription
        )
