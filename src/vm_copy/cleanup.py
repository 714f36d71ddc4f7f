"""
Cleanup of leftovers recorded in a transaction log.

A run that was interrupted, or whose artifact disposal failed, leaves
entries in ``vm-copy-txn-<id>.json`` that are still ``active`` or
``orphaned``. ``LogCleaner`` removes them, newest first, and optionally
the created resources as well.
"""

from dataclasses import dataclass, field
from typing import List

from .azure_cli import AzureCLI
from .exceptions import NotFoundError
from .logging import logger
from .models import ArtifactKind
from .security import CommandBuilder
from .transaction import ArtifactRecord, TransactionLog, TransactionResource


@dataclass
class CleanupReport:
    removed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    planned: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


class LogCleaner:
    """Deletes what a transaction log says was left behind."""

    def __init__(self, az: AzureCLI):
        self.az = az

    async def cleanup(
        self, log_path: str, include_created: bool = False, dry_run: bool = False
    ) -> CleanupReport:
        log = TransactionLog.load_from_file(log_path)
        report = CleanupReport()

        pending = [a for a in reversed(log.artifacts) if a.status != "released"]
        for artifact in pending:
            label = f"{artifact.kind.value}:{artifact.resource_id}"
            if dry_run:
                report.planned.append(label)
                continue
            try:
                await self._remove_artifact(artifact)
                artifact.status = "released"
                artifact.error = None
                report.removed.append(label)
            except Exception as e:
                artifact.status = "orphaned"
                artifact.error = str(e)
                report.failed.append(label)
                logger.warning(f"Could not remove {label}: {e}", resource_id=artifact.resource_id)

        if include_created:
            for resource in reversed(log.resources):
                label = f"{resource.resource_type.value}:{resource.resource_id}"
                if dry_run:
                    report.planned.append(label)
                    continue
                try:
                    await self._remove_resource(resource)
                    report.removed.append(label)
                except Exception as e:
                    report.failed.append(label)
                    logger.warning(
                        f"Could not remove {label}: {e}", resource_id=resource.resource_id
                    )
            if not dry_run and not report.failed:
                log.status = "rolled_back"

        if not dry_run:
            log.save_to_file(log_path)
        logger.info(
            f"Cleanup of {log.transaction_id}: {len(report.removed)} removed, "
            f"{len(report.failed)} failed",
            transaction_id=log.transaction_id,
        )
        return report

    async def _remove_artifact(self, artifact: ArtifactRecord) -> None:
        sub = artifact.subscription
        try:
            if artifact.kind == ArtifactKind.SNAPSHOT:
                try:
                    await self.az.run(
                        CommandBuilder.snapshot_revoke_access(artifact.resource_id), sub
                    )
                except Exception as e:
                    logger.debug(f"No access to revoke on {artifact.resource_id}: {e}")
                await self.az.run(CommandBuilder.snapshot_delete(artifact.resource_id), sub)
            elif artifact.kind == ArtifactKind.SAS_GRANT:
                await self.az.run(
                    CommandBuilder.snapshot_revoke_access(artifact.resource_id), sub
                )
            elif artifact.kind == ArtifactKind.STAGING_BLOB:
                meta = artifact.metadata
                keys = await self.az.run(
                    CommandBuilder.storage_account_keys(meta["resource_group"], meta["account"]),
                    sub,
                )
                await self.az.run(
                    CommandBuilder.blob_delete(
                        meta["account"], meta["container"], meta["blob"], keys[0]["value"]
                    ),
                    sub,
                )
            else:
                await self.az.run(CommandBuilder.delete_by_id(artifact.resource_id), sub)
        except NotFoundError:
            logger.debug(f"{artifact.resource_id} already gone")

    async def _remove_resource(self, resource: TransactionResource) -> None:
        try:
            await self.az.run(
                CommandBuilder.delete_by_id(resource.resource_id), resource.subscription
            )
        except NotFoundError:
            logger.debug(f"{resource.resource_id} already gone")
