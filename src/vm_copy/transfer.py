"""
Cross-tenant disk transfer.

A snapshot in the source tenant is exposed through a time-limited read URL
and copied into a page blob owned by the destination subscription. Three
copy tiers are tried in order, each only after the previous one failed:

1. server-side copy started with ``az storage blob copy start`` and polled;
2. ``azcopy copy`` with maximum concurrency;
3. buffered chunked download-then-upload through a local staging directory.
"""

import asyncio
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

import httpx

from .azure_cli import AzureCLI
from .exceptions import AzureCommandError, TransferFailedError, ValidationError, VmCopyError
from .logging import logger
from .models import CopyTier
from .retry import RetryPolicy
from .security import CommandBuilder

STORAGE_API_VERSION = "2021-08-06"
PAGE_SIZE = 512
MAX_PUT_PAGE_BYTES = 4 * 1024 * 1024


@dataclass
class StagingStorage:
    """Storage account and container used to stage blobs for one run."""

    account: str
    account_id: str
    resource_group: str
    subscription: str
    container: str
    account_key: str
    container_sas: str

    def blob_url(self, blob: str) -> str:
        return f"https://{self.account}.blob.core.windows.net/{self.container}/{blob}"

    def sas_url(self, blob: str) -> str:
        return f"{self.blob_url(blob)}?{self.container_sas}"


class IncompleteChunkError(Exception):
    """A ranged download returned fewer bytes than requested."""


def _chunk_retryable(error: BaseException) -> bool:
    if isinstance(error, (httpx.TransportError, IncompleteChunkError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    return False


def sas_expiry(seconds: int) -> str:
    expiry = datetime.now(timezone.utc) + timedelta(seconds=seconds)
    return expiry.strftime("%Y-%m-%dT%H:%MZ")


class BlobTransfer:
    """Copies a signed source URL into the staging container."""

    def __init__(
        self,
        az: AzureCLI,
        azcopy_path: str = "azcopy",
        azcopy_concurrency: int = 256,
        poll_interval: float = 15.0,
        copy_timeout: int = 6 * 3600,
        chunk_size: int = MAX_PUT_PAGE_BYTES,
        chunk_retries: int = 5,
        chunk_retry_step: float = 2.0,
        staging_dir: Optional[str] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        tiers: Sequence[CopyTier] = (CopyTier.SERVER_SIDE, CopyTier.AZCOPY, CopyTier.BUFFERED),
    ):
        if chunk_size <= 0 or chunk_size % PAGE_SIZE or chunk_size > MAX_PUT_PAGE_BYTES:
            raise ValidationError(
                f"chunk size must be a multiple of {PAGE_SIZE} up to {MAX_PUT_PAGE_BYTES}",
                "transfer",
            )
        self.az = az
        self.azcopy_path = azcopy_path
        self.azcopy_concurrency = azcopy_concurrency
        self.poll_interval = poll_interval
        self.copy_timeout = copy_timeout
        self.chunk_size = chunk_size
        self.chunk_policy = RetryPolicy.linear(
            chunk_retries, chunk_retry_step, predicate=_chunk_retryable
        )
        self.staging_dir = staging_dir
        self.http_transport = http_transport
        self.tiers = list(tiers)

    async def create_staging(
        self,
        subscription: str,
        resource_group: str,
        account: str,
        location: str,
        sku: str,
        sas_seconds: int,
        container: str = "vhds",
    ) -> StagingStorage:
        """Create the per-run staging account, container and container SAS."""
        logger.info(
            f"Creating staging storage account {account}",
            stage="transfer",
            storage_account=account,
        )
        created = await self.az.run(
            CommandBuilder.storage_account_create(resource_group, account, location, sku),
            subscription,
        )
        keys = await self.az.run(
            CommandBuilder.storage_account_keys(resource_group, account), subscription
        )
        if not keys:
            raise AzureCommandError(f"No access keys returned for storage account {account}")
        key = keys[0]["value"]
        await self.az.run(CommandBuilder.container_create(account, container, key), subscription)
        sas = await self.az.run(
            CommandBuilder.container_sas(account, container, key, sas_expiry(sas_seconds)),
            subscription,
        )
        return StagingStorage(
            account=account,
            account_id=(created or {}).get("id", ""),
            resource_group=resource_group,
            subscription=subscription,
            container=container,
            account_key=key,
            container_sas=str(sas).strip('"'),
        )

    async def copy(
        self, source_url: str, staging: StagingStorage, blob: str, disk_name: str
    ) -> CopyTier:
        """
        Copy ``source_url`` into ``staging/blob``.

        Returns:
            The tier that succeeded.

        Raises:
            TransferFailedError: Every tier failed; carries the last tier's error.
        """
        last_tier: Optional[CopyTier] = None
        last_error: Optional[BaseException] = None
        handlers = {
            CopyTier.SERVER_SIDE: self._server_side_copy,
            CopyTier.AZCOPY: self._azcopy_copy,
            CopyTier.BUFFERED: self._buffered_copy,
        }

        for tier in self.tiers:
            logger.info(
                f"Copying disk {disk_name} with tier {tier.value}",
                stage="transfer",
                disk=disk_name,
                tier=tier.value,
            )
            try:
                await handlers[tier](source_url, staging, blob)
                logger.info(
                    f"Disk {disk_name} copied with tier {tier.value}",
                    stage="transfer",
                    disk=disk_name,
                    tier=tier.value,
                )
                return tier
            except Exception as e:
                last_tier, last_error = tier, e
                logger.warning(
                    f"Copy tier {tier.value} failed for disk {disk_name}: {e}",
                    stage="transfer",
                    disk=disk_name,
                    tier=tier.value,
                )

        raise TransferFailedError(
            disk_name,
            last_tier.value if last_tier else "none",
            str(last_error) if last_error else "no copy tier configured",
        )

    async def _server_side_copy(
        self, source_url: str, staging: StagingStorage, blob: str
    ) -> None:
        await self.az.run(
            CommandBuilder.blob_copy_start(
                staging.account, staging.container, blob, source_url, staging.account_key
            ),
            staging.subscription,
        )

        deadline = time.monotonic() + self.copy_timeout
        while True:
            props = await self.az.run(
                CommandBuilder.blob_show(
                    staging.account, staging.container, blob, staging.account_key
                ),
                staging.subscription,
            )
            copy = ((props or {}).get("properties") or {}).get("copy") or {}
            status = (copy.get("status") or "").lower()
            if status == "success":
                return
            if status in ("failed", "aborted"):
                raise AzureCommandError(
                    f"Server-side copy {status}: {copy.get('statusDescription') or ''}".strip()
                )
            if time.monotonic() >= deadline:
                await self._cancel_copy(staging, blob, copy.get("id"))
                raise AzureCommandError(
                    f"Server-side copy still '{status or 'unknown'}' after {self.copy_timeout}s"
                )
            logger.debug(
                f"Server-side copy {status}: {copy.get('progress')}",
                stage="transfer",
                progress=copy.get("progress"),
            )
            await asyncio.sleep(self.poll_interval)

    async def _cancel_copy(
        self, staging: StagingStorage, blob: str, copy_id: Optional[str]
    ) -> None:
        # a blob with a pending copy rejects writes from the later tiers
        if not copy_id:
            logger.warning(
                f"Server-side copy into {blob} has no copy id, cannot cancel it",
                stage="transfer",
                blob=blob,
            )
            return
        try:
            await self.az.run(
                CommandBuilder.blob_copy_cancel(
                    staging.account, staging.container, blob, copy_id, staging.account_key
                ),
                staging.subscription,
            )
            logger.info(f"Cancelled server-side copy {copy_id}", stage="transfer", blob=blob)
        except VmCopyError as e:
            logger.warning(
                f"Could not cancel server-side copy {copy_id}: {e}",
                stage="transfer",
                blob=blob,
            )

    async def _azcopy_copy(
        self, source_url: str, staging: StagingStorage, blob: str
    ) -> None:
        argv: List[str] = [
            self.azcopy_path,
            "copy",
            source_url,
            staging.sas_url(blob),
            "--blob-type",
            "PageBlob",
            "--overwrite",
            "true",
        ]
        env = {"AZCOPY_CONCURRENCY_VALUE": str(self.azcopy_concurrency)}
        stdout, stderr, exit_code = await self.az.execute_command(
            argv, timeout=self.copy_timeout, env=env
        )
        if exit_code != 0:
            detail = (stderr.strip() or stdout.strip()).splitlines()
            raise AzureCommandError(
                f"azcopy exited with {exit_code}: {detail[-1] if detail else ''}".strip(),
                command="azcopy copy",
                stderr=stderr,
                exit_code=exit_code,
            )

    async def _buffered_copy(
        self, source_url: str, staging: StagingStorage, blob: str
    ) -> None:
        work_dir = tempfile.mkdtemp(prefix="vm-copy-", dir=self.staging_dir)
        try:
            async with httpx.AsyncClient(
                transport=self.http_transport, timeout=httpx.Timeout(300.0)
            ) as client:
                head = await client.head(source_url)
                head.raise_for_status()
                size = int(head.headers.get("content-length", "0"))
                if size <= 0 or size % PAGE_SIZE:
                    raise ValidationError(
                        f"source size {size} is not a positive multiple of {PAGE_SIZE}",
                        "transfer",
                    )

                dest = staging.sas_url(blob)
                created = await client.put(
                    dest,
                    headers={
                        "x-ms-blob-type": "PageBlob",
                        "x-ms-blob-content-length": str(size),
                        "x-ms-version": STORAGE_API_VERSION,
                    },
                    content=b"",
                )
                created.raise_for_status()

                chunk_path = os.path.join(work_dir, "chunk")
                for offset in range(0, size, self.chunk_size):
                    end = min(offset + self.chunk_size, size) - 1
                    await self.chunk_policy.call(
                        self._copy_chunk, client, source_url, dest, chunk_path, offset, end
                    )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    async def _copy_chunk(
        self,
        client: httpx.AsyncClient,
        source_url: str,
        dest_url: str,
        chunk_path: str,
        start: int,
        end: int,
    ) -> None:
        expected = end - start + 1
        async with client.stream(
            "GET", source_url, headers={"Range": f"bytes={start}-{end}"}
        ) as response:
            response.raise_for_status()
            with open(chunk_path, "wb") as f:
                async for part in response.aiter_bytes():
                    f.write(part)

        with open(chunk_path, "rb") as f:
            data = f.read()
        if len(data) != expected:
            raise IncompleteChunkError(f"expected {expected} bytes at {start}, got {len(data)}")

        # unwritten pages of a page blob already read as zeros
        if not data.strip(b"\0"):
            return

        uploaded = await client.put(
            f"{dest_url}&comp=page",
            headers={
                "x-ms-range": f"bytes={start}-{end}",
                "x-ms-page-write": "update",
                "x-ms-version": STORAGE_API_VERSION,
            },
            content=data,
        )
        uploaded.raise_for_status()
