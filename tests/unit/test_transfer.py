"""Unit tests for cross-tenant blob transfer."""

import httpx
import pytest
from unittest.mock import AsyncMock

from vm_copy.exceptions import AzureCommandError, TransferFailedError, ValidationError
from vm_copy.models import CopyTier
from vm_copy.transfer import BlobTransfer, StagingStorage

from fakes import DEST_SUB, arg, rid

SOURCE_URL = "https://md-abc123.blob.core.windows.net/xyz/abcd?sv=2021-08-06&sig=secret"


def staging():
    return StagingStorage(
        account="vmcopyabc",
        account_id=rid(DEST_SUB, "dst-rg", "Microsoft.Storage/storageAccounts", "vmcopyabc"),
        resource_group="dst-rg",
        subscription=DEST_SUB,
        container="vhds",
        account_key="a2V5",
        container_sas="sv=2021-08-06&sr=c&sig=container",
    )


def transfer(az, **kwargs):
    kwargs.setdefault("poll_interval", 0)
    kwargs.setdefault("copy_timeout", 5)
    kwargs.setdefault("chunk_retry_step", 0)
    return BlobTransfer(az, **kwargs)


class DiskServer:
    """httpx handler serving a source disk and accepting page writes."""

    def __init__(self, content: bytes, failures: int = 0):
        self.content = content
        self.failures = failures
        self.created = None
        self.pages = {}
        self.gets = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host.startswith("md-"):
            if request.method == "HEAD":
                return httpx.Response(200, headers={"content-length": str(len(self.content))})
            self.gets += 1
            if self.failures:
                self.failures -= 1
                return httpx.Response(503)
            start, end = request.headers["range"].split("=")[1].split("-")
            return httpx.Response(206, content=self.content[int(start):int(end) + 1])

        if request.url.params.get("comp") == "page":
            self.pages[request.headers["x-ms-range"]] = request.content
        else:
            self.created = request.headers["x-ms-blob-content-length"]
        return httpx.Response(201)


class TestBlobTransferSetup:
    """Test BlobTransfer construction and staging."""

    def test_chunk_size_must_be_page_aligned(self, fake_az):
        with pytest.raises(ValidationError):
            transfer(fake_az, chunk_size=1000)

    def test_chunk_size_capped(self, fake_az):
        with pytest.raises(ValidationError):
            transfer(fake_az, chunk_size=8 * 1024 * 1024)

    def test_chunk_policy(self, fake_az):
        policy = transfer(fake_az, chunk_retries=4, chunk_retry_step=1.5).chunk_policy
        assert policy.backoff == "linear"
        assert policy.max_attempts == 4
        assert policy.max_wait == 6.0
        assert policy.is_retryable(httpx.ConnectError("reset"))
        assert not policy.is_retryable(ValueError("x"))

    def test_sas_url(self):
        assert staging().sas_url("os.vhd") == (
            "https://vmcopyabc.blob.core.windows.net/vhds/os.vhd"
            "?sv=2021-08-06&sr=c&sig=container"
        )

    @pytest.mark.asyncio
    async def test_create_staging(self, fake_az):
        account_id = rid(DEST_SUB, "dst-rg", "Microsoft.Storage/storageAccounts", "vmcopyabc")
        fake_az.on("storage account create", {"id": account_id})
        fake_az.on("storage account keys list", [{"value": "a2V5"}])
        fake_az.on("storage container generate-sas", '"sv=1&sig=abc"')

        result = await transfer(fake_az).create_staging(
            DEST_SUB, "dst-rg", "vmcopyabc", "westeurope", "Standard_LRS", 3600
        )

        assert result.account_id == account_id
        assert result.account_key == "a2V5"
        assert result.container_sas == "sv=1&sig=abc"
        (create,) = fake_az.commands("storage container create")
        assert arg(create, "--name") == "vhds"

    @pytest.mark.asyncio
    async def test_create_staging_without_keys(self, fake_az):
        fake_az.on("storage account create", {"id": "x"})
        fake_az.on("storage account keys list", [])
        with pytest.raises(AzureCommandError, match="No access keys"):
            await transfer(fake_az).create_staging(
                DEST_SUB, "dst-rg", "vmcopyabc", "westeurope", "Standard_LRS", 3600
            )


class TestTierFallback:
    """Test the ordered copy tiers."""

    @pytest.mark.asyncio
    async def test_server_side_copy_polls_until_success(self, fake_az):
        fake_az.on(
            "storage blob show",
            {"properties": {"copy": {"status": "pending", "progress": "1/4"}}},
            {"properties": {"copy": {"status": "success"}}},
        )

        tier = await transfer(fake_az).copy(SOURCE_URL, staging(), "os.vhd", "os")

        assert tier is CopyTier.SERVER_SIDE
        assert fake_az.count("storage blob show") == 2
        (start,) = fake_az.commands("storage blob copy start")
        assert arg(start, "--source-uri") == SOURCE_URL
        assert arg(start, "--destination-blob-type") == "PageBlob"
        assert fake_az.processes == []

    @pytest.mark.asyncio
    async def test_falls_back_to_azcopy(self, fake_az):
        fake_az.on("storage blob copy start", AzureCommandError("CannotVerifyCopySource"))
        fake_az.execute_command = AsyncMock(return_value=("Job completed", "", 0))

        tier = await transfer(fake_az, azcopy_concurrency=64).copy(
            SOURCE_URL, staging(), "os.vhd", "os"
        )

        assert tier is CopyTier.AZCOPY
        argv = fake_az.execute_command.call_args.args[0]
        assert argv[:3] == ["azcopy", "copy", SOURCE_URL]
        assert argv[3] == staging().sas_url("os.vhd")
        assert fake_az.execute_command.call_args.kwargs["env"] == {
            "AZCOPY_CONCURRENCY_VALUE": "64"
        }

    @pytest.mark.asyncio
    async def test_failed_server_side_status_falls_back(self, fake_az):
        fake_az.on("storage blob show", {"properties": {"copy": {"status": "failed"}}})
        fake_az.execute_command = AsyncMock(return_value=("", "", 0))

        tier = await transfer(fake_az).copy(SOURCE_URL, staging(), "os.vhd", "os")
        assert tier is CopyTier.AZCOPY

    @pytest.mark.asyncio
    async def test_timed_out_copy_cancelled_before_azcopy(self, fake_az):
        fake_az.on(
            "storage blob show",
            {"properties": {"copy": {"id": "copy-42", "status": "pending", "progress": "1/9"}}},
        )

        tier = await transfer(fake_az, copy_timeout=0).copy(
            SOURCE_URL, staging(), "os.vhd", "os"
        )

        assert tier is CopyTier.AZCOPY
        (cancel,) = fake_az.commands("storage blob copy cancel")
        assert arg(cancel, "--copy-id") == "copy-42"
        assert arg(cancel, "--destination-blob") == "os.vhd"
        assert arg(cancel, "--destination-container") == "vhds"
        assert len(fake_az.processes) == 1

    @pytest.mark.asyncio
    async def test_failed_cancel_still_falls_back(self, fake_az):
        fake_az.on(
            "storage blob show",
            {"properties": {"copy": {"id": "copy-42", "status": "pending"}}},
        )
        fake_az.on("storage blob copy cancel", AzureCommandError("NoPendingCopyOperation"))

        tier = await transfer(fake_az, copy_timeout=0).copy(
            SOURCE_URL, staging(), "os.vhd", "os"
        )

        assert tier is CopyTier.AZCOPY
        assert fake_az.count("storage blob copy cancel") == 1

    @pytest.mark.asyncio
    async def test_finished_copy_not_cancelled(self, fake_az):
        fake_az.on("storage blob show", {"properties": {"copy": {"id": "copy-42", "status": "failed"}}})

        await transfer(fake_az).copy(SOURCE_URL, staging(), "os.vhd", "os")

        assert fake_az.count("storage blob copy cancel") == 0

    @pytest.mark.asyncio
    async def test_falls_back_to_buffered(self, fake_az):
        fake_az.on("storage blob copy start", AzureCommandError("denied"))
        fake_az.process_result = ("", "RESPONSE 403", 1)
        server = DiskServer(b"\x01" * 512 + b"\0" * 512)

        tier = await transfer(
            fake_az, chunk_size=512, http_transport=httpx.MockTransport(server)
        ).copy(SOURCE_URL, staging(), "os.vhd", "os")

        assert tier is CopyTier.BUFFERED
        assert len(fake_az.processes) == 1

    @pytest.mark.asyncio
    async def test_all_tiers_failed(self, fake_az):
        fake_az.on("storage blob copy start", AzureCommandError("denied"))
        fake_az.process_result = ("", "RESPONSE 403", 1)

        def refuse(request):
            return httpx.Response(403)

        with pytest.raises(TransferFailedError) as exc_info:
            await transfer(fake_az, http_transport=httpx.MockTransport(refuse)).copy(
                SOURCE_URL, staging(), "os.vhd", "os"
            )
        assert exc_info.value.tier == "buffered"
        assert exc_info.value.disk_name == "os"

    @pytest.mark.asyncio
    async def test_configured_tiers_only(self, fake_az):
        fake_az.process_result = ("", "boom", 2)
        with pytest.raises(TransferFailedError, match="azcopy exited with 2"):
            await transfer(fake_az, tiers=[CopyTier.AZCOPY]).copy(
                SOURCE_URL, staging(), "os.vhd", "os"
            )
        assert fake_az.calls == []


class TestBufferedCopy:
    """Test the chunked download-then-upload tier."""

    @pytest.mark.asyncio
    async def test_uploads_non_zero_pages(self, fake_az, tmp_path):
        server = DiskServer(b"\x07" * 512 + b"\0" * 512 + b"\x09" * 512)

        await transfer(
            fake_az,
            chunk_size=512,
            staging_dir=str(tmp_path),
            http_transport=httpx.MockTransport(server),
            tiers=[CopyTier.BUFFERED],
        ).copy(SOURCE_URL, staging(), "os.vhd", "os")

        assert server.created == "1536"
        assert sorted(server.pages) == ["bytes=0-511", "bytes=1024-1535"]
        assert server.pages["bytes=1024-1535"] == b"\x09" * 512
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_retries_failed_chunk(self, fake_az):
        server = DiskServer(b"\x05" * 1024, failures=2)

        await transfer(
            fake_az,
            chunk_size=1024,
            http_transport=httpx.MockTransport(server),
            tiers=[CopyTier.BUFFERED],
        ).copy(SOURCE_URL, staging(), "os.vhd", "os")

        assert server.gets == 3
        assert server.pages == {"bytes=0-1023": b"\x05" * 1024}

    @pytest.mark.asyncio
    async def test_rejects_unaligned_source(self, fake_az):
        server = DiskServer(b"\x01" * 700)
        with pytest.raises(TransferFailedError, match="multiple of 512"):
            await transfer(
                fake_az,
                http_transport=httpx.MockTransport(server),
                tiers=[CopyTier.BUFFERED],
            ).copy(SOURCE_URL, staging(), "os.vhd", "os")
