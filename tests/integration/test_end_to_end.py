"""End-to-end copy flows against a scripted Azure CLI."""

import json
import logging
import os

import pytest

from vm_copy import VmCopyClient
from vm_copy.exceptions import (
    AzureCommandError,
    NotFoundError,
    ProvisioningFailedError,
    SubnetNotFoundError,
)
from vm_copy.logging import StructuredLogger, logger
from vm_copy.models import MigrationRequest

from fakes import (
    DEST_SUB,
    SOURCE_SUB,
    arg,
    rid,
    script_destination,
    script_source,
    source_vm,
)

SAS = "https://md-impexp.blob.core.windows.net/abcd/abcd?sv=2021-08-06&sig=secret"


async def copy(client, **overrides):
    params = dict(
        source_subscription=SOURCE_SUB,
        source_resource_group="src-rg",
        destination_subscription=DEST_SUB,
        destination_resource_group="dst-rg",
        vm_name="web-01",
        destination_vnet="dst-vnet",
        destination_subnet="default",
    )
    params.update(overrides)
    return await client.copy_vm(**params)


def vm_body(az):
    (put,) = az.commands("rest")
    return json.loads(arg(put, "--body"))


def script_cross_tenant_storage(az):
    account_id = rid(DEST_SUB, "dst-rg", "Microsoft.Storage/storageAccounts", "vmcopystaging")
    az.on("snapshot grant-access", {"accessSas": SAS})
    az.on("storage account create", {"id": account_id})
    az.on("storage account keys list", [{"value": "a2V5"}])
    az.on("storage container generate-sas", "sv=2021-08-06&sr=c&sig=container")
    az.on("storage blob show", {"properties": {"copy": {"status": "success"}}})
    return account_id


@pytest.mark.integration
class TestSameTenantCopy:
    """Copies where the destination can read the source disks directly."""

    @pytest.mark.asyncio
    async def test_linux_vm_with_one_data_disk(self, fake_az, fast_config):
        script_source(fake_az, source_vm())
        script_destination(fake_az)

        async with VmCopyClient(config=fast_config, az=fake_az) as client:
            result = await copy(client)

        assert result.vm_name == "web-01"
        assert result.vm_id.endswith("/resourceGroups/dst-rg/providers/Microsoft.Compute/virtualMachines/web-01")
        assert result.power_state == "deallocated"
        assert result.cross_tenant is False
        assert result.orphaned_artifacts == []
        assert len(result.created_resources) == 4

        body = vm_body(fake_az)
        assert "plan" not in body
        assert body["properties"]["hardwareProfile"]["vmSize"] == "Standard_D2s_v3"
        (data_disk,) = body["properties"]["storageProfile"]["dataDisks"]
        assert data_disk["lun"] == 0
        assert data_disk["caching"] == "ReadWrite"

        assert fake_az.count("vm image terms") == 0
        assert fake_az.count("snapshot grant-access") == 0
        assert fake_az.count("snapshot delete") == 2
        assert fake_az.count("vm deallocate") == 1

        log_path = os.path.join(fast_config.transaction_log_dir, f"vm-copy-txn-{result.operation_id}.json")
        with open(log_path) as f:
            log = json.load(f)
        assert log["status"] == "committed"
        assert {a["status"] for a in log["artifacts"]} == {"released"}

    @pytest.mark.asyncio
    async def test_log_lines_carry_operation_id(self, fake_az, fast_config):
        script_source(fake_az, source_vm())
        script_destination(fake_az)
        lines = []
        handler = logging.Handler()
        handler.setFormatter(StructuredLogger.JsonFormatter())
        handler.emit = lambda record: lines.append(json.loads(handler.format(record)))

        async with VmCopyClient(config=fast_config, az=fake_az) as client:
            level = logger.logger.level
            logger.logger.setLevel(logging.INFO)
            logger.logger.addHandler(handler)
            try:
                result = await copy(client)
            finally:
                logger.logger.removeHandler(handler)
                logger.logger.setLevel(level)

        assert lines
        assert {line["operation_id"] for line in lines} == {result.operation_id}
        assert any(line.get("stage") == "disks" for line in lines)

    @pytest.mark.asyncio
    async def test_every_call_names_its_subscription(self, fake_az, fast_config):
        script_source(fake_az, source_vm())
        script_destination(fake_az)

        async with VmCopyClient(config=fast_config, az=fake_az) as client:
            await copy(client)

        writes = [sub for args, sub in fake_az.calls if "create" in args]
        assert writes and set(writes) == {DEST_SUB}
        reads = [sub for args, sub in fake_az.calls if args[:2] == ["disk", "show"] and "--ids" in args]
        assert set(reads) == {SOURCE_SUB}

    @pytest.mark.asyncio
    async def test_marketplace_plan_accepted_and_attached(self, fake_az, fast_config):
        plan = {"name": "byol", "product": "fortinet_fortigate-vm_v5", "publisher": "fortinet"}
        script_source(fake_az, source_vm(plan=plan))
        script_destination(fake_az)
        fake_az.on("vm image terms show", {"accepted": False})
        fake_az.on("vm image terms accept", {"accepted": True})

        async with VmCopyClient(config=fast_config, az=fake_az) as client:
            await copy(client)

        assert fake_az.count("vm image terms accept") == 1
        assert vm_body(fake_az)["plan"]["publisher"] == "fortinet"

    @pytest.mark.asyncio
    async def test_missing_subnet_stops_before_nic(self, fake_az, fast_config):
        script_source(fake_az, source_vm())
        script_destination(fake_az)
        fake_az.on("network vnet subnet show", NotFoundError("default", DEST_SUB))

        async with VmCopyClient(config=fast_config, az=fake_az) as client:
            with pytest.raises(SubnetNotFoundError) as exc_info:
                await copy(client)

        assert exc_info.value.error_code == 8
        assert fake_az.count("network nic create") == 0
        assert fake_az.count("snapshot create") == 0

    @pytest.mark.asyncio
    async def test_failed_disk_aborts_before_vm(self, fake_az, fast_config):
        script_source(fake_az, source_vm())
        script_destination(fake_az)

        def disk(args, subscription):
            name = arg(args, "--name")
            state = "Failed" if name == "web-01-data0" else "Succeeded"
            return {"id": rid(subscription, "dst-rg", "Microsoft.Compute/disks", name),
                    "provisioningState": state}

        fake_az.on("disk create", disk)

        async with VmCopyClient(config=fast_config, az=fake_az) as client:
            with pytest.raises(ProvisioningFailedError, match="web-01-data0"):
                await copy(client)

        assert fake_az.count("rest") == 0
        assert fake_az.count("snapshot delete") == 2
        assert fake_az.count("resource delete") == 0

    @pytest.mark.asyncio
    async def test_rollback_when_enabled(self, fake_az, fast_config):
        script_source(fake_az, source_vm())
        script_destination(fake_az, vm_state="Failed")
        config = fast_config.model_copy(update={"rollback_on_failure": True})

        async with VmCopyClient(config=config, az=fake_az) as client:
            with pytest.raises(ProvisioningFailedError):
                await copy(client)

        deleted = [arg(a, "--ids") for a in fake_az.commands("resource delete")]
        assert len(deleted) == 4
        assert deleted[0].endswith("/virtualMachines/web-01")
        assert deleted[-1].endswith("/networkInterfaces/web-01-nic")

    @pytest.mark.asyncio
    async def test_rerun_replaces_existing_disks(self, fake_az, fast_config):
        script_source(fake_az, source_vm())
        script_destination(fake_az)
        fake_az.on("disk show --resource-group", {"id": "existing"})

        async with VmCopyClient(config=fast_config, az=fake_az) as client:
            await copy(client)

        order = [" ".join(a[:2]) for a in fake_az.commands("disk") if a[1] in ("delete", "create")]
        assert order == ["disk delete", "disk create", "disk delete", "disk create"]

    @pytest.mark.asyncio
    async def test_copy_into_source_group_renames_disks(self, fake_az, fast_config):
        script_source(fake_az, source_vm())
        script_destination(fake_az)

        async with VmCopyClient(config=fast_config, az=fake_az) as client:
            result = await copy(
                client,
                destination_subscription=SOURCE_SUB,
                destination_resource_group="src-rg",
                destination_vm_name="web-02",
            )

        assert result.vm_name == "web-02"
        names = [arg(a, "--name") for a in fake_az.commands("disk create")]
        assert names == ["web-02-web-01_OsDisk_1", "web-02-web-01-data0"]

    @pytest.mark.asyncio
    async def test_dry_run_creates_nothing(self, fake_az, fast_config):
        script_source(fake_az, source_vm())
        script_destination(fake_az)
        request = MigrationRequest(
            SOURCE_SUB, "src-rg", DEST_SUB, "dst-rg", "web-01", "dst-vnet", "default",
            destination_size="Standard_D4s_v5",
        )

        async with VmCopyClient(config=fast_config, az=fake_az) as client:
            plan = await client.plan_copy(request)

        assert plan.subnet_id.endswith("/subnets/default")
        assert [d.name for d in plan.disks] == ["web-01_OsDisk_1", "web-01-data0"]
        assert plan.warnings == ["VM size changes from Standard_D2s_v3 to Standard_D4s_v5"]
        created = [a for a, _ in fake_az.calls if "create" in a or "accept" in a or a[0] == "rest"]
        assert created == []


@pytest.mark.integration
class TestCrossTenantCopy:
    """Copies through an exported snapshot and a staging blob."""

    @pytest.mark.asyncio
    async def test_detected_from_tenant_ids(self, fake_az, fast_config):
        script_source(fake_az, source_vm(), cross_tenant=True)
        script_destination(fake_az)
        account_id = script_cross_tenant_storage(fake_az)

        async with VmCopyClient(config=fast_config, az=fake_az) as client:
            result = await copy(client)

        assert result.cross_tenant is True
        assert result.orphaned_artifacts == []

        snapshot_subs = {sub for a, sub in fake_az.calls if a[:2] == ["snapshot", "create"]}
        assert snapshot_subs == {SOURCE_SUB}
        os_create = fake_az.commands("disk create")[0]
        assert arg(os_create, "--source").endswith(".blob.core.windows.net/vhds/web-01_OsDisk_1.vhd")
        assert arg(os_create, "--source-storage-account-id") == account_id

        assert fake_az.count("storage account create") == 1
        assert fake_az.count("storage blob copy start") == 2
        assert fake_az.count("snapshot revoke-access") == 2
        deleted = [arg(a, "--ids") for a in fake_az.commands("resource delete")]
        assert deleted == [account_id]

    @pytest.mark.asyncio
    async def test_falls_back_to_azcopy(self, fake_az, fast_config):
        script_source(fake_az, source_vm(data_disks=[]), cross_tenant=True)
        script_destination(fake_az)
        script_cross_tenant_storage(fake_az)
        fake_az.on("storage blob copy start", AzureCommandError("CannotVerifyCopySource"))

        async with VmCopyClient(config=fast_config, az=fake_az) as client:
            result = await copy(client)

        assert result.cross_tenant is True
        (azcopy,) = fake_az.processes
        assert azcopy[:3] == ["azcopy", "copy", SAS]

    @pytest.mark.asyncio
    async def test_forced_same_tenant(self, fake_az, fast_config):
        script_source(fake_az, source_vm(), cross_tenant=True)
        script_destination(fake_az)

        async with VmCopyClient(config=fast_config, az=fake_az) as client:
            result = await copy(client, cross_tenant=False)

        assert result.cross_tenant is False
        assert fake_az.count("snapshot grant-access") == 0
