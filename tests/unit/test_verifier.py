"""Unit tests for post-create verification."""

import pytest

from vm_copy.exceptions import (
    AzureCommandError,
    CreationTimeoutError,
    NotFoundError,
    ProvisioningFailedError,
)
from vm_copy.verifier import PostCreateVerifier

from fakes import DEST_SUB


def vm(state):
    return {"id": "/subscriptions/x/vm", "name": "web-01", "provisioningState": state}


def instance_view(*codes):
    return {"instanceView": {"statuses": [{"code": c} for c in codes]}}


class TestWaitForExistence:
    """Test PostCreateVerifier.wait_for_existence."""

    @pytest.mark.asyncio
    async def test_absent_then_succeeded(self, fake_az):
        fake_az.on("vm show", NotFoundError("web-01"), vm("Creating"), vm("Succeeded"))
        verifier = PostCreateVerifier(fake_az, poll_interval=0, max_wait=5)

        result = await verifier.wait_for_existence(DEST_SUB, "dst-rg", "web-01")

        assert result["provisioningState"] == "Succeeded"
        assert fake_az.count("vm show") == 3

    @pytest.mark.asyncio
    async def test_failed_state(self, fake_az):
        fake_az.on("vm show", vm("Failed"))
        verifier = PostCreateVerifier(fake_az, poll_interval=0, max_wait=5)
        with pytest.raises(ProvisioningFailedError) as exc_info:
            await verifier.wait_for_existence(DEST_SUB, "dst-rg", "web-01")
        assert exc_info.value.state == "Failed"

    @pytest.mark.asyncio
    async def test_times_out(self, fake_az):
        fake_az.on("vm show", vm("Creating"))
        verifier = PostCreateVerifier(fake_az, poll_interval=0.01, max_wait=0.05)
        with pytest.raises(CreationTimeoutError, match="inspect the destination"):
            await verifier.wait_for_existence(DEST_SUB, "dst-rg", "web-01")

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, fake_az):
        fake_az.on("vm show", AzureCommandError("boom"))
        verifier = PostCreateVerifier(fake_az, poll_interval=0, max_wait=5)
        with pytest.raises(AzureCommandError):
            await verifier.wait_for_existence(DEST_SUB, "dst-rg", "web-01")


class TestFinalize:
    """Test PostCreateVerifier.finalize."""

    @pytest.mark.asyncio
    async def test_deallocates_and_enables_diagnostics(self, fake_az):
        fake_az.on("vm get-instance-view",
                   instance_view("ProvisioningState/succeeded", "PowerState/deallocated"))
        outcome = await PostCreateVerifier(fake_az).finalize(DEST_SUB, "dst-rg", "web-01")

        assert outcome == {"power_state": "deallocated", "warnings": []}
        assert fake_az.count("vm deallocate") == 1
        assert fake_az.count("vm boot-diagnostics enable") == 1

    @pytest.mark.asyncio
    async def test_steps_are_optional(self, fake_az):
        fake_az.on("vm get-instance-view", instance_view("PowerState/running"))
        outcome = await PostCreateVerifier(fake_az).finalize(
            DEST_SUB, "dst-rg", "web-01", stop=False, enable_diagnostics=False
        )
        assert outcome["power_state"] == "running"
        assert fake_az.count("vm deallocate") == 0
        assert fake_az.count("vm boot-diagnostics") == 0

    @pytest.mark.asyncio
    async def test_failures_become_warnings(self, fake_az):
        fake_az.on("vm deallocate", AzureCommandError("conflict"))
        fake_az.on("vm boot-diagnostics enable", AzureCommandError("no storage"))
        fake_az.on("vm get-instance-view", AzureCommandError("unavailable"))

        outcome = await PostCreateVerifier(fake_az).finalize(DEST_SUB, "dst-rg", "web-01")

        assert outcome["power_state"] is None
        assert len(outcome["warnings"]) == 2
        assert "deallocate" in outcome["warnings"][0]
        assert "boot diagnostics" in outcome["warnings"][1]

    @pytest.mark.asyncio
    async def test_power_state_missing(self, fake_az):
        fake_az.on("vm get-instance-view", instance_view("ProvisioningState/succeeded"))
        assert await PostCreateVerifier(fake_az).power_state(DEST_SUB, "dst-rg", "web-01") is None
