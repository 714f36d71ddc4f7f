"""Test configuration and fixtures for vm-copy."""

import sys
from pathlib import Path

import pytest

# Add src and the shared test helpers to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from vm_copy.config import AppConfig  # noqa: E402
from vm_copy.models import MigrationRequest  # noqa: E402

from fakes import DEST_SUB, SOURCE_SUB, FakeAzureCLI  # noqa: E402


@pytest.fixture
def fake_az():
    """Scriptable Azure CLI double."""
    return FakeAzureCLI()


@pytest.fixture
def migration_request():
    """Request copying web-01 between subscriptions."""
    return MigrationRequest(
        source_subscription=SOURCE_SUB,
        source_resource_group="src-rg",
        destination_subscription=DEST_SUB,
        destination_resource_group="dst-rg",
        vm_name="web-01",
        destination_vnet="dst-vnet",
        destination_subnet="default",
        zone="2",
    )


@pytest.fixture
def fast_config(tmp_path):
    """Configuration with waits shortened for tests."""
    return AppConfig(
        poll_interval=0.01,
        vm_wait_timeout=5,
        copy_wait_timeout=5,
        retry_min_wait=0,
        retry_max_wait=0.01,
        transaction_log_dir=str(tmp_path),
    )
