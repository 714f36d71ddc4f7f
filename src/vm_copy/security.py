"""
Input validation and command construction for Azure CLI calls.

Every ``az`` invocation is built as an argument vector from validated
names, so no value ever passes through a shell.
"""

import re
from typing import Any, List, Optional

from .exceptions import ValidationError


class SecurityValidator:
    """Validation of Azure resource names and identifiers."""

    SUBSCRIPTION_PATTERN = re.compile(
        r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
    )
    RESOURCE_GROUP_PATTERN = re.compile(r"^[-\w._()]{1,90}$")
    RESOURCE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][-a-zA-Z0-9._]{0,79}$")
    VM_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][-a-zA-Z0-9._]{0,63}$")
    STORAGE_ACCOUNT_PATTERN = re.compile(r"^[a-z0-9]{3,24}$")
    RESOURCE_ID_PATTERN = re.compile(r"^/subscriptions/[^/]+/resourceGroups/[^/]+/providers/.+$", re.IGNORECASE)

    @staticmethod
    def _check(value: str, pattern: "re.Pattern[str]", what: str) -> str:
        if not value or not isinstance(value, str):
            raise ValidationError(f"{what} must be a non-empty string", what)
        if not pattern.match(value):
            raise ValidationError(f"Invalid {what}: {value!r}", what)
        return value

    @staticmethod
    def validate_subscription(value: str) -> str:
        """Subscriptions are addressed by GUID only."""
        return SecurityValidator._check(
            value, SecurityValidator.SUBSCRIPTION_PATTERN, "subscription"
        )

    @staticmethod
    def validate_resource_group(value: str) -> str:
        if value and value.endswith("."):
            raise ValidationError(f"Invalid resource_group: {value!r}", "resource_group")
        return SecurityValidator._check(
            value, SecurityValidator.RESOURCE_GROUP_PATTERN, "resource_group"
        )

    @staticmethod
    def validate_resource_name(value: str) -> str:
        return SecurityValidator._check(
            value, SecurityValidator.RESOURCE_NAME_PATTERN, "resource_name"
        )

    @staticmethod
    def validate_vm_name(value: str) -> str:
        return SecurityValidator._check(value, SecurityValidator.VM_NAME_PATTERN, "vm_name")

    @staticmethod
    def validate_storage_account(value: str) -> str:
        return SecurityValidator._check(
            value, SecurityValidator.STORAGE_ACCOUNT_PATTERN, "storage_account"
        )

    @staticmethod
    def validate_resource_id(value: str) -> str:
        return SecurityValidator._check(
            value, SecurityValidator.RESOURCE_ID_PATTERN, "resource_id"
        )


class CommandBuilder:
    """Builders for the ``az`` argument vectors used by the stages.

    The returned lists exclude the executable, ``--subscription`` and
    ``--output``; the command runner adds those.
    """

    @staticmethod
    def _flags(**options: Any) -> List[str]:
        args: List[str] = []
        for key, value in options.items():
            if value is None or value is False:
                continue
            flag = "--" + key.replace("_", "-")
            if value is True:
                args.append(flag)
            else:
                args.extend([flag, str(value)])
        return args

    @staticmethod
    def account_show() -> List[str]:
        return ["account", "show"]

    @staticmethod
    def vm_show(resource_group: str, vm_name: str) -> List[str]:
        return [
            "vm", "show",
            "--resource-group", SecurityValidator.validate_resource_group(resource_group),
            "--name", SecurityValidator.validate_vm_name(vm_name),
        ]

    @staticmethod
    def vm_instance_view(resource_group: str, vm_name: str) -> List[str]:
        return [
            "vm", "get-instance-view",
            "--resource-group", SecurityValidator.validate_resource_group(resource_group),
            "--name", SecurityValidator.validate_vm_name(vm_name),
        ]

    @staticmethod
    def vm_deallocate(resource_group: str, vm_name: str) -> List[str]:
        return [
            "vm", "deallocate",
            "--resource-group", SecurityValidator.validate_resource_group(resource_group),
            "--name", SecurityValidator.validate_vm_name(vm_name),
        ]

    @staticmethod
    def vm_boot_diagnostics(resource_group: str, vm_name: str) -> List[str]:
        return [
            "vm", "boot-diagnostics", "enable",
            "--resource-group", SecurityValidator.validate_resource_group(resource_group),
            "--name", SecurityValidator.validate_vm_name(vm_name),
        ]

    @staticmethod
    def rest_put(uri: str, body: str) -> List[str]:
        return ["rest", "--method", "put", "--uri", uri, "--body", body]

    @staticmethod
    def delete_by_id(resource_id: str) -> List[str]:
        return ["resource", "delete", "--ids", SecurityValidator.validate_resource_id(resource_id)]

    @staticmethod
    def disk_show(resource_group: Optional[str] = None, disk_name: Optional[str] = None,
                  disk_id: Optional[str] = None) -> List[str]:
        if disk_id:
            return ["disk", "show", "--ids", SecurityValidator.validate_resource_id(disk_id)]
        return [
            "disk", "show",
            "--resource-group", SecurityValidator.validate_resource_group(resource_group or ""),
            "--name", SecurityValidator.validate_resource_name(disk_name or ""),
        ]

    @staticmethod
    def disk_delete(resource_group: str, disk_name: str) -> List[str]:
        return [
            "disk", "delete",
            "--resource-group", SecurityValidator.validate_resource_group(resource_group),
            "--name", SecurityValidator.validate_resource_name(disk_name),
            "--yes",
        ]

    @staticmethod
    def disk_create(
        resource_group: str,
        disk_name: str,
        source: str,
        sku: str,
        size_gb: int,
        location: str,
        zone: Optional[str] = None,
        os_type: Optional[str] = None,
        hyper_v_generation: Optional[str] = None,
        source_storage_account_id: Optional[str] = None,
    ) -> List[str]:
        args = [
            "disk", "create",
            "--resource-group", SecurityValidator.validate_resource_group(resource_group),
            "--name", SecurityValidator.validate_resource_name(disk_name),
            "--source", source,
        ]
        return args + CommandBuilder._flags(
            source_storage_account_id=source_storage_account_id,
            sku=sku,
            size_gb=size_gb,
            location=location,
            zone=zone,
            os_type=os_type,
            hyper_v_generation=hyper_v_generation,
        )

    @staticmethod
    def snapshot_create(
        resource_group: str, snapshot_name: str, source_id: str, location: str,
        sku: str = "Standard_LRS",
    ) -> List[str]:
        return [
            "snapshot", "create",
            "--resource-group", SecurityValidator.validate_resource_group(resource_group),
            "--name", SecurityValidator.validate_resource_name(snapshot_name),
            "--source", SecurityValidator.validate_resource_id(source_id),
            "--location", location,
            "--sku", sku,
            "--incremental", "false",
            "--network-access-policy", "AllowAll",
        ]

    @staticmethod
    def snapshot_grant_access(snapshot_id: str, duration_seconds: int) -> List[str]:
        return [
            "snapshot", "grant-access",
            "--ids", SecurityValidator.validate_resource_id(snapshot_id),
            "--duration-in-seconds", str(int(duration_seconds)),
            "--access-level", "Read",
        ]

    @staticmethod
    def snapshot_revoke_access(snapshot_id: str) -> List[str]:
        return ["snapshot", "revoke-access", "--ids", SecurityValidator.validate_resource_id(snapshot_id)]

    @staticmethod
    def snapshot_delete(snapshot_id: str) -> List[str]:
        return ["snapshot", "delete", "--ids", SecurityValidator.validate_resource_id(snapshot_id), "--no-wait"]

    @staticmethod
    def subnet_show(resource_group: str, vnet: str, subnet: str) -> List[str]:
        return [
            "network", "vnet", "subnet", "show",
            "--resource-group", SecurityValidator.validate_resource_group(resource_group),
            "--vnet-name", SecurityValidator.validate_resource_name(vnet),
            "--name", SecurityValidator.validate_resource_name(subnet),
        ]

    @staticmethod
    def nic_show(nic_id: str) -> List[str]:
        return ["network", "nic", "show", "--ids", SecurityValidator.validate_resource_id(nic_id)]

    @staticmethod
    def nic_create(
        resource_group: str, nic_name: str, subnet_id: str, location: str,
        accelerated_networking: bool = False,
    ) -> List[str]:
        if not subnet_id:
            raise ValidationError("NIC creation requires a subnet id", "subnet")
        args = [
            "network", "nic", "create",
            "--resource-group", SecurityValidator.validate_resource_group(resource_group),
            "--name", SecurityValidator.validate_resource_name(nic_name),
            "--subnet", SecurityValidator.validate_resource_id(subnet_id),
            "--location", location,
        ]
        if accelerated_networking:
            args.extend(["--accelerated-networking", "true"])
        return args

    @staticmethod
    def terms_show(publisher: str, offer: str, plan: str) -> List[str]:
        return ["vm", "image", "terms", "show", "--publisher", publisher, "--offer", offer, "--plan", plan]

    @staticmethod
    def terms_accept(publisher: str, offer: str, plan: str) -> List[str]:
        return ["vm", "image", "terms", "accept", "--publisher", publisher, "--offer", offer, "--plan", plan]

    @staticmethod
    def storage_account_create(
        resource_group: str, account: str, location: str, sku: str
    ) -> List[str]:
        return [
            "storage", "account", "create",
            "--resource-group", SecurityValidator.validate_resource_group(resource_group),
            "--name", SecurityValidator.validate_storage_account(account),
            "--location", location,
            "--sku", sku,
            "--kind", "StorageV2",
            "--min-tls-version", "TLS1_2",
            "--allow-blob-public-access", "false",
        ]

    @staticmethod
    def storage_account_keys(resource_group: str, account: str) -> List[str]:
        return [
            "storage", "account", "keys", "list",
            "--resource-group", SecurityValidator.validate_resource_group(resource_group),
            "--account-name", SecurityValidator.validate_storage_account(account),
        ]

    @staticmethod
    def container_create(account: str, container: str, account_key: str) -> List[str]:
        return [
            "storage", "container", "create",
            "--account-name", SecurityValidator.validate_storage_account(account),
            "--name", container,
            "--account-key", account_key,
        ]

    @staticmethod
    def container_sas(account: str, container: str, account_key: str, expiry: str) -> List[str]:
        return [
            "storage", "container", "generate-sas",
            "--account-name", SecurityValidator.validate_storage_account(account),
            "--name", container,
            "--permissions", "acrw",
            "--expiry", expiry,
            "--https-only",
            "--account-key", account_key,
        ]

    @staticmethod
    def blob_copy_start(
        account: str, container: str, blob: str, source_uri: str, account_key: str
    ) -> List[str]:
        return [
            "storage", "blob", "copy", "start",
            "--account-name", SecurityValidator.validate_storage_account(account),
            "--destination-container", container,
            "--destination-blob", blob,
            "--destination-blob-type", "PageBlob",
            "--source-uri", source_uri,
            "--account-key", account_key,
        ]

    @staticmethod
    def blob_copy_cancel(
        account: str, container: str, blob: str, copy_id: str, account_key: str
    ) -> List[str]:
        return [
            "storage", "blob", "copy", "cancel",
            "--account-name", SecurityValidator.validate_storage_account(account),
            "--destination-container", container,
            "--destination-blob", blob,
            "--copy-id", copy_id,
            "--account-key", account_key,
        ]

    @staticmethod
    def blob_show(account: str, container: str, blob: str, account_key: str) -> List[str]:
        return [
            "storage", "blob", "show",
            "--account-name", SecurityValidator.validate_storage_account(account),
            "--container-name", container,
            "--name", blob,
            "--account-key", account_key,
        ]

    @staticmethod
    def blob_delete(account: str, container: str, blob: str, account_key: str) -> List[str]:
        return [
            "storage", "blob", "delete",
            "--account-name", SecurityValidator.validate_storage_account(account),
            "--container-name", container,
            "--name", blob,
            "--account-key", account_key,
        ]
