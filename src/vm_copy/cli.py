#!/usr/bin/env python3
"""
Command-line interface for VM copy operations.
"""

import asyncio
import json
import os
import sys
from dataclasses import asdict
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import click
import yaml

from vm_copy import VmCopyClient
from vm_copy.azure_cli import AzureCLI
from vm_copy.cleanup import LogCleaner
from vm_copy.config import AppConfig, DEFAULT_CONFIG_PATHS, config_loader
from vm_copy.exceptions import ConfigurationError, VmCopyError
from vm_copy.logging import logger
from vm_copy.models import MigrationPlan, MigrationRequest, MigrationResult
from vm_copy.retry import RetryPolicy


def setup_logging(verbose: bool = False, quiet: bool = False, log_level: Optional[str] = None) -> None:
    """Setup logging configuration."""
    if quiet:
        logger.set_level("ERROR")
    elif verbose:
        logger.set_level("DEBUG")
    elif log_level:
        logger.set_level(log_level)


def load_config(config_path: Optional[str]) -> AppConfig:
    """Load configuration, falling back to defaults when it is invalid."""
    try:
        return config_loader.load_config(config_path)
    except ConfigurationError as e:
        click.echo(f"Warning: {e}", err=True)
        return AppConfig()


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def plan_to_dict(plan: MigrationPlan) -> dict:
    return _plain(asdict(plan))


def result_to_dict(result: MigrationResult) -> dict:
    return _plain(asdict(result))


@click.group()
@click.option("--config", "-c", default=None, help="Configuration file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-error output")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Log level (default: from configuration)",
)
@click.version_option(package_name="vm-copy")
@click.pass_context
def cli(ctx: Any, config: Optional[str], verbose: bool, quiet: bool, log_level: Optional[str]) -> None:
    """Copy an Azure VM across subscriptions, resource groups and tenants."""
    app_config = load_config(config)
    setup_logging(verbose, quiet, log_level or app_config.log_level)

    ctx.ensure_object(dict)
    ctx.obj["config"] = app_config
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet


@cli.command()
@click.option("--source-subscription", "--sourceSubscription", "source_subscription",
              required=True, help="Source subscription id")
@click.option("--source-resource-group", "--sourceResourceGroup", "source_resource_group",
              required=True, help="Resource group of the source VM")
@click.option("--destination-subscription", "--destinationSubscription",
              "destination_subscription", required=True, help="Destination subscription id")
@click.option("--destination-resource-group", "--destinationResourceGroup",
              "destination_resource_group", required=True,
              help="Resource group for the copied VM, NIC and disks")
@click.option("--destination-vnet", "--destinationVnetName", "destination_vnet",
              required=True, help="Destination virtual network name")
@click.option("--destination-subnet", "--destinationSubnetName", "destination_subnet",
              required=True, help="Destination subnet name")
@click.option("--vm-name", "--vmName", "vm_name", required=True, help="Source VM name")
@click.option("--zone", default=None, help="Availability zone (default: source zone)")
@click.option("--destination-network-resource-group", "--destinationNetworkResourceGroup",
              "destination_network_resource_group", default=None,
              help="Resource group of the destination vnet (default: destination resource group)")
@click.option("--destination-vm-name", "--destinationVmName", "destination_vm_name",
              default=None, help="Name of the copy (default: source name)")
@click.option("--destination-size", "--destinationSize", "destination_size", default=None,
              help="VM size of the copy (default: source size)")
@click.option("--cross-tenant/--same-tenant", "cross_tenant", default=None,
              help="Force the cross-tenant path on or off (default: detect)")
@click.option("--no-stop", is_flag=True, help="Leave the copy running after creation")
@click.option("--no-diagnostics", is_flag=True, help="Do not enable boot diagnostics")
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.option("--timeout", type=int, default=None, help="Maximum wait for the VM in seconds")
@click.option("--output", "-o", type=click.Choice(["text", "json"]), default="text",
              help="Output format")
@click.pass_context
def copy(
    ctx: Any,
    source_subscription: str,
    source_resource_group: str,
    destination_subscription: str,
    destination_resource_group: str,
    destination_vnet: str,
    destination_subnet: str,
    vm_name: str,
    zone: Optional[str],
    destination_network_resource_group: Optional[str],
    destination_vm_name: Optional[str],
    destination_size: Optional[str],
    cross_tenant: Optional[bool],
    no_stop: bool,
    no_diagnostics: bool,
    dry_run: bool,
    timeout: Optional[int],
    output: str,
) -> None:
    """Copy a VM into another subscription, resource group or tenant."""
    app_config: AppConfig = ctx.obj["config"]
    if timeout is not None:
        app_config = app_config.model_copy(update={"vm_wait_timeout": timeout})

    fields = dict(
        source_subscription=source_subscription,
        source_resource_group=source_resource_group,
        destination_subscription=destination_subscription,
        destination_resource_group=destination_resource_group,
        vm_name=vm_name,
        destination_vnet=destination_vnet,
        destination_subnet=destination_subnet,
        zone=zone,
        destination_network_resource_group=destination_network_resource_group,
        destination_vm_name=destination_vm_name,
        destination_size=destination_size,
        cross_tenant=cross_tenant,
    )
    quiet = ctx.obj["quiet"] or output == "json"

    async def run_copy() -> None:
        try:
            async with VmCopyClient(config=app_config) as client:
                if dry_run:
                    plan = await client.plan_copy(MigrationRequest(**fields))
                    _print_plan(plan, output)
                    return

                if not quiet:
                    click.echo(
                        f"Copying VM '{vm_name}' from {source_subscription}/{source_resource_group} "
                        f"to {destination_subscription}/{destination_resource_group}..."
                    )

                result = await client.copy_vm(
                    **fields,
                    stop_after_create=False if no_stop else None,
                    enable_diagnostics=False if no_diagnostics else None,
                )
                _print_result(result, output)

        except VmCopyError as e:
            click.echo(f"✗ Error: {e}", err=True)
            sys.exit(e.error_code)
        except Exception as e:
            click.echo(f"✗ Unexpected error: {e}", err=True)
            sys.exit(1)

    asyncio.run(run_copy())


def _print_plan(plan: MigrationPlan, output: str) -> None:
    if output == "json":
        click.echo(json.dumps(plan_to_dict(plan), indent=2, default=str))
        return

    profile = plan.profile
    click.echo(f"Dry run: copy of '{profile.vm_name}' ({profile.vm_size}, {profile.os_type.value})")
    click.echo(f"  Target VM:    {plan.request.target_vm_name}")
    click.echo(f"  Location:     {profile.location}")
    click.echo(f"  Subnet:       {plan.subnet_id}")
    click.echo(f"  Cross-tenant: {'yes' if plan.cross_tenant else 'no'}")
    click.echo(f"  Accept terms: {'yes' if plan.accept_terms else 'no'}")
    click.echo("  Disks:")
    for disk in plan.disks:
        lun = "-" if disk.lun is None else str(disk.lun)
        click.echo(
            f"    {disk.role.value:<5} {lun:<4} {disk.name:<40} {disk.sku:<16} "
            f"{disk.size_gb:>6} GB  {disk.caching}"
        )
    for warning in plan.warnings:
        click.echo(f"  Warning: {warning}", err=True)


def _print_result(result: MigrationResult, output: str) -> None:
    if output == "json":
        click.echo(json.dumps(result_to_dict(result), indent=2, default=str))
        return

    click.echo(f"✓ Successfully copied VM to '{result.vm_name}'")
    click.echo(f"  VM id:       {result.vm_id}")
    click.echo(f"  Power state: {result.power_state or 'unknown'}")
    click.echo(f"  Duration:    {result.duration:.1f}s")
    for warning in result.warnings:
        click.echo(f"  Warning: {warning}", err=True)


@cli.command()
@click.argument("log_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--include-created", is_flag=True,
              help="Also delete the NIC, disks and VM recorded in the log")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted")
@click.pass_context
def cleanup(ctx: Any, log_file: str, include_created: bool, dry_run: bool) -> None:
    """Remove leftovers recorded in a transaction log."""
    app_config: AppConfig = ctx.obj["config"]

    async def run_cleanup() -> None:
        az = AzureCLI(
            az_path=app_config.az_path,
            timeout=app_config.command_timeout,
            retry_policy=RetryPolicy(
                max_attempts=app_config.retry_attempts,
                min_wait=app_config.retry_min_wait,
                max_wait=app_config.retry_max_wait,
            ),
        )
        try:
            report = await LogCleaner(az).cleanup(
                log_file, include_created=include_created, dry_run=dry_run
            )
        except VmCopyError as e:
            click.echo(f"✗ Error: {e}", err=True)
            sys.exit(e.error_code)
        except (OSError, ValueError, KeyError) as e:
            click.echo(f"✗ Cannot read transaction log {log_file}: {e}", err=True)
            sys.exit(1)

        if dry_run:
            if not report.planned:
                click.echo("Nothing to clean up")
            for label in report.planned:
                click.echo(f"  would remove {label}")
            return

        for label in report.removed:
            click.echo(f"✓ Removed {label}")
        for label in report.failed:
            click.echo(f"✗ Failed to remove {label}", err=True)
        if not report.removed and not report.failed:
            click.echo("Nothing to clean up")
        if not report.success:
            sys.exit(1)

    asyncio.run(run_cleanup())


@cli.group()
def config() -> None:
    """Manage configuration settings."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: Any) -> None:
    """Display current configuration."""
    click.echo(yaml.dump(ctx.obj["config"].model_dump(), default_flow_style=False))


@config.command("init")
@click.option("--config-dir", default="~/.config/vm-copy", help="Configuration directory")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(config_dir: str, force: bool) -> None:
    """Initialize default configuration."""
    config_path = Path(config_dir).expanduser()
    config_path.mkdir(parents=True, exist_ok=True)

    config_file = config_path / "config.yaml"
    if config_file.exists() and not force:
        click.echo(f"Configuration already exists at {config_file} (use --force)", err=True)
        sys.exit(1)

    with open(config_file, "w") as f:
        yaml.dump(AppConfig().model_dump(), f, default_flow_style=False)

    click.echo(f"Configuration initialized at {config_file}")


@config.command("path")
def config_path() -> None:
    """Show the configuration file path being used."""
    default_paths = [os.path.expanduser(p) for p in DEFAULT_CONFIG_PATHS]

    click.echo("Configuration search paths (in order):")
    for i, path in enumerate(default_paths, 1):
        exists = "✓" if os.path.exists(path) else "✗"
        click.echo(f"  {i}. {exists} {path}")

    for path in default_paths:
        if os.path.exists(path):
            click.echo(f"\nCurrently using: {path}")
            return

    click.echo("\nNo configuration file found. Run 'vm-copy config init' to create one.")


if __name__ == "__main__":
    cli()
