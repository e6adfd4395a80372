#!/usr/bin/env python3
"""Provision a spot gaming instance on AWS.

Usage: uv run gamingvm <noun> <verb> [options]

Examples:
    uv run gamingvm instance create --region us-east-1 --zones b
    uv run gamingvm instance outputs --show-password
    uv run gamingvm instance update-ip
    uv run gamingvm instance delete
    uv run gamingvm rules list
    uv run gamingvm --verbose instance create
"""

import dataclasses
import os
from collections.abc import Callable
from typing import Annotated

import cyclopts
from rich import print

from .config import GamingVMConfig
from .errors import FulfillmentTimeoutError, GamingVMError
from .reconciler import Reconciler
from .rules import flatten_rules
from .state import state_path
from .userdata import InstallerFlags
from .utils import error, log, setup_logging

app = cyclopts.App(
    name="gamingvm", help="Provision a spot gaming instance on AWS", sort_key=None
)

instance_app = cyclopts.App(name="instance", help="Manage the gaming instance", sort_key=1)
rules_app = cyclopts.App(name="rules", help="Inspect firewall rules", sort_key=2)

app.command(instance_app)
app.command(rules_app)


def _run(fn: Callable, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except FulfillmentTimeoutError as e:
        error(f"{e.component}: {e} (spot request id: {e.spot_request_id})")
    except GamingVMError as e:
        error(f"{e.component}: {e}")


def _installers(install: list[str] | None, without: list[str] | None) -> InstallerFlags | None:
    if not install and not without:
        return None
    names = InstallerFlags.names()
    for name in (install or []) + (without or []):
        if name not in names:
            error(f"Unknown installer '{name}'. Available: {', '.join(names)}")
    base = GamingVMConfig.from_env().installers
    changes = {name: True for name in install or []}
    changes.update({name: False for name in without or []})
    return dataclasses.replace(base, **changes)


def _config(**overrides) -> GamingVMConfig:
    return _run(GamingVMConfig.from_env, **overrides)


@instance_app.command(name="create")
def create_instance(
    *,
    region: str | None = None,
    prefix: str | None = None,
    instance_type: str | None = None,
    custom_ami: str | None = None,
    zones: list[str] | None = None,
    root_volume_size: int | None = None,
    skip_install: bool | None = None,
    install: list[str] | None = None,
    without: list[str] | None = None,
    spot_timeout: int | None = None,
    zone_seed: int | None = None,
    reroll_zone: bool = False,
    rotate_password: bool = False,
    rules_file: str | None = None,
    show_password: bool = False,
):
    """Create or converge the gaming instance.

    :param region: AWS region (default: GAMINGVM_REGION or us-east-1)
    :param prefix: Resource name prefix (default: gaming)
    :param instance_type: EC2 instance type (default: g4dn.xlarge)
    :param custom_ami: AMI id to use instead of the latest Windows Server image
    :param zones: Allowed zone suffixes, e.g. a b (default: any available zone)
    :param root_volume_size: Root volume size in GiB (default: 120)
    :param skip_install: Launch without the installer bootstrap script
    :param install: Installers to enable (graphic_card_driver, steam, gog_galaxy, ...)
    :param without: Installers to disable
    :param spot_timeout: Seconds to wait for spot fulfillment (default: 600)
    :param zone_seed: Seed for random zone selection
    :param reroll_zone: Pick a new zone instead of reusing the previous one
    :param rotate_password: Generate a new administrator password
    :param rules_file: JSON rule table replacing the default ports
    :param show_password: Print the administrator password
    """
    config = _config(
        region=region,
        resource_name_prefix=prefix,
        instance_type=instance_type,
        custom_ami=custom_ami,
        allowed_zone_suffixes=set(zones) if zones else None,
        root_volume_size=root_volume_size,
        skip_install=skip_install,
        installers=_installers(install, without),
        spot_timeout=spot_timeout,
        zone_seed=zone_seed,
        rules_file=rules_file,
    )
    reconciler = Reconciler(config)
    _run(reconciler.provider.validate_auth)

    log(
        f"Creating '{config.instance_name}' ({config.instance_type}) in '{config.region}'..."
    )
    outputs = _run(
        reconciler.reconcile, reroll_zone=reroll_zone, rotate_secret=rotate_password
    )
    _print_outputs(outputs.as_dict(show_sensitive=show_password))
    print(f"  State: {state_path(config.resource_name_prefix)}")


def _print_outputs(outputs: dict[str, str]) -> None:
    width = max(len(k) for k in outputs)
    for key, value in outputs.items():
        print(f"  {key.ljust(width)}  {value}")


@instance_app.command(name="outputs")
def show_outputs(*, prefix: str | None = None, show_password: bool = False):
    """Show instance id, address and password of the last run.

    :param prefix: Resource name prefix (default: gaming)
    :param show_password: Reveal the administrator password
    """
    config = _config(resource_name_prefix=prefix)
    outputs = _run(Reconciler(config).outputs)
    if outputs is None:
        error(f"No running instance recorded for '{config.resource_name_prefix}'")
    _print_outputs(outputs.as_dict(show_sensitive=show_password))


@instance_app.command(name="update-ip")
def update_ip(*, prefix: str | None = None, rules_file: str | None = None):
    """Point all ingress rules at your current public IP.

    :param prefix: Resource name prefix (default: gaming)
    :param rules_file: JSON rule table replacing the default ports
    """
    config = _config(resource_name_prefix=prefix, rules_file=rules_file)
    added, revoked = _run(Reconciler(config).update_ip)
    log(f"Ingress converged: {added} authorized, {revoked} revoked")


@instance_app.command(name="delete")
def delete_instance(*, prefix: str | None = None, force: bool = False):
    """Terminate the instance, cancel its spot request, delete the security group.

    The password parameter and IAM role are kept.

    :param prefix: Resource name prefix (default: gaming)
    :param force: Skip confirmation prompt
    """
    config = _config(resource_name_prefix=prefix)

    print("[yellow]Instance to delete:[/yellow]")
    print(f"  Name: {config.instance_name}")
    print(f"  Region: {config.region}")

    if not force:
        confirm = input("Delete this instance? (yes/no): ")
        if confirm != "yes":
            log("Cancelled")
            return

    _run(Reconciler(config).destroy)


@rules_app.command(name="list")
def list_rules(*, rules_file: str | None = None, cidr: str = "<your-ip>/32"):
    """Print the flattened ingress rules without calling AWS.

    :param rules_file: JSON rule table replacing the default ports
    :param cidr: Source CIDR to show in the listing
    """
    config = _config(rules_file=rules_file)
    rules = _run(flatten_rules, _run(config.rule_table))

    max_key = max((len(k) for k in rules), default=len("egress_all"))
    print(f"  {'KEY'.ljust(max_key)}  PROTO  PORT   SOURCE  DESCRIPTION")
    for rule in rules.values():
        print(
            f"  {rule.key.ljust(max_key)}  {rule.protocol.ljust(5)}  "
            f"{str(rule.port).ljust(5)}  {cidr}  {rule.description}"
        )
    print(f"  {'egress_all'.ljust(max_key)}  all    all    0.0.0.0/0  All outbound")


@app.meta.default
def launcher(
    *tokens: Annotated[str, cyclopts.Parameter(show=False, allow_leading_hyphen=True)],
    verbose: bool = False,
):
    """Provision a spot gaming instance on AWS.

    :param verbose: Log debug output
    """
    setup_logging("DEBUG" if verbose else os.getenv("GAMINGVM_LOG_LEVEL", "INFO"))
    app(tokens)


def main():
    app.meta()


if __name__ == "__main__":
    main()
