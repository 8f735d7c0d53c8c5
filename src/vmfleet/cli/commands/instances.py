"""vmfleet instances — list the VMs Multipass knows about on this host."""

from __future__ import annotations

import asyncio

import click

from vmfleet.backend.client import MultipassClient
from vmfleet.errors import BackendError


@click.command()
@click.option("--multipass-bin", default="multipass", envvar="VMFLEET_MULTIPASS_BIN", help="multipass executable")
def instances(multipass_bin: str) -> None:
    """Query the local Multipass for instances, agents or not."""
    try:
        vms = asyncio.run(MultipassClient(multipass_bin).list_instances())
    except BackendError as e:
        raise click.ClickException(e.message)

    if not vms:
        click.echo("No instances.")
        return

    click.echo(f"{'NAME':<28} {'STATE':<10} {'IPV4':<16} {'RELEASE'}")
    click.echo("-" * 76)
    for vm in vms:
        ipv4 = vm.ipv4[0] if vm.ipv4 else "--"
        click.echo(f"{vm.name:<28} {vm.state.value:<10} {ipv4:<16} {vm.release}")
