"""vmfleet images — list launchable image aliases on this host."""

from __future__ import annotations

import asyncio

import click

from vmfleet.backend.client import MultipassClient
from vmfleet.errors import BackendError


@click.command()
@click.option("--multipass-bin", default="multipass", envvar="VMFLEET_MULTIPASS_BIN", help="multipass executable")
def images(multipass_bin: str) -> None:
    """Query the local Multipass for image aliases."""
    try:
        aliases = asyncio.run(MultipassClient(multipass_bin).list_image_aliases())
    except BackendError as e:
        raise click.ClickException(e.message)

    if not aliases:
        click.echo("No images available.")
        return
    for alias in aliases:
        click.echo(alias)
