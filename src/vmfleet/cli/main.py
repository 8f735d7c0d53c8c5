"""vmfleet CLI — run the fleet server and drive it."""

from __future__ import annotations

import click

from vmfleet.cli.commands.agents import agents
from vmfleet.cli.commands.images import images
from vmfleet.cli.commands.instances import instances
from vmfleet.cli.commands.login import login
from vmfleet.cli.commands.logs import logs
from vmfleet.cli.commands.provision import demand, provision


@click.group()
def cli() -> None:
    """vmfleet — ephemeral Multipass build agents."""
    pass


cli.add_command(login)
cli.add_command(agents)
cli.add_command(provision)
cli.add_command(demand)
cli.add_command(logs)
cli.add_command(images)
cli.add_command(instances)


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind host")
@click.option("--port", default=3000, type=int, help="Bind port")
def serve(host: str, port: int) -> None:
    """Start the fleet server."""
    import asyncio

    from vmfleet.server import start_server

    asyncio.run(start_server(host=host, port=port))
