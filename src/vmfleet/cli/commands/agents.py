"""vmfleet agents — list agents and their connection state."""

from __future__ import annotations

import click
import httpx

from vmfleet.cli.config import get_url


@click.command()
def agents() -> None:
    """List agents of the fleet server's controller."""
    url = get_url()

    try:
        r = httpx.get(f"{url}/api/agents", timeout=30)
        r.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise click.ClickException(f"{e.response.status_code}: {e.response.text}")
    except httpx.HTTPError as e:
        raise click.ClickException(str(e))

    agent_list = r.json()
    if not agent_list:
        click.echo("No agents.")
        return

    click.echo(f"{'NAME':<28} {'TEMPLATE':<16} {'STATE':<20} {'ACCEPTING':<9}")
    click.echo("-" * 76)
    for a in agent_list:
        accepting = "yes" if a["accepting_tasks"] else "no"
        click.echo(f"{a['name']:<28} {a['template']:<16} {a['state']:<20} {accepting:<9}")
