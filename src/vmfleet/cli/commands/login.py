"""vmfleet login — remember the fleet server URL."""

from __future__ import annotations

import click
import httpx

from vmfleet.cli.config import save_config


@click.command()
@click.option("--url", required=True, help="Fleet server URL (e.g. http://localhost:3000)")
def login(url: str) -> None:
    """Point the CLI at a fleet server."""
    url = url.rstrip("/")

    try:
        r = httpx.get(f"{url}/health", timeout=10)
        r.raise_for_status()
    except httpx.HTTPError as e:
        raise click.ClickException(f"Cannot reach server at {url}: {e}")

    save_config({"url": url})
    click.echo(f"Using fleet server {url}")
