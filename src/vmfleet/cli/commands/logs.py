"""vmfleet logs — stream an agent's launch log."""

from __future__ import annotations

import json

import click
import httpx
from httpx_sse import connect_sse

from vmfleet.cli.config import get_url
from vmfleet.events import TERMINAL_EVENTS


@click.command()
@click.argument("agent")
def logs(agent: str) -> None:
    """Stream the launch log of AGENT until it fails or terminates."""
    url = get_url()

    try:
        with httpx.Client(timeout=None) as client:
            with connect_sse(client, "GET", f"{url}/api/agents/{agent}/events") as sse:
                for event in sse.iter_sse():
                    if not event.data:
                        continue
                    try:
                        data = json.loads(event.data)
                    except json.JSONDecodeError:
                        continue

                    event_type = data.get("type", event.event)
                    _print_event(event_type, data)

                    if event_type in TERMINAL_EVENTS:
                        return
    except httpx.HTTPStatusError as e:
        raise click.ClickException(f"{e.response.status_code}: {e.response.text}")
    except httpx.HTTPError as e:
        raise click.ClickException(f"Event stream error: {e}")


def _print_event(event_type: str, data: dict) -> None:
    if event_type == "vmfleet.state":
        click.echo(f"[state] {data.get('state', '')}")
    elif event_type == "vmfleet.failed":
        click.echo(f"[failed] {data.get('error', '')}", err=True)
    elif event_type == "vmfleet.terminated":
        click.echo("[terminated]")
    else:
        click.echo(data.get("text", ""))
