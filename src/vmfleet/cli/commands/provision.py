"""vmfleet provision / demand — request new agents."""

from __future__ import annotations

import click
import httpx

from vmfleet.cli.config import get_url


def _post(path: str, json: dict | None = None) -> httpx.Response:
    url = get_url()
    try:
        r = httpx.post(f"{url}{path}", json=json, timeout=30)
        r.raise_for_status()
    except httpx.HTTPStatusError as e:
        try:
            detail = e.response.json().get("detail", e.response.text)
        except ValueError:
            detail = e.response.text
        raise click.ClickException(f"{e.response.status_code}: {detail}")
    except httpx.HTTPError as e:
        raise click.ClickException(str(e))
    return r


@click.command()
@click.argument("template")
def provision(template: str) -> None:
    """Provision one agent from TEMPLATE right now."""
    data = _post(f"/api/templates/{template}/provision").json()
    click.echo(f"Provisioning {data['name']} from template {data['template']}")


@click.command()
@click.option("--label", "-l", default=None, help="Workload label (omit to match any template)")
@click.option("--count", "-n", default=1, type=int, help="Number of agents wanted")
def demand(label: str | None, count: int) -> None:
    """Send a demand signal, as the scheduler would."""
    data = _post("/api/provision", json={"label": label, "count": count}).json()
    planned = data["planned"]
    if not planned:
        click.echo(f"Nothing provisioned ({data['outcome']})")
        return
    for p in planned:
        click.echo(f"Provisioning {p['name']} from template {p['template']}")
