#!/usr/bin/env python3
"""
CLI tool for the Vault Transit Unseal Operator.

Talks to the operator's HTTP server to inspect reconciliation state,
list reconciler plugins, trigger a reconcile and query the health probes.
"""

import json
import os

import click
import requests
import yaml
from tabulate import tabulate

DEFAULT_OPERATOR_URL = os.getenv("UNSEAL_OPERATOR_URL", "http://localhost:8081")


class OperatorCLI:
    """HTTP client for the operator API."""

    def __init__(self, base_url: str = DEFAULT_OPERATOR_URL, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API; None on failure."""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if getattr(e, "response", None) is not None:
                try:
                    click.echo(f"Detail: {e.response.json()}", err=True)
                except ValueError:
                    click.echo(f"Response: {e.response.text}", err=True)
            return None

    def probe(self, path: str):
        """Query a probe endpoint; 503 is an answer, not an error."""
        try:
            response = requests.get(f"{self.base_url}{path}", timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            return {"healthy": False, "message": f"unreachable: {e}"}
        try:
            return response.json()
        except ValueError:
            return {"healthy": False, "message": f"HTTP {response.status_code}"}


def _render(data, output: str) -> str:
    if output == "yaml":
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    return json.dumps(data, indent=2)


@click.group()
@click.option(
    "--url",
    default=DEFAULT_OPERATOR_URL,
    show_default=True,
    help="Base URL of the operator HTTP server",
)
@click.pass_context
def cli(ctx, url):
    """Vault Transit Unseal Operator CLI"""
    ctx.obj = OperatorCLI(url)


@cli.command()
@click.option("--namespace", "-n", default=None, help="Only this namespace")
@click.option("--state", default=None, help="Filter by reconcile state")
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.pass_obj
def get(client, namespace, state, output):
    """List VaultTransitUnseal resources"""
    params = {k: v for k, v in {"namespace": namespace, "state": state}.items() if v}
    result = client._make_request("GET", "/api/v1/unseals", params=params)
    if result is None:
        raise SystemExit(1)

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    if not result:
        click.echo("No resources found")
        return

    rows = [
        [
            r["namespace"],
            r["name"],
            r["reconcile_state"],
            f"{r['observed_generation']}/{r['generation']}",
            r["retry_count"],
            r.get("last_reconcile_time") or "-",
        ]
        for r in result
    ]
    click.echo(
        tabulate(
            rows,
            headers=["NAMESPACE", "NAME", "STATE", "GEN", "RETRIES", "LAST RECONCILE"],
            tablefmt="plain",
        )
    )


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, namespace, name, output):
    """Describe a VaultTransitUnseal resource"""
    result = client._make_request("GET", f"/api/v1/unseals/{namespace}/{name}")
    if result is None:
        raise SystemExit(1)
    click.echo(_render(result, output))


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.option("--limit", "-l", default=10, help="Number of history entries to show")
@click.pass_obj
def history(client, namespace, name, limit):
    """Show reconciliation history for a resource"""
    result = client._make_request(
        "GET",
        f"/api/v1/unseals/{namespace}/{name}/history",
        params={"limit": limit},
    )
    if result is None:
        raise SystemExit(1)

    if not result:
        click.echo("No reconciliation history")
        return

    rows = [
        [
            h["reconcile_time"],
            h["generation"],
            "yes" if h["success"] else "no",
            h.get("error_kind") or "-",
            h.get("requeue_after") if h.get("requeue_after") is not None else "-",
            (h.get("error_message") or "")[:60],
        ]
        for h in result
    ]
    click.echo(
        tabulate(
            rows,
            headers=["TIME", "GEN", "SUCCESS", "ERROR KIND", "REQUEUE", "MESSAGE"],
            tablefmt="simple",
        )
    )


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.pass_obj
def reconcile(client, namespace, name):
    """Queue a resource for immediate reconciliation"""
    result = client._make_request(
        "POST", f"/api/v1/unseals/{namespace}/{name}/reconcile"
    )
    if result is None:
        raise SystemExit(1)
    click.echo(result["message"])


@cli.command()
@click.pass_obj
def reconcilers(client):
    """List the reconciler plugins registered with the operator"""
    result = client._make_request("GET", "/api/v1/reconcilers")
    if result is None:
        raise SystemExit(1)

    if not result:
        click.echo("No reconciler plugins registered")
        return

    rows = [[p["name"], p["version"]] for p in result]
    click.echo(tabulate(rows, headers=["NAME", "VERSION"], tablefmt="plain"))


@cli.command()
@click.pass_obj
def health(client):
    """Show the liveness and readiness probes"""
    rows = []
    healthy = True
    for label, path in (("liveness", "/healthz"), ("readiness", "/readyz")):
        probe = client.probe(path)
        ok = bool(probe.get("healthy"))
        healthy = healthy and ok
        rows.append([label, "ok" if ok else "failing", probe.get("message", "")])
    click.echo(
        tabulate(rows, headers=["PROBE", "STATUS", "MESSAGE"], tablefmt="plain")
    )
    if not healthy:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
