#!/usr/bin/env python3
"""
CLI tool for the Sentry Project Operator.

Provides a kubectl-like interface over the operator's HTTP API.
"""

import json
import time

import click
import requests
import yaml
from tabulate import tabulate

DEFAULT_API_URL = "http://localhost:8000/api/v1"


class SentryctlClient:
    """HTTP client for the operator API."""

    def __init__(self, base_url: str = DEFAULT_API_URL):
        self.base_url = base_url.rstrip("/")

    def request(self, method: str, endpoint: str, **kwargs):
        """Make an HTTP request; report errors on stderr and return None."""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, timeout=30, **kwargs)
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


def _load_manifest(filename: str):
    with open(filename, "r") as f:
        if filename.endswith((".yaml", ".yml")):
            return yaml.safe_load(f)
        return json.load(f)


def _phase(project) -> str:
    return (project.get("status") or {}).get("phase") or "Uninitialized"


@click.group()
@click.option(
    "--api-url",
    envvar="SENTRYCTL_API_URL",
    default=DEFAULT_API_URL,
    show_default=True,
    help="Operator API base URL",
)
@click.pass_context
def cli(ctx, api_url):
    """sentryctl - manage declared Sentry projects"""
    ctx.obj = SentryctlClient(api_url)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.pass_obj
def apply(client, filename):
    """Declare a project from a YAML/JSON manifest ({name, spec})"""
    result = client.request("POST", "/projects", json=_load_manifest(filename))
    if result:
        click.echo(f"Project {result['name']} declared")
        click.echo(f"Phase: {_phase(result)}")


@cli.command()
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.option("--phase", help="Only show projects in this phase")
@click.option("--organization", help="Only show projects in this organization")
@click.pass_obj
def get(client, output, phase, organization):
    """List declared projects"""
    params = {k: v for k, v in (("phase", phase), ("organization", organization)) if v}
    result = client.request("GET", "/projects", params=params)
    if result is None:
        return

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    rows = [
        [
            p["name"],
            p["spec"].get("organization"),
            p["spec"].get("slug"),
            _phase(p),
            "yes" if p.get("deletion_timestamp") else "",
            p["generation"],
        ]
        for p in result
    ]
    headers = ["NAME", "ORGANIZATION", "SLUG", "PHASE", "DELETING", "GENERATION"]
    click.echo(tabulate(rows, headers=headers, tablefmt="plain"))


@cli.command()
@click.argument("name")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, name, output):
    """Describe a declared project"""
    result = client.request("GET", f"/projects/{name}")
    if result:
        if output == "yaml":
            click.echo(yaml.safe_dump(result, default_flow_style=False))
        else:
            click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("name")
@click.argument("filename", type=click.Path(exists=True))
@click.pass_obj
def update(client, name, filename):
    """Replace a project's spec from a manifest"""
    manifest = _load_manifest(filename)
    spec = manifest.get("spec", manifest)
    result = client.request("PUT", f"/projects/{name}", json={"spec": spec})
    if result:
        click.echo(f"Project {name} updated")
        click.echo(f"Generation: {result['generation']}")


@cli.command()
@click.argument("name")
@click.confirmation_option(prompt="Are you sure you want to delete this project?")
@click.pass_obj
def delete(client, name):
    """Delete a project (also deletes it in Sentry)"""
    if client.request("DELETE", f"/projects/{name}"):
        click.echo(f"Project {name} marked for deletion")


@cli.command()
@click.argument("name")
@click.pass_obj
def reconcile(client, name):
    """Trigger a reconciliation pass now"""
    if client.request("POST", f"/projects/{name}/reconcile"):
        click.echo("Reconciliation triggered")


@cli.command()
@click.argument("name")
@click.option("--limit", "-l", default=10, help="Number of history entries to show")
@click.pass_obj
def history(client, name, limit):
    """Show reconciliation history for a project"""
    result = client.request("GET", f"/projects/{name}/history", params={"limit": limit})
    if result is None:
        return

    headers = ["ID", "Generation", "Success", "Action", "Phase", "Trigger", "Time"]
    rows = [
        [
            entry["id"],
            entry["generation"],
            "✓" if entry["success"] else "✗",
            entry["action"],
            entry["phase"],
            entry["trigger_reason"],
            entry["reconcile_time"],
        ]
        for entry in result
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("name")
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
@click.pass_obj
def status(client, name, follow, interval):
    """Show the observed status of a project"""

    def show_status():
        result = client.request("GET", f"/projects/{name}")
        if not result:
            return
        observed = result.get("status") or {}
        if follow:
            click.clear()
        click.echo(f"Project: {result['name']}")
        click.echo(f"Phase: {_phase(result)}")
        click.echo(f"Message: {observed.get('message') or 'N/A'}")
        click.echo(f"Confirmed Slug: {observed.get('confirmedSlug') or 'N/A'}")
        click.echo(f"Generation: {result['generation']}")
        click.echo(f"Observed Generation: {observed.get('observedGeneration', 0)}")
        click.echo(f"Finalizers: {', '.join(result['finalizers']) or 'none'}")
        if result.get("deletion_timestamp"):
            click.echo(f"Deletion requested: {result['deletion_timestamp']}")

    show_status()

    if follow:
        try:
            while True:
                time.sleep(interval)
                show_status()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


if __name__ == "__main__":
    cli()
