#!/usr/bin/env python3
"""
CLI tool for the Dead Man's Snitch operator
Provides a kubectl-like interface for ClusterDeployments and SyncSets
"""

import json
import os

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = os.getenv("DMS_OPERATOR_API", "http://localhost:8000/api/v1")


class DMSOperatorCLI:
    """CLI client for the operator API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
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


def _cd_path(namespace: str, name: str = "") -> str:
    path = f"/namespaces/{namespace}/clusterdeployments"
    return f"{path}/{name}" if name else path


def _load_file(filename: str):
    with open(filename, "r") as f:
        if filename.endswith((".yaml", ".yml")):
            return yaml.safe_load(f)
        return json.load(f)


@click.group()
@click.option("--api", default=API_BASE_URL, help="Operator API base URL")
@click.pass_context
def cli(ctx, api):
    """Dead Man's Snitch operator CLI"""
    ctx.obj = DMSOperatorCLI(api)


@cli.command()
@click.option("--namespace", "-n", default=None, help="Only this namespace")
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.pass_obj
def get(client, namespace, output):
    """List ClusterDeployments"""
    params = {"namespace": namespace} if namespace else {}
    result = client._make_request("GET", "/clusterdeployments", params=params)
    if result is None:
        return

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    headers = ["Namespace", "Name", "Installed", "Managed", "Finalizers", "Deleting"]
    rows = [
        [
            cd["namespace"],
            cd["name"],
            cd["installed"],
            cd["labels"].get("api.openshift.com/managed", ""),
            ",".join(cd["finalizers"]) or "-",
            "yes" if cd.get("deletion_timestamp") else "",
        ]
        for cd in result
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, namespace, name, output):
    """Describe a ClusterDeployment and its reconcile status"""
    result = client._make_request("GET", _cd_path(namespace, name))
    if result is None:
        return

    status = client._make_request("GET", _cd_path(namespace, name) + "/status")
    if status:
        result["status"] = status

    if output == "yaml":
        click.echo(yaml.dump(result, default_flow_style=False))
    else:
        click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.pass_obj
def apply(client, filename):
    """Create a ClusterDeployment from a YAML/JSON file"""
    data = _load_file(filename)
    namespace = data.pop("namespace", None)
    if not namespace:
        raise click.UsageError("file must set 'namespace'")

    result = client._make_request("POST", _cd_path(namespace), json=data)
    if result:
        click.echo(f"ClusterDeployment {result['namespace']}/{result['name']} created")


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.argument("labels", nargs=-1)
@click.pass_obj
def label(client, namespace, name, labels):
    """Set (key=value) or remove (key-) labels on a ClusterDeployment"""
    current = client._make_request("GET", _cd_path(namespace, name))
    if current is None:
        return

    new_labels = dict(current["labels"])
    for item in labels:
        if item.endswith("-") and "=" not in item:
            new_labels.pop(item[:-1], None)
        elif "=" in item:
            key, value = item.split("=", 1)
            new_labels[key] = value
        else:
            raise click.BadParameter(f"expected key=value or key-, got '{item}'")

    result = client._make_request(
        "PATCH", _cd_path(namespace, name), json={"labels": new_labels}
    )
    if result:
        click.echo(f"ClusterDeployment {namespace}/{name} labeled")


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.confirmation_option(prompt="Are you sure you want to delete this cluster?")
@click.pass_obj
def delete(client, namespace, name):
    """Delete a ClusterDeployment (removes its snitch and SyncSet)"""
    result = client._make_request("DELETE", _cd_path(namespace, name))
    if result:
        click.echo(f"ClusterDeployment {namespace}/{name} marked for deletion")


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.pass_obj
def reconcile(client, namespace, name):
    """Manually trigger reconciliation for a ClusterDeployment"""
    result = client._make_request("POST", _cd_path(namespace, name) + "/reconcile")
    if result:
        click.echo("Reconciliation triggered successfully")


@cli.command()
@click.argument("namespace")
@click.pass_obj
def syncsets(client, namespace):
    """List SyncSets in a namespace"""
    result = client._make_request("GET", f"/namespaces/{namespace}/syncsets")
    if result is None:
        return

    headers = ["Name", "ClusterDeployments", "Snitch URL"]
    rows = [
        [
            ss["name"],
            ",".join(ss["cluster_deployment_refs"]),
            ss.get("snitch_url") or "-",
        ]
        for ss in result
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.argument("pairs", nargs=-1, required=True)
@click.pass_obj
def secret(client, namespace, name, pairs):
    """Create or replace a Secret from key=value pairs"""
    data = {}
    for item in pairs:
        if "=" not in item:
            raise click.BadParameter(f"expected key=value, got '{item}'")
        key, value = item.split("=", 1)
        data[key] = value

    result = client._make_request(
        "PUT", f"/namespaces/{namespace}/secrets/{name}", json={"data": data}
    )
    if result:
        click.echo(f"Secret {namespace}/{name} configured")


if __name__ == "__main__":
    cli()
