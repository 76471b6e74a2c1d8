from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import typer

from . import filters
from .config import load_yaml_files
from .connectors import load_connector_class
from .errors import FilterSyntaxError
from .host import ConnectorHost
from .host_api import serve_host_api_in_thread
from .metadata import describe_connector
from .protocol import LdapResponse, SearchRequest, TestConnectionRequest

cli = typer.Typer(
    name="connhost", context_settings={"help_option_names": ["-h", "--help"]}
)

HELP_TEXT = """
connhost CLI

Commands:
  describe TYPE            Show the capabilities and dependencies of a connector
  deploy CONFIG...         Deploy every datasource in the YAML config files
  search CONFIG...         Run a search against a deployed datasource
  test CONFIG...           Run a test-connection against a deployed datasource
  filter FILTER            Parse a search filter, optionally evaluate it
  serve CONFIG...          Deploy and serve the status API

Options:
  -j, --json               Print results as JSON
  -h, --help               Show this help message

Examples:
  connhost describe jsonfile
  connhost search host.yaml -d people -b "uid=washington,o=pennave" -s base
  connhost filter "(&(uid=washington)(!(termsServed<=0)))" -e '{"uid": "washington"}'
"""

json_opt = typer.Option(False, "--json", "-j", help="Print results as JSON")
datasource_opt = typer.Option(..., "--datasource", "-d", help="Datasource name")


@cli.command("help")
def help_cmd():
    """Show this CLI help."""
    typer.echo(HELP_TEXT)


def deploy_host(config_paths: List[str]) -> Tuple[ConnectorHost, Dict[str, Any]]:
    """Programmatic helper: load config, deploy, and return (host, status dict)."""
    cfg = load_yaml_files(config_paths)
    host = ConnectorHost(cfg)
    host.deploy()
    status = {k: v.as_dict() for k, v in host.status.datasources.items()}
    return host, status


def _response_dict(resp: Any) -> Dict[str, Any]:
    if isinstance(resp, LdapResponse):
        return {
            "result_code": resp.result_code.name,
            "message": resp.message,
            "payload": resp.payload,
        }
    return {
        "target": resp.target,
        "succeeded": resp.succeeded,
        "message": resp.message,
        "unsupported": resp.unsupported,
    }


@cli.command()
def describe(type_name: str, as_json: bool = json_opt):
    """Show the descriptor of a connector type."""
    desc = describe_connector(load_connector_class(type_name)).as_dict()
    if as_json:
        typer.echo(json.dumps(desc, indent=2))
        return
    typer.echo(f"{desc['name']}: {desc['description']}")
    typer.echo("capabilities: " + (", ".join(desc["capabilities"]) or "(none)"))
    for d in desc["dependencies"]:
        typer.echo(f"  {d['parameter']} <- {d.get('property_set') or d.get('component')}")


@cli.command()
def deploy(config: List[str], as_json: bool = json_opt):
    """Deploy every datasource in one or more YAML config files."""
    host, status = deploy_host(config)
    logging.getLogger(__name__).info(
        "deployed from %s, datasources: %d", config, len(status)
    )
    host.shutdown()
    if as_json:
        typer.echo(json.dumps(status, indent=2))
    else:
        for name, st in status.items():
            notes = "; ".join(st["notes"])
            typer.echo(f"{name}: {st['state']}" + (f" ({notes})" if notes else ""))
    if any(st["state"] == "failed" for st in status.values()):
        raise typer.Exit(1)


@cli.command()
def search(
    config: List[str],
    datasource: str = datasource_opt,
    base: str = typer.Option("", "--base", "-b", help="Search base DN"),
    scope: str = typer.Option("sub", "--scope", "-s", help="base, one or sub"),
    filter: str = typer.Option("(objectClass=*)", "--filter", "-f", help="RFC 4515 filter"),
    attributes: Optional[List[str]] = typer.Option(None, "--attribute", "-a"),
    size_limit: int = typer.Option(0, "--size-limit"),
):
    """Run a search request against a deployed datasource."""
    host, status = deploy_host(config)
    try:
        if datasource not in host.datasources:
            notes = "; ".join((status.get(datasource) or {}).get("notes") or [])
            typer.echo(f"Error: datasource '{datasource}' is not deployed {notes}", err=True)
            raise typer.Exit(1)
        request = SearchRequest.of(base, scope, filter, attributes or (), size_limit)
        resp = host.dispatch(datasource, request)
        typer.echo(json.dumps(_response_dict(resp), indent=2, default=str))
        if not resp.succeeded:
            raise typer.Exit(2)
    finally:
        host.shutdown()


@cli.command()
def test(config: List[str], datasource: str = datasource_opt, target: str = ""):
    """Run a test-connection request against a deployed datasource."""
    host, _ = deploy_host(config)
    try:
        if datasource not in host.datasources:
            typer.echo(f"Error: datasource '{datasource}' is not deployed", err=True)
            raise typer.Exit(1)
        resp = host.dispatch(datasource, TestConnectionRequest(target or datasource))
        typer.echo(json.dumps(_response_dict(resp), indent=2))
        if not resp.succeeded:
            raise typer.Exit(2)
    finally:
        host.shutdown()


@cli.command("filter")
def filter_cmd(
    text: str,
    entry: Optional[str] = typer.Option(
        None, "--entry", "-e", help="JSON object to evaluate the filter against"
    ),
):
    """Parse a filter, print its canonical form and optionally evaluate it."""
    try:
        expr = filters.parse(text)
    except FilterSyntaxError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(filters.to_string(expr))
    if entry is not None:
        result = filters.evaluate(expr, json.loads(entry))
        typer.echo("match" if result else "no match")
        if not result:
            raise typer.Exit(3)


@cli.command()
def serve(config: List[str], bind: str = "127.0.0.1", port: int = 8000):
    """Deploy the datasources and serve the status API."""
    logging.basicConfig(level=logging.INFO)
    cfg = load_yaml_files(config)
    host = ConnectorHost(cfg)
    serve_host_api_in_thread(host, bind=bind, port=port)
    host.deploy()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("shutting down")
    finally:
        host.shutdown()


def main():
    cli()


if __name__ == "__main__":
    main()
