"""Typer CLI for the Swarm multi-branch source."""

from __future__ import annotations

import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Annotated, Any

import httpx
import typer
from pydantic import ValidationError

from swarm_scm.config import SourceConfig, load_source_config
from swarm_scm.connection import P4CommandError, discover_swarm_url
from swarm_scm.heads import ChangeParseError, Head, Revision
from swarm_scm.logging import bind_source_context, configure_logging
from swarm_scm.source import SwarmSource, create_swarm_source
from swarm_scm.swarm_client import (
    SwarmApiError,
    SwarmAuthError,
    SwarmError,
    SwarmInputError,
    build_swarm_client,
    fetch_swarm_version,
    get_swarm_credentials_with_source,
)

app = typer.Typer(help="Helix Swarm branch and review heads for CI schedulers.")

ProjectOption = Annotated[str | None, typer.Option(help="Swarm project id (or SWARM_PROJECT).")]


@app.callback()
def main(
    log_level: Annotated[str, typer.Option(help="Log level for stderr output.")] = "WARNING",
    log_format: Annotated[str, typer.Option(help="Log format: console|json.")] = "console",
) -> None:
    """Configure logging for every command."""
    if log_format not in ("console", "json"):
        raise typer.BadParameter("log-format must be 'console' or 'json'.")
    configure_logging(level=log_level, fmt=log_format)  # type: ignore[arg-type]


def _load_config(project: str | None) -> SourceConfig:
    try:
        config = load_source_config(project=project)
    except ValidationError as error:
        typer.echo(f"Invalid configuration: {error.errors()[0]['msg']} (set --project).")
        raise typer.Exit(code=2) from error
    bind_source_context(config.project)
    return config


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


def _head_payload(head: Head) -> dict[str, Any]:
    return {"kind": "review" if head.is_change_request else "branch", **asdict(head)}


def _revision_payload(revision: Revision | None) -> dict[str, Any] | None:
    if revision is None:
        return None
    return {"head": _head_payload(revision.head), "ref": str(revision.ref)}


def _run(source: SwarmSource, action: Any) -> Any:
    """Run a source call; bad input exits with 2, Swarm and p4 failures with 1."""
    try:
        with source:
            return action(source)
    except SwarmInputError as error:
        typer.echo(f"Invalid configuration: {error}")
        raise typer.Exit(code=2) from error
    except SwarmApiError as error:
        typer.echo(f"Swarm request failed: status={error.status_code} endpoint={error.endpoint}.")
        raise typer.Exit(code=1) from error
    except (SwarmError, P4CommandError, ChangeParseError) as error:
        typer.echo(f"Swarm source failed: {error}")
        raise typer.Exit(code=1) from error
    except httpx.HTTPError as error:
        typer.echo(f"Swarm source failed: network error ({error}).")
        raise typer.Exit(code=1) from error


def _find_head(source: SwarmSource, name: str, review: str | None) -> Head:
    heads: list[Head] = [*source.list_tags()] if review is not None else [*source.list_heads()]
    for head in heads:
        if head.name == name and (review is None or getattr(head, "review", None) == review):
            return head
    typer.echo(f"No head named '{name}' in project '{source.project}'.")
    raise typer.Exit(code=1)


@app.command("heads")
def heads_command(project: ProjectOption = None) -> None:
    """List branch heads of the project."""
    source = create_swarm_source(_load_config(project))
    heads = _run(source, lambda s: s.list_heads())
    _echo_json([_head_payload(head) for head in heads])


@app.command("tags")
def tags_command(project: ProjectOption = None) -> None:
    """List review heads (one per active review and touched branch)."""
    source = create_swarm_source(_load_config(project))
    tags = _run(source, lambda s: s.list_tags())
    _echo_json([_head_payload(tag) for tag in tags])


@app.command("revision")
def revision_command(
    head: Annotated[str, typer.Option(help="Head name, e.g. 'main' or 'main-42'.")],
    review: Annotated[str | None, typer.Option(help="Review id for review heads.")] = None,
    project: ProjectOption = None,
) -> None:
    """Resolve a head to its latest revision."""
    source = create_swarm_source(_load_config(project))
    revision = _run(source, lambda s: s.resolve(_find_head(s, head, review)))
    _echo_json(_revision_payload(revision))


@app.command("event")
def event_command(
    payload_file: Annotated[str, typer.Argument(help="JSON payload file, or '-' for stdin.")],
    project: ProjectOption = None,
) -> None:
    """Resolve an inbound event payload to a revision (null when none)."""
    try:
        raw = sys.stdin.read() if payload_file == "-" else Path(payload_file).read_text("utf-8")
        payload = json.loads(raw)
    except (OSError, json.JSONDecodeError) as error:
        typer.echo(f"Invalid event payload: {error}.")
        raise typer.Exit(code=2) from error
    if not isinstance(payload, dict):
        typer.echo("Invalid event payload: expected a JSON object.")
        raise typer.Exit(code=2)

    source = create_swarm_source(_load_config(project))
    revision = _run(source, lambda s: s.resolve_from_event(payload))
    _echo_json(_revision_payload(revision))


@app.command("includes")
def includes_command(
    path: Annotated[str, typer.Argument(help="Depot path to test.")],
    project: ProjectOption = None,
) -> None:
    """Report whether a depot path falls under a project branch."""
    source = create_swarm_source(_load_config(project))
    included = _run(source, lambda s: s.includes(path))
    _echo_json({"path": path, "included": included})


@app.command("workspace")
def workspace_command(
    head: Annotated[str, typer.Option(help="Head name, e.g. 'main' or 'main-42'.")],
    review: Annotated[str | None, typer.Option(help="Review id for review heads.")] = None,
    project: ProjectOption = None,
) -> None:
    """Print the manual workspace (client view) for a head."""
    source = create_swarm_source(_load_config(project))

    def build(s: SwarmSource) -> Any:
        try:
            return s.build_workspace(_find_head(s, head, review))
        except ValueError as error:
            typer.echo(f"Cannot build workspace: {error}.")
            raise typer.Exit(code=1) from error

    workspace = _run(source, build)
    _echo_json(asdict(workspace))


@app.command("auth-check")
def auth_check_command(
    timeout_seconds: Annotated[
        int, typer.Option(help="Swarm API timeout in seconds for the validation call.")
    ] = 20,
    trust_env: Annotated[
        bool,
        typer.Option(
            "--trust-env/--no-trust-env",
            help="Use proxy/SSL environment variables from the current shell.",
        ),
    ] = True,
) -> None:
    """Validate Swarm credentials and server reachability."""
    try:
        credentials = get_swarm_credentials_with_source()
    except SwarmAuthError as error:
        typer.echo(f"Swarm auth check failed: {error}")
        raise typer.Exit(code=1) from error

    typer.echo(
        f"User detected in {credentials.user_source}; ticket detected in "
        f"{credentials.ticket_source}."
    )

    try:
        base_url = discover_swarm_url(credentials)
    except (SwarmAuthError, P4CommandError) as error:
        typer.echo(f"Swarm auth check failed: {error}")
        raise typer.Exit(code=1) from error

    try:
        with build_swarm_client(
            base_url, credentials, timeout_seconds=timeout_seconds, trust_env=trust_env
        ) as client:
            version = fetch_swarm_version(client=client)
    except SwarmInputError as error:
        typer.echo(f"Swarm auth check failed: {error}")
        raise typer.Exit(code=1) from error
    except SwarmApiError as error:
        typer.echo(
            "Swarm auth check failed: "
            f"status={error.status_code} endpoint={error.endpoint}."
        )
        raise typer.Exit(code=1) from error
    except httpx.HTTPError as error:
        typer.echo(f"Swarm auth check failed: network error ({error}).")
        raise typer.Exit(code=1) from error

    typer.echo(f"Swarm server at {base_url} answered with version '{version}'.")
    typer.echo("Swarm credentials are valid.")
