"""Caretaker CLI - drift detection and maintenance proposals from the command line."""

import asyncio
import json
import os
from pathlib import Path
from typing import Annotated, Any

import httpx
import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="caretaker",
    help="Schema drift detection and maintenance proposals for integrations",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)

# Sub-commands
drift_app = typer.Typer(help="Detect and inspect schema drift")
proposal_app = typer.Typer(help="Manage maintenance proposals")
maintenance_app = typer.Typer(help="Run maintenance jobs against the database")

app.add_typer(drift_app, name="drift")
app.add_typer(proposal_app, name="proposal")
app.add_typer(maintenance_app, name="maintenance")

SEVERITY_STYLES = {"breaking": "red", "warning": "yellow", "info": "cyan"}
STATUS_STYLES = {
    "pending": "yellow",
    "approved": "green",
    "rejected": "red",
    "reverted": "magenta",
    "expired": "dim",
}


def get_base_url() -> str:
    """Get the Caretaker API base URL from environment or default."""
    return os.environ.get("CARETAKER_URL", "http://localhost:8000")


def get_api_key() -> str | None:
    """Get the API key from environment."""
    return os.environ.get("CARETAKER_API_KEY")


def make_request(
    method: str,
    path: str,
    json_data: dict[str, Any] | None = None,
    params: dict[str, Any] | None = None,
) -> httpx.Response:
    """Make an HTTP request to the Caretaker API."""
    url = f"{get_base_url()}/api/v1{path}"
    headers: dict[str, str] = {}
    api_key = get_api_key()
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    with httpx.Client(timeout=30.0) as client:
        response = client.request(
            method=method,
            url=url,
            json=json_data,
            params=params,
            headers=headers,
        )
    return response


def handle_response(response: httpx.Response) -> Any:
    """Unwrap the response envelope, exiting with status 1 on errors."""
    if response.status_code >= 400:
        try:
            error = response.json().get("error", {})
            detail = f"{error.get('code')}: {error.get('message')}"
        except Exception:
            detail = response.text
        err_console.print(f"[red]Error ({response.status_code}):[/red] {detail}")
        raise typer.Exit(1)
    if response.status_code == 204:
        return {}
    return response.json().get("data")


def _styled(value: str, styles: dict[str, str]) -> str:
    style = styles.get(value, "white")
    return f"[{style}]{value}[/{style}]"


# ============================================================================
# Drift commands
# ============================================================================


@drift_app.command("summary")
def drift_summary(
    integration_id: Annotated[str, typer.Argument(help="Integration ID")],
) -> None:
    """Show unresolved drift counts by severity."""
    response = make_request("GET", f"/integrations/{integration_id}/drift/summary")
    summary = handle_response(response)
    console.print(f"[red]Breaking:[/red] {summary['breaking']}")
    console.print(f"[yellow]Warning:[/yellow] {summary['warning']}")
    console.print(f"[cyan]Info:[/cyan] {summary['info']}")
    console.print(f"[bold]Total:[/bold] {summary['total']}")


@drift_app.command("detect")
def drift_detect(
    integration_id: Annotated[str, typer.Argument(help="Integration ID")],
    schema_file: Annotated[
        Path, typer.Option("--schema", "-s", help="Path to the fetched schema (JSON)")
    ],
) -> None:
    """Compare a freshly fetched schema with the live snapshot."""
    try:
        schema = json.loads(schema_file.read_text())
    except (OSError, json.JSONDecodeError) as e:
        err_console.print(f"[red]Cannot read schema file:[/red] {e}")
        raise typer.Exit(1) from e

    response = make_request(
        "POST", f"/integrations/{integration_id}/drift/detect", json_data={"schema": schema}
    )
    result = handle_response(response)
    if not result["detected"]:
        console.print("[green]No new drift detected[/green]")
        return

    console.print(f"[yellow]Detected {result['detected']} new drift record(s)[/yellow]")
    for record in result["records"]:
        severity = _styled(record["severity"], SEVERITY_STYLES)
        console.print(f"  {severity} {record['field_path']}: {record['description']}")


@drift_app.command("reports")
def drift_reports(
    integration_id: Annotated[str, typer.Argument(help="Integration ID")],
    severity: Annotated[
        str | None, typer.Option("--severity", help="Filter by severity")
    ] = None,
    unresolved: Annotated[
        bool, typer.Option("--unresolved", "-u", help="Only unresolved records")
    ] = False,
    limit: Annotated[int, typer.Option("--limit", "-l", help="Max results")] = 20,
) -> None:
    """List drift records."""
    params: dict[str, Any] = {"limit": limit}
    if severity:
        params["severity"] = severity
    if unresolved:
        params["resolved"] = "false"

    response = make_request("GET", f"/integrations/{integration_id}/drift/reports", params=params)
    result = handle_response(response)
    records = result.get("results", [])

    if not records:
        console.print("[dim]No drift records found[/dim]")
        return

    table = Table(title=f"Drift Records ({result['total']} total)")
    table.add_column("ID", style="dim")
    table.add_column("Severity")
    table.add_column("Field", style="bold")
    table.add_column("Change")
    table.add_column("Resolved")
    table.add_column("Detected")

    for record in records:
        table.add_row(
            record["id"][:8] + "...",
            _styled(record["severity"], SEVERITY_STYLES),
            record["field_path"],
            record["change_kind"],
            "yes" if record["resolved"] else "no",
            record["detected_at"][:10],
        )

    console.print(table)


# ============================================================================
# Proposal commands
# ============================================================================


def _proposal_path(integration_id: str, proposal_id: str, action: str = "") -> str:
    path = f"/integrations/{integration_id}/maintenance/proposals/{proposal_id}"
    return f"{path}/{action}" if action else path


@proposal_app.command("generate")
def proposal_generate(
    integration_id: Annotated[str, typer.Argument(help="Integration ID")],
) -> None:
    """Generate a proposal from unresolved drift."""
    response = make_request("POST", f"/integrations/{integration_id}/maintenance/proposals")
    proposal = handle_response(response)
    if response.status_code == 201:
        console.print(f"[green]Created proposal:[/green] {proposal['id']}")
    else:
        console.print(f"[yellow]Pending proposal already exists:[/yellow] {proposal['id']}")
    console.print(f"  Severity: {_styled(proposal['severity'], SEVERITY_STYLES)}")
    console.print(f"  {proposal['reasoning']}")


@proposal_app.command("list")
def proposal_list(
    integration_id: Annotated[str, typer.Argument(help="Integration ID")],
    status: Annotated[str | None, typer.Option("--status", "-s", help="Filter by status")] = None,
    limit: Annotated[int, typer.Option("--limit", "-l", help="Max results")] = 20,
) -> None:
    """List proposals of an integration."""
    params: dict[str, Any] = {"limit": limit}
    if status:
        params["status"] = status

    response = make_request(
        "GET", f"/integrations/{integration_id}/maintenance/proposals", params=params
    )
    result = handle_response(response)
    proposals = result.get("results", [])

    if not proposals:
        console.print("[dim]No proposals found[/dim]")
        return

    table = Table(title="Maintenance Proposals")
    table.add_column("ID", style="dim")
    table.add_column("Status", style="bold")
    table.add_column("Severity")
    table.add_column("Changes")
    table.add_column("Created")

    for p in proposals:
        table.add_row(
            p["id"][:8] + "...",
            _styled(p["status"], STATUS_STYLES),
            _styled(p["severity"], SEVERITY_STYLES),
            str(len(p["schema_diff"])),
            p["created_at"][:10],
        )

    console.print(table)


@proposal_app.command("get")
def proposal_get(
    integration_id: Annotated[str, typer.Argument(help="Integration ID")],
    proposal_id: Annotated[str, typer.Argument(help="Proposal ID")],
) -> None:
    """Get proposal details."""
    response = make_request("GET", _proposal_path(integration_id, proposal_id))
    proposal = handle_response(response)
    console.print_json(json.dumps(proposal))


@proposal_app.command("approve")
def proposal_approve(
    integration_id: Annotated[str, typer.Argument(help="Integration ID")],
    proposal_id: Annotated[str, typer.Argument(help="Proposal ID")],
) -> None:
    """Approve a pending proposal and apply its schema changes."""
    response = make_request("POST", _proposal_path(integration_id, proposal_id, "approve"))
    proposal = handle_response(response)
    before, after = proposal["replaced_snapshot_version"], proposal["applied_snapshot_version"]
    console.print(f"[green]Approved:[/green] {proposal['id']} (schema v{before} -> v{after})")


@proposal_app.command("reject")
def proposal_reject(
    integration_id: Annotated[str, typer.Argument(help="Integration ID")],
    proposal_id: Annotated[str, typer.Argument(help="Proposal ID")],
) -> None:
    """Reject a pending proposal."""
    response = make_request("POST", _proposal_path(integration_id, proposal_id, "reject"))
    proposal = handle_response(response)
    console.print(f"[red]Rejected:[/red] {proposal['id']}")


@proposal_app.command("revert")
def proposal_revert(
    integration_id: Annotated[str, typer.Argument(help="Integration ID")],
    proposal_id: Annotated[str, typer.Argument(help="Proposal ID")],
) -> None:
    """Revert an approved proposal."""
    response = make_request("POST", _proposal_path(integration_id, proposal_id, "revert"))
    proposal = handle_response(response)
    console.print(f"[magenta]Reverted:[/magenta] {proposal['id']}")


@proposal_app.command("descriptions")
def proposal_descriptions(
    integration_id: Annotated[str, typer.Argument(help="Integration ID")],
    proposal_id: Annotated[str, typer.Argument(help="Proposal ID")],
    accept: Annotated[
        list[str] | None, typer.Option("--accept", "-a", help="Tool ID to accept")
    ] = None,
    skip: Annotated[list[str] | None, typer.Option("--skip", help="Tool ID to skip")] = None,
) -> None:
    """Accept or skip suggested tool descriptions."""
    decisions = [{"toolId": tool_id, "accept": True} for tool_id in accept or []]
    decisions += [{"toolId": tool_id, "accept": False} for tool_id in skip or []]
    if not decisions:
        err_console.print("[red]Pass at least one --accept or --skip tool ID[/red]")
        raise typer.Exit(1)

    response = make_request(
        "POST",
        _proposal_path(integration_id, proposal_id, "descriptions"),
        json_data={"decisions": decisions},
    )
    proposal = handle_response(response)
    for suggestion in proposal["description_suggestions"]:
        console.print(f"  {suggestion['tool_name']}: {suggestion['decision']}")


# ============================================================================
# Maintenance commands
# ============================================================================


async def _run_sweep() -> dict[str, Any]:
    from caretaker.db.database import dispose_engine, get_async_session_maker
    from caretaker.services.description_suggestions import get_description_suggester
    from caretaker.services.maintenance_job import run_maintenance_sweep

    async_session = get_async_session_maker()
    try:
        async with async_session() as session:
            result = await run_maintenance_sweep(session, get_description_suggester())
            await session.commit()
    finally:
        await dispose_engine()
    return result.to_dict()


@maintenance_app.command("run")
def maintenance_run() -> None:
    """Expire stale proposals and generate proposals for open drift."""
    result = asyncio.run(_run_sweep())
    console.print(f"[bold]Integrations checked:[/bold] {result['integrations_checked']}")
    console.print(f"[bold]Proposals created:[/bold] {result['proposals_created']}")
    console.print(f"[bold]Auto-approved:[/bold] {result['auto_approved']}")
    console.print(f"[bold]Expired:[/bold] {result['expired']}")
    for error in result["errors"]:
        err_console.print(
            f"[red]{error['integration_id']}[/red] {error['code']}: {error['error']}"
        )
    if result["errors"]:
        raise typer.Exit(1)


# ============================================================================
# Server command
# ============================================================================


@app.command("serve")
def serve(
    host: Annotated[str, typer.Option("--host", "-h", help="Host to bind")] = "0.0.0.0",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to bind")] = 8000,
    reload: Annotated[bool, typer.Option("--reload", "-r", help="Enable auto-reload")] = False,
) -> None:
    """Start the Caretaker API server."""
    import uvicorn

    uvicorn.run("caretaker.main:app", host=host, port=port, reload=reload)


# ============================================================================
# Version command
# ============================================================================


@app.command("version")
def version() -> None:
    """Show Caretaker version."""
    console.print("caretaker 0.1.0")


if __name__ == "__main__":
    app()
